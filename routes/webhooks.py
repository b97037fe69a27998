"""
Inbound payment capture webhooks.

The payment provider verifies and captures funds; this endpoint only
reacts to the capture. Capture handling is idempotent on the payment
intent id, so provider retries are safe.
"""

import json
import logging

import stripe
from flask import Blueprint, current_app, request, jsonify

from errors import NotFoundError, ValidationError
from extensions import limiter
from services import engagements

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


def _field(obj, key, default=None):
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


@webhook_bp.route("/stripe", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    """
    Handle Stripe webhook events with signature verification.
    Events: payment_intent.succeeded
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET", "")

    # Verify webhook signature when secret is configured
    if webhook_secret:
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
        except stripe.SignatureVerificationError:
            return jsonify({"error": "Invalid signature", "code": "invalid_signature"}), 400
        except ValueError:
            return jsonify({"error": "Invalid payload", "code": "validation_error"}), 400
    else:
        # Dev mode: parse without verification
        try:
            event = json.loads(payload)
        except ValueError:
            return jsonify({"error": "Invalid JSON", "code": "validation_error"}), 400

    event_type = _field(event, "type")
    data_object = _field(_field(event, "data", {}), "object", {})

    if event_type == "payment_intent.succeeded":
        return _handle_payment_succeeded(data_object)

    logger.debug("Ignoring Stripe event %s", event_type)
    return jsonify({"received": True}), 200


def _handle_payment_succeeded(intent):
    """Record the capture against the engagement named in the intent metadata."""
    intent_id = _field(intent, "id")
    engagement_id = _field(_field(intent, "metadata", {}), "engagement_id")
    if not intent_id or not engagement_id:
        logger.warning("payment_intent.succeeded without engagement metadata: %s", intent_id)
        return jsonify({"received": True, "applied": False}), 200

    amount_cents = _field(intent, "amount_received") or _field(intent, "amount")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        # Acknowledge so Stripe stops redelivering an event that can never apply
        logger.warning("Capture %s for engagement %s has no usable amount: %r", intent_id, engagement_id, amount_cents)
        return jsonify({"received": True, "applied": False}), 200

    try:
        result = engagements.record_payment_captured(
            engagement_id,
            reference=intent_id,
            amount=amount_cents / 100,
            provider="stripe",
        )
    except NotFoundError:
        logger.warning("Capture %s for unknown engagement %s", intent_id, engagement_id)
        return jsonify({"received": True, "applied": False}), 200
    except ValidationError as e:
        logger.warning("Capture %s for engagement %s rejected: %s", intent_id, engagement_id, e)
        return jsonify({"received": True, "applied": False}), 200

    return jsonify({
        "received": True,
        "applied": result.applied,
        "duplicate": result.duplicate,
    }), 200
