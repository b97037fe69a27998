"""
Engagement (gig) manager.

Engagements are created only by accepting a proposal envelope. Status
moves active -> completed | cancelled; payment_status moves
pending -> paid independently. Every transition is a conditional UPDATE
so concurrent complete/cancel/capture calls resolve to one winner.
"""

import logging
from dataclasses import dataclass
from decimal import InvalidOperation
from typing import Optional

from sqlalchemy.exc import IntegrityError

import directory
from errors import Conflict, Forbidden, IllegalStateTransition, NotFoundError, ValidationError
from models import db, Conversation, Earning, Engagement, PaymentCapture, utcnow, to_money
from services import escrow
from socket_events import record_event, deliver

logger = logging.getLogger(__name__)

ENGAGEMENT_STATUSES = ("active", "completed", "cancelled")


@dataclass
class CaptureResult:
    engagement: Engagement
    capture: PaymentCapture
    earning: Optional[Earning] = None
    applied: bool = False
    duplicate: bool = False

    def to_dict(self):
        return {
            "engagement": self.engagement.to_dict(),
            "capture": self.capture.to_dict(),
            "earning": self.earning.to_dict() if self.earning else None,
            "applied": self.applied,
            "duplicate": self.duplicate,
        }


def professional_party(envelope):
    """Offers are sent by the professional; requests are addressed to one."""
    if envelope.kind == "service_offer":
        return envelope.sender_id
    return envelope.receiver_id


def _parties(engagement):
    return [engagement.professional_id, engagement.organizer_id]


def create_from_envelope(envelope, price, services):
    """
    Build the engagement for an envelope being accepted.

    Runs inside the caller's transaction and does not commit. Returns
    (engagement, staged_events).
    """
    event = directory.get_event(envelope.event_id)
    engagement = Engagement(
        envelope_id=envelope.id,
        professional_id=professional_party(envelope),
        organizer_id=event.organizer_id,
        event_id=event.id,
        services=list(services),
        price=to_money(price),
        status="active",
        payment_status="pending",
        start_time=event.start_time,
        location=event.location,
    )
    db.session.add(engagement)
    db.session.flush()

    conversation = db.session.get(Conversation, envelope.conversation_id)
    if conversation:
        conversation.engagement_id = engagement.id
        conversation.event_id = event.id

    events = record_event("engagement:created", engagement.to_dict(), _parties(engagement))
    logger.info("Engagement %s created from envelope %s", engagement.id, envelope.id)
    return engagement, events


def get_engagement(engagement_id, user_id=None):
    engagement = db.session.get(Engagement, engagement_id)
    if not engagement:
        raise NotFoundError("Engagement not found")
    if user_id is not None and not engagement.has_party(user_id):
        raise Forbidden("You are not a party to this engagement")
    return engagement


def list_engagements(user_id, status=None, role=None):
    query = Engagement.query
    if role == "professional":
        query = query.filter(Engagement.professional_id == user_id)
    elif role == "organizer":
        query = query.filter(Engagement.organizer_id == user_id)
    elif role is None:
        query = query.filter(
            (Engagement.professional_id == user_id) | (Engagement.organizer_id == user_id)
        )
    else:
        raise ValidationError("role must be 'professional' or 'organizer'")

    if status:
        if status not in ENGAGEMENT_STATUSES:
            raise ValidationError("Invalid status", allowed=list(ENGAGEMENT_STATUSES))
        query = query.filter(Engagement.status == status)
    return query.order_by(Engagement.created_at.desc()).all()


def _status_event(engagement, **changes):
    payload = {"engagement_id": engagement.id, "event_id": engagement.event_id}
    payload.update(changes)
    return record_event("engagement:status", payload, _parties(engagement))


def complete(engagement_id, actor_id, now=None):
    engagement = get_engagement(engagement_id, actor_id)
    if actor_id != engagement.professional_id:
        raise Forbidden("Only the professional can complete this engagement")
    if engagement.status != "active":
        raise IllegalStateTransition(
            "Engagement is {}".format(engagement.status), status=engagement.status
        )

    now = now or utcnow()
    won = (
        Engagement.query
        .filter(Engagement.id == engagement.id, Engagement.status == "active")
        .update({"status": "completed", "completed_at": now, "updated_at": now},
                synchronize_session=False)
    )
    if not won:
        db.session.rollback()
        raise Conflict("Engagement was changed concurrently", engagement_id=engagement_id)

    db.session.refresh(engagement)
    events = _status_event(engagement, status="completed")
    if engagement.payment_status == "paid":
        # Capture arrived first; make sure the ledger has its entry
        _, ledger_events = escrow.create_entry(engagement, now=now)
        events += ledger_events
    db.session.commit()
    deliver(events)
    logger.info("Engagement %s completed by %s", engagement_id, actor_id)
    return engagement


def cancel(engagement_id, actor_id, now=None):
    engagement = get_engagement(engagement_id, actor_id)
    if engagement.status != "active":
        raise IllegalStateTransition(
            "Engagement is {}".format(engagement.status), status=engagement.status
        )
    if engagement.payment_status == "paid" or engagement.earning is not None:
        raise IllegalStateTransition("Paid engagements cannot be cancelled", payment_status="paid")

    now = now or utcnow()
    won = (
        Engagement.query
        .filter(
            Engagement.id == engagement.id,
            Engagement.status == "active",
            Engagement.payment_status == "pending",
        )
        .update({"status": "cancelled", "cancelled_at": now, "cancelled_by": actor_id, "updated_at": now},
                synchronize_session=False)
    )
    if not won:
        db.session.rollback()
        raise Conflict("Engagement was changed concurrently", engagement_id=engagement_id)

    db.session.refresh(engagement)
    events = _status_event(engagement, status="cancelled", cancelled_by=actor_id)
    db.session.commit()
    deliver(events)
    logger.info("Engagement %s cancelled by %s", engagement_id, actor_id)
    return engagement


def _parse_amount(amount):
    try:
        value = to_money(amount)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("amount must be a number")
    if value is None or not value.is_finite() or value <= 0:
        raise ValidationError("amount must be positive")
    return value


def _duplicate_capture(existing, engagement_id):
    if existing.engagement_id != engagement_id:
        logger.warning(
            "Capture reference %s already recorded for engagement %s, not %s",
            existing.reference, existing.engagement_id, engagement_id,
        )
    else:
        logger.warning("Duplicate capture reference %s ignored", existing.reference)
    engagement = get_engagement(existing.engagement_id)
    return CaptureResult(engagement=engagement, capture=existing, earning=engagement.earning, duplicate=True)


def record_payment_captured(engagement_id, reference, amount, provider="stripe", now=None):
    """
    Apply an inbound payment capture. Idempotent on ``reference``.

    Captures for a cancelled or already-paid engagement are recorded as
    ``ignored`` and change nothing.
    """
    if not reference or not isinstance(reference, str):
        raise ValidationError("reference is required")
    amount = _parse_amount(amount)

    existing = PaymentCapture.query.filter_by(reference=reference).first()
    if existing:
        return _duplicate_capture(existing, engagement_id)

    engagement = get_engagement(engagement_id)
    now = now or utcnow()

    won = (
        Engagement.query
        .filter(
            Engagement.id == engagement.id,
            Engagement.payment_status == "pending",
            Engagement.status != "cancelled",
        )
        .update({"payment_status": "paid", "updated_at": now}, synchronize_session=False)
    )

    capture = PaymentCapture(
        engagement_id=engagement.id,
        reference=reference,
        amount=amount,
        provider=provider,
        outcome="applied" if won else "ignored",
    )
    db.session.add(capture)

    earning = None
    events = []
    try:
        db.session.flush()
        db.session.refresh(engagement)
        if won:
            events = _status_event(engagement, payment_status="paid")
            earning, ledger_events = escrow.create_entry(engagement, now=now)
            events += ledger_events
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = PaymentCapture.query.filter_by(reference=reference).first()
        if existing:
            return _duplicate_capture(existing, engagement_id)
        raise

    if won:
        deliver(events)
        logger.info("Payment %s captured for engagement %s (%s)", reference, engagement.id, amount)
    else:
        logger.warning(
            "Capture %s ignored: engagement %s is %s/%s",
            reference, engagement.id, engagement.status, engagement.payment_status,
        )
    return CaptureResult(engagement=engagement, capture=capture, earning=earning or engagement.earning,
                         applied=bool(won))
