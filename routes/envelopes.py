"""
Envelope API routes: chat messages and proposals between organizers and
professionals. Accepting a proposal returns the engagement it created.
"""

from flask import Blueprint, request, jsonify

from auth import require_auth
from extensions import limiter
from services import envelopes

envelopes_bp = Blueprint("envelopes", __name__, url_prefix="/api/envelopes")


@envelopes_bp.route("", methods=["POST"])
@limiter.limit("30 per minute")
@require_auth
def send_envelope(user_id):
    """
    Send a chat message or proposal.
    Body: { receiver_id, kind, body, event_id?, services?, price?, parent_id? }
    """
    data = request.get_json(silent=True)
    envelope = envelopes.send_envelope(user_id, data)
    return jsonify({"success": True, "envelope": envelope.to_dict()}), 201


@envelopes_bp.route("", methods=["GET"])
@require_auth
def list_envelopes(user_id):
    """List envelopes. ?box=received|sent&kind=a,b&status=..."""
    box = request.args.get("box", "received")
    kinds = [k for k in request.args.get("kind", "").split(",") if k]
    status = request.args.get("status")
    items = envelopes.list_envelopes(user_id, box=box, kinds=kinds, status=status)
    return jsonify({
        "success": True,
        "envelopes": [e.to_dict() for e in items],
        "count": len(items),
    }), 200


@envelopes_bp.route("/<envelope_id>", methods=["GET"])
@require_auth
def get_envelope(user_id, envelope_id):
    envelope = envelopes.get_envelope(envelope_id, user_id)
    return jsonify({"success": True, "envelope": envelope.to_dict(include_versions=True)}), 200


@envelopes_bp.route("/<envelope_id>", methods=["PATCH"])
@require_auth
def edit_envelope(user_id, envelope_id):
    data = request.get_json(silent=True) or {}
    envelope = envelopes.edit_body(envelope_id, user_id, data.get("body"))
    return jsonify({"success": True, "envelope": envelope.to_dict(include_versions=True)}), 200


@envelopes_bp.route("/<envelope_id>", methods=["DELETE"])
@require_auth
def delete_envelope(user_id, envelope_id):
    envelopes.delete_envelope(envelope_id, user_id)
    return jsonify({"success": True}), 200


@envelopes_bp.route("/<envelope_id>/read", methods=["POST"])
@require_auth
def mark_read(user_id, envelope_id):
    envelope = envelopes.mark_read(envelope_id, user_id)
    return jsonify({"success": True, "envelope": envelope.to_dict()}), 200


@envelopes_bp.route("/<envelope_id>/accept", methods=["POST"])
@require_auth
def accept(user_id, envelope_id):
    """
    Accept a proposal. Body (optional): { price?, services? }
    Returns the envelope and the engagement it created.
    """
    data = request.get_json(silent=True) or {}
    envelope, engagement = envelopes.accept(
        envelope_id, user_id, price=data.get("price"), services=data.get("services")
    )
    return jsonify({
        "success": True,
        "envelope": envelope.to_dict(),
        "engagement": engagement.to_dict(),
        "engagement_id": engagement.id,
    }), 200


@envelopes_bp.route("/<envelope_id>/reject", methods=["POST"])
@require_auth
def reject(user_id, envelope_id):
    envelope = envelopes.reject(envelope_id, user_id)
    return jsonify({"success": True, "envelope": envelope.to_dict()}), 200
