"""
Resynchronization endpoints.

Socket pushes are best effort. After (re)connecting, clients fetch the
authoritative snapshot here and may page the event feed to replay what
they missed, deduplicating on event id.
"""

from flask import Blueprint, request, jsonify

import directory
from auth import require_auth
from errors import ValidationError
from models import DomainEvent
from services import conversations, engagements, envelopes
from socket_events import get_presence, latest_event_id

sync_bp = Blueprint("sync", __name__, url_prefix="/api")

MAX_EVENTS_PAGE = 200


@sync_bp.route("/sync", methods=["GET"])
@require_auth
def sync_snapshot(user_id):
    """Unread counts, open proposals and live engagements for the caller."""
    items = conversations.list_conversations(user_id)
    return jsonify({
        "success": True,
        "latest_event_id": latest_event_id(user_id),
        "unread_total": conversations.unread_total(user_id),
        "conversations": [
            {"id": c["id"], "partner_id": c["partner_id"], "unread_count": c["unread_count"],
             "last_envelope_id": c["last_envelope_id"]}
            for c in items
        ],
        "open_envelopes": [e.to_dict() for e in envelopes.open_proposals(user_id)],
        "engagements": [e.to_dict() for e in engagements.list_engagements(user_id, status="active")],
    }), 200


@sync_bp.route("/events", methods=["GET"])
@require_auth
def list_events(user_id):
    """Domain events addressed to the caller with id > ?after, oldest first."""
    try:
        after = int(request.args.get("after", 0))
        limit = min(int(request.args.get("limit", 100)), MAX_EVENTS_PAGE)
    except ValueError:
        raise ValidationError("after and limit must be integers")

    events = (
        DomainEvent.query
        .filter(DomainEvent.user_id == user_id, DomainEvent.id > after)
        .order_by(DomainEvent.id.asc())
        .limit(max(limit, 1))
        .all()
    )
    return jsonify({
        "success": True,
        "events": [e.to_dict() for e in events],
        "latest_event_id": events[-1].id if events else after,
    }), 200


@sync_bp.route("/presence/<target_id>", methods=["GET"])
@require_auth
def presence(user_id, target_id):
    user = directory.get_user(target_id)
    snapshot = get_presence().snapshot(user.id)
    if not snapshot["last_seen"] and user.last_seen_at:
        snapshot["last_seen"] = user.last_seen_at.isoformat()
    return jsonify({"success": True, "presence": snapshot}), 200
