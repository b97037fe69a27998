"""
Conversation API routes.
"""

from flask import Blueprint, request, jsonify

from auth import require_auth
from errors import ValidationError
from services import conversations

conversations_bp = Blueprint("conversations", __name__, url_prefix="/api/conversations")


@conversations_bp.route("", methods=["GET"])
@require_auth
def list_conversations(user_id):
    """Conversations for the caller, most recent first, with unread counts."""
    items = conversations.list_conversations(user_id)
    return jsonify({
        "success": True,
        "conversations": items,
        "unread_total": sum(c["unread_count"] for c in items),
    }), 200


@conversations_bp.route("/<conversation_id>/envelopes", methods=["GET"])
@require_auth
def conversation_envelopes(user_id, conversation_id):
    """
    Page through a conversation.
    Supports ?before=<envelope_id>&limit=<n> (newest page first).
    """
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        raise ValidationError("limit must be an integer")
    items, has_more = conversations.conversation_envelopes(
        conversation_id, user_id, before=request.args.get("before"), limit=limit
    )
    return jsonify({
        "success": True,
        "envelopes": [e.to_dict() for e in items],
        "has_more": has_more,
    }), 200


@conversations_bp.route("/<conversation_id>/read", methods=["POST"])
@require_auth
def mark_read(user_id, conversation_id):
    count = conversations.mark_conversation_read(conversation_id, user_id)
    return jsonify({"success": True, "marked_read": count}), 200
