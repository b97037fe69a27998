"""
Engagement (gig) API routes. Engagements are created by accepting a
proposal; these endpoints read them and drive completion/cancellation.
"""

from flask import Blueprint, request, jsonify

from auth import require_auth
from services import engagements

engagements_bp = Blueprint("engagements", __name__, url_prefix="/api/engagements")


@engagements_bp.route("", methods=["GET"])
@require_auth
def list_engagements(user_id):
    """?status=active|completed|cancelled&role=professional|organizer"""
    items = engagements.list_engagements(
        user_id, status=request.args.get("status"), role=request.args.get("role")
    )
    return jsonify({
        "success": True,
        "engagements": [e.to_dict() for e in items],
        "count": len(items),
    }), 200


@engagements_bp.route("/<engagement_id>", methods=["GET"])
@require_auth
def get_engagement(user_id, engagement_id):
    engagement = engagements.get_engagement(engagement_id, user_id)
    return jsonify({"success": True, "engagement": engagement.to_dict()}), 200


@engagements_bp.route("/<engagement_id>/complete", methods=["POST"])
@require_auth
def complete(user_id, engagement_id):
    """Professional marks the work done."""
    engagement = engagements.complete(engagement_id, user_id)
    return jsonify({"success": True, "engagement": engagement.to_dict()}), 200


@engagements_bp.route("/<engagement_id>/cancel", methods=["POST"])
@require_auth
def cancel(user_id, engagement_id):
    engagement = engagements.cancel(engagement_id, user_id)
    return jsonify({"success": True, "engagement": engagement.to_dict()}), 200
