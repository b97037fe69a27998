"""
Earnings API routes for professionals: escrowed balances and withdrawals.
"""

from flask import Blueprint, request, jsonify

from auth import require_auth
from extensions import limiter
from services import escrow

earnings_bp = Blueprint("earnings", __name__, url_prefix="/api/earnings")


@earnings_bp.route("", methods=["GET"])
@require_auth
def list_earnings(user_id):
    """List the caller's earnings. Pending entries past their hold are matured on read."""
    items = escrow.list_earnings(user_id, status=request.args.get("status"))
    return jsonify({
        "success": True,
        "earnings": [e.to_dict() for e in items],
        "count": len(items),
    }), 200


@earnings_bp.route("/summary", methods=["GET"])
@require_auth
def summary(user_id):
    return jsonify({"success": True, "summary": escrow.earnings_summary(user_id)}), 200


@earnings_bp.route("/<earning_id>", methods=["GET"])
@require_auth
def get_earning(user_id, earning_id):
    earning = escrow.get_earning(earning_id, user_id)
    return jsonify({"success": True, "earning": earning.to_dict()}), 200


@earnings_bp.route("/withdrawals", methods=["POST"])
@limiter.limit("10 per minute")
@require_auth
def withdraw(user_id):
    """
    Withdraw available earnings as one batch.
    Body: { batch_id, entry_ids: [...] }. Re-posting the same batch is a no-op.
    """
    data = request.get_json(silent=True) or {}
    batch = escrow.withdraw(user_id, data.get("entry_ids"), data.get("batch_id"))
    return jsonify({"success": True, "withdrawal": batch.to_dict()}), 200
