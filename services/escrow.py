"""
Escrow ledger.

One earning per engagement, created when payment is captured. Earnings
are held for ESCROW_HOLD_DAYS and become available lazily: whenever an
entry is read or withdrawn, ``now >= available_date`` is evaluated and
pending entries are flipped to available. Withdrawal is all-or-nothing
per batch and idempotent on the caller's batch id.
"""

import logging
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from errors import Conflict, Forbidden, IllegalStateTransition, NotFoundError, ValidationError
from models import db, Earning, WithdrawalBatch, utcnow, to_money
from socket_events import record_event, deliver

logger = logging.getLogger(__name__)

EARNING_STATUSES = ("pending", "available", "withdrawn")
MAX_BATCH_SIZE = 100


def hold_period():
    return timedelta(days=current_app.config["ESCROW_HOLD_DAYS"])


def compute_fee(gross, fee_rate):
    """Returns (fee, net) with the fee rounded half-up to cents."""
    gross = to_money(gross)
    rate = Decimal(str(fee_rate))
    if rate < 0 or rate >= 1:
        raise ValidationError("fee_rate must be in [0, 1)")
    fee = to_money(gross * rate)
    return fee, gross - fee


def create_entry(engagement, gross=None, fee_rate=None, now=None):
    """
    Stage the earning for an engagement; at most one per engagement.

    Does not commit. Returns (earning, staged_events); a repeat call
    returns the existing entry and no events.
    """
    existing = Earning.query.filter_by(engagement_id=engagement.id).first()
    if existing:
        logger.info("Earning for engagement %s already exists (%s)", engagement.id, existing.id)
        return existing, []
    if engagement.status == "cancelled":
        raise IllegalStateTransition("Cancelled engagements do not earn", engagement_id=engagement.id)

    now = now or utcnow()
    gross = to_money(gross if gross is not None else engagement.price)
    if fee_rate is None:
        fee_rate = current_app.config["ESCROW_FEE_RATE"]
    fee, net = compute_fee(gross, fee_rate)

    earning = Earning(
        professional_id=engagement.professional_id,
        engagement_id=engagement.id,
        gross_amount=gross,
        service_fee=fee,
        net_amount=net,
        fee_rate=Decimal(str(fee_rate)),
        status="pending",
        available_date=now + hold_period(),
        created_at=now,
    )
    db.session.add(earning)
    db.session.flush()

    events = record_event("earning:created", earning.to_dict(), [earning.professional_id])
    logger.info("Earning %s created for engagement %s: gross=%s fee=%s net=%s",
                earning.id, engagement.id, gross, fee, net)
    return earning, events


def is_mature(earning, now):
    return now >= earning.available_date


def refresh_maturity(earning, now=None):
    """Flip one pending entry to available if its hold has elapsed. Returns staged events."""
    now = now or utcnow()
    if earning.status != "pending" or not is_mature(earning, now):
        return []
    flipped = (
        Earning.query
        .filter(Earning.id == earning.id, Earning.status == "pending")
        .update({"status": "available", "matured_at": now}, synchronize_session=False)
    )
    if not flipped:
        # Another reader matured it first
        return []
    return record_event("earning:available", {
        "earning_id": earning.id,
        "engagement_id": earning.engagement_id,
        "net_amount": float(earning.net_amount),
        "available_date": earning.available_date.isoformat(),
    }, [earning.professional_id])


def _mature(earnings, now):
    """Mature every due entry and commit. Entries are reloaded on next access."""
    events = []
    for earning in earnings:
        events += refresh_maturity(earning, now)
    if events:
        db.session.commit()
        deliver(events)
    return earnings


def list_earnings(professional_id, status=None, now=None):
    now = now or utcnow()
    query = Earning.query.filter(Earning.professional_id == professional_id)
    earnings = _mature(query.order_by(Earning.created_at.desc()).all(), now)
    if status:
        if status not in EARNING_STATUSES:
            raise ValidationError("Invalid status", allowed=list(EARNING_STATUSES))
        earnings = [e for e in earnings if e.status == status]
    return earnings


def get_earning(earning_id, user_id, now=None):
    earning = db.session.get(Earning, earning_id)
    if not earning:
        raise NotFoundError("Earning not found")
    if earning.professional_id != user_id:
        raise Forbidden("This earning belongs to another professional")
    _mature([earning], now or utcnow())
    return earning


def earnings_summary(professional_id, now=None):
    earnings = list_earnings(professional_id, now=now)
    totals = {status: Decimal("0.00") for status in EARNING_STATUSES}
    next_available = None
    for earning in earnings:
        totals[earning.status] += to_money(earning.net_amount)
        if earning.status == "pending":
            if next_available is None or earning.available_date < next_available:
                next_available = earning.available_date
    return {
        "pending": float(totals["pending"]),
        "available": float(totals["available"]),
        "withdrawn": float(totals["withdrawn"]),
        "total_earned": float(sum(totals.values())),
        "count": len(earnings),
        "next_available_date": next_available.isoformat() if next_available else None,
    }


def _validate_withdrawal(entry_ids, batch_id):
    if not isinstance(batch_id, str) or not batch_id.strip():
        raise ValidationError("batch_id is required")
    if len(batch_id) > 64:
        raise ValidationError("batch_id must be 64 characters or fewer")
    if not isinstance(entry_ids, list) or not entry_ids:
        raise ValidationError("entry_ids must be a non-empty list")
    if not all(isinstance(i, str) and i for i in entry_ids):
        raise ValidationError("entry_ids must be string ids")
    ids = list(dict.fromkeys(entry_ids))
    if len(ids) > MAX_BATCH_SIZE:
        raise ValidationError("At most {} entries per withdrawal".format(MAX_BATCH_SIZE))
    return ids, batch_id.strip()


def _replay(batch, professional_id, ids):
    if batch.professional_id != professional_id or sorted(batch.entry_ids) != sorted(ids):
        raise Conflict("batch_id was already used for a different withdrawal", batch_id=batch.id)
    logger.info("Withdrawal batch %s replayed", batch.id)
    return batch


def withdraw(professional_id, entry_ids, batch_id, now=None):
    """
    Move every listed entry to withdrawn under ``batch_id``, or none.

    Re-submitting a batch id with the same entries returns the stored
    batch; with different entries it raises Conflict.
    """
    ids, batch_id = _validate_withdrawal(entry_ids, batch_id)
    now = now or utcnow()

    existing = db.session.get(WithdrawalBatch, batch_id)
    if existing:
        return _replay(existing, professional_id, ids)

    earnings = Earning.query.filter(Earning.id.in_(ids)).all()
    found = {e.id for e in earnings}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError("Earning not found", entry_ids=missing)
    if any(e.professional_id != professional_id for e in earnings):
        raise Forbidden("Earnings belong to another professional")

    _mature(earnings, now)

    withdrawn = [e.id for e in earnings if e.status == "withdrawn"]
    if withdrawn:
        raise IllegalStateTransition("Earnings already withdrawn", entry_ids=withdrawn)
    pending = [e.id for e in earnings if e.status != "available"]
    if pending:
        raise IllegalStateTransition("Earnings not yet available", entry_ids=pending)

    batch = WithdrawalBatch(
        id=batch_id,
        professional_id=professional_id,
        entry_ids=ids,
        total_net=sum((to_money(e.net_amount) for e in earnings), Decimal("0.00")),
        created_at=now,
    )
    db.session.add(batch)
    try:
        db.session.flush()
    except IntegrityError:
        # Same batch id submitted concurrently
        db.session.rollback()
        return _replay(db.session.get(WithdrawalBatch, batch_id), professional_id, ids)

    moved = (
        Earning.query
        .filter(
            Earning.id.in_(ids),
            Earning.professional_id == professional_id,
            Earning.status == "available",
        )
        .update({"status": "withdrawn", "withdrawal_id": batch_id, "withdrawn_at": now},
                synchronize_session=False)
    )
    if moved != len(ids):
        db.session.rollback()
        raise Conflict("Earnings changed during withdrawal", batch_id=batch_id)

    events = record_event("earning:withdrawn", {
        "batch_id": batch_id,
        "entry_ids": ids,
        "total_net": float(batch.total_net),
    }, [professional_id])
    db.session.commit()
    deliver(events)
    logger.info("Withdrawal %s: %d earning(s), net %s", batch_id, len(ids), batch.total_net)
    return batch
