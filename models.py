"""
Gigline SQLAlchemy Models
Entities for the request -> engagement -> escrow pipeline, plus the
read-only directory records (users, events) it references.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, String, Boolean, Integer, Text, DateTime, ForeignKey, JSON, Numeric,
    CheckConstraint, Index, UniqueConstraint, and_
)
from sqlalchemy.orm import relationship

db = SQLAlchemy()

CENT = Decimal("0.01")

SERVICE_TAGS = (
    "photographer", "videographer", "caterer", "musician",
    "decorator", "planner", "security", "mc",
)

ENVELOPE_KINDS = ("chat", "service_request", "hire_request", "service_offer")
PROPOSAL_KINDS = ("service_request", "hire_request", "service_offer")
OPEN_STATUSES = ("unread", "read")
TERMINAL_STATUSES = ("accepted", "rejected")


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    # Stored naive so SQLite and Postgres round-trip the same value.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value):
    """Coerce a number to a Decimal rounded half-up to cents."""
    if value is None:
        return None
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


# ---------------------------------------------------------------------------
# Directory records (owned by the profile/event services)
# ---------------------------------------------------------------------------
class User(db.Model):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="organizer")
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('organizer', 'professional')", name="ck_users_role"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "last_seen_at": _iso(self.last_seen_at),
        }


class Event(db.Model):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organizer_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    start_time = Column(DateTime, nullable=False)
    location = Column(String(255), nullable=True)
    budget = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    organizer = relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "organizer_id": self.organizer_id,
            "title": self.title,
            "start_time": _iso(self.start_time),
            "location": self.location,
            "budget": _money(self.budget),
        }


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class Conversation(db.Model):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    # Canonical ordering: participant_a < participant_b
    participant_a = Column(String(36), nullable=False, index=True)
    participant_b = Column(String(36), nullable=False, index=True)
    last_envelope_id = Column(String(36), nullable=True)
    event_id = Column(String(36), nullable=True)
    engagement_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("participant_a", "participant_b", name="uq_conversations_pair"),
        CheckConstraint("participant_a < participant_b", name="ck_conversations_canonical"),
    )

    def partner_of(self, user_id):
        return self.participant_b if user_id == self.participant_a else self.participant_a

    def has_participant(self, user_id):
        return user_id in (self.participant_a, self.participant_b)

    def to_dict(self):
        return {
            "id": self.id,
            "participants": [self.participant_a, self.participant_b],
            "last_envelope_id": self.last_envelope_id,
            "event_id": self.event_id,
            "engagement_id": self.engagement_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Envelope (chat message or proposal)
# ---------------------------------------------------------------------------
class Envelope(db.Model):
    __tablename__ = "envelopes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    sender_id = Column(String(36), nullable=False, index=True)
    receiver_id = Column(String(36), nullable=False, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    kind = Column(String(20), nullable=False, default="chat")
    services = Column(JSON, nullable=False, default=list)
    event_id = Column(String(36), nullable=True)
    proposed_price = Column(Numeric(12, 2), nullable=True)
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="unread")
    parent_id = Column(String(36), nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    versions = relationship(
        "EnvelopeVersion", back_populates="envelope", lazy="select",
        order_by="EnvelopeVersion.edited_at", cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('chat', 'service_request', 'hire_request', 'service_offer')",
            name="ck_envelopes_kind",
        ),
        CheckConstraint(
            "status IN ('unread', 'read', 'accepted', 'rejected')",
            name="ck_envelopes_status",
        ),
        Index("ix_envelopes_conversation_created", "conversation_id", "created_at"),
        Index("ix_envelopes_receiver_status", "receiver_id", "status"),
        # One open proposal per (sender, receiver, event)
        Index(
            "uq_envelopes_open_proposal",
            "sender_id", "receiver_id", "event_id",
            unique=True,
            sqlite_where=and_(kind != "chat", status.in_(OPEN_STATUSES), is_deleted == False),  # noqa: E712
            postgresql_where=and_(kind != "chat", status.in_(OPEN_STATUSES), is_deleted == False),  # noqa: E712
        ),
    )

    @property
    def is_proposal(self):
        return self.kind in PROPOSAL_KINDS

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_versions=False):
        data = {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "conversation_id": self.conversation_id,
            "kind": self.kind,
            "services": list(self.services or []),
            "event_id": self.event_id,
            "proposed_price": _money(self.proposed_price),
            "body": self.body,
            "status": self.status,
            "parent_id": self.parent_id,
            "is_edited": bool(self.is_edited),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_versions:
            data["versions"] = [v.to_dict() for v in self.versions]
        return data


class EnvelopeVersion(db.Model):
    __tablename__ = "envelope_versions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    envelope_id = Column(String(36), ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    edited_by = Column(String(36), nullable=False)
    edited_at = Column(DateTime, default=utcnow)

    envelope = relationship("Envelope", back_populates="versions")

    def to_dict(self):
        return {
            "content": self.content,
            "edited_by": self.edited_by,
            "edited_at": _iso(self.edited_at),
        }


# ---------------------------------------------------------------------------
# Engagement (gig)
# ---------------------------------------------------------------------------
class Engagement(db.Model):
    __tablename__ = "engagements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    envelope_id = Column(String(36), ForeignKey("envelopes.id"), nullable=False, unique=True)
    professional_id = Column(String(36), nullable=False, index=True)
    organizer_id = Column(String(36), nullable=False, index=True)
    event_id = Column(String(36), nullable=False, index=True)
    services = Column(JSON, nullable=False, default=list)
    price = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    payment_status = Column(String(20), nullable=False, default="pending")
    start_time = Column(DateTime, nullable=True)
    location = Column(String(255), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    earning = relationship("Earning", back_populates="engagement", uselist=False)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'completed', 'cancelled')", name="ck_engagements_status"),
        CheckConstraint("payment_status IN ('pending', 'paid')", name="ck_engagements_payment_status"),
        CheckConstraint("price >= 0", name="ck_engagements_price"),
        Index("ix_engagements_professional_status", "professional_id", "status"),
    )

    def has_party(self, user_id):
        return user_id in (self.professional_id, self.organizer_id)

    def to_dict(self):
        return {
            "id": self.id,
            "envelope_id": self.envelope_id,
            "professional_id": self.professional_id,
            "organizer_id": self.organizer_id,
            "event_id": self.event_id,
            "services": list(self.services or []),
            "price": _money(self.price),
            "status": self.status,
            "payment_status": self.payment_status,
            "start_time": _iso(self.start_time),
            "location": self.location,
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "earning_id": self.earning.id if self.earning else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PaymentCapture(db.Model):
    """Audit and idempotency record for inbound payment captures."""
    __tablename__ = "payment_captures"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    engagement_id = Column(String(36), nullable=False, index=True)
    reference = Column(String(255), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    provider = Column(String(50), nullable=False, default="stripe")
    outcome = Column(String(20), nullable=False, default="applied")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("outcome IN ('applied', 'ignored')", name="ck_payment_captures_outcome"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "engagement_id": self.engagement_id,
            "reference": self.reference,
            "amount": _money(self.amount),
            "provider": self.provider,
            "outcome": self.outcome,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Escrow ledger
# ---------------------------------------------------------------------------
class Earning(db.Model):
    __tablename__ = "earnings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    professional_id = Column(String(36), nullable=False, index=True)
    engagement_id = Column(String(36), ForeignKey("engagements.id"), nullable=False, unique=True)
    gross_amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    fee_rate = Column(Numeric(6, 4), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    available_date = Column(DateTime, nullable=False)
    withdrawal_id = Column(String(64), ForeignKey("withdrawal_batches.id"), nullable=True, index=True)
    matured_at = Column(DateTime, nullable=True)
    withdrawn_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    engagement = relationship("Engagement", back_populates="earning")

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'available', 'withdrawn')", name="ck_earnings_status"),
        Index("ix_earnings_professional_created", "professional_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "professional_id": self.professional_id,
            "engagement_id": self.engagement_id,
            "gross_amount": _money(self.gross_amount),
            "service_fee": _money(self.service_fee),
            "net_amount": _money(self.net_amount),
            "fee_rate": float(self.fee_rate),
            "status": self.status,
            "available_date": _iso(self.available_date),
            "withdrawal_id": self.withdrawal_id,
            "matured_at": _iso(self.matured_at),
            "withdrawn_at": _iso(self.withdrawn_at),
            "created_at": _iso(self.created_at),
        }


class WithdrawalBatch(db.Model):
    __tablename__ = "withdrawal_batches"

    # Caller-supplied; doubles as the idempotency key
    id = Column(String(64), primary_key=True)
    professional_id = Column(String(36), nullable=False, index=True)
    entry_ids = Column(JSON, nullable=False, default=list)
    total_net = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "professional_id": self.professional_id,
            "entry_ids": list(self.entry_ids or []),
            "total_net": _money(self.total_net),
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# DomainEvent (server-push outbox, one row per recipient; the id is the
# monotonic event id clients deduplicate on)
# ---------------------------------------------------------------------------
class DomainEvent(db.Model):
    __tablename__ = "domain_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    name = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_domain_events_user_id", "user_id", "id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event": self.name,
            "payload": self.payload,
            "emitted_at": _iso(self.created_at),
        }
