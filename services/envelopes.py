"""
Request envelope lifecycle.

Envelopes are either plain chat or proposals (service_request,
hire_request, service_offer). Proposal status only moves
unread|read -> accepted|rejected, and every terminal transition is a
compare-and-set on the status column so concurrent accept/reject calls
resolve to exactly one winner. Accepting creates the engagement in the
same transaction as the status write.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import ClassVar, Optional, Tuple

from sqlalchemy.exc import IntegrityError

import directory
from errors import Conflict, Forbidden, IllegalStateTransition, NotFoundError, ValidationError
from models import (
    db, Conversation, Engagement, Envelope, EnvelopeVersion, utcnow, to_money,
    ENVELOPE_KINDS, OPEN_STATUSES, PROPOSAL_KINDS, SERVICE_TAGS,
)
from sanitize import clean_body
from services import conversations, engagements
from socket_events import record_event, deliver

logger = logging.getLogger(__name__)

MAX_PRICE = Decimal("10000000")


# ---------------------------------------------------------------------------
# Payload parsing (one fixed shape per kind)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatPayload:
    kind: ClassVar[str] = "chat"
    body: str
    event_id: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class ProposalPayload:
    kind: str
    body: str
    event_id: str
    services: Tuple[str, ...]
    proposed_price: Optional[Decimal] = None
    parent_id: Optional[str] = None


def parse_price(value, field="price"):
    if isinstance(value, bool):
        raise ValidationError("{} must be a number".format(field))
    try:
        price = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("{} must be a number".format(field))
    if not price.is_finite() or price <= 0:
        raise ValidationError("{} must be positive".format(field))
    if price > MAX_PRICE:
        raise ValidationError("{} exceeds the maximum allowed".format(field))
    return price


def parse_services(value):
    if not isinstance(value, list) or not value:
        raise ValidationError("services must be a non-empty list")
    tags = []
    for tag in value:
        if tag not in SERVICE_TAGS:
            raise ValidationError("Unknown service: {}".format(tag), allowed=list(SERVICE_TAGS))
        if tag in tags:
            raise ValidationError("Duplicate service: {}".format(tag))
        tags.append(tag)
    return tuple(tags)


def _optional_id(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ValidationError("{} must be a string id".format(key))
    return value


def parse_envelope(data):
    """Validate a send request. Returns (receiver_id, payload)."""
    if not isinstance(data, dict):
        raise ValidationError("JSON body required")

    receiver_id = data.get("receiver_id")
    if not receiver_id or not isinstance(receiver_id, str):
        raise ValidationError("receiver_id is required")

    kind = data.get("kind", "chat")
    if kind not in ENVELOPE_KINDS:
        raise ValidationError("Invalid kind", allowed=list(ENVELOPE_KINDS))

    body = clean_body(data.get("body"))
    parent_id = _optional_id(data, "parent_id")

    if kind == "chat":
        for key in ("services", "price"):
            if data.get(key) is not None:
                raise ValidationError("{} is not allowed on chat messages".format(key))
        return receiver_id, ChatPayload(body=body, event_id=_optional_id(data, "event_id"), parent_id=parent_id)

    event_id = _optional_id(data, "event_id")
    if not event_id:
        raise ValidationError("event_id is required for {}".format(kind))
    price = data.get("price")
    return receiver_id, ProposalPayload(
        kind=kind,
        body=body,
        event_id=event_id,
        services=parse_services(data.get("services")),
        proposed_price=parse_price(price) if price is not None else None,
        parent_id=parent_id,
    )


def organizer_party(kind, sender_id, receiver_id):
    """Offers come from professionals; requests come from organizers."""
    return receiver_id if kind == "service_offer" else sender_id


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _load_envelope(envelope_id):
    envelope = db.session.get(Envelope, envelope_id)
    if not envelope or envelope.is_deleted:
        raise NotFoundError("Envelope not found")
    return envelope


def get_envelope(envelope_id, user_id):
    envelope = _load_envelope(envelope_id)
    if user_id not in (envelope.sender_id, envelope.receiver_id):
        raise Forbidden("You are not a party to this envelope")
    return envelope


def list_envelopes(user_id, box="received", kinds=None, status=None):
    query = Envelope.query.filter(Envelope.is_deleted.is_(False))
    if box == "sent":
        query = query.filter(Envelope.sender_id == user_id)
    elif box == "received":
        query = query.filter(Envelope.receiver_id == user_id)
    else:
        raise ValidationError("box must be 'sent' or 'received'")

    if kinds:
        invalid = [k for k in kinds if k not in ENVELOPE_KINDS]
        if invalid:
            raise ValidationError("Invalid kind: {}".format(", ".join(invalid)))
        query = query.filter(Envelope.kind.in_(kinds))
    if status:
        query = query.filter(Envelope.status == status)
    return query.order_by(Envelope.created_at.desc()).all()


def open_proposals(user_id):
    """Non-terminal proposals the user sent or received."""
    return (
        Envelope.query
        .filter(
            Envelope.is_deleted.is_(False),
            Envelope.kind.in_(PROPOSAL_KINDS),
            Envelope.status.in_(OPEN_STATUSES),
            (Envelope.sender_id == user_id) | (Envelope.receiver_id == user_id),
        )
        .order_by(Envelope.created_at.desc())
        .all()
    )


def _status_payload(envelope, status, **extra):
    payload = {
        "envelope_id": envelope.id,
        "conversation_id": envelope.conversation_id,
        "kind": envelope.kind,
        "status": status,
    }
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _open_proposal(sender_id, receiver_id, event_id):
    return Envelope.query.filter(
        Envelope.sender_id == sender_id,
        Envelope.receiver_id == receiver_id,
        Envelope.event_id == event_id,
        Envelope.kind != "chat",
        Envelope.status.in_(OPEN_STATUSES),
        Envelope.is_deleted.is_(False),
    ).first()


def send_envelope(sender_id, data):
    receiver_id, payload = parse_envelope(data)
    if receiver_id == sender_id:
        raise ValidationError("Cannot send an envelope to yourself")
    receiver = directory.get_user(receiver_id)

    if isinstance(payload, ProposalPayload):
        event = directory.get_event(payload.event_id)
        organizer_id = organizer_party(payload.kind, sender_id, receiver_id)
        professional_id = receiver_id if organizer_id == sender_id else sender_id
        if event.organizer_id != organizer_id:
            raise ValidationError("The event does not belong to the organizing party")
        professional = receiver if professional_id == receiver_id else directory.get_user(sender_id)
        if professional.role != "professional":
            raise ValidationError("The professional party must have a professional profile",
                                  user_id=professional_id)

        duplicate = _open_proposal(sender_id, receiver_id, payload.event_id)
        if duplicate:
            raise Conflict("An open proposal for this event already exists", envelope_id=duplicate.id)
    elif payload.event_id:
        directory.get_event(payload.event_id)

    conversation = conversations.get_or_create(sender_id, receiver_id)

    if payload.parent_id:
        parent = db.session.get(Envelope, payload.parent_id)
        if not parent or parent.conversation_id != conversation.id:
            raise ValidationError("parent_id must reference an envelope in this conversation")

    envelope = Envelope(
        sender_id=sender_id,
        receiver_id=receiver_id,
        conversation_id=conversation.id,
        kind=payload.kind,
        services=list(getattr(payload, "services", ())),
        event_id=payload.event_id,
        proposed_price=getattr(payload, "proposed_price", None),
        body=payload.body,
        parent_id=payload.parent_id,
        status="unread",
    )
    db.session.add(envelope)
    try:
        db.session.flush()
        conversation.last_envelope_id = envelope.id
        if payload.event_id:
            conversation.event_id = payload.event_id
        events = record_event("envelope:new", envelope.to_dict(), [sender_id, receiver_id])
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("An open proposal for this event already exists")

    deliver(events)
    logger.info("Envelope %s (%s) sent %s -> %s", envelope.id, envelope.kind, sender_id, receiver_id)
    return envelope


def mark_read(envelope_id, actor_id):
    envelope = _load_envelope(envelope_id)
    if actor_id != envelope.receiver_id:
        raise Forbidden("Only the receiver can mark an envelope as read")
    if envelope.status != "unread":
        return envelope

    updated = (
        Envelope.query
        .filter(Envelope.id == envelope.id, Envelope.status == "unread")
        .update({"status": "read", "updated_at": utcnow()}, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return _load_envelope(envelope_id)

    events = record_event("envelope:status", _status_payload(envelope, "read"),
                          [envelope.sender_id, envelope.receiver_id])
    db.session.commit()
    deliver(events)
    return _load_envelope(envelope_id)


def _resolve_terms(envelope, price, services):
    proposed = envelope.proposed_price
    if price is not None:
        price = parse_price(price)
        if proposed is not None and price != to_money(proposed):
            raise ValidationError("price must match the proposed price")
    else:
        price = to_money(proposed) if proposed is not None else None
    if price is None:
        raise ValidationError("price is required: the proposal has no proposed price")

    tags = list(envelope.services or [])
    if services is not None:
        chosen = parse_services(services)
        extra = [t for t in chosen if t not in tags]
        if extra:
            raise ValidationError("services must be a subset of the proposal's services", extra=extra)
        tags = [t for t in tags if t in chosen]
    return price, tags


def _check_resolvable(envelope, actor_id, action):
    # Terminal state is reported to either party before the receiver check
    if actor_id not in (envelope.sender_id, envelope.receiver_id):
        raise Forbidden("You are not a party to this envelope")
    if not envelope.is_proposal:
        raise IllegalStateTransition("Chat messages cannot be {}ed".format(action))
    if envelope.is_terminal:
        raise IllegalStateTransition(
            "Envelope is already {}".format(envelope.status), status=envelope.status
        )
    if actor_id != envelope.receiver_id:
        raise Forbidden("Only the receiver can {} this envelope".format(action))


def _after_lost_race(envelope_id, wanted):
    """Someone else resolved the envelope between our read and our write."""
    current = db.session.get(Envelope, envelope_id)
    if current.status == wanted:
        engagement = Engagement.query.filter_by(envelope_id=envelope_id).first()
        if wanted == "rejected" or engagement:
            logger.info("Envelope %s already %s by a concurrent request", envelope_id, wanted)
            return current, engagement
    raise Conflict(
        "Envelope was resolved concurrently", status=current.status, envelope_id=envelope_id
    )


def accept(envelope_id, actor_id, price=None, services=None):
    """
    Accept a proposal and create its engagement atomically.

    Returns (envelope, engagement). A caller that loses the race to a
    concurrent accept gets the already-created engagement back; losing to
    a concurrent reject raises Conflict.
    """
    envelope = _load_envelope(envelope_id)
    _check_resolvable(envelope, actor_id, "accept")
    price, tags = _resolve_terms(envelope, price, services)

    now = utcnow()
    won = (
        Envelope.query
        .filter(Envelope.id == envelope.id, Envelope.status.in_(OPEN_STATUSES))
        .update({"status": "accepted", "updated_at": now}, synchronize_session=False)
    )
    if not won:
        db.session.rollback()
        return _after_lost_race(envelope_id, "accepted")

    try:
        engagement, events = engagements.create_from_envelope(envelope, price, tags)
        events += record_event(
            "envelope:status",
            _status_payload(envelope, "accepted", engagement_id=engagement.id),
            [envelope.sender_id, envelope.receiver_id],
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _after_lost_race(envelope_id, "accepted")
    except Exception:
        db.session.rollback()
        raise

    deliver(events)
    logger.info("Envelope %s accepted by %s -> engagement %s", envelope_id, actor_id, engagement.id)
    return db.session.get(Envelope, envelope_id), engagement


def reject(envelope_id, actor_id):
    envelope = _load_envelope(envelope_id)
    _check_resolvable(envelope, actor_id, "reject")

    won = (
        Envelope.query
        .filter(Envelope.id == envelope.id, Envelope.status.in_(OPEN_STATUSES))
        .update({"status": "rejected", "updated_at": utcnow()}, synchronize_session=False)
    )
    if not won:
        db.session.rollback()
        current, _ = _after_lost_race(envelope_id, "rejected")
        return current

    events = record_event("envelope:status", _status_payload(envelope, "rejected"),
                          [envelope.sender_id, envelope.receiver_id])
    db.session.commit()
    deliver(events)
    logger.info("Envelope %s rejected by %s", envelope_id, actor_id)
    return db.session.get(Envelope, envelope_id)


def edit_body(envelope_id, actor_id, body):
    envelope = _load_envelope(envelope_id)
    if actor_id != envelope.sender_id:
        raise Forbidden("Only the sender can edit this envelope")
    if envelope.is_terminal:
        raise IllegalStateTransition("Resolved proposals cannot be edited", status=envelope.status)

    text = clean_body(body)
    if text == envelope.body:
        return envelope

    db.session.add(EnvelopeVersion(envelope_id=envelope.id, content=envelope.body, edited_by=actor_id))
    envelope.body = text
    envelope.is_edited = True
    db.session.flush()
    events = record_event("envelope:updated", envelope.to_dict(), [envelope.sender_id, envelope.receiver_id])
    db.session.commit()
    deliver(events)
    return envelope


def delete_envelope(envelope_id, actor_id):
    """Soft delete. Withdraws an open proposal; accepted ones are kept."""
    envelope = _load_envelope(envelope_id)
    if actor_id != envelope.sender_id:
        raise Forbidden("Only the sender can delete this envelope")
    if envelope.status == "accepted":
        raise IllegalStateTransition("Accepted proposals cannot be deleted")

    envelope.is_deleted = True
    envelope.deleted_at = utcnow()
    conversation = db.session.get(Conversation, envelope.conversation_id)
    db.session.flush()
    if conversation.last_envelope_id == envelope.id:
        conversations.refresh_last_envelope(conversation)

    events = record_event("envelope:deleted", {
        "envelope_id": envelope.id,
        "conversation_id": envelope.conversation_id,
    }, [envelope.sender_id, envelope.receiver_id])
    db.session.commit()
    deliver(events)
    logger.info("Envelope %s deleted by %s", envelope_id, actor_id)
