"""
Conversation index: envelopes grouped by canonical participant pair.
"""

import logging

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError

from errors import Forbidden, NotFoundError, ValidationError
from models import db, Conversation, Envelope, utcnow
from socket_events import record_event, deliver

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def canonical_pair(user_a, user_b):
    if not user_a or not user_b:
        raise ValidationError("Both participants are required")
    if user_a == user_b:
        raise ValidationError("A conversation needs two distinct participants")
    return tuple(sorted((user_a, user_b)))


def find_conversation(user_a, user_b):
    first, second = canonical_pair(user_a, user_b)
    return Conversation.query.filter_by(participant_a=first, participant_b=second).first()


def get_or_create(user_a, user_b):
    """Return the pair's conversation, creating it on first contact."""
    first, second = canonical_pair(user_a, user_b)
    conversation = Conversation.query.filter_by(participant_a=first, participant_b=second).first()
    if conversation:
        return conversation

    conversation = Conversation(participant_a=first, participant_b=second)
    db.session.add(conversation)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created it first
        db.session.rollback()
        conversation = Conversation.query.filter_by(participant_a=first, participant_b=second).one()
    else:
        logger.info("Conversation %s created for %s/%s", conversation.id, first, second)
    return conversation


def get_conversation(conversation_id, user_id):
    conversation = db.session.get(Conversation, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    if not conversation.has_participant(user_id):
        raise Forbidden("You are not a participant in this conversation")
    return conversation


def _unread_counts(user_id, conversation_ids=None):
    query = (
        db.session.query(Envelope.conversation_id, func.count(Envelope.id))
        .filter(
            Envelope.receiver_id == user_id,
            Envelope.status == "unread",
            Envelope.is_deleted.is_(False),
        )
    )
    if conversation_ids is not None:
        query = query.filter(Envelope.conversation_id.in_(conversation_ids))
    return dict(query.group_by(Envelope.conversation_id).all())


def list_conversations(user_id):
    """Conversations for a user, most recent activity first, with unread counts."""
    conversations = (
        Conversation.query
        .filter(or_(Conversation.participant_a == user_id, Conversation.participant_b == user_id))
        .order_by(Conversation.updated_at.desc())
        .all()
    )
    if not conversations:
        return []

    ids = [c.id for c in conversations]
    unread = _unread_counts(user_id, ids)
    last_ids = [c.last_envelope_id for c in conversations if c.last_envelope_id]
    last_envelopes = {
        e.id: e for e in Envelope.query.filter(Envelope.id.in_(last_ids)).all()
    } if last_ids else {}

    result = []
    for conversation in conversations:
        last = last_envelopes.get(conversation.last_envelope_id)
        data = conversation.to_dict()
        data["partner_id"] = conversation.partner_of(user_id)
        data["unread_count"] = unread.get(conversation.id, 0)
        data["last_envelope"] = last.to_dict() if last and not last.is_deleted else None
        result.append(data)
    return result


def conversation_envelopes(conversation_id, user_id, before=None, limit=50):
    """
    Page through a conversation, newest page first.

    ``before`` is an envelope id cursor; envelopes are returned oldest to
    newest within the page.
    """
    conversation = get_conversation(conversation_id, user_id)
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))

    query = Envelope.query.filter(
        Envelope.conversation_id == conversation.id,
        Envelope.is_deleted.is_(False),
    )
    if before:
        cursor = db.session.get(Envelope, before)
        if not cursor or cursor.conversation_id != conversation.id:
            raise ValidationError("Invalid cursor")
        # Keyset on (created_at, id) so timestamp ties are not skipped
        query = query.filter(or_(
            Envelope.created_at < cursor.created_at,
            and_(Envelope.created_at == cursor.created_at, Envelope.id < cursor.id),
        ))

    envelopes = (
        query
        .order_by(Envelope.created_at.desc(), Envelope.id.desc())
        .limit(limit)
        .all()
    )
    envelopes.reverse()
    return envelopes, len(envelopes) == limit


def mark_conversation_read(conversation_id, user_id):
    """Mark every unread envelope addressed to the caller as read."""
    conversation = get_conversation(conversation_id, user_id)
    updated = (
        Envelope.query
        .filter(
            Envelope.conversation_id == conversation.id,
            Envelope.receiver_id == user_id,
            Envelope.status == "unread",
            Envelope.is_deleted.is_(False),
        )
        .update({"status": "read", "updated_at": utcnow()}, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return 0

    events = record_event("conversation:read", {
        "conversation_id": conversation.id,
        "read_by": user_id,
        "count": updated,
    }, [conversation.participant_a, conversation.participant_b])
    db.session.commit()
    deliver(events)
    return updated


def unread_total(user_id):
    return sum(_unread_counts(user_id).values())


def refresh_last_envelope(conversation):
    """Point last_envelope_id at the newest visible envelope."""
    latest = (
        Envelope.query
        .filter(Envelope.conversation_id == conversation.id, Envelope.is_deleted.is_(False))
        .order_by(Envelope.created_at.desc(), Envelope.id.desc())
        .first()
    )
    conversation.last_envelope_id = latest.id if latest else None
