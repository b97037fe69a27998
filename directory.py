"""
Read-only access to the event/profile directory.

The pipeline copies immutable fields (event start time, location,
organizer) out of these records at creation time and never writes them,
apart from the presence layer stamping users.last_seen_at.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from errors import ExternalDependencyError, NotFoundError
from models import db, User, Event

logger = logging.getLogger(__name__)


def _lookup(model, entity_id):
    try:
        return db.session.get(model, entity_id)
    except SQLAlchemyError as e:
        logger.exception("Directory lookup failed for %s %s", model.__tablename__, entity_id)
        raise ExternalDependencyError("Directory unavailable") from e


def get_user(user_id):
    user = _lookup(User, user_id) if user_id else None
    if not user:
        raise NotFoundError("User not found", user_id=user_id)
    return user


def get_event(event_id):
    event = _lookup(Event, event_id) if event_id else None
    if not event:
        raise NotFoundError("Event not found", event_id=event_id)
    return event


def touch_last_seen(user_id, when):
    """Record last-seen on the profile; best effort, never raises."""
    try:
        user = db.session.get(User, user_id)
        if user:
            user.last_seen_at = when
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Failed to record last_seen for user %s", user_id)
