"""
Socket.IO event handlers for Gigline real-time features.
- Presence (online / away / offline) with multi-tab connection counting
- Push delivery of domain events to each user's room
- Resync hint on (re)connect

Delivery is at-least-once and best effort: the database is the source of
truth, and clients resynchronize through GET /api/sync after reconnecting.
"""

import itertools
import logging

from flask import current_app, request
from flask_socketio import join_room, emit, disconnect

from auth import resolve_user_id
from extensions import socketio
from models import db, DomainEvent, utcnow

logger = logging.getLogger(__name__)

_presence_seq = itertools.count(1)


def user_room(user_id):
    return "user:{}".format(user_id)


def get_presence():
    return current_app.extensions["presence"]


# ---------------------------------------------------------------------------
# Domain event outbox
# ---------------------------------------------------------------------------

def record_event(name, payload, recipients):
    """
    Stage one DomainEvent row per recipient in the current session.

    Call before commit so the events share the transaction of the state
    change they announce; pass the returned list to deliver() after commit.
    """
    events = []
    for user_id in dict.fromkeys(r for r in recipients if r):
        event = DomainEvent(user_id=user_id, name=name, payload=payload)
        db.session.add(event)
        events.append(event)
    return events


def deliver(events):
    """Push committed events to their recipients' rooms. Never raises."""
    for event in events:
        try:
            socketio.emit(event.name, event.to_dict(), room=user_room(event.user_id))
        except Exception:
            logger.warning("Socket delivery failed for event %s (%s)", event.id, event.name, exc_info=True)


def broadcast_presence(name, payload):
    """Presence changes are ephemeral and broadcast to every client."""
    try:
        socketio.emit(name, {
            "id": "presence-{}".format(next(_presence_seq)),
            "event": name,
            "payload": payload,
            "emitted_at": utcnow().isoformat(),
        })
    except Exception:
        logger.warning("Presence broadcast failed for %s", name, exc_info=True)


def latest_event_id(user_id):
    last = (
        DomainEvent.query
        .filter_by(user_id=user_id)
        .order_by(DomainEvent.id.desc())
        .first()
    )
    return last.id if last else 0


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------

# sid -> user_id for connections handled by this process
_sid_users = {}


def _session_user():
    """User of the current connection; any inbound event keeps it counted."""
    user_id = _sid_users.get(request.sid)
    if user_id:
        get_presence().heartbeat(user_id, request.sid)
    return user_id


@socketio.on("connect")
def handle_connect(auth=None):
    token = (auth or {}).get("token") or request.args.get("token")
    user_id = resolve_user_id(token)
    if not user_id:
        logger.info("[socket] Rejected unauthenticated connection %s", request.sid)
        return False

    _sid_users[request.sid] = user_id
    join_room(user_room(user_id))
    get_presence().connect(user_id, request.sid)
    logger.info("[socket] User %s connected (sid=%s)", user_id, request.sid)

    # Missed pushes are not replayed; tell the client where the feed stands.
    emit("sync:required", {"latest_event_id": latest_event_id(user_id)})


@socketio.on("disconnect")
def handle_disconnect(*args):
    user_id = _sid_users.pop(request.sid, None)
    if not user_id:
        return
    get_presence().disconnect(user_id, request.sid)
    logger.info("[socket] User %s disconnected (sid=%s)", user_id, request.sid)


@socketio.on("presence:away")
def handle_away(data=None):
    """Page-visibility signal. data = { away: true|false }"""
    user_id = _session_user()
    if not user_id:
        disconnect()
        return
    away = bool((data or {}).get("away", True))
    get_presence().set_away(user_id, request.sid, away)


@socketio.on("presence:heartbeat")
def handle_heartbeat(data=None):
    """Keep-alive only; _session_user() refreshes the connection TTL."""
    if not _session_user():
        disconnect()


@socketio.on("presence:query")
def handle_presence_query(data=None):
    """data = { user_ids: [...] } -> presence:snapshot"""
    if not _session_user():
        disconnect()
        return
    user_ids = (data or {}).get("user_ids") or []
    presence = get_presence()
    emit("presence:snapshot", {"users": [presence.snapshot(u) for u in user_ids[:100]]})


def presence_sweep_loop(app):
    """Background task: announce offline users once their grace period elapses."""
    interval = app.config["PRESENCE_SWEEP_SECONDS"]
    while True:
        socketio.sleep(interval)
        with app.app_context():
            try:
                app.extensions["presence"].sweep()
            except Exception:
                logger.exception("Presence sweep failed")
