"""
Presence tracking for the real-time channel.

A user is online while at least one of their connections is counted.
Each (user, connection) pair is counted at most once and uncounted at most
once, so duplicate connect/disconnect events cannot skew the count. When
the last connection drops, the user is only announced offline after a
grace period, which absorbs page refreshes.

Two stores are provided: an in-process store for single-instance
deployments and tests, and a Redis store where every connection is a key
with a TTL (``presence:{user_id}:{sid}``) so any instance can compute
"online" statelessly.
"""

import logging
import threading
from datetime import datetime, timedelta

from models import utcnow

logger = logging.getLogger(__name__)

ONLINE = "online"
AWAY = "away"
OFFLINE = "offline"


class MemoryPresenceStore:
    """Process-local store. Not suitable for more than one instance."""

    def __init__(self, ttl_seconds=60):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._lock = threading.Lock()
        self._connections = {}  # user_id -> {sid: expires_at}
        self._last_seen = {}
        self._status = {}

    def add(self, user_id, sid, now):
        with self._lock:
            conns = self._connections.setdefault(user_id, {})
            current = conns.get(sid)
            if current is not None and current > now:
                return False
            conns[sid] = now + self.ttl
            return True

    def remove(self, user_id, sid):
        with self._lock:
            conns = self._connections.get(user_id, {})
            if sid not in conns:
                return False
            del conns[sid]
            if not conns:
                self._connections.pop(user_id, None)
            return True

    def touch(self, user_id, sid, now):
        with self._lock:
            conns = self._connections.get(user_id, {})
            if sid not in conns:
                return False
            conns[sid] = now + self.ttl
            return True

    def has(self, user_id, sid, now):
        with self._lock:
            expires = self._connections.get(user_id, {}).get(sid)
            return expires is not None and expires > now

    def count(self, user_id, now):
        with self._lock:
            conns = self._connections.get(user_id, {})
            return sum(1 for expires in conns.values() if expires > now)

    def set_last_seen(self, user_id, when):
        with self._lock:
            self._last_seen[user_id] = when

    def last_seen(self, user_id):
        return self._last_seen.get(user_id)

    def swap_status(self, user_id, status):
        """
        Set the announced status and return the previous one.

        Going offline forgets the user entirely; last-seen survives on the
        profile through ``on_last_seen``.
        """
        with self._lock:
            previous = self._status.get(user_id)
            if status == OFFLINE:
                self._status.pop(user_id, None)
                self._last_seen.pop(user_id, None)
                # Only called once every entry has expired
                self._connections.pop(user_id, None)
            else:
                self._status[user_id] = status
            return previous

    def status(self, user_id):
        return self._status.get(user_id)

    def live_users(self):
        """Users currently announced online or away."""
        with self._lock:
            return list(self._status)


class RedisPresenceStore:
    """
    Shared store: one TTL key per connection, so stale instances age out.

    Users announced online or away are also kept in the ``presence_live``
    set so the sweep never scans offline users. Offline status and
    last-seen keys expire after ``retention_seconds``.
    """

    CONN_PREFIX = "presence"
    SEEN_PREFIX = "presence_seen"
    STATUS_PREFIX = "presence_status"
    LIVE_KEY = "presence_live"

    def __init__(self, client, ttl_seconds=60, retention_seconds=7 * 24 * 3600):
        self.redis = client
        self.ttl = int(ttl_seconds)
        self.retention = int(retention_seconds)

    def _conn_key(self, user_id, sid):
        return "{}:{}:{}".format(self.CONN_PREFIX, user_id, sid)

    def add(self, user_id, sid, now):
        return bool(self.redis.set(self._conn_key(user_id, sid), now.isoformat(), ex=self.ttl, nx=True))

    def remove(self, user_id, sid):
        return self.redis.delete(self._conn_key(user_id, sid)) > 0

    def touch(self, user_id, sid, now):
        return bool(self.redis.set(self._conn_key(user_id, sid), now.isoformat(), ex=self.ttl, xx=True))

    def has(self, user_id, sid, now):
        return bool(self.redis.exists(self._conn_key(user_id, sid)))

    def count(self, user_id, now):
        pattern = "{}:{}:*".format(self.CONN_PREFIX, user_id)
        return sum(1 for _ in self.redis.scan_iter(match=pattern))

    def set_last_seen(self, user_id, when):
        self.redis.set("{}:{}".format(self.SEEN_PREFIX, user_id), when.isoformat(), ex=self.retention)

    def last_seen(self, user_id):
        value = self.redis.get("{}:{}".format(self.SEEN_PREFIX, user_id))
        return datetime.fromisoformat(value) if value else None

    def swap_status(self, user_id, status):
        key = "{}:{}".format(self.STATUS_PREFIX, user_id)
        pipe = self.redis.pipeline()
        pipe.getset(key, status)
        if status == OFFLINE:
            pipe.expire(key, self.retention)
            pipe.srem(self.LIVE_KEY, user_id)
        else:
            pipe.persist(key)
            pipe.sadd(self.LIVE_KEY, user_id)
        return pipe.execute()[0]

    def status(self, user_id):
        return self.redis.get("{}:{}".format(self.STATUS_PREFIX, user_id))

    def live_users(self):
        """Users currently announced online or away."""
        return sorted(self.redis.smembers(self.LIVE_KEY))


class PresenceTracker:
    """
    Connection-count driven presence with a grace period before offline.

    ``emit(event_name, payload)`` broadcasts a presence change;
    ``on_last_seen(user_id, when)`` persists last-seen to the profile.
    """

    def __init__(self, store, emit, grace_seconds=5.0, clock=utcnow, on_last_seen=None):
        self.store = store
        self.emit = emit
        self.grace = timedelta(seconds=grace_seconds)
        self.clock = clock
        self.on_last_seen = on_last_seen
        self._lock = threading.Lock()
        self._pending_offline = {}  # user_id -> deadline

    def connect(self, user_id, sid):
        now = self.clock()
        if not self.store.add(user_id, sid, now):
            logger.debug("Duplicate connect ignored for user %s sid %s", user_id, sid)
            return False
        with self._lock:
            self._pending_offline.pop(user_id, None)
        previous = self.store.swap_status(user_id, ONLINE)
        if previous != ONLINE:
            self.emit("user:online", {"user_id": user_id, "status": ONLINE})
        return True

    def _recount(self, user_id, sid, now):
        """A live connection whose entry aged out is counted again."""
        if not self.store.add(user_id, sid, now):
            return False
        with self._lock:
            self._pending_offline.pop(user_id, None)
        if self.store.status(user_id) not in (ONLINE, AWAY):
            if self.store.swap_status(user_id, ONLINE) not in (ONLINE, AWAY):
                self.emit("user:online", {"user_id": user_id, "status": ONLINE})
        logger.info("Presence: connection %s of user %s re-counted after expiry", sid, user_id)
        return True

    def disconnect(self, user_id, sid):
        now = self.clock()
        if not self.store.remove(user_id, sid):
            logger.debug("Duplicate disconnect ignored for user %s sid %s", user_id, sid)
            return False
        self.store.set_last_seen(user_id, now)
        if self.on_last_seen:
            self.on_last_seen(user_id, now)
        if self.store.count(user_id, now) == 0:
            with self._lock:
                self._pending_offline[user_id] = now + self.grace
        return True

    def heartbeat(self, user_id, sid):
        """
        Refresh the TTL of a live connection.

        Called for every event received on an open socket. If the entry
        already expired (a throttled background tab), the connection is
        counted again and the user re-announced online.
        """
        now = self.clock()
        if self.store.has(user_id, sid, now):
            return self.store.touch(user_id, sid, now)
        return self._recount(user_id, sid, now)

    def set_away(self, user_id, sid, away):
        """Visibility signal from a live connection; never changes counts."""
        if not self.store.has(user_id, sid, self.clock()):
            return False
        status = AWAY if away else ONLINE
        previous = self.store.swap_status(user_id, status)
        if previous != status:
            self.emit("user:away" if away else "user:online", {"user_id": user_id, "status": status})
        return True

    def sweep(self, now=None):
        """Announce offline for users whose grace period elapsed. Returns their ids."""
        now = now or self.clock()

        # Connections that expired without a disconnect (crashed instance, lost socket)
        for user_id in self.store.live_users():
            if self.store.count(user_id, now) == 0:
                with self._lock:
                    self._pending_offline.setdefault(user_id, now + self.grace)

        with self._lock:
            due = [u for u, deadline in self._pending_offline.items() if deadline <= now]
            for user_id in due:
                del self._pending_offline[user_id]

        went_offline = []
        for user_id in due:
            if self.store.count(user_id, now) > 0:
                continue
            last_seen = self.store.last_seen(user_id)
            # Only a user announced online or away is announced offline
            if self.store.swap_status(user_id, OFFLINE) not in (ONLINE, AWAY):
                continue
            self.emit("user:offline", {
                "user_id": user_id,
                "status": OFFLINE,
                "last_seen": last_seen.isoformat() if last_seen else None,
            })
            went_offline.append(user_id)
        if went_offline:
            logger.info("Presence: %d user(s) went offline", len(went_offline))
        return went_offline

    def is_online(self, user_id):
        return self.store.count(user_id, self.clock()) > 0

    def snapshot(self, user_id):
        online = self.is_online(user_id)
        last_seen = self.store.last_seen(user_id)
        status = (self.store.status(user_id) or ONLINE) if online else OFFLINE
        return {
            "user_id": user_id,
            "online": online,
            "status": status,
            "last_seen": last_seen.isoformat() if last_seen else None,
        }


def build_store(config):
    """Pick the presence store configured by PRESENCE_BACKEND."""
    ttl = config.get("PRESENCE_TTL_SECONDS", 60)
    if config.get("PRESENCE_BACKEND") == "redis":
        import redis
        client = redis.Redis.from_url(config["REDIS_URL"], decode_responses=True)
        retention = config.get("PRESENCE_RETENTION_SECONDS", 7 * 24 * 3600)
        return RedisPresenceStore(client, ttl_seconds=ttl, retention_seconds=retention)
    return MemoryPresenceStore(ttl_seconds=ttl)
