"""
Redis-backed payment session store: records with TTL, creation-time index,
pending-set index and per-session settlement locks
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import redis
from pydantic import ValidationError

from .schemas import ACTIVE_STATUSES, PaymentSession

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "payment:session"
SESSION_INDEX_KEY = "payment:sessions"
PENDING_SET_KEY = "payment:pending"
LOCK_KEY_PREFIX = "payment:lock"
ADDRESS_POOL_KEY = "payment:address_pool"

MAX_PAGE_SIZE = 100

def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{session_id}"

def lock_key(session_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{session_id}"

def _score(moment: datetime) -> float:
    return moment.timestamp() * 1000

class SessionStore:
    """Redis session store. All writes are full-record overwrites."""

    def __init__(self, client: redis.Redis, retention_seconds: int):
        self.client = client
        self.retention_seconds = retention_seconds

    @classmethod
    def from_url(cls, url: str, retention_seconds: int) -> "SessionStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), retention_seconds)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def _decode(self, session_id: str, raw: Optional[str]) -> Optional[PaymentSession]:
        if not raw:
            return None
        try:
            return PaymentSession.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Failed to parse payment session {session_id}", extra={
                "session_id": session_id,
                "error": str(e),
            })
            return None

    # Records

    def put(self, session: PaymentSession) -> None:
        """Store a new session and register it in both indexes"""
        pipe = self.client.pipeline(transaction=True)
        pipe.set(session_key(session.id), session.model_dump_json(), ex=self.retention_seconds)
        pipe.zadd(SESSION_INDEX_KEY, {session.id: _score(session.created_at)})
        if session.status in ACTIVE_STATUSES:
            pipe.sadd(PENDING_SET_KEY, session.id)
        else:
            pipe.srem(PENDING_SET_KEY, session.id)
        pipe.execute()

    def get(self, session_id: str) -> Optional[PaymentSession]:
        return self._decode(session_id, self.client.get(session_key(session_id)))

    def compare_and_put(self, session: PaymentSession, expected_version: int) -> bool:
        """
        Overwrite a session only if the stored version still equals
        expected_version. The pending index is updated in the same MULTI.
        Returns False when another writer got there first.
        """
        key = session_key(session.id)
        with self.client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(key)
                current = self._decode(session.id, pipe.get(key))
                if current is None or current.version != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, session.model_dump_json(), ex=self.retention_seconds)
                if session.status in ACTIVE_STATUSES:
                    pipe.sadd(PENDING_SET_KEY, session.id)
                else:
                    pipe.srem(PENDING_SET_KEY, session.id)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    # Creation-time index

    def list_sessions(self, cursor: Optional[str] = None, limit: int = 20) -> Tuple[List[PaymentSession], Optional[str]]:
        """Newest-first page of sessions. The cursor is the last id of the previous page."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        start = 0
        if cursor:
            rank = self.client.zrevrank(SESSION_INDEX_KEY, cursor)
            if rank is not None:
                start = rank + 1

        ids = self.client.zrevrange(SESSION_INDEX_KEY, start, start + limit - 1)
        if not ids:
            return [], None

        raw_sessions = self.client.mget([session_key(i) for i in ids])
        sessions = []
        for session_id, raw in zip(ids, raw_sessions):
            session = self._decode(session_id, raw)
            if session is not None:
                sessions.append(session)

        if len(ids) < limit:
            return sessions, None
        # Only hand out a cursor if something is left behind it
        if self.client.zcard(SESSION_INDEX_KEY) <= start + len(ids):
            return sessions, None
        return sessions, ids[-1]

    def prune_index(self, now: Optional[datetime] = None) -> int:
        """Drop index entries whose records have outlived the retention window"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.retention_seconds)
        return self.client.zremrangebyscore(SESSION_INDEX_KEY, "-inf", _score(cutoff))

    # Pending-set index

    def pending_ids(self) -> List[str]:
        return sorted(self.client.smembers(PENDING_SET_KEY))

    def add_pending(self, session_id: str) -> None:
        self.client.sadd(PENDING_SET_KEY, session_id)

    def remove_pending(self, session_id: str) -> None:
        self.client.srem(PENDING_SET_KEY, session_id)

    # Settlement locks

    def acquire_lock(self, session_id: str, ttl_seconds: int) -> Optional[str]:
        token = secrets.token_hex(16)
        if self.client.set(lock_key(session_id), token, nx=True, ex=ttl_seconds):
            return token
        return None

    def release_lock(self, session_id: str, token: str) -> bool:
        """Delete the lock only if it is still held with our token"""
        key = lock_key(session_id)
        with self.client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    # Pre-provisioned deposit addresses

    def pop_pooled_address(self) -> Optional[str]:
        return self.client.lpop(ADDRESS_POOL_KEY)

    def add_pooled_addresses(self, *addresses: str) -> int:
        return self.client.rpush(ADDRESS_POOL_KEY, *addresses)
