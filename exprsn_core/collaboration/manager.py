"""
Collaboration Session Manager
=============================

Shared editing sessions on a single event loop.

Features:
- Session membership with presence and cursor fan-out
- Advisory, bounded change log with sequence numbers
- Keyed locks with TTL, implicit release on expiry and timed auto-release
- Stale session reaper
- Events published through the subscription registry, topic = session id

Event taxonomy:
    user:joined, user:left, cursor:update, change:applied,
    lock:acquired, lock:released, session:created, session:destroyed

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import structlog

from exprsn_core.core.config import CollaborationConfig
from exprsn_core.core.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from exprsn_core.core.events import EventHandler, EventRegistry

logger = structlog.get_logger(__name__)

UNKNOWN_RESOURCE = "unknown"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class Participant:
    """A user present in a session"""

    user_id: str
    info: Dict[str, Any] = field(default_factory=dict)
    cursor: Any = None
    joined_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "info": self.info,
            "cursor": self.cursor,
            "joined_at": self.joined_at.isoformat(),
        }


@dataclass
class ResourceLock:
    """An exclusive hold on one key within a session"""

    key: str
    user_id: str
    acquired_at: float
    ttl_ms: int
    token: int = 0

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl_ms / 1000

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "user_id": self.user_id,
            "ttl_ms": self.ttl_ms,
        }


@dataclass
class ChangeRecord:
    """One entry of the advisory change log"""

    seq: int
    user_id: str
    operation: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "user_id": self.user_id,
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CollaborationSession:
    """Shared state of one collaboration session"""

    id: str
    resource: str
    created_at: float
    max_changes: int = 100
    participants: Dict[str, Participant] = field(default_factory=dict)
    locks: Dict[str, ResourceLock] = field(default_factory=dict)
    changes: Deque[ChangeRecord] = field(default_factory=deque)
    next_seq: int = 1
    started_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.changes = deque(self.changes, maxlen=self.max_changes)

    @property
    def users(self) -> Set[str]:
        return set(self.participants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resource": self.resource,
            "users": [p.to_dict() for p in self.participants.values()],
            "locks": {key: lock.to_dict() for key, lock in self.locks.items()},
            "change_count": len(self.changes),
            "last_seq": self.next_seq - 1,
            "started_at": self.started_at.isoformat(),
        }


# =============================================================================
# MANAGER
# =============================================================================


class CollaborationManager:
    """
    Collaboration sessions, presence, change log and locks.

    Usage:
        manager = CollaborationManager(events=registry)
        await manager.join("wf_123", "u1")
        lock = await manager.acquire_lock("wf_123", "u1", "title", ttl_ms=1000)
        await manager.apply_change("wf_123", "u1", {"op": "set", "path": "name", "value": "x"})
        await manager.release_lock("wf_123", "u1", "title")
        await manager.leave("wf_123", "u1")
    """

    def __init__(
        self,
        events: Optional[EventRegistry] = None,
        config: Optional[CollaborationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.events = events or EventRegistry("collaboration")
        self._config = config or CollaborationConfig()
        self._clock = clock

        self._sessions: Dict[str, CollaborationSession] = {}
        self._lock_timers: Dict[tuple, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._tokens = itertools.count(1)
        self._running = False
        self._reaper_task: Optional[asyncio.Task] = None
        self._logger = structlog.get_logger("collaboration_manager")
        self._metrics = {
            "sessions_created": 0,
            "sessions_destroyed": 0,
            "changes_applied": 0,
            "locks_acquired": 0,
            "locks_expired": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the stale session reaper"""
        if self._running:
            return
        self._running = True
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        self._logger.info("collaboration_manager_started")

    async def stop(self) -> None:
        """Stop the reaper and cancel lock timers"""
        self._running = False
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        for handle in self._lock_timers.values():
            handle.cancel()
        self._lock_timers.clear()
        self._logger.info("collaboration_manager_stopped")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_session(self, session_id: str, resource: str) -> Dict[str, Any]:
        if session_id in self._sessions:
            raise ConflictError(f"Session {session_id} already exists", existing_id=session_id)
        session = self._new_session(session_id, resource)
        await self._emit(session, "session:created", resource=resource)
        return session.to_dict()

    def _new_session(self, session_id: str, resource: str) -> CollaborationSession:
        session = CollaborationSession(
            id=session_id,
            resource=resource,
            created_at=self._clock(),
            max_changes=self._config.max_changes,
        )
        self._sessions[session_id] = session
        self._metrics["sessions_created"] += 1
        self._logger.info("session_created", session_id=session_id, resource=resource)
        return session

    async def destroy_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        for key in list(session.locks):
            self._cancel_lock_timer(session_id, key)
        self._metrics["sessions_destroyed"] += 1
        self._logger.info("session_destroyed", session_id=session_id)

        await self._emit(session, "session:destroyed")
        self.events.clear_topic(session_id)
        return True

    def get_session(self, session_id: str) -> Dict[str, Any]:
        return self._get(session_id).to_dict()

    def list_sessions(self, resource: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            session.to_dict()
            for session in self._sessions.values()
            if resource is None or session.resource == resource
        ]

    def subscribe(
        self,
        session_id: str,
        handler: EventHandler,
        event_types: Optional[Any] = None,
    ) -> str:
        return self.events.subscribe(session_id, handler, event_types)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.events.unsubscribe(subscription_id)

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    async def join(
        self,
        session_id: str,
        user_id: str,
        info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Add a user; the session is created on first join"""
        session = self._sessions.get(session_id)
        if session is None:
            session = self._new_session(session_id, UNKNOWN_RESOURCE)

        participant = session.participants.get(user_id)
        if participant is not None:
            participant.info.update(info or {})
            return session.to_dict()

        session.participants[user_id] = Participant(user_id=user_id, info=dict(info or {}))
        self._logger.info("user_joined", session_id=session_id, user_id=user_id)
        await self._emit(session, "user:joined", user_id=user_id, info=dict(info or {}))
        return session.to_dict()

    async def leave(self, session_id: str, user_id: str) -> bool:
        """Remove a user, dropping their locks; empty sessions are destroyed"""
        session = self._get(session_id)
        if user_id not in session.participants:
            return False

        for key, lock in list(session.locks.items()):
            if lock.user_id == user_id:
                await self._drop_lock(session, key, reason="left")

        del session.participants[user_id]
        self._logger.info("user_left", session_id=session_id, user_id=user_id)
        await self._emit(session, "user:left", user_id=user_id)

        if not session.participants:
            await self.destroy_session(session_id)
        return True

    async def update_cursor(self, session_id: str, user_id: str, position: Any) -> None:
        session = self._get(session_id)
        participant = self._member(session, user_id)
        participant.cursor = copy.deepcopy(position)
        await self._emit(session, "cursor:update", user_id=user_id, position=position)

    # -------------------------------------------------------------------------
    # Change log
    # -------------------------------------------------------------------------

    async def apply_change(self, session_id: str, user_id: str, operation: Any) -> Dict[str, Any]:
        """Append to the change log (oldest entries drop beyond capacity)"""
        session = self._get(session_id)
        self._member(session, user_id)

        record = ChangeRecord(seq=session.next_seq, user_id=user_id, operation=copy.deepcopy(operation))
        session.next_seq += 1
        session.changes.append(record)
        self._metrics["changes_applied"] += 1

        await self._emit(session, "change:applied", **record.to_dict())
        return record.to_dict()

    def get_changes(self, session_id: str, since_seq: int = 0) -> List[Dict[str, Any]]:
        """Retained changes with seq greater than ``since_seq``"""
        session = self._get(session_id)
        return [record.to_dict() for record in session.changes if record.seq > since_seq]

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    async def acquire_lock(
        self,
        session_id: str,
        user_id: str,
        key: str,
        ttl_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Take the lock on ``key``.

        Granted when the key is free, when the holder's TTL has run out
        (implicit release) or when the caller already holds it (TTL renewed).

        Raises:
            PermissionDenied: the caller is not a member, or another user holds the lock
        """
        session = self._get(session_id)
        self._member(session, user_id)
        ttl_ms = ttl_ms if ttl_ms is not None else self._config.default_lock_ttl_ms
        if ttl_ms <= 0:
            raise ValidationError("Lock TTL must be positive")

        now = self._clock()
        current = session.locks.get(key)
        if current is not None and current.user_id != user_id:
            if not current.expired(now):
                raise PermissionDenied(f"Lock '{key}' is held by {current.user_id}")
            self._metrics["locks_expired"] += 1
            await self._drop_lock(session, key, reason="expired")
        elif current is not None:
            self._cancel_lock_timer(session_id, key)

        lock = ResourceLock(key=key, user_id=user_id, acquired_at=now, ttl_ms=ttl_ms, token=next(self._tokens))
        session.locks[key] = lock
        self._arm_lock_timer(session_id, lock)
        self._metrics["locks_acquired"] += 1

        self._logger.debug("lock_acquired", session_id=session_id, user_id=user_id, key=key, ttl_ms=ttl_ms)
        await self._emit(session, "lock:acquired", user_id=user_id, key=key, ttl_ms=ttl_ms)
        return lock.to_dict()

    async def release_lock(self, session_id: str, user_id: str, key: str) -> bool:
        """Release ``key`` if the caller holds it"""
        session = self._get(session_id)
        self._member(session, user_id)

        lock = session.locks.get(key)
        if lock is None or lock.user_id != user_id:
            return False
        await self._drop_lock(session, key, reason="released")
        return True

    def get_lock(self, session_id: str, key: str) -> Optional[Dict[str, Any]]:
        lock = self._get(session_id).locks.get(key)
        if lock is None or lock.expired(self._clock()):
            return None
        return lock.to_dict()

    async def _drop_lock(self, session: CollaborationSession, key: str, reason: str) -> None:
        lock = session.locks.pop(key)
        self._cancel_lock_timer(session.id, key)
        self._logger.debug("lock_released", session_id=session.id, user_id=lock.user_id, key=key, reason=reason)
        await self._emit(session, "lock:released", user_id=lock.user_id, key=key, reason=reason)

    def _arm_lock_timer(self, session_id: str, lock: ResourceLock) -> None:
        loop = asyncio.get_running_loop()
        self._lock_timers[(session_id, lock.key)] = loop.call_later(
            lock.ttl_ms / 1000, self._on_lock_timer, session_id, lock.key, lock.token
        )

    def _cancel_lock_timer(self, session_id: str, key: str) -> None:
        handle = self._lock_timers.pop((session_id, key), None)
        if handle is not None:
            handle.cancel()

    def _on_lock_timer(self, session_id: str, key: str, token: int) -> None:
        self._lock_timers.pop((session_id, key), None)
        task = asyncio.create_task(self._auto_release(session_id, key, token))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _auto_release(self, session_id: str, key: str, token: int) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        lock = session.locks.get(key)
        if lock is None or lock.token != token:
            return
        self._metrics["locks_expired"] += 1
        await self._drop_lock(session, key, reason="expired")

    # -------------------------------------------------------------------------
    # Reaper
    # -------------------------------------------------------------------------

    async def reap_stale(self) -> List[str]:
        """Destroy empty sessions older than the age limit"""
        now = self._clock()
        stale = [
            session.id
            for session in self._sessions.values()
            if not session.participants and now - session.created_at > self._config.session_max_age_s
        ]
        for session_id in stale:
            await self.destroy_session(session_id)
        if stale:
            self._logger.info("stale_sessions_reaped", count=len(stale))
        return stale

    async def _reaper_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.reaper_interval_s)
                await self.reap_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("reaper_loop_error", error=str(e), exc_info=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _get(self, session_id: str) -> CollaborationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    @staticmethod
    def _member(session: CollaborationSession, user_id: str) -> Participant:
        participant = session.participants.get(user_id)
        if participant is None:
            raise PermissionDenied(f"User {user_id} is not a member of session {session.id}")
        return participant

    async def _emit(self, session: CollaborationSession, event_type: str, **payload: Any) -> None:
        await self.events.publish(session.id, event_type, {"session_id": session.id, **payload})

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "active_sessions": len(self._sessions),
            "active_users": sum(len(s.participants) for s in self._sessions.values()),
            "held_locks": sum(len(s.locks) for s in self._sessions.values()),
        }
