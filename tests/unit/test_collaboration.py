"""Unit tests for collaboration sessions."""

import asyncio

import pytest
import pytest_asyncio

from exprsn_core.collaboration import CollaborationManager
from exprsn_core.core.config import CollaborationConfig
from exprsn_core.core.errors import ConflictError, NotFound, PermissionDenied, ValidationError


@pytest_asyncio.fixture
async def manager(monotonic):
    manager = CollaborationManager(clock=monotonic)
    yield manager
    await manager.stop()


def record(manager, session_id):
    """Subscribe to a session and collect (type, payload) pairs."""
    received = []

    async def handler(event):
        received.append((event.type, event.payload))

    manager.subscribe(session_id, handler)
    return received


class TestSessions:
    """Tests for session membership."""

    @pytest.mark.asyncio
    async def test_join_creates_session(self, manager):
        session = await manager.join("wf_1", "u1", {"name": "Ada"})

        assert session["id"] == "wf_1"
        assert [u["user_id"] for u in session["users"]] == ["u1"]
        assert session["users"][0]["info"] == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_join_and_leave_events(self, manager):
        await manager.create_session("wf_1", "workflow")
        events = record(manager, "wf_1")

        await manager.join("wf_1", "u1")
        await manager.join("wf_1", "u2")
        assert await manager.leave("wf_1", "u2") is True
        assert await manager.leave("wf_1", "u2") is False

        assert [t for t, _ in events] == ["user:joined", "user:joined", "user:left"]

    @pytest.mark.asyncio
    async def test_rejoin_is_idempotent(self, manager):
        await manager.join("wf_1", "u1")
        events = record(manager, "wf_1")

        session = await manager.join("wf_1", "u1", {"color": "red"})

        assert len(session["users"]) == 1
        assert session["users"][0]["info"] == {"color": "red"}
        assert events == []

    @pytest.mark.asyncio
    async def test_create_existing_session(self, manager):
        await manager.create_session("wf_1", "workflow")

        with pytest.raises(ConflictError):
            await manager.create_session("wf_1", "workflow")

    @pytest.mark.asyncio
    async def test_last_leave_destroys_session(self, manager):
        await manager.join("wf_1", "u1")

        await manager.leave("wf_1", "u1")

        with pytest.raises(NotFound):
            manager.get_session("wf_1")
        assert manager.get_metrics()["sessions_destroyed"] == 1

    @pytest.mark.asyncio
    async def test_reap_stale_sessions(self, manager, monotonic):
        await manager.create_session("idle", "workflow")
        await manager.join("busy", "u1")

        monotonic.advance(3601)

        assert await manager.reap_stale() == ["idle"]
        assert [s["id"] for s in manager.list_sessions()] == ["busy"]


class TestCursorsAndChanges:
    """Tests for cursor fan-out and the change log."""

    @pytest.mark.asyncio
    async def test_cursor_update(self, manager):
        await manager.join("wf_1", "u1")
        events = record(manager, "wf_1")

        await manager.update_cursor("wf_1", "u1", {"step": "total", "field": "inputs"})

        assert events == [
            ("cursor:update", {"session_id": "wf_1", "user_id": "u1", "position": {"step": "total", "field": "inputs"}})
        ]
        assert manager.get_session("wf_1")["users"][0]["cursor"] == {"step": "total", "field": "inputs"}

    @pytest.mark.asyncio
    async def test_non_member_cannot_act(self, manager):
        await manager.join("wf_1", "u1")

        with pytest.raises(PermissionDenied):
            await manager.apply_change("wf_1", "u2", {"op": "set"})
        with pytest.raises(PermissionDenied):
            await manager.acquire_lock("wf_1", "u2", "title")

    @pytest.mark.asyncio
    async def test_change_sequence_numbers(self, manager):
        await manager.join("wf_1", "u1")

        first = await manager.apply_change("wf_1", "u1", {"op": "set", "path": "name", "value": "a"})
        second = await manager.apply_change("wf_1", "u1", {"op": "set", "path": "name", "value": "b"})

        assert (first["seq"], second["seq"]) == (1, 2)
        assert [c["seq"] for c in manager.get_changes("wf_1", since_seq=1)] == [2]

    @pytest.mark.asyncio
    async def test_change_log_is_bounded(self, monotonic):
        manager = CollaborationManager(config=CollaborationConfig(max_changes=2), clock=monotonic)
        await manager.join("wf_1", "u1")

        for value in range(3):
            await manager.apply_change("wf_1", "u1", {"value": value})

        assert [c["seq"] for c in manager.get_changes("wf_1")] == [2, 3]
        assert manager.get_session("wf_1")["last_seq"] == 3


class TestLocks:
    """Tests for keyed locks."""

    @pytest.mark.asyncio
    async def test_lock_expiry_hands_over(self, manager, monotonic):
        """Test that an expired lock is released to its holder before the next user gets it."""
        await manager.join("wf_1", "u1")
        await manager.join("wf_1", "u2")
        events = record(manager, "wf_1")

        await manager.acquire_lock("wf_1", "u1", "title", ttl_ms=1000)

        monotonic.advance(0.5)
        with pytest.raises(PermissionDenied):
            await manager.acquire_lock("wf_1", "u2", "title", ttl_ms=1000)

        monotonic.advance(0.6)
        lock = await manager.acquire_lock("wf_1", "u2", "title", ttl_ms=1000)

        assert lock["user_id"] == "u2"
        assert [(t, p["user_id"]) for t, p in events] == [
            ("lock:acquired", "u1"),
            ("lock:released", "u1"),
            ("lock:acquired", "u2"),
        ]
        assert events[1][1]["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_holder_renews(self, manager, monotonic):
        await manager.join("wf_1", "u1")
        await manager.acquire_lock("wf_1", "u1", "title", ttl_ms=1000)

        monotonic.advance(0.9)
        await manager.acquire_lock("wf_1", "u1", "title", ttl_ms=1000)
        monotonic.advance(0.9)

        assert manager.get_lock("wf_1", "title")["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, manager):
        await manager.join("wf_1", "u1")
        await manager.join("wf_1", "u2")
        await manager.acquire_lock("wf_1", "u1", "title")

        assert await manager.release_lock("wf_1", "u2", "title") is False
        assert await manager.release_lock("wf_1", "u1", "title") is True
        assert manager.get_lock("wf_1", "title") is None

    @pytest.mark.asyncio
    async def test_leave_drops_locks(self, manager):
        await manager.join("wf_1", "u1")
        await manager.join("wf_1", "u2")
        await manager.acquire_lock("wf_1", "u1", "title")

        await manager.leave("wf_1", "u1")

        assert manager.get_session("wf_1")["locks"] == {}

    @pytest.mark.asyncio
    async def test_timer_auto_release(self):
        manager = CollaborationManager()
        await manager.join("wf_1", "u1")
        events = record(manager, "wf_1")

        await manager.acquire_lock("wf_1", "u1", "title", ttl_ms=10)
        await asyncio.sleep(0.05)

        assert ("lock:released", "expired") in [(t, p.get("reason")) for t, p in events]
        assert manager.get_metrics()["held_locks"] == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_ttl_must_be_positive(self, manager):
        await manager.join("wf_1", "u1")

        with pytest.raises(ValidationError):
            await manager.acquire_lock("wf_1", "u1", "title", ttl_ms=0)
