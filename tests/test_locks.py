"""Unit tests for the edit lock manager and auto-save"""
import asyncio

import pytest

from staysync.exceptions import NetworkError, ValidationError
from staysync.locks import LOCK_COLLECTION, AutoSaver, EditLockManager
from staysync.models import EditLock, LockState


@pytest.fixture
def make_manager(store, clock, test_settings):
    managers = []

    def factory(**kwargs):
        manager = EditLockManager(store, clock, config=test_settings, **kwargs)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.close()


async def stored_lock(store, key):
    record = await store.read(LOCK_COLLECTION, key)
    return EditLock.from_dict(record.data) if record else None


class TestAcquire:
    """Tests for taking edit locks"""

    @pytest.mark.asyncio
    async def test_second_editor_is_refused(self, make_manager, store):
        """Test only one editor holds a record at a time"""
        alice, bob = make_manager(), make_manager()

        assert await alice.acquire("room-101", "alice", owner_label="Alice") is True
        assert await bob.acquire("room-101", "bob") is False

        assert bob.notifier.history[-1].title == "Room Locked"
        assert "Alice" in bob.notifier.history[-1].message
        assert (await stored_lock(store, "room-101")).owner_id == "alice"

    @pytest.mark.asyncio
    async def test_racing_editors_one_wins(self, make_manager):
        """Test concurrent acquires produce a single owner"""
        alice, bob = make_manager(), make_manager()

        results = await asyncio.gather(
            alice.acquire("room-101", "alice"), bob.acquire("room-101", "bob")
        )

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_owner_can_reacquire(self, make_manager):
        """Test acquiring your own lock again succeeds"""
        alice = make_manager()

        assert await alice.acquire("room-101", "alice")
        assert await alice.acquire("room-101", "alice", duration_minutes=30)
        assert alice.holds("room-101", "alice")

    @pytest.mark.asyncio
    async def test_duration_must_be_allowed(self, make_manager):
        """Test only the configured durations are accepted"""
        alice = make_manager()

        with pytest.raises(ValidationError):
            await alice.acquire("room-101", "alice", duration_minutes=7)
        with pytest.raises(ValidationError):
            await alice.acquire("room-101", "")

    @pytest.mark.asyncio
    async def test_network_failure_returns_false(self, make_manager, store):
        """Test acquire reports failure instead of raising on network errors"""
        alice = make_manager()
        store.fail_next(NetworkError("offline"), method="read")

        assert await alice.acquire("room-101", "alice") is False
        assert alice.notifier.history[-1].title == "Lock Failed"

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken(self, make_manager, clock):
        """Test a lock nobody renews lapses after its duration"""
        alice, bob = make_manager(), make_manager()
        await alice.acquire("room-101", "alice", duration_minutes=5)
        alice.close()

        await clock.advance(5 * 60)

        assert (await bob.lock_status("room-101")).state is LockState.EXPIRED
        assert await bob.acquire("room-101", "bob")

    @pytest.mark.asyncio
    async def test_custom_key_function(self, make_manager, store):
        """Test the same manager type locks any record type"""
        locks = make_manager(key_fn=lambda room_number: f"room-{room_number}")

        assert await locks.acquire(7, "alice")

        assert (await stored_lock(store, "room-7")).owner_id == "alice"
        assert locks.holds(7, "alice")
        assert await locks.can_edit(7, "alice")


class TestRenewal:
    """Tests for automatic lock renewal"""

    @pytest.mark.asyncio
    async def test_renewal_keeps_owner_and_extends_expiry(self, make_manager, store, clock):
        """Test renewal fires two minutes before expiry"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")
        first = await stored_lock(store, "room-101")

        await clock.advance(13 * 60)

        renewed = await stored_lock(store, "room-101")
        assert renewed.owner_id == "alice"
        assert renewed.renewals == 1
        assert renewed.acquired_at == first.acquired_at
        assert (renewed.expires_at - clock.now()).total_seconds() == 15 * 60

    @pytest.mark.asyncio
    async def test_lock_survives_many_renewals(self, make_manager, clock):
        """Test a held lock never lapses while its holder is active"""
        alice, bob = make_manager(), make_manager()
        await alice.acquire("room-101", "alice", duration_minutes=5)

        await clock.advance(60 * 60)

        assert alice.holds("room-101", "alice")
        assert await bob.acquire("room-101", "bob") is False

    @pytest.mark.asyncio
    async def test_failed_renewal_loses_the_lock(self, make_manager, store, clock):
        """Test renewal errors are treated as a lost lock"""
        alice = make_manager()
        lost = []
        alice.on_lost(lambda resource_id, reason: lost.append(resource_id))
        await alice.acquire("room-101", "alice")
        store.fail_next(NetworkError("offline"), method="read")

        await clock.advance(13 * 60)

        assert lost == ["room-101"]
        assert not alice.holds("room-101", "alice")
        assert alice.has_conflict("room-101")
        assert alice.notifier.history[-1].title == "Lock Lost"


class TestReleaseAndTakeover:
    """Tests for releasing and force-taking locks"""

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, make_manager, store):
        """Test releasing twice leaves the lock free"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")

        await alice.release("room-101", "alice")
        await alice.release("room-101", "alice")

        lock = await stored_lock(store, "room-101")
        assert lock.state is LockState.FREE
        assert lock.released_by == "alice"
        assert not alice.holds("room-101", "alice")

    @pytest.mark.asyncio
    async def test_release_by_non_owner_is_ignored(self, make_manager, store):
        """Test only the holder can release without force"""
        alice, bob = make_manager(), make_manager()
        await alice.acquire("room-101", "alice")

        await bob.release("room-101", "bob")

        assert (await stored_lock(store, "room-101")).owner_id == "alice"

    @pytest.mark.asyncio
    async def test_force_takeover_is_detected_by_previous_owner(self, make_manager, store):
        """Test an admin takeover and the original editor noticing it"""
        alice, admin = make_manager(), make_manager()
        await alice.acquire("room-101", "alice", duration_minutes=5)

        assert await admin.acquire("room-101", "admin") is False
        lock = await admin.force_takeover("room-101", "admin", owner_label="Admin")

        assert lock.state is LockState.TAKEN_OVER
        assert lock.previous_owner == "alice"
        assert admin.holds("room-101", "admin")
        assert admin.notifier.history[-1].title == "Lock Taken Over"

        assert await alice.can_edit("room-101", "alice") is False
        assert await admin.can_edit("room-101", "admin") is True
        assert alice.has_conflict("room-101")
        assert alice.notifier.history[-1].title == "Lock Lost"

    @pytest.mark.asyncio
    async def test_takeover_noticed_through_change_feed(self, make_manager, clock):
        """Test watchers learn about takeovers without polling"""
        alice, admin = make_manager(), make_manager()
        await alice.acquire("room-101", "alice")
        alice.watch()
        alice.pump()
        assert alice.holds("room-101", "alice")

        await admin.force_takeover("room-101", "admin")
        alice.pump()

        assert not alice.holds("room-101", "alice")
        assert alice.has_conflict("room-101")
        alice.clear_conflict("room-101")
        assert not alice.has_conflict("room-101")

    @pytest.mark.asyncio
    async def test_can_edit_falls_back_to_local_view(self, make_manager, store):
        """Test lock checks while offline use what this client knows"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")
        store.go_offline()

        assert await alice.can_edit("room-101", "alice") is True
        assert await alice.can_edit("room-101", "bob") is False


class TestAutoSaver:
    """Tests for periodic auto-save"""

    @pytest.mark.asyncio
    async def test_saves_on_interval_while_locked(self, make_manager, clock):
        """Test auto-save runs every two minutes for the lock holder"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")
        saves = []

        async def save():
            saves.append(clock.now())

        saver = AutoSaver(alice, "room-101", "alice", save)
        saver.start()
        await clock.advance(4 * 60)

        assert len(saves) == 2
        assert saver.last_saved_at == saves[-1]
        saver.stop()
        assert not saver.running

    @pytest.mark.asyncio
    async def test_no_save_without_lock(self, make_manager, clock):
        """Test auto-save pauses once the lock is gone"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")
        saves = []

        async def save():
            saves.append(clock.now())

        saver = AutoSaver(alice, "room-101", "alice", save)
        saver.start()
        await alice.release("room-101", "alice")
        await clock.advance(4 * 60)

        assert saves == []
        assert await saver.save_now() is False
        saver.stop()

    @pytest.mark.asyncio
    async def test_failed_save_is_reported(self, make_manager, clock):
        """Test save errors are counted and surfaced"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")

        async def save():
            raise RuntimeError("disk full")

        saver = AutoSaver(alice, "room-101", "alice", save)
        saver.start()
        await clock.advance(2 * 60)

        assert saver.failures == 1
        assert alice.notifier.history[-1].title == "Auto-save Failed"
        with pytest.raises(RuntimeError):
            await saver.save_now()
        saver.stop()

    @pytest.mark.asyncio
    async def test_toggle_disables_saving(self, make_manager, clock):
        """Test auto-save can be switched off"""
        alice = make_manager()
        await alice.acquire("room-101", "alice")
        saves = []

        async def save():
            saves.append(clock.now())

        saver = AutoSaver(alice, "room-101", "alice", save)
        saver.start()

        assert saver.toggle() is False
        await clock.advance(4 * 60)

        assert saves == []
        assert not saver.running
