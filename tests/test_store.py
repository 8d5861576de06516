"""
Tests for the keyed cache store: flags, notification order, reentrancy
and garbage collection.
"""
import pytest

from swrsync.cache.store import CacheStore


# =============================================================================
# Subscription
# =============================================================================

class TestSubscription:
    """Tests for subscribe / unsubscribe."""

    def test_subscribe_creates_loading_entry(self, store):
        store.subscribe("students", lambda snap: None)
        snapshot = store.get("students")
        assert snapshot.is_loading is True
        assert snapshot.has_data is False
        assert snapshot.data is None

    def test_unsubscribe_is_idempotent(self, store):
        sub = store.subscribe("students", lambda snap: None)
        sub.unsubscribe()
        sub.unsubscribe()
        assert sub.active is False
        assert store.subscriber_count("students") == 0

    def test_subscription_context_manager(self, store):
        with store.subscribe("students", lambda snap: None):
            assert store.subscriber_count("students") == 1
        assert store.subscriber_count("students") == 0

    def test_unsubscribed_callback_not_called(self, store):
        seen = []
        sub = store.subscribe("students", seen.append)
        sub.unsubscribe()
        store.set("students", [1])
        assert seen == []


# =============================================================================
# Writes
# =============================================================================

class TestWrites:
    """Tests for set / set_error / update."""

    def test_set_clears_flags_and_stamps_time(self, store, clock):
        store.subscribe("students", lambda snap: None)
        store.mark_validating("students")
        store.set("students", ["a"])
        snapshot = store.get("students")
        assert snapshot.data == ["a"]
        assert snapshot.error is None
        assert snapshot.fetched_at == clock.now
        assert snapshot.is_loading is False
        assert snapshot.is_revalidating is False

    def test_set_error_keeps_stale_data(self, store):
        store.set("students", ["a"])
        store.set_error("students", RuntimeError("boom"))
        snapshot = store.get("students")
        assert snapshot.data == ["a"]
        assert str(snapshot.error) == "boom"
        assert snapshot.is_loading is False

    def test_set_after_error_clears_error(self, store):
        store.set_error("students", RuntimeError("boom"))
        store.set("students", ["b"])
        assert store.get("students").error is None

    def test_mark_validating_depends_on_data(self, store):
        store.subscribe("empty", lambda snap: None)
        store.mark_validating("empty")
        assert store.get("empty").is_loading is True
        assert store.get("empty").is_revalidating is False

        store.set("full", 1)
        store.mark_validating("full")
        assert store.get("full").is_loading is False
        assert store.get("full").is_revalidating is True

    def test_update_applies_to_current_value(self, store):
        store.set("count", 1)
        store.update("count", lambda n: n + 1)
        assert store.peek_data("count") == 2

    def test_snapshots_are_immutable(self, store):
        store.set("students", [1])
        snapshot = store.get("students")
        with pytest.raises(AttributeError):
            snapshot.data = [2]


# =============================================================================
# Notification
# =============================================================================

class TestNotification:
    """Tests for synchronous, ordered notification."""

    def test_subscribers_notified_in_registration_order(self, store):
        order = []
        store.subscribe("k", lambda snap: order.append("first"))
        store.subscribe("k", lambda snap: order.append("second"))
        store.subscribe("k", lambda snap: order.append("third"))
        store.set("k", 1)
        assert order == ["first", "second", "third"]

    def test_every_subscriber_sees_finished_entry(self, store):
        seen = []
        store.subscribe("k", lambda snap: seen.append((snap.data, snap.is_loading)))
        store.set("k", "value")
        assert seen == [("value", False)]

    def test_reentrant_write_is_deferred(self, store):
        seen = []

        def writer(snap):
            seen.append(("writer", snap.data))
            if snap.data == 1:
                store.set("k", 2)

        store.subscribe("k", writer)
        store.subscribe("k", lambda snap: seen.append(("reader", snap.data)))
        store.set("k", 1)

        assert seen == [
            ("writer", 1),
            ("reader", 1),
            ("writer", 2),
            ("reader", 2),
        ]
        assert store.peek_data("k") == 2

    def test_write_to_other_key_is_not_deferred(self, store):
        seen = []
        store.subscribe("a", lambda snap: store.set("b", snap.data))
        store.subscribe("b", lambda snap: seen.append(snap.data))
        store.set("a", 5)
        assert seen == [5]

    def test_failing_subscriber_does_not_block_others(self, store):
        seen = []

        def broken(snap):
            raise ValueError("render failed")

        store.subscribe("k", broken)
        store.subscribe("k", lambda snap: seen.append(snap.data))
        store.set("k", 1)
        assert seen == [1]


# =============================================================================
# Eviction
# =============================================================================

class TestEviction:
    """Tests for delete, clear and grace-period collection."""

    def test_orphaned_entry_survives_grace_period(self, store, clock):
        sub = store.subscribe("k", lambda snap: None)
        store.set("k", 1)
        sub.unsubscribe()

        clock.advance(100)
        assert store.collect_garbage() == 0
        assert "k" in store

        clock.advance(201)
        assert store.collect_garbage() == 1
        assert "k" not in store

    def test_resubscribe_cancels_orphaning(self, store, clock):
        store.subscribe("k", lambda snap: None).unsubscribe()
        store.subscribe("k", lambda snap: None)
        clock.advance(1000)
        assert store.collect_garbage() == 0

    def test_zero_retention_drops_immediately(self, clock):
        store = CacheStore(clock=clock, retain_seconds=0)
        sub = store.subscribe("k", lambda snap: None)
        store.set("k", 1)
        sub.unsubscribe()
        assert "k" not in store

    def test_delete_and_clear(self, store):
        store.set("a", 1)
        store.set("b", 2)
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.clear() == 1
        assert store.keys() == []

    def test_drop_listeners_see_every_removed_key(self, store, clock):
        dropped = []
        off = store.on_drop(dropped.append)
        store.subscribe("gc", lambda snap: None).unsubscribe()
        store.set("a", 1)
        store.set("b", 2)

        store.delete("a")
        store.delete("a")
        clock.advance(301)
        store.collect_garbage()
        store.clear()
        assert dropped == ["a", "gc", "b"]

        off()
        store.set("c", 3)
        store.clear()
        assert dropped == ["a", "gc", "b"]

    def test_stats(self, store):
        store.subscribe("a", lambda snap: None)
        store.set("b", 1)
        stats = store.get_stats()
        assert stats["entries"] == 2
        assert stats["subscribers"] == 1
        assert stats["orphaned"] == 1
