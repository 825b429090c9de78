"""
Unit tests for the namespaced StorageManager.
"""

import asyncio
import pytest
from keybridge.errors import TransportError
from keybridge.storage import StorageChange, create_storage_manager


def run(coro):
    return asyncio.run(coro)


class TestStorageManagerReadWrite:
    """Tests for get/set/remove/clear through a namespace."""

    @pytest.mark.p0
    def test_set_stores_prefixed_keys(self, memory_storage):
        """Test set writes every key under the prefix."""
        storage = create_storage_manager("script_", memory_storage)

        run(storage.local.set({"count": 1, "name": "a"}))

        assert memory_storage.local._items == {"script_count": 1, "script_name": "a"}

    @pytest.mark.p0
    def test_get_all_strips_prefix(self, memory_storage):
        """Test get() returns only visible items with the prefix stripped."""
        storage = create_storage_manager("script_", memory_storage)
        other = create_storage_manager("other_", memory_storage)

        async def scenario():
            await storage.local.set({"count": 1})
            await other.local.set({"count": 99, "flag": True})
            return await storage.local.get()

        assert run(scenario()) == {"count": 1}

    @pytest.mark.p0
    def test_get_specific_keys_keeps_prefix(self, memory_storage):
        """Test get(keys) returns the area's result as is."""
        storage = create_storage_manager("script_", memory_storage)

        async def scenario():
            await storage.local.set({"count": 1, "name": "a"})
            single = await storage.local.get("count")
            several = await storage.local.get(["count", "missing"])
            defaults = await storage.local.get({"count": 0, "missing": 5})
            return single, several, defaults

        single, several, defaults = run(scenario())

        assert single == {"script_count": 1}
        assert several == {"script_count": 1}
        assert defaults == {"script_count": 1, "script_missing": 5}

    @pytest.mark.p1
    def test_prefix_is_stripped_exactly_once(self, memory_storage):
        """Test a key that itself starts with the prefix survives a round trip."""
        storage = create_storage_manager("script_", memory_storage)

        async def scenario():
            await storage.local.set({"script_x": 1})
            return await storage.local.get()

        assert run(scenario()) == {"script_x": 1}
        assert "script_script_x" in memory_storage.local._items

    @pytest.mark.p1
    def test_empty_key_is_not_prefixed(self, memory_storage):
        """Test the empty key is stored unprefixed and never listed."""
        storage = create_storage_manager("script_", memory_storage)

        async def scenario():
            await storage.local.set({"": 1, "a": 2})
            return await storage.local.get()

        assert run(scenario()) == {"a": 2}
        assert memory_storage.local._items[""] == 1

    @pytest.mark.p0
    def test_remove_and_clear_only_touch_namespace(self, memory_storage):
        """Test remove/clear never delete another namespace's keys."""
        storage = create_storage_manager("script_", memory_storage)
        other = create_storage_manager("other_", memory_storage)

        async def scenario():
            await storage.local.set({"a": 1, "b": 2, "c": 3})
            await other.local.set({"a": 10})
            await storage.local.remove("a")
            after_remove = await storage.local.get()
            await storage.local.clear()
            return after_remove, await storage.local.get(), await other.local.get()

        after_remove, after_clear, others = run(scenario())

        assert after_remove == {"b": 2, "c": 3}
        assert after_clear == {}
        assert others == {"a": 10}

    @pytest.mark.p1
    def test_sync_area_is_separate(self, memory_storage):
        """Test local and sync areas do not share items."""
        storage = create_storage_manager("script_", memory_storage)

        async def scenario():
            await storage.sync.set({"theme": "dark"})
            return await storage.local.get(), await storage.sync.get()

        local_items, sync_items = run(scenario())

        assert local_items == {}
        assert sync_items == {"theme": "dark"}


class TestStorageManagerBytesInUse:
    """Tests for get_bytes_in_use."""

    @pytest.mark.p1
    def test_bytes_in_use_counts_visible_keys_only(self, memory_storage):
        """Test get_bytes_in_use() ignores other namespaces."""
        storage = create_storage_manager("script_", memory_storage)
        other = create_storage_manager("other_", memory_storage)

        async def scenario():
            await storage.local.set({"count": 1})
            await other.local.set({"blob": "x" * 100})
            return await storage.local.get_bytes_in_use(), await storage.local.get_bytes_in_use("count")

        total, single = run(scenario())

        # len("script_count") + len("1")
        assert total == 13
        assert single == 13

    @pytest.mark.p2
    def test_bytes_in_use_empty_namespace(self, memory_storage):
        """Test an empty namespace uses zero bytes."""
        storage = create_storage_manager("script_", memory_storage)

        assert run(storage.local.get_bytes_in_use()) == 0


class TestStorageManagerErrors:
    """Tests for failures reported by the backend."""

    @pytest.mark.p0
    def test_sync_quota_exceeded(self, memory_storage):
        """Test a write over the sync quota rejects with the backend message."""
        storage = create_storage_manager("script_", memory_storage)

        with pytest.raises(TransportError, match="QUOTA_BYTES quota exceeded"):
            run(storage.sync.set({"blob": "x" * 200000}))

        assert memory_storage.sync._items == {}

    @pytest.mark.p1
    def test_unserializable_value(self, memory_storage):
        """Test a value that is not JSON rejects the write."""
        storage = create_storage_manager("script_", memory_storage)

        with pytest.raises(TransportError, match="not serializable"):
            run(storage.local.set({"bad": object()}))

    @pytest.mark.p1
    def test_empty_prefix_rejected(self, memory_storage):
        """Test a storage manager needs a non-empty prefix."""
        with pytest.raises(ValueError):
            create_storage_manager("", memory_storage)


class TestStorageManagerChanges:
    """Tests for on_changed listeners."""

    @pytest.mark.p0
    def test_listener_sees_only_namespace_changes(self, memory_storage):
        """Test listeners get namespaced changes with the prefix stripped."""
        storage = create_storage_manager("script_", memory_storage)
        other = create_storage_manager("other_", memory_storage)
        seen = []

        async def scenario():
            storage.on_changed.add_listener(lambda changes, area: seen.append((changes, area)))
            await storage.local.set({"count": 1})
            await other.local.set({"count": 2})
            await storage.sync.set({"count": 3})
            await asyncio.sleep(0)

        run(scenario())

        assert seen == [
            ({"count": StorageChange(old_value=None, new_value=1)}, "local"),
            ({"count": StorageChange(old_value=None, new_value=3)}, "sync"),
        ]

    @pytest.mark.p0
    def test_single_backend_subscription(self, memory_storage):
        """Test many listeners share one backend subscription."""
        storage = create_storage_manager("script_", memory_storage)
        first = lambda changes, area: None
        second = lambda changes, area: None

        storage.on_changed.add_listener(first)
        storage.on_changed.add_listener(second)
        storage.on_changed.add_listener(first)
        assert memory_storage.on_changed.listener_count == 1

        storage.on_changed.remove_listener(first)
        assert memory_storage.on_changed.listener_count == 1
        assert not storage.on_changed.has_listener(first)
        assert storage.on_changed.has_listener(second)

        storage.on_changed.remove_listener(second)
        assert memory_storage.on_changed.listener_count == 0

    @pytest.mark.p1
    def test_bound_methods_match(self, memory_storage):
        """Test a bound method can be removed through a fresh reference."""
        storage = create_storage_manager("script_", memory_storage)

        class Watcher:
            def on_change(self, changes, area):
                pass

        watcher = Watcher()
        storage.on_changed.add_listener(watcher.on_change)
        assert storage.on_changed.has_listener(watcher.on_change)

        storage.on_changed.remove_listener(watcher.on_change)
        assert memory_storage.on_changed.listener_count == 0

    @pytest.mark.p1
    def test_non_callable_listener_rejected(self, memory_storage):
        """Test adding a non-callable raises and leaves no subscription."""
        storage = create_storage_manager("script_", memory_storage)

        with pytest.raises(TypeError, match="Event callback must be a function"):
            storage.on_changed.add_listener("not a function")

        assert memory_storage.on_changed.listener_count == 0

    @pytest.mark.p1
    def test_failing_listener_does_not_block_others(self, memory_storage):
        """Test one failing listener does not stop delivery to the rest."""
        storage = create_storage_manager("script_", memory_storage)
        seen = []

        def broken(changes, area):
            raise RuntimeError("boom")

        async def scenario():
            storage.on_changed.add_listener(broken)
            storage.on_changed.add_listener(lambda changes, area: seen.append(list(changes)))
            await storage.local.set({"a": 1})
            await asyncio.sleep(0)

        run(scenario())

        assert seen == [["a"]]

    @pytest.mark.p2
    def test_area_views_are_copies(self, memory_storage):
        """Test local/sync hand out fresh views on each access."""
        storage = create_storage_manager("script_", memory_storage)

        assert storage.local is not storage.local
        assert storage.sync is not storage.sync
        assert storage.key_prefix == "script_"
