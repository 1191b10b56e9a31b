"""
Tests for the lazily loaded identifier maps.

Reload counts are observed through ``LazyMap.reload_count``; a map must be
read from the database once per invalidation, never per lookup.
"""

import pytest
from sqlalchemy import insert

from tiermeta import schema
from tiermeta.gateway import ResourceGateway
from tiermeta.identifier_cache import IdentifierCache, LazyMap
from tiermeta.models import StorageCapacity


@pytest.fixture
def gateway(engine):
    return ResourceGateway(engine)


@pytest.fixture
def cache(gateway):
    return IdentifierCache(gateway)


class TestLazyMap:
    """State transitions of a single lazy map."""

    def test_loads_on_first_read_only(self):
        calls = []
        lazy = LazyMap("numbers", lambda: calls.append(1) or {1: "one"})

        assert not lazy.is_loaded
        assert lazy.get() == {1: "one"}
        assert lazy.get() == {1: "one"}

        assert lazy.is_loaded
        assert len(calls) == 1
        assert lazy.reload_count == 1

    def test_invalidate_forces_next_read_to_reload(self):
        values = iter([{1: "a"}, {1: "b"}])
        lazy = LazyMap("letters", lambda: next(values))

        assert lazy.get() == {1: "a"}
        lazy.invalidate()
        assert not lazy.is_loaded
        assert lazy.get() == {1: "b"}
        assert lazy.reload_count == 2

    def test_empty_map_counts_as_loaded(self):
        lazy = LazyMap("empty", dict)

        lazy.get()
        lazy.get()

        assert lazy.reload_count == 1

    def test_reload_overlapping_invalidation_is_not_kept(self):
        """A load that started before a write must not be cached after it."""
        values = iter([{1: "stale"}, {1: "fresh"}])

        def loader():
            value = next(values)
            if value[1] == "stale":
                lazy.invalidate()
            return value

        lazy = LazyMap("raced", loader)

        assert lazy.get() == {1: "stale"}
        assert not lazy.is_loaded
        assert lazy.get() == {1: "fresh"}
        assert lazy.is_loaded
        assert lazy.reload_count == 2

    def test_concurrent_write_during_reload(self, gateway):
        """A row committed while a reload is running shows up on the next read."""
        cache = IdentifierCache(gateway)
        load = cache._load_policies

        def racing_load():
            snapshot = load()
            gateway.execute(insert(schema.storage_policy).values(sid=9, policy_name="NEW"))
            cache.storage_policies.invalidate()
            return snapshot

        cache.storage_policies._loader = racing_load
        assert cache.storage_policy_id("NEW") is None

        cache.storage_policies._loader = load
        assert cache.storage_policy_id("NEW") == 9


class TestIdentifierCache:
    """Lookups over the reference dimensions."""

    def test_owner_lookups_both_directions(self, cache, gateway):
        gateway.execute(insert(schema.owners), [{"owner_name": "alice"}, {"owner_name": "bob"}])

        oid = cache.owner_id("bob")

        assert oid is not None
        assert cache.owner_name(oid) == "bob"
        assert cache.owner_id("nobody") is None
        assert cache.owners.reload_count == 1

    def test_group_lookups(self, cache, gateway):
        gateway.execute(insert(schema.groups).values(group_name="staff"))

        gid = cache.group_id("staff")

        assert cache.group_name(gid) == "staff"
        assert cache.group_name(gid + 1000) is None

    def test_storage_policy_bijection(self, cache, gateway):
        gateway.execute(
            insert(schema.storage_policy),
            [{"sid": 7, "policy_name": "HOT"}, {"sid": 2, "policy_name": "COLD"}],
        )

        assert cache.storage_policy_name(7) == "HOT"
        assert cache.storage_policy_id("COLD") == 2
        assert cache.has_storage_policy("HOT")
        assert not cache.has_storage_policy("WARM")
        assert cache.storage_policies.reload_count == 1

    def test_stale_until_invalidated(self, cache, gateway):
        """Writes made behind the cache's back are invisible until invalidation."""
        assert cache.storage_policy_id("HOT") is None

        gateway.execute(insert(schema.storage_policy).values(sid=1, policy_name="HOT"))
        assert cache.storage_policy_id("HOT") is None

        cache.storage_policies.invalidate()
        assert cache.storage_policy_id("HOT") == 1

    def test_storage_capacity(self, cache, gateway):
        gateway.execute(insert(schema.storages).values(type="ssd", capacity=100, free=40))

        capacity = cache.storage_capacity("ssd")

        assert capacity == StorageCapacity("ssd", 100, 40)
        assert cache.storage_capacity("tape") is None

    def test_ensure_loaded_and_invalidate_all(self, cache):
        cache.ensure_loaded()
        cache.ensure_loaded()

        for lazy in (cache.owners, cache.groups, cache.storage_policies, cache.storage_capacities):
            assert lazy.is_loaded
            assert lazy.reload_count == 1

        cache.invalidate_all()

        assert not cache.owners.is_loaded
        assert not cache.storage_capacities.is_loaded
