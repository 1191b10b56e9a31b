"""
Identifier Cache
================

In-memory id/name mappings for the small reference dimensions of the
metastore: owners, groups, storage policies and storage capacities.

Each dimension is a ``LazyMap`` with two states, Unloaded and Loaded. A read
of an unloaded map reloads it in full with a single ``SELECT *``; a write to
the backing table invalidates the whole map (no partial patching, no TTL).

Reads and reloads are not serialized. A reader that races a write may return
the map that was current when its read started. A reload only publishes a
fully built map, and never one whose load overlapped an invalidation: such a
map is handed to its caller once and then dropped, so the next read loads
again.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Optional, TypeVar

from sqlalchemy import select

from . import schema
from .gateway import ResourceGateway
from .models import StorageCapacity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyMap(Generic[T]):
    """A whole-map cache with explicit reload and invalidate operations."""

    def __init__(self, name: str, loader: Callable[[], T]):
        self.name = name
        self._loader = loader
        self._value: Optional[T] = None
        self._generation = 0
        self._publish_lock = threading.Lock()
        self.reload_count = 0

    @property
    def is_loaded(self) -> bool:
        return self._value is not None

    def get(self) -> T:
        value = self._value
        if value is None:
            value = self.reload()
        return value

    def reload(self) -> T:
        """
        Load the map and publish it unless an invalidation happened meanwhile.

        The loaded map is always returned to the caller. It is only kept as the
        cached value when no ``invalidate()`` ran during the load, so a load
        that read rows from before a write cannot outlive that write.
        """
        generation = self._generation
        value = self._loader()
        with self._publish_lock:
            published = generation == self._generation
            if published:
                self._value = value
        self.reload_count += 1
        if published:
            logger.debug(f"Reloaded identifier map '{self.name}'")
        else:
            logger.debug(f"Discarded reload of identifier map '{self.name}' raced by a write")
        return value

    def invalidate(self):
        with self._publish_lock:
            self._generation += 1
            self._value = None


@dataclass
class PolicyMapping:
    """Both directions of the storage policy bijection, built together."""

    id_to_name: Dict[int, str] = field(default_factory=dict)
    name_to_id: Dict[str, int] = field(default_factory=dict)


class IdentifierCache:
    """Lazily loaded owner, group, storage policy and storage capacity maps."""

    def __init__(self, gateway: ResourceGateway):
        self.gateway = gateway
        self.owners: LazyMap[Dict[int, str]] = LazyMap(
            "owners", lambda: self._load_id_map(schema.owners, "oid", "owner_name")
        )
        self.groups: LazyMap[Dict[int, str]] = LazyMap(
            "groups", lambda: self._load_id_map(schema.groups, "gid", "group_name")
        )
        self.storage_policies: LazyMap[PolicyMapping] = LazyMap(
            "storage_policy", self._load_policies
        )
        self.storage_capacities: LazyMap[Dict[str, StorageCapacity]] = LazyMap(
            "storages", self._load_capacities
        )

    def _maps(self):
        return (self.owners, self.groups, self.storage_policies, self.storage_capacities)

    def _load_id_map(self, table, key_column: str, value_column: str) -> Dict[int, str]:
        rows = self.gateway.query(select(table))
        return {row._mapping[key_column]: row._mapping[value_column] for row in rows}

    def _load_policies(self) -> PolicyMapping:
        id_to_name = self._load_id_map(schema.storage_policy, "sid", "policy_name")
        return PolicyMapping(
            id_to_name=id_to_name,
            name_to_id={name: sid for sid, name in id_to_name.items()},
        )

    def _load_capacities(self) -> Dict[str, StorageCapacity]:
        rows = self.gateway.query(select(schema.storages))
        capacities = {}
        for row in rows:
            m = row._mapping
            capacities[m["type"]] = StorageCapacity(m["type"], m["capacity"], m["free"])
        return capacities

    def ensure_loaded(self):
        """Load every dimension that is currently unloaded."""
        for lazy_map in self._maps():
            if not lazy_map.is_loaded:
                lazy_map.reload()

    def invalidate_all(self):
        for lazy_map in self._maps():
            lazy_map.invalidate()

    # Owners and groups

    def owner_name(self, oid: int) -> Optional[str]:
        return self.owners.get().get(oid)

    def group_name(self, gid: int) -> Optional[str]:
        return self.groups.get().get(gid)

    def owner_id(self, owner_name: str) -> Optional[int]:
        return _find_key(self.owners.get(), owner_name)

    def group_id(self, group_name: str) -> Optional[int]:
        return _find_key(self.groups.get(), group_name)

    # Storage policies

    def storage_policy_name(self, sid: int) -> Optional[str]:
        return self.storage_policies.get().id_to_name.get(sid)

    def storage_policy_id(self, policy_name: str) -> Optional[int]:
        return self.storage_policies.get().name_to_id.get(policy_name)

    def has_storage_policy(self, policy_name: str) -> bool:
        return policy_name in self.storage_policies.get().name_to_id

    # Storages

    def storage_capacity(self, storage_type: str) -> Optional[StorageCapacity]:
        return self.storage_capacities.get().get(storage_type)


def _find_key(mapping: Dict[int, str], value: str) -> Optional[int]:
    # Linear scan; dimension cardinality is small.
    for key, name in mapping.items():
        if name == value:
            return key
    return None
