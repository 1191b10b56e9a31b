"""
Metastore Handle
================

``MetaStoreHandle`` is the process-wide entry point of the metadata and
statistics layer. It owns one SQLAlchemy engine (and therefore one connection
pool), the identifier cache, and the components built on top of them.

Concurrency model:

- every operation takes its own pooled connection and returns it before
  returning (or raising)
- writes, together with the cache invalidations they cause, are serialized by
  one per-handle lock
- reads, including cache reloads, take no lock; a read may observe a cache
  just before an invalidation or race a reload, which is accepted

Usage:
    from tiermeta import MetaStoreHandle, create_metastore_config

    config = create_metastore_config("sqlite:///meta.db")
    with MetaStoreHandle.from_config(config) as store:
        counts = store.get_access_count(0, 3_600_000, "> 10")
        hot = store.get_hot_files(store.list_access_count_tables(0, 3_600_000), 20)
"""

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import create_engine, event, inspect, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from . import schema
from .access_count import (
    AccessCountAggregator,
    AccessCountTableRegistry,
    CountFilterLike,
)
from .cached_files import CachedFileTracker
from .config import DatabaseConfig, MetaStoreConfig
from .error_handling import (
    EmptyUpdateError,
    UnknownStoragePolicyError,
    UnsupportedDialectError,
    metastore_operation_context,
    with_error_handling,
)
from .files import SqlFileStore
from .gateway import ResourceGateway
from .hot_files import HotFileRanker, TableRef
from .identifier_cache import IdentifierCache
from .interfaces import FileIdentityResolver
from .models import (
    AccessCountTable,
    CachedFileStatus,
    FileAccessEvent,
    FileAccessInfo,
    FileStatus,
    StorageCapacity,
    StoragePolicy,
    check_capacity,
)
from .proportion import ProportionViewBuilder

logger = logging.getLogger(__name__)

SUPPORTED_ADMIN_DIALECTS = ("sqlite", "mysql", "postgresql")


def create_metastore_engine(config: DatabaseConfig) -> Engine:
    """Create the pooled engine described by ``config``."""
    if config.is_memory:
        # One shared connection, otherwise every pooled connection gets its own database
        engine = create_engine(
            config.url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    elif config.is_sqlite:
        engine = create_engine(
            config.url,
            echo=config.echo,
            pool_pre_ping=config.pool_pre_ping,
            pool_recycle=config.pool_recycle,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            connect_args={
                "check_same_thread": False,
                "timeout": config.sqlite_busy_timeout_ms / 1000,
            },
        )
    else:
        engine = create_engine(
            config.url,
            echo=config.echo,
            pool_pre_ping=config.pool_pre_ping,
            pool_recycle=config.pool_recycle,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
        )

    if config.is_sqlite:

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Set SQLite pragmas for concurrent readers."""
            cursor = dbapi_connection.cursor()
            if config.sqlite_wal and not config.is_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(config.sqlite_busy_timeout_ms)}")
            cursor.close()

    return engine


class MetaStoreHandle:
    """
    Operations of the metadata and statistics layer over one database.

    Args:
        engine: Engine whose pool serves every operation
        config: Metastore configuration (defaults are used if None)
        connection: Optional single connection used instead of the pool; its
            transaction is left to the caller
        file_resolver: Optional path/file-id resolver replacing the built-in
            ``files`` table lookup for hot-file ranking
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        config: Optional[MetaStoreConfig] = None,
        connection: Optional[Connection] = None,
        file_resolver: Optional[FileIdentityResolver] = None,
    ):
        self.config = config or MetaStoreConfig()
        self._owns_engine = False
        self._lock = threading.RLock()

        self.gateway = ResourceGateway(engine, connection)
        self.identifiers = IdentifierCache(self.gateway)
        self.files = SqlFileStore(self.gateway, self.identifiers)
        self.registry = AccessCountTableRegistry(
            self.gateway, allow_catalog_views=self.config.access_count.allow_catalog_views
        )
        self.aggregator = AccessCountAggregator(self.gateway, self.registry)
        self.ranker = HotFileRanker(self.gateway, self.registry, file_resolver or self.files)
        self.proportions = ProportionViewBuilder(self.gateway, self.registry)
        self.cached_files = CachedFileTracker(self.gateway)

    @classmethod
    def from_config(
        cls, config: MetaStoreConfig, file_resolver: Optional[FileIdentityResolver] = None
    ) -> "MetaStoreHandle":
        engine = create_metastore_engine(config.database)
        handle = cls(engine=engine, config=config, file_resolver=file_resolver)
        handle._owns_engine = True
        logger.info(f"✅ Metastore handle initialized ({engine.dialect.name})")
        return handle

    # ------------------------------------------------------------------
    # Access counts
    # ------------------------------------------------------------------

    def get_access_count(
        self, start_time: int, end_time: int, count_filter: CountFilterLike = None
    ) -> Dict[int, int]:
        return self.aggregator.get_access_count(start_time, end_time, count_filter)

    def list_access_count_tables(self, start_time: int, end_time: int) -> List[AccessCountTable]:
        return self.registry.list_tables(start_time, end_time)

    def get_hot_files(
        self, tables: Sequence[TableRef], top_num: Optional[int] = None
    ) -> List[FileAccessInfo]:
        if top_num is None:
            top_num = self.config.access_count.default_top_num
        return self.ranker.get_hot_files(tables, top_num)

    def create_access_count_table(
        self, table: AccessCountTable, counts: Optional[Mapping[int, int]] = None
    ):
        with self._lock:
            self.registry.create_table(table)
            if counts:
                self.registry.insert_counts(table.table_name, counts)

    def create_proportion_view(
        self, dest: AccessCountTable, source: TableRef, register: bool = False
    ):
        with self._lock:
            self.proportions.create_proportion_view(dest, source, register=register)

    def drop_table(self, table_name: str):
        with self._lock:
            self.registry.drop_table(table_name)

    # ------------------------------------------------------------------
    # Owners and groups
    # ------------------------------------------------------------------

    def add_user(self, owner_name: str) -> Optional[int]:
        with self._lock:
            try:
                pk = self.gateway.insert(insert(schema.owners).values(owner_name=owner_name))
            finally:
                self.identifiers.owners.invalidate()
        return pk[0] if pk else None

    def add_group(self, group_name: str) -> Optional[int]:
        with self._lock:
            try:
                pk = self.gateway.insert(insert(schema.groups).values(group_name=group_name))
            finally:
                self.identifiers.groups.invalidate()
        return pk[0] if pk else None

    def get_owner_name(self, oid: int) -> Optional[str]:
        return self.identifiers.owner_name(oid)

    def get_owner_id(self, owner_name: str) -> Optional[int]:
        return self.identifiers.owner_id(owner_name)

    def get_group_name(self, gid: int) -> Optional[str]:
        return self.identifiers.group_name(gid)

    def get_group_id(self, group_name: str) -> Optional[int]:
        return self.identifiers.group_id(group_name)

    # ------------------------------------------------------------------
    # Storage policies and storages
    # ------------------------------------------------------------------

    def insert_storage_policy(self, policy: StoragePolicy):
        with self._lock:
            try:
                self.gateway.execute(
                    insert(schema.storage_policy).values(
                        sid=policy.sid, policy_name=policy.policy_name
                    )
                )
            finally:
                self.identifiers.storage_policies.invalidate()

    def get_storage_policy_name(self, sid: int) -> Optional[str]:
        return self.identifiers.storage_policy_name(sid)

    def get_storage_policy_id(self, policy_name: str) -> Optional[int]:
        return self.identifiers.storage_policy_id(policy_name)

    def update_file_storage_policy(self, path: str, policy_name: str) -> int:
        """
        Set the storage policy of ``path`` by policy name.

        Raises:
            UnknownStoragePolicyError: If the name is unknown even after
                reloading the policy map
        """
        policies = self.identifiers.storage_policies
        if not self.identifiers.has_storage_policy(policy_name):
            policies.reload()
            if not self.identifiers.has_storage_policy(policy_name):
                raise UnknownStoragePolicyError(
                    f"Unknown storage policy name '{policy_name}'",
                    {"path": path, "policy_name": policy_name},
                )

        sid = self.identifiers.storage_policy_id(policy_name)
        with self._lock:
            return self.files.update_storage_policy(path, sid)

    def insert_storages(self, storages: Iterable[StorageCapacity]):
        rows = [{"type": s.type, "capacity": s.capacity, "free": s.free} for s in storages]
        if not rows:
            return
        with self._lock:
            try:
                self.gateway.execute(insert(schema.storages), rows)
            finally:
                self.identifiers.storage_capacities.invalidate()

    def update_storage(
        self, storage_type: str, capacity: Optional[int] = None, free: Optional[int] = None
    ) -> bool:
        values = {}
        if capacity is not None:
            values["capacity"] = capacity
        if free is not None:
            values["free"] = free
        if not values:
            raise EmptyUpdateError(
                f"No fields to update for storage '{storage_type}'", {"type": storage_type}
            )

        with self._lock:
            rows = self.gateway.query(
                select(schema.storages).where(schema.storages.c.type == storage_type)
            )
            if not rows:
                return False
            check_capacity(
                values.get("capacity", rows[0].capacity), values.get("free", rows[0].free)
            )

            try:
                affected = self.gateway.update(
                    update(schema.storages)
                    .where(schema.storages.c.type == storage_type)
                    .values(**values)
                )
            finally:
                self.identifiers.storage_capacities.invalidate()
        return affected == 1

    def get_storage_capacity(self, storage_type: str) -> Optional[StorageCapacity]:
        return self.identifiers.storage_capacity(storage_type)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def insert_files(self, files: List[FileStatus]) -> int:
        """Insert namespace entries, registering unseen owners and groups first."""
        with self._lock:
            self.identifiers.ensure_loaded()
            for owner in sorted({f.owner for f in files if f.owner}):
                if self.identifiers.owner_id(owner) is None:
                    self.add_user(owner)
            for group in sorted({f.group for f in files if f.group}):
                if self.identifiers.group_id(group) is None:
                    self.add_group(group)
            return self.files.insert(files)

    def get_file(self, fid: int) -> Optional[FileStatus]:
        return self.files.get_by_id(fid)

    def get_file_by_path(self, path: str) -> Optional[FileStatus]:
        return self.files.get_by_path(path)

    def get_files(self) -> List[FileStatus]:
        return self.files.get_all()

    def get_file_ids(self, paths: Iterable[str]) -> Dict[str, int]:
        return self.files.get_file_ids(paths)

    def get_file_paths(self, fids: Iterable[int]) -> Dict[int, str]:
        return self.files.get_paths(fids)

    # ------------------------------------------------------------------
    # Cache residency
    # ------------------------------------------------------------------

    def insert_cached_file(
        self, fid: int, path: str, from_time: int, last_access_time: int, num_accessed: int = 0
    ):
        self.insert_cached_files(
            [CachedFileStatus(fid, path, from_time, last_access_time, num_accessed)]
        )

    def insert_cached_files(self, statuses: List[CachedFileStatus]):
        with self._lock:
            self.cached_files.insert(statuses)

    def get_cached_file_status(self, fid: int) -> Optional[CachedFileStatus]:
        return self.cached_files.get(fid)

    def get_all_cached_file_status(self) -> List[CachedFileStatus]:
        return self.cached_files.get_all()

    def get_cached_fids(self) -> List[int]:
        return self.cached_files.get_fids()

    def delete_cached_file(self, fid: int) -> bool:
        with self._lock:
            return self.cached_files.delete(fid) == 1

    def delete_all_cached_files(self) -> int:
        with self._lock:
            return self.cached_files.delete_all()

    def update_cached_file(
        self,
        fid: int,
        from_time: Optional[int] = None,
        last_access_time: Optional[int] = None,
        num_accessed: Optional[int] = None,
    ) -> bool:
        with self._lock:
            return self.cached_files.update(fid, from_time, last_access_time, num_accessed)

    def update_cached_files(
        self, path_to_ids: Mapping[str, int], events: Iterable[FileAccessEvent]
    ) -> int:
        # Whole batch under the write lock so concurrent batches cannot lose increments
        with self._lock:
            return self.cached_files.reconcile(path_to_ids, events)

    # ------------------------------------------------------------------
    # Raw statements and administration
    # ------------------------------------------------------------------

    def execute(self, statement, params=None):
        self.gateway.execute(statement, params)

    def execute_update(self, statement, params=None) -> int:
        return self.gateway.update(statement, params)

    def execute_statements(self, statements: Iterable):
        for statement in statements:
            self.gateway.execute(statement)

    def query_paths(self, statement, params=None) -> List[str]:
        """Run a query whose first column is a path."""
        return [row[0] for row in self.gateway.query(statement, params)]

    def invalidate_caches(self):
        self.identifiers.invalidate_all()

    @with_error_handling()
    def drop_all_tables(self):
        """Drop every table and view in the database (SQLite, MySQL, PostgreSQL)."""
        dialect = self.gateway.dialect_name
        if dialect not in SUPPORTED_ADMIN_DIALECTS:
            raise UnsupportedDialectError(
                f"Unsupported database: {dialect}", {"dialect": dialect}
            )

        with self._lock, metastore_operation_context("drop_all_tables", dialect=dialect):
            with self.gateway.scoped_connection() as conn:
                inspector = inspect(conn)
                for view in inspector.get_view_names():
                    self.gateway.execute(
                        f"DROP VIEW IF EXISTS {self.gateway.quote_identifier(view)}",
                        connection=conn,
                    )
                for table in inspector.get_table_names():
                    self.gateway.execute(
                        f"DROP TABLE IF EXISTS {self.gateway.quote_identifier(table)}",
                        connection=conn,
                    )
            self.identifiers.invalidate_all()

    def close(self):
        if self._owns_engine:
            self.gateway.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
