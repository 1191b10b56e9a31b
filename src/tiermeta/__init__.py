"""
tiermeta - Metadata and access-statistics store for a tiered file cache.

This library keeps the relational side of a tiered storage system: the file
namespace, owners and groups, storage policies and capacities, per-window
access counts, and the residency state of cached files.

Key Features:
- Time-sharded access-count tables with range aggregation and count filters
- Top-N hot file ranking computed in the database
- Proportion views scaling a shard to a shorter window
- Lazily loaded id/name caches invalidated on every write
- Cache residency tracking reconciled from access event batches
- One pooled SQLAlchemy engine per handle (SQLite, MySQL, PostgreSQL)

Quick Start:
    >>> from tiermeta import MetaStoreHandle, create_metastore_config
    >>>
    >>> store = MetaStoreHandle.from_config(create_metastore_config("sqlite:///meta.db"))
    >>> store.get_access_count(0, 3_600_000, "> 10")
    {}
"""

from .access_count import (
    AccessCountAggregator,
    AccessCountTableRegistry,
    CountFilter,
)
from .cached_files import CachedFileTracker
from .config import (
    AccessCountConfig,
    DatabaseConfig,
    MetaStoreConfig,
    create_metastore_config,
    load_config_from_dict,
    load_config_from_json,
    save_config_to_json,
)
from .error_handling import (
    EmptyUpdateError,
    InvalidCountFilterError,
    InvalidIdentifierError,
    InvalidTimeWindowError,
    InvalidValueError,
    MetaStoreConfigurationError,
    MetaStoreConnectionError,
    MetaStoreDomainError,
    MetaStoreError,
    MetaStoreResourceError,
    UnknownAccessCountTableError,
    UnknownStoragePolicyError,
    UnsupportedDialectError,
)
from .files import SqlFileStore
from .gateway import ResourceGateway
from .hot_files import HotFileRanker
from .identifier_cache import IdentifierCache
from .interfaces import FileIdentityResolver
from .metastore import MetaStoreHandle, create_metastore_engine
from .models import (
    AccessCountTable,
    CachedFileStatus,
    FileAccessEvent,
    FileAccessInfo,
    FileStatus,
    StorageCapacity,
    StoragePolicy,
)
from .proportion import ProportionViewBuilder
from .schema import metadata

__version__ = "0.1.0"

__all__ = [
    # Entry point
    "MetaStoreHandle",
    "create_metastore_engine",
    "metadata",
    # Configuration
    "MetaStoreConfig",
    "DatabaseConfig",
    "AccessCountConfig",
    "create_metastore_config",
    "load_config_from_dict",
    "load_config_from_json",
    "save_config_to_json",
    # Components
    "ResourceGateway",
    "IdentifierCache",
    "SqlFileStore",
    "FileIdentityResolver",
    "AccessCountTableRegistry",
    "AccessCountAggregator",
    "CountFilter",
    "HotFileRanker",
    "ProportionViewBuilder",
    "CachedFileTracker",
    # Records
    "AccessCountTable",
    "CachedFileStatus",
    "FileAccessEvent",
    "FileAccessInfo",
    "FileStatus",
    "StorageCapacity",
    "StoragePolicy",
    # Errors
    "MetaStoreError",
    "MetaStoreResourceError",
    "MetaStoreConnectionError",
    "MetaStoreDomainError",
    "MetaStoreConfigurationError",
    "UnknownStoragePolicyError",
    "EmptyUpdateError",
    "UnsupportedDialectError",
    "InvalidTimeWindowError",
    "InvalidIdentifierError",
    "UnknownAccessCountTableError",
    "InvalidCountFilterError",
    "InvalidValueError",
    # Version info
    "__version__",
]
