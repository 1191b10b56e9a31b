"""
Configuration Management for tiermeta
=====================================

Configuration is split into focused sub-configurations: one for the database
engine and its connection pool, one for access-count handling.
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import orjson

from .error_handling import MetaStoreConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Configuration for the SQLAlchemy engine and connection pool."""

    url: str = "sqlite:///tiermeta.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: float = 30  # seconds to wait for a pooled connection
    pool_pre_ping: bool = True
    pool_recycle: int = 3600
    echo: bool = False

    # SQLite only
    sqlite_wal: bool = True
    sqlite_busy_timeout_ms: int = 30000

    def __post_init__(self):
        """Validate database configuration."""
        if not self.url:
            raise MetaStoreConfigurationError("database url must not be empty")

        if self.pool_size <= 0:
            raise MetaStoreConfigurationError(
                "pool_size must be positive", {"pool_size": self.pool_size}
            )

        if self.max_overflow < 0:
            raise MetaStoreConfigurationError(
                "max_overflow must be non-negative", {"max_overflow": self.max_overflow}
            )

        if self.pool_timeout <= 0:
            raise MetaStoreConfigurationError(
                "pool_timeout must be positive", {"pool_timeout": self.pool_timeout}
            )

        if self.sqlite_busy_timeout_ms < 0:
            raise MetaStoreConfigurationError("sqlite_busy_timeout_ms must be non-negative")

        logger.debug(
            f"Database configured: pool_size={self.pool_size}, "
            f"max_overflow={self.max_overflow}, timeout={self.pool_timeout}s"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (":memory:" in self.url or self.url.rstrip("/") == "sqlite:")


@dataclass
class AccessCountConfig:
    """Configuration for access-count aggregation and ranking."""

    default_top_num: int = 100
    # Accept unregistered views (e.g. proportion views) in hot-file table sets
    allow_catalog_views: bool = True

    def __post_init__(self):
        """Validate access-count configuration."""
        if self.default_top_num <= 0:
            raise MetaStoreConfigurationError("default_top_num must be positive")


@dataclass
class MetaStoreConfig:
    """Main configuration combining all sub-configurations."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    access_count: AccessCountConfig = field(default_factory=AccessCountConfig)

    def __post_init__(self):
        logger.info("Metastore configuration initialized")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SUB_CONFIGS = {
    "database": DatabaseConfig,
    "access_count": AccessCountConfig,
}


def create_metastore_config(url: Optional[str] = None, **overrides) -> MetaStoreConfig:
    """
    Factory function for creating configurations with flat overrides.

    Args:
        url: Database URL (e.g. ``sqlite:///meta.db``, ``postgresql+psycopg://...``)
        **overrides: Values for any field of a sub-configuration

    Returns:
        Configured MetaStoreConfig instance
    """
    sub_values: Dict[str, Dict[str, Any]] = {name: {} for name in _SUB_CONFIGS}
    if url is not None:
        sub_values["database"]["url"] = url

    for key, value in overrides.items():
        for name, sub_class in _SUB_CONFIGS.items():
            if key in sub_class.__dataclass_fields__:
                sub_values[name][key] = value
                break
        else:
            logger.warning(f"Unknown configuration parameter ignored: {key}")

    return MetaStoreConfig(
        database=DatabaseConfig(**sub_values["database"]),
        access_count=AccessCountConfig(**sub_values["access_count"]),
    )


def load_config_from_dict(data: Dict[str, Any]) -> MetaStoreConfig:
    """
    Build a configuration from a nested dictionary.

    Unknown sections or keys raise MetaStoreConfigurationError.
    """
    unknown_sections = set(data) - set(_SUB_CONFIGS)
    if unknown_sections:
        raise MetaStoreConfigurationError(
            f"Unknown configuration sections: {sorted(unknown_sections)}"
        )

    kwargs = {}
    for name, sub_class in _SUB_CONFIGS.items():
        section = data.get(name) or {}
        unknown_keys = set(section) - set(sub_class.__dataclass_fields__)
        if unknown_keys:
            raise MetaStoreConfigurationError(
                f"Unknown keys in '{name}' section: {sorted(unknown_keys)}"
            )
        kwargs[name] = sub_class(**section)

    return MetaStoreConfig(**kwargs)


def load_config_from_json(path: Union[str, Path]) -> MetaStoreConfig:
    """Load a configuration from a JSON file."""
    path = Path(path)
    try:
        data = orjson.loads(path.read_bytes())
    except OSError as e:
        raise MetaStoreConfigurationError(
            f"Cannot read configuration file: {path}", {"error": str(e)}
        ) from e
    except orjson.JSONDecodeError as e:
        raise MetaStoreConfigurationError(
            f"Invalid JSON in configuration file: {path}", {"error": str(e)}
        ) from e

    if not isinstance(data, dict):
        raise MetaStoreConfigurationError("Configuration root must be an object")

    return load_config_from_dict(data)


def save_config_to_json(config: MetaStoreConfig, path: Union[str, Path]):
    """Write a configuration to a JSON file."""
    Path(path).write_bytes(orjson.dumps(config.to_dict(), option=orjson.OPT_INDENT_2))
