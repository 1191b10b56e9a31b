"""
Metastore Table Definitions
===========================

SQLAlchemy Core tables for the logical layout of the metastore. Access-count
shards are not declared here: each shard is a separate ``<name>(fid, count)``
table created at rotation time and addressed through ``shard_table()``.
"""

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    column,
    table,
)
from sqlalchemy.sql.expression import TableClause

from .models import AccessCountTable, validate_identifier

metadata = MetaData()

owners = Table(
    "owners",
    metadata,
    Column("oid", Integer, primary_key=True, autoincrement=True),
    Column("owner_name", String(255), nullable=False, unique=True),
)

groups = Table(
    "groups",
    metadata,
    Column("gid", Integer, primary_key=True, autoincrement=True),
    Column("group_name", String(255), nullable=False, unique=True),
)

storage_policy = Table(
    "storage_policy",
    metadata,
    Column("sid", Integer, primary_key=True, autoincrement=False),
    Column("policy_name", String(100), nullable=False, unique=True),
)

storages = Table(
    "storages",
    metadata,
    Column("type", String(32), primary_key=True),
    Column("capacity", BigInteger, nullable=False),
    Column("free", BigInteger, nullable=False),
    CheckConstraint("free >= 0 AND free <= capacity", name="ck_storages_free"),
)

files = Table(
    "files",
    metadata,
    Column("fid", BigInteger, primary_key=True, autoincrement=False),
    Column("path", String(1000), nullable=False, unique=True),
    Column("length", BigInteger, nullable=False, default=0),
    Column("modification_time", BigInteger, nullable=False, default=0),
    Column("oid", Integer, nullable=True),
    Column("gid", Integer, nullable=True),
    Column("sid", Integer, nullable=True),
)

access_count_tables = Table(
    "access_count_tables",
    metadata,
    Column("table_name", String(128), primary_key=True),
    Column("start_time", BigInteger, nullable=False),
    Column("end_time", BigInteger, nullable=False),
    Index("idx_access_count_window", "start_time", "end_time"),
)

cached_files = Table(
    "cached_files",
    metadata,
    Column("fid", BigInteger, primary_key=True, autoincrement=False),
    Column("path", String(1000), nullable=False),
    Column("from_time", BigInteger, nullable=False),
    Column("last_access_time", BigInteger, nullable=False),
    Column("num_accessed", Integer, nullable=False, default=0),
    CheckConstraint("num_accessed >= 0", name="ck_cached_files_num_accessed"),
    CheckConstraint("last_access_time >= from_time", name="ck_cached_files_access_order"),
)


def shard_table(table_name: str) -> TableClause:
    """Lightweight clause for an access-count shard (or proportion view)."""
    validate_identifier(table_name)
    return table(
        table_name,
        column(AccessCountTable.FILE_FIELD),
        column(AccessCountTable.ACCESS_COUNT_FIELD),
    )


def shard_table_definition(table_name: str) -> Table:
    """Full ``Table`` used when a shard is physically created."""
    validate_identifier(table_name)
    return Table(
        table_name,
        MetaData(),
        Column(AccessCountTable.FILE_FIELD, BigInteger, primary_key=True, autoincrement=False),
        Column(AccessCountTable.ACCESS_COUNT_FIELD, Integer, nullable=False, default=0),
    )
