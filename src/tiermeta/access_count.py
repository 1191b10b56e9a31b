"""
Access Count Aggregation
========================

Access counts are sharded into many small time-bucketed tables, each holding
``(fid, count)`` rows for one window, and listed in the ``access_count_tables``
registry. Aggregating a time range means discovering the shards whose whole
window lies inside the range and summing their rows per file.

The union uses UNION ALL: equal ``(fid, count)`` rows from two windows are two
separate observations and must both be added.

Table names are never interpolated from caller input. They are validated as
plain identifiers, checked against the registry, and rendered by the dialect's
identifier quoting; filter values travel as bound parameters.
"""

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import delete, func, insert, inspect, select, union_all
from sqlalchemy.engine import Connection
from sqlalchemy.sql.expression import ColumnElement, Subquery

from . import schema
from .error_handling import (
    InvalidCountFilterError,
    UnknownAccessCountTableError,
    log_metastore_performance,
    with_error_handling,
)
from .gateway import ResourceGateway
from .models import AccessCountTable, validate_identifier

logger = logging.getLogger(__name__)

FID = AccessCountTable.FILE_FIELD
COUNT = AccessCountTable.ACCESS_COUNT_FIELD

_FILTER_OPERATORS: Dict[str, Callable] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
}

_FILTER_RE = re.compile(r"^\s*(>=|<=|<>|!=|==|=|>|<)\s*(-?\d+)\s*$")


@dataclass(frozen=True)
class CountFilter:
    """Comparison applied to the summed count, e.g. ``CountFilter(">", 100)``."""

    operator: str
    value: int

    def __post_init__(self):
        if self.operator not in _FILTER_OPERATORS:
            raise InvalidCountFilterError(
                f"Unsupported count filter operator: {self.operator!r}"
            )
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidCountFilterError(
                f"Count filter value must be an integer: {self.value!r}"
            )

    @classmethod
    def parse(cls, expression: str) -> "CountFilter":
        """Parse the textual form ``"<op> <integer>"``, e.g. ``"> 100"``."""
        match = _FILTER_RE.match(expression or "")
        if not match:
            raise InvalidCountFilterError(
                f"Invalid count filter: {expression!r}", {"expression": expression}
            )
        return cls(match.group(1), int(match.group(2)))

    def apply(self, aggregate: ColumnElement) -> ColumnElement:
        return _FILTER_OPERATORS[self.operator](aggregate, self.value)


CountFilterLike = Union[CountFilter, str, None]


def coerce_count_filter(count_filter: CountFilterLike) -> Optional[CountFilter]:
    if count_filter is None or isinstance(count_filter, CountFilter):
        return count_filter
    if isinstance(count_filter, str):
        return CountFilter.parse(count_filter) if count_filter.strip() else None
    raise InvalidCountFilterError(f"Unsupported count filter type: {type(count_filter).__name__}")


def union_counts(table_names: Sequence[str]) -> Subquery:
    """``SELECT fid, count FROM T1 UNION ALL SELECT fid, count FROM T2 ...`` as a subquery."""
    selects = []
    for name in table_names:
        shard = schema.shard_table(name)
        selects.append(select(shard.c[FID], shard.c[COUNT]))

    if len(selects) == 1:
        return selects[0].subquery("tmp")
    return union_all(*selects).subquery("tmp")


class AccessCountTableRegistry:
    """The table-of-tables listing every access-count shard and its window."""

    def __init__(self, gateway: ResourceGateway, allow_catalog_views: bool = True):
        self.gateway = gateway
        self.allow_catalog_views = allow_catalog_views

    def list_tables(
        self, start_time: int, end_time: int, connection: Optional[Connection] = None
    ) -> List[AccessCountTable]:
        """Shards whose window lies entirely within [start_time, end_time]."""
        registry = schema.access_count_tables
        rows = self.gateway.query(
            select(registry)
            .where(registry.c.start_time >= start_time)
            .where(registry.c.end_time <= end_time)
            .order_by(registry.c.start_time),
            connection=connection,
        )
        return [AccessCountTable(r.table_name, r.start_time, r.end_time) for r in rows]

    def get_table(
        self, table_name: str, connection: Optional[Connection] = None
    ) -> Optional[AccessCountTable]:
        registry = schema.access_count_tables
        rows = self.gateway.query(
            select(registry).where(registry.c.table_name == table_name), connection=connection
        )
        if not rows:
            return None
        row = rows[0]
        return AccessCountTable(row.table_name, row.start_time, row.end_time)

    def table_names(self, connection: Optional[Connection] = None) -> List[str]:
        registry = schema.access_count_tables
        rows = self.gateway.query(select(registry.c.table_name), connection=connection)
        return [row.table_name for row in rows]

    def register(self, table: AccessCountTable, connection: Optional[Connection] = None):
        self.gateway.execute(
            insert(schema.access_count_tables).values(
                table_name=table.table_name,
                start_time=table.start_time,
                end_time=table.end_time,
            ),
            connection=connection,
        )

    @with_error_handling()
    def create_table(self, table: AccessCountTable):
        """Create the physical shard for ``table`` and record it in the registry."""
        with self.gateway.scoped_connection() as conn:
            schema.shard_table_definition(table.table_name).create(conn)
            self.register(table, connection=conn)
        logger.info(
            f"Created access count table {table.table_name} "
            f"[{table.start_time}, {table.end_time})"
        )

    def insert_counts(self, table_name: str, counts: Mapping[int, int]):
        if not counts:
            return
        shard = schema.shard_table(table_name)
        self.gateway.execute(
            insert(shard),
            [{FID: fid, COUNT: count} for fid, count in counts.items()],
        )

    @with_error_handling()
    def drop_table(self, table_name: str):
        """Drop a shard or derived view and forget its registry entry."""
        validate_identifier(table_name)
        quoted = self.gateway.quote_identifier(table_name)
        with self.gateway.scoped_connection() as conn:
            inspector = inspect(conn)
            if table_name in inspector.get_view_names():
                self.gateway.execute(f"DROP VIEW {quoted}", connection=conn)
            else:
                self.gateway.execute(f"DROP TABLE IF EXISTS {quoted}", connection=conn)
            self.gateway.execute(
                delete(schema.access_count_tables).where(
                    schema.access_count_tables.c.table_name == table_name
                ),
                connection=conn,
            )
        logger.info(f"Dropped access count table {table_name}")

    @with_error_handling()
    def validate_table_names(
        self, table_names: Iterable[str], connection: Optional[Connection] = None
    ) -> List[str]:
        """
        Check that every name is an identifier and a known access-count relation.

        Known relations are the registered shards and, when
        ``allow_catalog_views`` is set, any view in the database catalog
        (proportion views are not registered by default).

        Raises:
            InvalidIdentifierError: If a name is not a plain identifier
            UnknownAccessCountTableError: If a name is not a known relation
        """
        names = [validate_identifier(name) for name in table_names]
        known = set(self.table_names(connection=connection))
        unknown = [name for name in names if name not in known]

        if unknown and self.allow_catalog_views:
            if connection is not None:
                views = set(inspect(connection).get_view_names())
            else:
                with self.gateway.scoped_connection() as conn:
                    views = set(inspect(conn).get_view_names())
            unknown = [name for name in unknown if name not in views]

        if unknown:
            raise UnknownAccessCountTableError(
                f"Unknown access count tables: {unknown}", {"tables": unknown}
            )
        return names


class AccessCountAggregator:
    """Sums access counts over every shard contained in a time range."""

    def __init__(self, gateway: ResourceGateway, registry: AccessCountTableRegistry):
        self.gateway = gateway
        self.registry = registry

    @log_metastore_performance
    def get_access_count(
        self, start_time: int, end_time: int, count_filter: CountFilterLike = None
    ) -> Dict[int, int]:
        """
        Per-file summed access count over the shards inside [start_time, end_time].

        Args:
            start_time: Range start in epoch milliseconds
            end_time: Range end in epoch milliseconds
            count_filter: Optional filter on the summed count, either a
                CountFilter or its textual form such as ``"> 100"``

        Returns:
            Mapping of file id to summed count; empty when no shard qualifies
        """
        count_filter = coerce_count_filter(count_filter)

        with self.gateway.scoped_connection() as conn:
            tables = self.registry.list_tables(start_time, end_time, connection=conn)
            if not tables:
                logger.debug(f"No access count tables within [{start_time}, {end_time}]")
                return {}

            names = [t.table_name for t in tables]
            tmp = union_counts(names)
            total = func.sum(tmp.c[COUNT])
            statement = select(tmp.c[FID], total.label(COUNT)).group_by(tmp.c[FID])
            if count_filter is not None:
                statement = statement.having(count_filter.apply(total))

            rows = self.gateway.query(statement, connection=conn)

        logger.debug(f"Aggregated {len(names)} access count tables into {len(rows)} files")
        return {fid: int(count) for fid, count in rows}
