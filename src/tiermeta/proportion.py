"""
Proportion Views
================

When a wanted window does not line up with an existing shard, a proportion
view approximates that window's share of the shard by scaling every count by
the ratio of the two window durations:

    scale = (dest.end_time - dest.start_time) / (source.end_time - source.start_time)
    dest.count = floor(source.count * scale)

The result is a view over the source shard, not a copy. The source must be a
registered shard, and its registered window is the one used for the scale.

This is an approximation. It assumes accesses are spread evenly across the
source window, and floor rounding biases every count downward (a file with a
single access in the source window scores 0 in any shorter view). Summing
proportion views therefore under-counts relative to the source.
"""

import logging
from typing import Union

from sqlalchemy import Integer, cast, func, literal, select
from sqlalchemy.sql.expression import ColumnElement

from . import schema
from .access_count import COUNT, FID, AccessCountTableRegistry
from .error_handling import (
    InvalidTimeWindowError,
    UnknownAccessCountTableError,
    metastore_operation_context,
)
from .gateway import ResourceGateway
from .models import AccessCountTable, validate_identifier

logger = logging.getLogger(__name__)


class ProportionViewBuilder:
    """Creates duration-scaled views over access-count shards."""

    def __init__(self, gateway: ResourceGateway, registry: AccessCountTableRegistry):
        self.gateway = gateway
        self.registry = registry

    @staticmethod
    def scale_for(dest: AccessCountTable, source: AccessCountTable) -> float:
        source_duration = source.end_time - source.start_time
        if source_duration <= 0:
            raise InvalidTimeWindowError(
                f"Source table '{source.table_name}' has an empty window",
                {"start_time": source.start_time, "end_time": source.end_time},
            )
        return dest.duration / source_duration

    def floor_count(self, expression: ColumnElement) -> ColumnElement:
        """Integer floor of ``expression`` for the gateway's dialect."""
        if self.gateway.dialect_name == "sqlite":
            # FLOOR is a compile-time option in SQLite; CAST truncates, which is
            # floor for the non-negative counts stored in shards
            return cast(expression, Integer)
        return cast(func.floor(expression), Integer)

    def build_statement(self, dest: AccessCountTable, source: AccessCountTable) -> str:
        """Render the ``CREATE VIEW`` DDL for ``dest`` over ``source``."""
        scale = self.scale_for(dest, source)
        shard = schema.shard_table(source.table_name)

        body = select(
            shard.c[FID],
            self.floor_count(shard.c[COUNT] * literal(scale)).label(COUNT),
        )
        compiled = body.compile(
            dialect=self.gateway.dialect, compile_kwargs={"literal_binds": True}
        )
        return f"CREATE VIEW {self.gateway.quote_identifier(dest.table_name)} AS {compiled}"

    def create_proportion_view(
        self,
        dest: AccessCountTable,
        source: Union[AccessCountTable, str],
        register: bool = False,
    ):
        """
        Create ``dest`` as a proportion view of ``source``.

        Args:
            dest: Table describing the view name and its window
            source: Registered shard to project, or its name; the scale uses
                the window recorded in the registry
            register: Also record ``dest`` in the access-count registry, which
                makes it visible to time-range aggregation

        Raises:
            UnknownAccessCountTableError: If ``source`` is not a registered shard
            InvalidTimeWindowError: If the source window has zero length
        """
        source_name = source.table_name if isinstance(source, AccessCountTable) else source
        validate_identifier(source_name)

        with metastore_operation_context(
            "create_proportion_view", dest=dest.table_name, source=source_name
        ):
            with self.gateway.scoped_connection() as conn:
                registered = self.registry.get_table(source_name, connection=conn)
                if registered is None:
                    raise UnknownAccessCountTableError(
                        f"Unknown access count table: {source_name}", {"table": source_name}
                    )
                if isinstance(source, AccessCountTable) and source != registered:
                    logger.warning(
                        f"Window of {source_name} differs from its registry entry; "
                        f"using [{registered.start_time}, {registered.end_time})"
                    )

                statement = self.build_statement(dest, registered)
                self.gateway.execute(statement, connection=conn)
                if register:
                    self.registry.register(dest, connection=conn)

        logger.info(
            f"Created proportion view {dest.table_name} over {source_name} "
            f"(scale={self.scale_for(dest, registered):.6f})"
        )
