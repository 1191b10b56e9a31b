"""
Hot File Ranking
================

Ranks files by their total access count over an explicit set of shards. The
caller picks the shards; grouping, summing, ordering and the top-N limit all
run in the database.
"""

import logging
from typing import List, Sequence, Union

from sqlalchemy import func, select

from .access_count import COUNT, FID, AccessCountTableRegistry, union_counts
from .error_handling import log_metastore_performance
from .gateway import ResourceGateway
from .interfaces import FileIdentityResolver
from .models import AccessCountTable, FileAccessInfo

logger = logging.getLogger(__name__)

TableRef = Union[AccessCountTable, str]


class HotFileRanker:
    """Top-N files by summed access count across a caller-chosen table set."""

    def __init__(
        self,
        gateway: ResourceGateway,
        registry: AccessCountTableRegistry,
        resolver: FileIdentityResolver,
    ):
        self.gateway = gateway
        self.registry = registry
        self.resolver = resolver

    @log_metastore_performance
    def get_hot_files(self, tables: Sequence[TableRef], top_num: int) -> List[FileAccessInfo]:
        """
        Rank files over ``tables`` and return at most ``top_num`` entries.

        Files whose id no longer resolves to a path are left out, so the
        result can be shorter than ``top_num``. Order among equal counts is
        whatever the database returns.

        Args:
            tables: Access-count tables (or their names) to union
            top_num: Maximum number of entries

        Returns:
            FileAccessInfo list in descending access count order
        """
        if not tables or top_num <= 0:
            return []

        names = [t.table_name if isinstance(t, AccessCountTable) else t for t in tables]

        with self.gateway.scoped_connection() as conn:
            self.registry.validate_table_names(names, connection=conn)

            tmp = union_counts(names)
            total = func.sum(tmp.c[COUNT]).label(COUNT)
            statement = (
                select(tmp.c[FID], total)
                .group_by(tmp.c[FID])
                .order_by(total.desc())
                .limit(top_num)
            )
            ranked = [(fid, int(count)) for fid, count in self.gateway.query(statement, connection=conn)]

        paths = self.resolver.get_paths([fid for fid, _ in ranked])
        result = [
            FileAccessInfo(fid=fid, path=paths[fid], access_count=count)
            for fid, count in ranked
            if fid in paths
        ]

        dropped = len(ranked) - len(result)
        if dropped:
            logger.debug(f"Dropped {dropped} hot files with unresolved ids")
        return result
