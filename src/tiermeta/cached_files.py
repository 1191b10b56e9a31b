"""
Cache Residency Tracking
========================

CRUD for the ``cached_files`` table and reconciliation of residency rows
against batches of file access events.

Reconciliation only refreshes files that are already resident; it never
admits new files into the cache.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, insert, select, update

from . import schema
from .error_handling import EmptyUpdateError, InvalidValueError
from .gateway import ResourceGateway
from .models import CachedFileStatus, FileAccessEvent, check_residency

logger = logging.getLogger(__name__)


class CachedFileTracker:
    """Reads, writes and reconciles cache residency rows."""

    def __init__(self, gateway: ResourceGateway):
        self.gateway = gateway

    def insert(self, statuses: List[CachedFileStatus]):
        if not statuses:
            return
        self.gateway.execute(
            insert(schema.cached_files),
            [
                {
                    "fid": s.fid,
                    "path": s.path,
                    "from_time": s.from_time,
                    "last_access_time": s.last_access_time,
                    "num_accessed": s.num_accessed,
                }
                for s in statuses
            ],
        )

    def get_all(self) -> List[CachedFileStatus]:
        rows = self.gateway.query(select(schema.cached_files).order_by(schema.cached_files.c.fid))
        return [_to_status(row) for row in rows]

    def get(self, fid: int) -> Optional[CachedFileStatus]:
        rows = self.gateway.query(
            select(schema.cached_files).where(schema.cached_files.c.fid == fid)
        )
        return _to_status(rows[0]) if rows else None

    def get_fids(self) -> List[int]:
        rows = self.gateway.query(
            select(schema.cached_files.c.fid).order_by(schema.cached_files.c.fid)
        )
        return [row.fid for row in rows]

    def delete(self, fid: int) -> int:
        return self.gateway.update(
            delete(schema.cached_files).where(schema.cached_files.c.fid == fid)
        )

    def delete_all(self) -> int:
        return self.gateway.update(delete(schema.cached_files))

    def update(
        self,
        fid: int,
        from_time: Optional[int] = None,
        last_access_time: Optional[int] = None,
        num_accessed: Optional[int] = None,
    ) -> bool:
        """
        Update only the supplied fields of one residency row.

        Returns:
            True if exactly one row changed; False if the file is no longer
            resident (e.g. evicted concurrently)

        Raises:
            EmptyUpdateError: If no field is supplied
            InvalidValueError: If the resulting row would have a negative
                count or a last access before its admission
        """
        values = {
            name: value
            for name, value in (
                ("from_time", from_time),
                ("last_access_time", last_access_time),
                ("num_accessed", num_accessed),
            )
            if value is not None
        }
        if not values:
            raise EmptyUpdateError(f"No fields to update for cached file {fid}", {"fid": fid})

        if num_accessed is not None and num_accessed < 0:
            raise InvalidValueError(
                f"num_accessed must be non-negative: {num_accessed}", {"fid": fid}
            )
        if (from_time is None) != (last_access_time is None):
            current = self.get(fid)
            if current is None:
                logger.debug(f"Cached file {fid} not updated (not resident)")
                return False
            from_time = current.from_time if from_time is None else from_time
            last_access_time = (
                current.last_access_time if last_access_time is None else last_access_time
            )
        if from_time is not None:
            check_residency(from_time, last_access_time, 0)

        affected = self.gateway.update(
            update(schema.cached_files).where(schema.cached_files.c.fid == fid).values(**values)
        )
        if affected != 1:
            logger.debug(f"Cached file {fid} not updated (affected rows: {affected})")
        return affected == 1

    def reconcile(
        self, path_to_ids: Mapping[str, int], events: Iterable[FileAccessEvent]
    ) -> int:
        """
        Fold a batch of access events into the residency rows.

        For every resident file touched by the batch, ``num_accessed`` grows by
        the number of its events and ``last_access_time`` moves to the latest
        event timestamp. ``from_time`` is left alone. Events are unordered; the
        latest timestamp is a max over the batch.

        Args:
            path_to_ids: Path to file id resolution for the batch
            events: Access events of the batch

        Returns:
            Number of residency rows updated
        """
        statuses = {status.fid: status for status in self.get_all()}
        candidates = set(statuses) & set(path_to_ids.values())
        if not candidates:
            return 0

        counts: Dict[int, int] = {}
        latest: Dict[int, int] = {}
        for event in events:
            fid = path_to_ids.get(event.path)
            if fid not in candidates:
                continue
            counts[fid] = counts.get(fid, 0) + 1
            latest[fid] = max(latest.get(fid, event.timestamp), event.timestamp)

        updated = 0
        for fid, count in counts.items():
            status = statuses[fid]
            if self.update(
                fid,
                last_access_time=max(latest[fid], status.last_access_time),
                num_accessed=status.num_accessed + count,
            ):
                updated += 1

        logger.debug(f"Reconciled {updated} cached files from access events")
        return updated


def _to_status(row) -> CachedFileStatus:
    m = row._mapping
    return CachedFileStatus(
        fid=m["fid"],
        path=m["path"],
        from_time=m["from_time"],
        last_access_time=m["last_access_time"],
        num_accessed=m["num_accessed"],
    )
