"""
File Namespace Table
====================

SQL implementation of ``FileIdentityResolver`` over the ``files`` table, plus
the namespace reads and writes the metastore handle exposes. Owner and group
are stored as ids and translated through the identifier cache.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import insert, select, update

from . import schema
from .gateway import ResourceGateway
from .identifier_cache import IdentifierCache
from .interfaces import FileIdentityResolver
from .models import FileStatus

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under the bound-parameter limits of older SQLite builds
LOOKUP_BATCH_SIZE = 500


def _batched(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SqlFileStore(FileIdentityResolver):
    """Namespace entries stored in the ``files`` table."""

    def __init__(self, gateway: ResourceGateway, identifiers: IdentifierCache):
        self.gateway = gateway
        self.identifiers = identifiers

    def get_file_ids(self, paths: Iterable[str]) -> Dict[str, int]:
        paths = list(dict.fromkeys(paths))
        result: Dict[str, int] = {}
        for chunk in _batched(paths, LOOKUP_BATCH_SIZE):
            rows = self.gateway.query(
                select(schema.files.c.path, schema.files.c.fid).where(
                    schema.files.c.path.in_(chunk)
                )
            )
            result.update({row.path: row.fid for row in rows})
        return result

    def get_paths(self, fids: Iterable[int]) -> Dict[int, str]:
        fids = list(dict.fromkeys(fids))
        result: Dict[int, str] = {}
        for chunk in _batched(fids, LOOKUP_BATCH_SIZE):
            rows = self.gateway.query(
                select(schema.files.c.fid, schema.files.c.path).where(
                    schema.files.c.fid.in_(chunk)
                )
            )
            result.update({row.fid: row.path for row in rows})
        return result

    def insert(self, files: List[FileStatus]) -> int:
        """Insert namespace entries; owners and groups must already exist."""
        if not files:
            return 0

        rows = []
        for f in files:
            rows.append(
                {
                    "fid": f.fid,
                    "path": f.path,
                    "length": f.length,
                    "modification_time": f.modification_time,
                    "oid": self.identifiers.owner_id(f.owner) if f.owner else None,
                    "gid": self.identifiers.group_id(f.group) if f.group else None,
                    "sid": f.storage_policy,
                }
            )
        self.gateway.execute(insert(schema.files), rows)
        logger.debug(f"Inserted {len(rows)} file entries")
        return len(rows)

    def update_storage_policy(self, path: str, sid: int) -> int:
        return self.gateway.update(
            update(schema.files).where(schema.files.c.path == path).values(sid=sid)
        )

    def get_by_id(self, fid: int) -> Optional[FileStatus]:
        rows = self.gateway.query(select(schema.files).where(schema.files.c.fid == fid))
        return self._to_status(rows[0]) if rows else None

    def get_by_path(self, path: str) -> Optional[FileStatus]:
        rows = self.gateway.query(select(schema.files).where(schema.files.c.path == path))
        return self._to_status(rows[0]) if rows else None

    def get_all(self) -> List[FileStatus]:
        rows = self.gateway.query(select(schema.files).order_by(schema.files.c.fid))
        return [self._to_status(row) for row in rows]

    def _to_status(self, row) -> FileStatus:
        m = row._mapping
        return FileStatus(
            fid=m["fid"],
            path=m["path"],
            length=m["length"],
            modification_time=m["modification_time"],
            owner=self.identifiers.owner_name(m["oid"]) if m["oid"] is not None else None,
            group=self.identifiers.group_name(m["gid"]) if m["gid"] is not None else None,
            storage_policy=m["sid"],
        )
