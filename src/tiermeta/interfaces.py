"""
Collaborator Interfaces
=======================

Narrow contracts for the components the metastore consumes but does not own.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable


class FileIdentityResolver(ABC):
    """Bidirectional, batch-capable path/file-id lookup."""

    @abstractmethod
    def get_file_ids(self, paths: Iterable[str]) -> Dict[str, int]:
        """
        Resolve paths to file ids.

        Args:
            paths: Paths to resolve

        Returns:
            Mapping of path to file id; unknown paths are absent
        """
        pass

    @abstractmethod
    def get_paths(self, fids: Iterable[int]) -> Dict[int, str]:
        """
        Resolve file ids to paths.

        Args:
            fids: File ids to resolve

        Returns:
            Mapping of file id to path; unknown (e.g. deleted) ids are absent
        """
        pass
