from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from batchexec.models import Repository


@dataclass(slots=True)
class Archive:
    """A fetched repository subtree: a zip on disk plus loose extra files."""

    repository: Repository
    path: str
    archive_path: Path
    additional_files: dict[str, bytes] = field(default_factory=dict)


class ArchiveSource(ABC):
    @abstractmethod
    async def fetch_archive(self, repository: Repository, path: str) -> bytes:
        """Return a zip of ``path`` whose entries are relative to the repository root."""

    @abstractmethod
    async def fetch_file(self, repository: Repository, path: str) -> bytes | None:
        """Return one file's content, or None when it does not exist."""
