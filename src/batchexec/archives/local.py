from __future__ import annotations

import asyncio
import io
import zipfile
from pathlib import Path

from batchexec.archives.base import ArchiveSource
from batchexec.errors import FetchError
from batchexec.models import Repository

SKIPPED_DIRECTORIES = {".git"}


class DirectoryArchiveSource(ArchiveSource):
    """Serves repositories from ``{root}/{repository name}`` checkouts.

    The working tree is served as-is; the revision is not resolved.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _repo_dir(self, repository: Repository) -> Path:
        repo_dir = (self.root / repository.name).resolve()
        if not repo_dir.is_dir() or not repo_dir.is_relative_to(self.root):
            raise FetchError(
                f"Repository not found: {repository.name}",
                repository=repository.name,
                revision=repository.revision,
                not_found=True,
            )
        return repo_dir

    def _build_zip(self, repository: Repository, path: str) -> bytes:
        repo_dir = self._repo_dir(repository)
        subtree = (repo_dir / path).resolve() if path else repo_dir
        if not subtree.is_dir() or not subtree.is_relative_to(repo_dir):
            raise FetchError(
                f"Path {path!r} not found in {repository.name}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
                not_found=True,
            )

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for file_path in sorted(subtree.rglob("*")):
                relative = file_path.relative_to(repo_dir)
                if SKIPPED_DIRECTORIES.intersection(relative.parts):
                    continue
                if file_path.is_file():
                    archive.write(file_path, relative.as_posix())
        return buffer.getvalue()

    async def fetch_archive(self, repository: Repository, path: str) -> bytes:
        return await asyncio.to_thread(self._build_zip, repository, path)

    async def fetch_file(self, repository: Repository, path: str) -> bytes | None:
        repo_dir = self._repo_dir(repository)
        file_path = (repo_dir / path).resolve()
        if not file_path.is_relative_to(repo_dir) or not file_path.is_file():
            return None
        return await asyncio.to_thread(file_path.read_bytes)
