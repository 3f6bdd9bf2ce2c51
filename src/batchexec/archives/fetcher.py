from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Any

from batchexec.archives.base import Archive, ArchiveSource
from batchexec.models import Repository

logger = logging.getLogger(__name__)

FetchEventHook = Callable[[dict[str, Any]], None]
CacheKey = tuple[str, str, str]

IGNORE_FILE = ".gitignore"


def _slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "-", value).strip("-") or "repo"


def ancestor_ignore_files(path: str) -> list[str]:
    """Paths of the ignore files in every directory above ``path``."""
    parts = PurePosixPath(path.strip("/")).parts if path.strip("/") else ()
    files: list[str] = []
    for depth in range(len(parts)):
        directory = PurePosixPath(*parts[:depth]) if depth else PurePosixPath()
        files.append((directory / IGNORE_FILE).as_posix())
    return files


class ArchiveFetcher:
    """Caches repository archives on disk, one download per key at a time.

    Callers asking for a key that is already being downloaded await the
    same download. Downloads of different keys run independently.
    """

    def __init__(
        self,
        source: ArchiveSource,
        cache_dir: Path,
        *,
        clean_archives: bool = False,
        fetch_ignore_files: bool = True,
        event_hook: FetchEventHook | None = None,
    ) -> None:
        self.source = source
        self.cache_dir = cache_dir
        self.clean_archives = clean_archives
        self.fetch_ignore_files = fetch_ignore_files
        self.event_hook = event_hook
        self._inflight: dict[CacheKey, asyncio.Task[Path]] = {}
        self._users: dict[CacheKey, int] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def cache_key(repository: Repository, path: str) -> CacheKey:
        return (repository.identifier, repository.revision, path.strip("/"))

    def cache_path(self, repository: Repository, path: str) -> Path:
        name = f"{_slug(repository.identifier)}@{_slug(repository.revision)}"
        path = path.strip("/")
        if path:
            name = f"{name}-{hashlib.sha256(path.encode('utf-8')).hexdigest()[:16]}"
        return self.cache_dir / f"{name}.zip"

    async def fetch(self, repository: Repository, path: str = "") -> Archive:
        key = self.cache_key(repository, path)
        archive_path = await self._archive_file(key, repository, path)
        archive = Archive(repository=repository, path=path.strip("/"), archive_path=archive_path)
        self._users[key] = self._users.get(key, 0) + 1

        if self.fetch_ignore_files:
            try:
                for file_path in ancestor_ignore_files(path):
                    content = await self.source.fetch_file(repository, file_path)
                    if content is not None:
                        archive.additional_files[file_path] = content
            except BaseException:
                self.release(archive)
                raise
        return archive

    def release(self, archive: Archive) -> None:
        """Drop one user of an archive, deleting it when cleaning is enabled."""
        key = self.cache_key(archive.repository, archive.path)
        remaining = self._users.pop(key, 0) - 1
        if remaining > 0:
            self._users[key] = remaining
            return
        if not self.clean_archives or key in self._inflight:
            return
        try:
            archive.archive_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove cached archive %s: %s", archive.archive_path, exc)

    async def _archive_file(self, key: CacheKey, repository: Repository, path: str) -> Path:
        target = self.cache_path(repository, path)
        download = self._inflight.get(key)
        if download is None:
            if target.exists():
                logger.debug("Archive cache hit for %s", target.name)
                self._emit(
                    {"event": "archive_cache_hit", "repository": repository.name, "path": path}
                )
                return target
            download = asyncio.ensure_future(self._download(repository, path, target))
            self._inflight[key] = download
            download.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            self._emit(
                {"event": "archive_fetch_shared", "repository": repository.name, "path": path}
            )
        return await asyncio.shield(download)

    def _forget(self, key: CacheKey, download: asyncio.Task[Path]) -> None:
        if self._inflight.get(key) is download:
            del self._inflight[key]
        if not download.cancelled():
            # Marks the exception retrieved when every waiter was cancelled.
            download.exception()

    async def _download(self, repository: Repository, path: str, target: Path) -> Path:
        self._emit({"event": "archive_fetch_start", "repository": repository.name, "path": path})
        content = await self.source.fetch_archive(repository, path)
        await asyncio.to_thread(self._write_atomic, target, content)
        self._emit(
            {
                "event": "archive_fetch_done",
                "repository": repository.name,
                "path": path,
                "bytes": len(content),
            }
        )
        return target

    @staticmethod
    def _write_atomic(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{target.name}.{os.getpid()}.part")
        partial.write_bytes(content)
        os.replace(partial, target)
