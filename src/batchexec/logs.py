from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from batchexec.models import Task

logger = logging.getLogger(__name__)


class TaskLog:
    """Append-only log of one task: step headers plus streamed output."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self._handle: TextIO | None = None
        if path is not None:
            self._handle = path.open("a", encoding="utf-8")

    def write(self, text: str) -> None:
        if self._handle is None:
            return
        stamp = datetime.now(UTC).strftime("%H:%M:%S")
        self._handle.write(f"{stamp} {text}\n")
        self._handle.flush()

    def output(self, stream: str, line: str) -> None:
        self.write(f"{stream} | {line}")

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class TaskLogManager:
    """Creates a log file per task, keeping it only when asked or on failure."""

    def __init__(self, directory: Path | None = None, *, keep_logs: bool = False) -> None:
        self.directory = directory
        self.keep_logs = keep_logs

    def open(self, task: Task) -> TaskLog:
        label = re.sub(r"[^a-zA-Z0-9._-]+", "-", task.display_name).strip("-") or "task"
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
        handle, raw_path = tempfile.mkstemp(
            prefix=f"batchexec-{label}-", suffix=".log", dir=self.directory
        )
        os.close(handle)
        return TaskLog(Path(raw_path))

    def close(self, log: TaskLog, *, succeeded: bool) -> None:
        log.close()
        if log.path is None or not succeeded or self.keep_logs:
            return
        try:
            log.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove task log %s: %s", log.path, exc)


class NullLogManager(TaskLogManager):
    """Discards task output."""

    def open(self, task: Task) -> TaskLog:
        return TaskLog(None)


def configure_logging(level: str = "WARNING", *, force: bool = False) -> None:
    """Send records to stderr at ``level``, typically ``config.logs.level``."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=force,
    )
