from __future__ import annotations

import asyncio
import logging
import re
import shutil
import stat
import tempfile
import zipfile
from pathlib import Path

from batchexec.archives import Archive, ArchiveFetcher
from batchexec.errors import LaunchError, StepExecutionError, WorkspaceError
from batchexec.models import ChangedFiles, Task
from batchexec.process import OutputHook, ProcessResult, ProcessRuntime

logger = logging.getLogger(__name__)

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "batchexec",
    "GIT_AUTHOR_EMAIL": "batchexec@localhost",
    "GIT_COMMITTER_NAME": "batchexec",
    "GIT_COMMITTER_EMAIL": "batchexec@localhost",
}
GIT_ENV = {
    "GIT_CONFIG_NOSYSTEM": "1",
    "GIT_TERMINAL_PROMPT": "0",
    **GIT_IDENTITY,
}
GIT_OPTIONS = ["-c", "core.autocrlf=false", "-c", "core.quotepath=false", "--no-pager"]
PRISTINE_MESSAGE = "batchexec: pristine snapshot"


async def run_git(
    runtime: ProcessRuntime, root: Path, args: list[str], check: bool = True
) -> ProcessResult:
    try:
        proc = await runtime.run(["git", *GIT_OPTIONS, *args], cwd=root, env=GIT_ENV)
    except LaunchError as exc:
        raise WorkspaceError(f"git is not available: {exc}") from exc
    if check and proc.exit_code != 0:
        detail = proc.stderr.strip() or proc.stdout.strip()
        raise WorkspaceError(f"git {args[0]} failed in {root}: {detail}")
    return proc


def _parse_name_status(output: str) -> ChangedFiles:
    added: list[str] = []
    modified: list[str] = []
    deleted: list[str] = []
    fields = [item for item in output.split("\0") if item]
    for status, path in zip(fields[::2], fields[1::2], strict=False):
        code = status[:1]
        if code == "A":
            added.append(path)
        elif code == "D":
            deleted.append(path)
        else:
            modified.append(path)
    return ChangedFiles(added=tuple(added), modified=tuple(modified), deleted=tuple(deleted))


class Workspace:
    """A task's private checkout, tracked by git against its pristine snapshot."""

    def __init__(
        self,
        root: Path,
        task: Task,
        runtime: ProcessRuntime,
        *,
        pristine_commit: str,
        baseline_tree: str,
        keep: bool = False,
    ) -> None:
        self.root = root
        self.task = task
        self.runtime = runtime
        self.pristine_commit = pristine_commit
        self._baseline_tree = baseline_tree
        self._diff: str | None = None
        self._closed = False
        self.keep = keep

    @property
    def workdir(self) -> Path:
        return self.root / self.task.path if self.task.path else self.root

    def _pathspec(self) -> list[str]:
        return ["--", self.task.path] if self.task.path else []

    async def _run_git(self, args: list[str], check: bool = True) -> ProcessResult:
        return await run_git(self.runtime, self.root, args, check=check)

    async def apply_step(
        self,
        command: str,
        *,
        image: str | None = None,
        env: dict[str, str] | None = None,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        result = await self.runtime.run(
            command,
            cwd=self.workdir,
            env=env,
            image=image,
            mount_root=self.root,
            on_output=on_output,
        )
        if result.exit_code != 0:
            raise StepExecutionError(
                f"command exited with status {result.exit_code}",
                command=command,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    async def _stage(self) -> str:
        await self._run_git(["add", "--all"])
        return (await self._run_git(["write-tree"])).stdout.strip()

    async def changed_files(self) -> ChangedFiles:
        """Files changed since the previous call (or since creation)."""
        tree = await self._stage()
        proc = await self._run_git(
            [
                "diff-tree",
                "-r",
                "-z",
                "--no-renames",
                "--name-status",
                self._baseline_tree,
                tree,
                *self._pathspec(),
            ]
        )
        self._baseline_tree = tree
        return _parse_name_status(proc.stdout)

    async def diff(self) -> str:
        if self._diff is None:
            await self._stage()
            proc = await self._run_git(
                [
                    "diff",
                    "--cached",
                    "--no-prefix",
                    "--binary",
                    self.pristine_commit,
                    *self._pathspec(),
                ]
            )
            self._diff = proc.stdout
        return self._diff

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.keep:
            logger.info("Keeping workspace of %s at %s", self.task.display_name, self.root)
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self.root)
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", self.root, exc)


class WorkspaceCreator:
    """Materializes workspaces from fetched archives."""

    def __init__(
        self,
        fetcher: ArchiveFetcher,
        runtime: ProcessRuntime,
        *,
        temp_dir: Path | None = None,
        keep_workspaces: bool = False,
    ) -> None:
        self.fetcher = fetcher
        self.runtime = runtime
        self.temp_dir = temp_dir
        self.keep_workspaces = keep_workspaces

    async def create(self, task: Task) -> Workspace:
        archive = await self.fetcher.fetch(task.repository, task.path)
        try:
            root = self._make_root(task)
            try:
                await asyncio.to_thread(self._unpack, archive, root, task.path)
                return await self._initialize(root, task)
            except BaseException:
                shutil.rmtree(root, ignore_errors=True)
                raise
        finally:
            self.fetcher.release(archive)

    def _make_root(self, task: Task) -> Path:
        label = re.sub(r"[^a-zA-Z0-9._-]+", "-", task.repository.name).strip("-")[-40:]
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        try:
            return Path(tempfile.mkdtemp(prefix=f"batchexec-{label}-", dir=self.temp_dir))
        except OSError as exc:
            raise WorkspaceError(f"Could not create workspace directory: {exc}") from exc

    @staticmethod
    def _unpack(archive: Archive, root: Path, path: str) -> None:
        resolved_root = root.resolve()
        try:
            with zipfile.ZipFile(archive.archive_path) as bundle:
                for member in bundle.infolist():
                    target = (resolved_root / member.filename).resolve()
                    if not target.is_relative_to(resolved_root):
                        raise WorkspaceError(
                            f"Archive entry escapes the workspace: {member.filename}"
                        )
                    bundle.extract(member, resolved_root)
                    mode = (member.external_attr >> 16) & 0o777
                    if mode and not member.is_dir():
                        target.chmod(mode | stat.S_IRUSR | stat.S_IWUSR)
            for relative, content in archive.additional_files.items():
                target = (resolved_root / relative).resolve()
                if not target.is_relative_to(resolved_root):
                    raise WorkspaceError(f"Additional file escapes the workspace: {relative}")
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            (resolved_root / path).mkdir(parents=True, exist_ok=True)
        except zipfile.BadZipFile as exc:
            raise WorkspaceError(f"Invalid archive {archive.archive_path}: {exc}") from exc
        except OSError as exc:
            raise WorkspaceError(f"Unpacking {archive.archive_path} failed: {exc}") from exc

    async def _initialize(self, root: Path, task: Task) -> Workspace:
        await run_git(self.runtime, root, ["init", "--quiet"])
        await run_git(self.runtime, root, ["add", "--all", "--force"])
        await run_git(
            self.runtime,
            root,
            ["commit", "--quiet", "--allow-empty", "--no-verify", "-m", PRISTINE_MESSAGE],
        )
        commit = (await run_git(self.runtime, root, ["rev-parse", "HEAD"])).stdout.strip()
        tree = (await run_git(self.runtime, root, ["rev-parse", "HEAD^{tree}"])).stdout.strip()
        return Workspace(
            root,
            task,
            self.runtime,
            pristine_commit=commit,
            baseline_tree=tree,
            keep=self.keep_workspaces,
        )
