import asyncio
from pathlib import Path

import pytest

from batchexec.archives import ArchiveFetcher, DirectoryArchiveSource
from batchexec.errors import StepExecutionError
from batchexec.models import ChangedFiles, Repository, Task
from batchexec.process import LocalProcessRuntime
from batchexec.workspace import Workspace, WorkspaceCreator


def _write_repo(root: Path, name: str, files: dict[str, str]) -> None:
    for relative, content in files.items():
        target = root / name / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def _creator(tmp_path: Path, *, keep_workspaces: bool = False) -> WorkspaceCreator:
    fetcher = ArchiveFetcher(DirectoryArchiveSource(tmp_path / "repos"), tmp_path / "cache")
    return WorkspaceCreator(
        fetcher,
        LocalProcessRuntime(),
        temp_dir=tmp_path / "workspaces",
        keep_workspaces=keep_workspaces,
    )


async def _step(workspace: Workspace, command: str) -> ChangedFiles:
    await workspace.apply_step(command)
    return await workspace.changed_files()


def test_changed_files_are_incremental_per_step(tmp_path: Path) -> None:
    _write_repo(
        tmp_path / "repos",
        "repoA",
        {"main.go": "package main\n", "README.md": "# repo\n", "old.txt": "old\n"},
    )
    task = Task(repository=Repository("repoA"))

    async def _run() -> tuple[list[ChangedFiles], str, Path]:
        workspace = await _creator(tmp_path).create(task)
        try:
            changes = [
                await _step(workspace, "printf '// formatted\\n' >> main.go"),
                await _step(workspace, "true"),
                await _step(workspace, "touch new.txt && rm old.txt"),
            ]
            return changes, await workspace.diff(), workspace.root
        finally:
            await workspace.close()

    changes, diff, root = asyncio.run(_run())

    assert changes[0] == ChangedFiles(modified=("main.go",))
    assert changes[1] == ChangedFiles()
    assert changes[2] == ChangedFiles(added=("new.txt",), deleted=("old.txt",))
    assert "main.go" in diff
    assert "+// formatted" in diff
    assert "new.txt" in diff
    assert "README.md" not in diff
    assert not root.exists()


def test_empty_workspace_diff_is_empty(tmp_path: Path) -> None:
    _write_repo(tmp_path / "repos", "repoA", {"README.md": "# repo\n"})

    async def _run() -> str:
        workspace = await _creator(tmp_path).create(Task(repository=Repository("repoA")))
        try:
            return await workspace.diff()
        finally:
            await workspace.close()

    assert asyncio.run(_run()) == ""


def test_sub_path_workspace_runs_in_its_directory(tmp_path: Path) -> None:
    _write_repo(
        tmp_path / "repos",
        "mono",
        {
            ".gitignore": "*.log\n",
            "a/.gitignore": "*.tmp\n",
            "a/b/main.go": "package b\n",
            "c/other.txt": "other\n",
        },
    )
    task = Task(repository=Repository("mono"), path="a/b")

    async def _run() -> tuple[ChangedFiles, str, list[str]]:
        workspace = await _creator(tmp_path).create(task)
        try:
            present = sorted(
                path.relative_to(workspace.root).as_posix()
                for path in workspace.root.rglob("*")
                if path.is_file() and ".git" not in path.relative_to(workspace.root).parts
            )
            files = await _step(
                workspace, "echo hello > hello.txt && echo x > debug.log && echo y > cache.tmp"
            )
            return files, await workspace.diff(), present
        finally:
            await workspace.close()

    files, diff, present = asyncio.run(_run())

    assert present == [".gitignore", "a/.gitignore", "a/b/main.go"]
    assert files == ChangedFiles(added=("a/b/hello.txt",))
    assert "a/b/hello.txt" in diff
    assert "debug.log" not in diff


def test_failing_command_raises_step_execution_error(tmp_path: Path) -> None:
    _write_repo(tmp_path / "repos", "repoA", {"README.md": "# repo\n"})

    async def _run() -> None:
        workspace = await _creator(tmp_path).create(Task(repository=Repository("repoA")))
        try:
            await workspace.apply_step("echo broken 1>&2; exit 4")
        finally:
            await workspace.close()

    with pytest.raises(StepExecutionError) as exc_info:
        asyncio.run(_run())

    assert exc_info.value.exit_code == 4
    assert "broken" in str(exc_info.value)
    assert "command: echo broken" in str(exc_info.value)


def test_keep_workspaces_leaves_the_checkout(tmp_path: Path) -> None:
    _write_repo(tmp_path / "repos", "repoA", {"README.md": "# repo\n"})

    async def _run() -> Path:
        workspace = await _creator(tmp_path, keep_workspaces=True).create(
            Task(repository=Repository("repoA"))
        )
        await workspace.close()
        return workspace.root

    root = asyncio.run(_run())

    assert (root / "README.md").read_text(encoding="utf-8") == "# repo\n"
