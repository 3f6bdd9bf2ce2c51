import asyncio
import signal
import time
from pathlib import Path
from typing import Any

import pytest

from batchexec.errors import LaunchError, ProcessTerminationError
from batchexec.process import LocalProcessRuntime, TerminationPolicy


def test_shell_command_captures_both_streams(tmp_path: Path) -> None:
    runtime = LocalProcessRuntime()
    lines: list[tuple[str, str]] = []

    result = asyncio.run(
        runtime.run(
            "echo hello; echo oops 1>&2; echo $GREETING",
            cwd=tmp_path,
            env={"GREETING": "hi there"},
            on_output=lambda stream, line: lines.append((stream, line)),
        )
    )

    assert result.exit_code == 0
    assert result.stdout == "hello\nhi there\n"
    assert result.stderr == "oops\n"
    assert ("stderr", "oops") in lines
    assert ("stdout", "hi there") in lines


def test_nonzero_exit_is_reported_not_raised(tmp_path: Path) -> None:
    result = asyncio.run(LocalProcessRuntime().run("exit 3", cwd=tmp_path))

    assert result.exit_code == 3


def test_argv_commands_run_in_cwd(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")

    result = asyncio.run(LocalProcessRuntime().run(["ls"], cwd=tmp_path))

    assert "marker.txt" in result.stdout


def test_missing_executable_raises_launch_error(tmp_path: Path) -> None:
    with pytest.raises(LaunchError, match="Executable not found"):
        asyncio.run(LocalProcessRuntime().run(["batchexec-no-such-binary"], cwd=tmp_path))


def test_cancellation_terminates_the_process_group(tmp_path: Path) -> None:
    runtime = LocalProcessRuntime(
        termination=TerminationPolicy(grace_period_seconds=1.0, poll_interval_seconds=0.02)
    )

    async def _run() -> None:
        await asyncio.wait_for(
            runtime.run('while true; do echo "zZzzZ" && sleep 0.05; done', cwd=tmp_path),
            timeout=0.2,
        )

    started = time.monotonic()
    with pytest.raises(TimeoutError):
        asyncio.run(_run())

    assert time.monotonic() - started < 5


def test_processes_ignoring_sigterm_are_killed(tmp_path: Path) -> None:
    runtime = LocalProcessRuntime(
        termination=TerminationPolicy(
            grace_period_seconds=0.2,
            poll_interval_seconds=0.02,
            kill_deadline_seconds=5.0,
        )
    )

    async def _run() -> None:
        await asyncio.wait_for(
            runtime.run("trap '' TERM; while true; do sleep 0.05; done", cwd=tmp_path),
            timeout=0.2,
        )

    started = time.monotonic()
    with pytest.raises(TimeoutError):
        asyncio.run(_run())

    assert time.monotonic() - started < 5


def test_container_command_mounts_the_workspace_root(tmp_path: Path) -> None:
    runtime = LocalProcessRuntime(docker_binary="docker")
    workdir = tmp_path / "a" / "b"
    workdir.mkdir(parents=True)

    command = runtime.build_container_command(
        "gofmt -w .",
        image="golang:1.22",
        mount_root=tmp_path,
        cwd=workdir,
        env_names=["TOKEN", "HOME_DIR"],
        container_name="batchexec-test",
    )

    assert command[:6] == ["docker", "run", "--rm", "--init", "--name", "batchexec-test"]
    assert f"type=bind,source={tmp_path.resolve()},target=/work" in command
    assert command[command.index("--workdir") + 1] == "/work/a/b"
    assert command[-5:] == ["--entrypoint", "/bin/sh", "golang:1.22", "-c", "gofmt -w ."]
    env_flags = [command[index + 1] for index, item in enumerate(command) if item == "--env"]
    assert env_flags == ["HOME_DIR", "TOKEN"]


def test_output_without_newlines_is_collected_in_full(tmp_path: Path) -> None:
    result = asyncio.run(
        LocalProcessRuntime().run("head -c 17000000 /dev/zero | tr '\\0' a", cwd=tmp_path)
    )

    assert result.exit_code == 0
    assert len(result.stdout) == 17_000_000
    assert result.stdout[:3] == "aaa"


def test_partial_lines_reach_the_output_hook(tmp_path: Path) -> None:
    lines: list[tuple[str, str]] = []

    result = asyncio.run(
        LocalProcessRuntime().run(
            "printf 'one\\ntw'; sleep 0.05; printf 'o\\nthree'",
            cwd=tmp_path,
            on_output=lambda stream, line: lines.append((stream, line)),
        )
    )

    assert result.stdout == "one\ntwo\nthree"
    assert lines == [("stdout", "one"), ("stdout", "two"), ("stdout", "three")]


class StuckProcess:
    pid = 424242
    returncode = None

    async def wait(self) -> int:
        await asyncio.Event().wait()
        return 0


class RecordingRuntime(LocalProcessRuntime):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.signals: list[signal.Signals] = []

    def _signal(self, process: Any, sig: signal.Signals) -> None:
        self.signals.append(sig)


def test_unkillable_process_raises_after_the_kill_deadline() -> None:
    runtime = RecordingRuntime(
        termination=TerminationPolicy(
            grace_period_seconds=0.05,
            poll_interval_seconds=0.01,
            kill_deadline_seconds=0.2,
        )
    )

    with pytest.raises(ProcessTerminationError) as failed:
        asyncio.run(runtime.terminate(StuckProcess()))

    assert failed.value.pid == 424242
    assert runtime.signals[0] is signal.SIGTERM
    assert signal.SIGKILL in runtime.signals
