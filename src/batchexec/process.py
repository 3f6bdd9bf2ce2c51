from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import signal
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from uuid import uuid4

from batchexec.errors import LaunchError, ProcessTerminationError

logger = logging.getLogger(__name__)

OutputHook = Callable[[str, str], None]

CONTAINER_WORKSPACE = "/work"
READ_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(slots=True)
class TerminationPolicy:
    grace_period_seconds: float = 2.0
    poll_interval_seconds: float = 0.05
    kill_deadline_seconds: float = 10.0


class ProcessRuntime(ABC):
    @abstractmethod
    async def run(
        self,
        command: str | Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str] | None = None,
        image: str | None = None,
        mount_root: Path | None = None,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        """Run a command to completion and capture its output.

        A string command is a shell script, a sequence is an argv. With an
        image the script runs in a container with ``mount_root`` (default
        ``cwd``) bind-mounted. Cancelling the call terminates the process.
        """


class LocalProcessRuntime(ProcessRuntime):
    """Runs commands on this host, or in containers through the docker CLI."""

    def __init__(
        self,
        *,
        shell: str = "/bin/sh",
        docker_binary: str = "docker",
        termination: TerminationPolicy | None = None,
    ) -> None:
        self.shell = shell
        self.docker_binary = docker_binary
        self.termination = termination or TerminationPolicy()

    def build_container_command(
        self,
        script: str,
        *,
        image: str,
        mount_root: Path,
        cwd: Path,
        env_names: Sequence[str],
        container_name: str,
    ) -> list[str]:
        relative = cwd.resolve().relative_to(mount_root.resolve()).as_posix()
        workdir = PurePosixPath(CONTAINER_WORKSPACE) / relative
        command = [
            self.docker_binary,
            "run",
            "--rm",
            "--init",
            "--name",
            container_name,
            "--mount",
            f"type=bind,source={mount_root.resolve()},target={CONTAINER_WORKSPACE}",
            "--workdir",
            str(workdir),
        ]
        for name in sorted(env_names):
            command.extend(["--env", name])
        command.extend(["--entrypoint", self.shell, image, "-c", script])
        return command

    async def run(
        self,
        command: str | Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str] | None = None,
        image: str | None = None,
        mount_root: Path | None = None,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        process_env = os.environ.copy()
        process_env.update(env or {})
        container_name: str | None = None

        if image:
            script = command if isinstance(command, str) else shlex.join(command)
            container_name = f"batchexec-{uuid4().hex[:12]}"
            argv = self.build_container_command(
                script,
                image=image,
                mount_root=mount_root or cwd,
                cwd=cwd,
                env_names=list(env or {}),
                container_name=container_name,
            )
        elif isinstance(command, str):
            argv = [self.shell, "-c", command]
        else:
            argv = list(command)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=process_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise LaunchError(f"Executable not found: {argv[0]}") from exc
        except OSError as exc:
            raise LaunchError(f"Failed to start {argv[0]}: {exc}") from exc

        if process.stdout is None or process.stderr is None:
            raise LaunchError(f"Process {argv[0]} did not expose its output streams.")

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = asyncio.gather(
            self._pump(process.stdout, "stdout", stdout_chunks, on_output),
            self._pump(process.stderr, "stderr", stderr_chunks, on_output),
        )
        try:
            await readers
            exit_code = await process.wait()
        except BaseException:
            readers.cancel()
            try:
                await self.terminate(process, container_name=container_name)
            finally:
                await asyncio.gather(readers, return_exceptions=True)
            raise

        return ProcessResult(
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            exit_code=exit_code,
        )

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader,
        name: str,
        sink: list[str],
        on_output: OutputHook | None,
    ) -> None:
        """Collect a stream verbatim, passing complete lines to ``on_output``."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial: list[str] = []
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                sink.append(text)
                if on_output is not None:
                    *lines, rest = text.split("\n")
                    if lines:
                        lines[0] = "".join(partial) + lines[0]
                        partial.clear()
                        for line in lines:
                            on_output(name, line)
                    if rest:
                        partial.append(rest)
            if not chunk:
                break
        if on_output is not None and partial:
            on_output(name, "".join(partial))

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            process.send_signal(sig)

    async def _kill_container(self, container_name: str) -> None:
        try:
            killer = await asyncio.create_subprocess_exec(
                self.docker_binary,
                "kill",
                container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Could not run docker kill for %s: %s", container_name, exc)
            return
        try:
            await asyncio.wait_for(killer.wait(), timeout=self.termination.grace_period_seconds)
        except TimeoutError:
            logger.warning("docker kill %s did not finish in time", container_name)

    async def terminate(
        self,
        process: asyncio.subprocess.Process,
        *,
        container_name: str | None = None,
    ) -> None:
        """Signal a process group until it is confirmed gone.

        SIGTERM is repeated every poll interval until the grace period runs
        out, then SIGKILL. A process that sleeps uninterruptibly can ignore
        a signal for a while, so signalling continues up to the kill
        deadline.
        """
        policy = self.termination
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + policy.kill_deadline_seconds
        escalate_at = started + policy.grace_period_seconds

        if container_name is not None and process.returncode is None:
            await self._kill_container(container_name)

        attempts = 0
        while process.returncode is None:
            now = loop.time()
            if now >= deadline:
                raise ProcessTerminationError(
                    f"Process {process.pid} did not exit after {attempts} termination "
                    f"attempts within {policy.kill_deadline_seconds:.1f}s",
                    pid=process.pid,
                )
            sig = signal.SIGKILL if now >= escalate_at else signal.SIGTERM
            self._signal(process, sig)
            attempts += 1
            wait_seconds = max(0.0, min(policy.poll_interval_seconds, deadline - now))
            try:
                await asyncio.wait_for(process.wait(), timeout=wait_seconds)
            except TimeoutError:
                continue
        logger.debug("Process %s exited after %d termination attempts", process.pid, attempts)
