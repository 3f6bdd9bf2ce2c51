from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from batchexec.archives import ArchiveFetcher, ArchiveSource, HttpArchiveSource
from batchexec.config import BatchExecConfig
from batchexec.errors import (
    BatchExecError,
    ExecutionErrors,
    ExecutionTimeoutError,
    ProcessTerminationError,
    TaskCancelledError,
    TaskExecutionError,
)
from batchexec.logs import NullLogManager, TaskLog, TaskLogManager
from batchexec.models import Task, TaskResult, TaskState, TaskStatus
from batchexec.process import LocalProcessRuntime, ProcessRuntime, TerminationPolicy
from batchexec.status import TaskStatusCollection
from batchexec.steps import StepRunner
from batchexec.workspace import WorkspaceCreator

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class ExecutorOptions:
    parallelism: int = 0
    timeout_seconds: float | None = None
    fail_fast: bool = False
    skip_errors: bool = False

    @classmethod
    def from_config(cls, config: BatchExecConfig) -> ExecutorOptions:
        timeout = float(config.executor.timeout_seconds)
        return cls(
            parallelism=max(0, int(config.executor.parallelism)),
            timeout_seconds=timeout if timeout > 0 else None,
            fail_fast=bool(config.executor.fail_fast),
            skip_errors=bool(config.executor.skip_errors),
        )

    def worker_count(self, task_count: int) -> int:
        limit = self.parallelism if self.parallelism > 0 else (os.cpu_count() or 2)
        return max(1, min(limit, task_count))


class Executor:
    """Runs tasks on a bounded pool of workers and collects their results.

    ``start`` queues the tasks and launches the workers; ``wait`` blocks
    until all of them are done. A task failure is recorded against that task
    only, unless ``fail_fast`` is set, in which case the remaining tasks are
    cancelled. Results reference their task and arrive in completion order.
    """

    def __init__(
        self,
        options: ExecutorOptions,
        *,
        creator: WorkspaceCreator,
        runner: StepRunner | None = None,
        logs: TaskLogManager | None = None,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.options = options
        self.creator = creator
        self.runner = runner or StepRunner()
        self.logs = logs or NullLogManager()
        self.event_hook = event_hook
        self.results: list[TaskResult] = []
        self.errors: list[TaskExecutionError] = []
        self.cancelled: list[Task] = []
        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._statuses: TaskStatusCollection | None = None
        self._stop_reason: str | None = None
        self._fatal: BatchExecError | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def statuses(self) -> TaskStatusCollection:
        if self._statuses is None:
            raise RuntimeError("Executor has not been started.")
        return self._statuses

    def start(self, tasks: Sequence[Task], statuses: TaskStatusCollection) -> None:
        """Queue ``tasks`` and launch the workers. Needs a running event loop."""
        if self._workers:
            raise RuntimeError("Executor has already been started.")
        loop = asyncio.get_running_loop()
        self._statuses = statuses
        for task in tasks:
            statuses.add(task)
            self._queue.put_nowait(task)
        count = self.options.worker_count(len(tasks))
        self._emit({"event": "executor_start", "tasks": len(tasks), "workers": count})
        self._workers = [
            loop.create_task(self._worker(number), name=f"batchexec-worker-{number}")
            for number in range(count)
        ]

    async def wait(self) -> list[TaskResult]:
        """Wait for every worker; raise ExecutionErrors if a task failed.

        With ``skip_errors`` task failures are only recorded in ``errors``,
        except for a process that could not be terminated, which is always
        raised.
        """
        if self._statuses is None:
            raise RuntimeError("Executor has not been started.")
        try:
            outcomes = await asyncio.gather(*self._workers, return_exceptions=True)
        except asyncio.CancelledError:
            self.stop("execution was cancelled")
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._drain_queue()
            raise
        self._drain_queue()

        for outcome in outcomes:
            if isinstance(outcome, Exception):
                raise outcome

        self._emit(
            {
                "event": "executor_done",
                "completed": len(self.results),
                "failed": len(self.errors),
                "cancelled": len(self.cancelled),
            }
        )
        if self.errors and (self._fatal is not None or not self.options.skip_errors):
            raise ExecutionErrors(self.errors, self.results)
        return list(self.results)

    def stop(self, reason: str) -> None:
        """Cancel every running task and leave queued tasks unstarted."""
        if self._stop_reason is None:
            self._stop_reason = reason
        current = asyncio.current_task()
        for worker in self._workers:
            if worker is not current and not worker.done():
                worker.cancel()

    def _drain_queue(self) -> None:
        while not self._queue.empty():
            self._mark_cancelled(self._queue.get_nowait())

    def _mark_cancelled(self, task: Task) -> None:
        reason = self._stop_reason or "execution was cancelled"
        self.cancelled.append(task)
        self.statuses.transition(
            task, TaskState.FAILED, error=TaskCancelledError(f"{task.display_name}: {reason}")
        )

    async def _worker(self, number: int) -> None:
        while self._stop_reason is None:
            try:
                task = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._execute(task)

    async def _execute(self, task: Task) -> None:
        log = self.logs.open(task)
        self.statuses.transition(
            task, TaskState.RUNNING, log_file=str(log.path) if log.path else None
        )
        self._emit({"event": "task_start", "task": task.key})
        timeout = self.options.timeout_seconds
        try:
            async with asyncio.timeout(timeout) as scope:
                result = await self._run_task(task, log)
        except asyncio.CancelledError:
            log.write("cancelled")
            self.logs.close(log, succeeded=False)
            self._mark_cancelled(task)
            raise
        except TimeoutError as exc:
            if timeout is not None and scope.expired():
                self._fail(task, ExecutionTimeoutError(timeout), log)
            else:
                self._fail(task, exc, log)
        except Exception as exc:
            self._fail(task, exc, log)
        else:
            self.results.append(result)
            self.logs.close(log, succeeded=True)
            self.statuses.transition(task, TaskState.COMPLETED, result=result)
            self._emit({"event": "task_completed", "task": task.key})

    async def _run_task(self, task: Task, log: TaskLog) -> TaskResult:
        workspace = await self.creator.create(task)
        try:
            context = await self.runner.run(
                task,
                workspace,
                log=log,
                on_event=lambda event: self._on_step_event(task, event),
            )
            diff = await workspace.diff()
        finally:
            await workspace.close()
        return TaskResult(task=task, diff=diff, context=context)

    def _on_step_event(self, task: Task, event: dict[str, Any]) -> None:
        if event.get("event") == "step_started":
            description = f"step {event['step']}: {event['command']}"

            def _set_current(status: TaskStatus) -> None:
                status.currently_executing = description

            self.statuses.update(task, _set_current)
        self._emit(event)

    def _fail(self, task: Task, exc: BaseException, log: TaskLog) -> None:
        log.write(f"failed: {exc}")
        self.logs.close(log, succeeded=False)
        error = TaskExecutionError(
            task,
            exc,
            step_index=getattr(exc, "step_index", None),
            log_file=str(log.path) if log.path else None,
        )
        self.errors.append(error)
        self.statuses.transition(task, TaskState.FAILED, error=error)
        self._emit({"event": "task_failed", "task": task.key, "error": str(exc)})
        logger.info("%s", error)

        if isinstance(exc, ProcessTerminationError):
            self._fatal = exc
            self.stop(f"a process of {task.display_name} could not be terminated")
        elif self.options.fail_fast:
            self.stop(f"{task.display_name} failed")


def new_executor(
    options: ExecutorOptions,
    *,
    creator: WorkspaceCreator,
    runner: StepRunner | None = None,
    logs: TaskLogManager | None = None,
    event_hook: ExecutorEventHook | None = None,
) -> Executor:
    return Executor(options, creator=creator, runner=runner, logs=logs, event_hook=event_hook)


def executor_from_config(
    config: BatchExecConfig,
    *,
    source: ArchiveSource | None = None,
    runtime: ProcessRuntime | None = None,
    event_hook: ExecutorEventHook | None = None,
) -> Executor:
    """Wire a fetcher, workspace creator and log manager from configuration."""
    if source is None:
        if not config.archives.endpoint:
            raise ValueError("archives.endpoint must be set when no archive source is given.")
        source = HttpArchiveSource(
            config.archives.endpoint,
            access_token=config.archives.access_token or None,
            timeout_seconds=config.archives.timeout_seconds,
        )
    if runtime is None:
        runtime = LocalProcessRuntime(
            shell=config.process.shell,
            docker_binary=config.process.docker_binary,
            termination=TerminationPolicy(
                grace_period_seconds=config.process.grace_period_seconds,
                poll_interval_seconds=config.process.poll_interval_seconds,
                kill_deadline_seconds=config.process.kill_deadline_seconds,
            ),
        )
    fetcher = ArchiveFetcher(
        source,
        Path(config.archives.cache_dir),
        clean_archives=config.archives.clean_archives,
        fetch_ignore_files=config.archives.fetch_ignore_files,
        event_hook=event_hook,
    )
    creator = WorkspaceCreator(
        fetcher,
        runtime,
        temp_dir=Path(config.workspace.temp_dir) if config.workspace.temp_dir else None,
        keep_workspaces=config.workspace.keep_workspaces,
    )
    logs = TaskLogManager(
        Path(config.logs.directory) if config.logs.directory else None,
        keep_logs=config.logs.keep_logs,
    )
    return new_executor(
        ExecutorOptions.from_config(config),
        creator=creator,
        logs=logs,
        event_hook=event_hook,
    )
