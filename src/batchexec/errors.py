from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from batchexec.models import Task, TaskResult

OUTPUT_TAIL_CHARS = 4000


def format_duration(seconds: float) -> str:
    """Render a duration the way Go's time.Duration prints it (100ms, 2.5s, 1m30s)."""
    if seconds < 1:
        millis = round(seconds * 1000, 3)
        if millis == int(millis):
            return f"{int(millis)}ms"
        return f"{millis:g}ms"
    if seconds < 60:
        return f"{seconds:g}s"
    minutes, rest = divmod(seconds, 60)
    if minutes < 60:
        return f"{int(minutes)}m{rest:g}s"
    hours, minutes = divmod(int(minutes), 60)
    return f"{hours}h{minutes}m{rest:g}s"


class BatchExecError(RuntimeError):
    """Base class for every error raised by the execution engine."""

    step_index: int | None = None


class FetchError(BatchExecError):
    """Raised when a repository archive cannot be retrieved."""

    def __init__(
        self,
        message: str,
        *,
        repository: str | None = None,
        revision: str | None = None,
        path: str | None = None,
        not_found: bool = False,
    ) -> None:
        super().__init__(message)
        self.repository = repository
        self.revision = revision
        self.path = path
        self.not_found = not_found


class WorkspaceError(BatchExecError):
    """Raised when a workspace cannot be prepared, inspected or diffed."""


class TemplateError(BatchExecError):
    """Raised when a template cannot be parsed or evaluated."""

    def __init__(self, message: str, *, expression: str | None = None) -> None:
        if expression is not None:
            message = f"{message} (in expression {expression!r})"
        super().__init__(message)
        self.expression = expression


class LaunchError(BatchExecError):
    """Raised when a process or container could not be started."""


class ProcessTerminationError(BatchExecError):
    """Raised when a process could not be confirmed exited after repeated signals."""

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class StepExecutionError(BatchExecError):
    """Raised when a step command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        step_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.step_index = step_index

    def __str__(self) -> str:
        lines = [super().__str__()]
        if self.step_index is not None:
            lines[0] = f"step {self.step_index}: {lines[0]}"
        lines.append(f"command: {self.command}")
        if self.stdout.strip():
            lines.append("standard output:")
            lines.append(self.stdout.strip()[-OUTPUT_TAIL_CHARS:])
        if self.stderr.strip():
            lines.append("standard error:")
            lines.append(self.stderr.strip()[-OUTPUT_TAIL_CHARS:])
        return "\n".join(lines)


class ExecutionTimeoutError(BatchExecError):
    """Raised when a task runs longer than the configured bound."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Timeout reached. Execution took longer than {format_duration(timeout_seconds)}."
        )
        self.timeout_seconds = timeout_seconds


class TaskExecutionError(BatchExecError):
    """A task-level failure, naming the task it belongs to."""

    def __init__(
        self,
        task: Task,
        cause: BaseException,
        *,
        step_index: int | None = None,
        log_file: str | None = None,
    ) -> None:
        self.task = task
        self.cause = cause
        self.step_index = step_index
        self.log_file = log_file
        super().__init__(self._render())

    def _render(self) -> str:
        target = self.task.repository.name
        if self.task.path:
            target = f"{target} (path {self.task.path})"
        message = f"execution in {target} failed: {self.cause}"
        if self.log_file:
            message = f"{message}\nlog file: {self.log_file}"
        return message


class ExecutionErrors(BatchExecError):
    """Aggregate raised by Executor.wait when one or more tasks failed."""

    def __init__(
        self,
        errors: list[TaskExecutionError],
        results: list[TaskResult] | None = None,
    ) -> None:
        self.errors = list(errors)
        self.results = list(results or [])
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            details = "\n".join(f"* {error}" for error in self.errors)
            message = f"{len(self.errors)} tasks failed:\n{details}"
        super().__init__(message)


class TaskCancelledError(BatchExecError):
    """Recorded for a task that was cancelled before it could finish."""
