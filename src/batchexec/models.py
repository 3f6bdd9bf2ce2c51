from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Literal

OutputFormat = Literal["text", "lines"]


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class ValueKind(enum.Enum):
    STRING = "string"
    BOOL = "bool"
    LIST = "list"


@dataclass(frozen=True, slots=True)
class Value:
    """A template value: a string, a boolean or a sequence of strings."""

    kind: ValueKind
    string: str = ""
    boolean: bool = False
    items: tuple[str, ...] = ()

    @classmethod
    def of_string(cls, value: str) -> Value:
        return cls(ValueKind.STRING, string=value)

    @classmethod
    def of_bool(cls, value: bool) -> Value:
        return cls(ValueKind.BOOL, boolean=value)

    @classmethod
    def of_list(cls, values: list[str] | tuple[str, ...]) -> Value:
        return cls(ValueKind.LIST, items=tuple(values))

    def render(self) -> str:
        if self.kind is ValueKind.STRING:
            return self.string
        if self.kind is ValueKind.BOOL:
            return "true" if self.boolean else "false"
        return "[" + " ".join(self.items) + "]"

    def truthy(self) -> bool:
        if self.kind is ValueKind.STRING:
            return bool(self.string)
        if self.kind is ValueKind.BOOL:
            return self.boolean
        return bool(self.items)


@dataclass(frozen=True, slots=True)
class Repository:
    name: str
    revision: str = "HEAD"
    id: str = ""

    @property
    def identifier(self) -> str:
        return self.id or self.name


@dataclass(frozen=True, slots=True)
class BatchChangeAttributes:
    name: str = ""
    description: str = ""
    author_name: str = ""
    author_email: str = ""


@dataclass(frozen=True, slots=True)
class Output:
    value: str
    format: OutputFormat = "text"


@dataclass(frozen=True, slots=True)
class Step:
    """One command of a task, with its templated fields."""

    run: str
    container: str | None = None
    if_condition: str | None = None
    skip_condition: str | None = None
    outputs: dict[str, Output] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Task:
    """A (repository, path) target and the ordered steps to run against it."""

    repository: Repository
    path: str = ""
    steps: tuple[Step, ...] = ()
    batch_change: BatchChangeAttributes = field(default_factory=BatchChangeAttributes)

    @property
    def key(self) -> str:
        return f"{self.repository.identifier}@{self.repository.revision}:{self.path}"

    @property
    def display_name(self) -> str:
        if self.path:
            return f"{self.repository.name}/{self.path}"
        return self.repository.name


@dataclass(frozen=True, slots=True)
class ChangedFiles:
    added: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StepResult:
    """What a completed (or skipped) step recorded for later steps."""

    stdout: str = ""
    stderr: str = ""
    files: ChangedFiles = field(default_factory=ChangedFiles)
    skipped: bool = False


@dataclass(frozen=True, slots=True)
class StepContext:
    """Per-task evaluation context; each step produces a new instance."""

    repository: Repository
    path: str = ""
    batch_change: BatchChangeAttributes = field(default_factory=BatchChangeAttributes)
    steps: tuple[StepResult, ...] = ()
    outputs: tuple[tuple[str, Value], ...] = ()
    current: StepResult | None = None

    @classmethod
    def for_task(cls, task: Task) -> StepContext:
        return cls(repository=task.repository, path=task.path, batch_change=task.batch_change)

    @property
    def previous_step(self) -> StepResult | None:
        return self.steps[-1] if self.steps else None

    @property
    def outputs_map(self) -> dict[str, Value]:
        return dict(self.outputs)

    def bind_current(self, result: StepResult) -> StepContext:
        return replace(self, current=result)

    def with_step(self, result: StepResult, outputs: dict[str, Value] | None = None) -> StepContext:
        merged = self.outputs_map
        merged.update(outputs or {})
        return replace(
            self,
            steps=(*self.steps, result),
            outputs=tuple(merged.items()),
            current=None,
        )


@dataclass(frozen=True, slots=True)
class TaskResult:
    task: Task
    diff: str
    context: StepContext


class TaskState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {TaskState.COMPLETED, TaskState.FAILED}


@dataclass(slots=True)
class TaskStatus:
    task: Task
    state: TaskState = TaskState.PENDING
    enqueued_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    currently_executing: str = ""
    log_file: str | None = None
    error: BaseException | None = None
    result: TaskResult | None = None

    def copy(self) -> TaskStatus:
        return replace(self)
