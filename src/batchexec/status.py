from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from batchexec.models import Task, TaskState, TaskStatus

StatusListener = Callable[[TaskStatus], None]


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


_ALLOWED_TRANSITIONS = {
    TaskState.PENDING: {TaskState.RUNNING, TaskState.FAILED},
    TaskState.RUNNING: {TaskState.COMPLETED, TaskState.FAILED},
    TaskState.COMPLETED: set(),
    TaskState.FAILED: set(),
}


class TaskStatusCollection:
    """Registry of task statuses read by progress reporters.

    Only the executor mutates entries. Readers receive copies, so a status they
    hold never changes underneath them.
    """

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        *,
        listener: StatusListener | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, TaskStatus] = {}
        self._order: list[str] = []
        self.listener = listener
        for task in tasks:
            self.add(task)

    def add(self, task: Task) -> TaskStatus:
        with self._lock:
            status = self._statuses.get(task.key)
            if status is None:
                status = TaskStatus(task=task)
                self._statuses[task.key] = status
                self._order.append(task.key)
            return status.copy()

    def get(self, task: Task) -> TaskStatus:
        with self._lock:
            return self._require(task).copy()

    def _require(self, task: Task) -> TaskStatus:
        status = self._statuses.get(task.key)
        if status is None:
            raise KeyError(f"Unknown task: {task.key}")
        return status

    def update(self, task: Task, updater: Callable[[TaskStatus], None]) -> TaskStatus:
        with self._lock:
            status = self._require(task)
            updater(status)
            snapshot = status.copy()
        if self.listener is not None:
            self.listener(snapshot)
        return snapshot

    def transition(self, task: Task, state: TaskState, **changes: object) -> TaskStatus:
        def _apply(status: TaskStatus) -> None:
            if state is not status.state and state not in _ALLOWED_TRANSITIONS[status.state]:
                raise ValueError(
                    f"Illegal status transition for {task.key}: "
                    f"{status.state.value} -> {state.value}"
                )
            status.state = state
            if state is TaskState.RUNNING:
                status.started_at = _utcnow()
            if state.terminal:
                status.finished_at = _utcnow()
                status.currently_executing = ""
            for name, value in changes.items():
                setattr(status, name, value)

        return self.update(task, _apply)

    def snapshot(self) -> list[TaskStatus]:
        with self._lock:
            return [self._statuses[key].copy() for key in self._order]

    def copy_statuses(self, callback: Callable[[list[TaskStatus]], None]) -> None:
        callback(self.snapshot())

    def counts(self) -> dict[TaskState, int]:
        totals = {state: 0 for state in TaskState}
        for status in self.snapshot():
            totals[status.state] += 1
        return totals
