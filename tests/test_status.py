import pytest

from batchexec.models import Repository, Task, TaskState, TaskStatus
from batchexec.status import TaskStatusCollection


def _task(name: str, path: str = "") -> Task:
    return Task(repository=Repository(name), path=path)


def test_tasks_start_pending_in_insertion_order() -> None:
    first, second = _task("repoA"), _task("repoB", "a/b")
    statuses = TaskStatusCollection([first, second])

    snapshot = statuses.snapshot()

    assert [status.task for status in snapshot] == [first, second]
    assert all(status.state is TaskState.PENDING for status in snapshot)
    assert statuses.counts()[TaskState.PENDING] == 2


def test_transitions_record_timestamps_and_clear_current_step() -> None:
    task = _task("repoA")
    statuses = TaskStatusCollection([task])

    running = statuses.transition(task, TaskState.RUNNING, log_file="/tmp/task.log")
    statuses.update(task, lambda status: setattr(status, "currently_executing", "step 1"))
    done = statuses.transition(task, TaskState.COMPLETED)

    assert running.started_at is not None
    assert running.log_file == "/tmp/task.log"
    assert done.finished_at is not None
    assert done.currently_executing == ""
    assert done.state.terminal


def test_illegal_transition_is_rejected() -> None:
    task = _task("repoA")
    statuses = TaskStatusCollection([task])
    statuses.transition(task, TaskState.RUNNING)
    statuses.transition(task, TaskState.FAILED, error=RuntimeError("boom"))

    with pytest.raises(ValueError, match="failed -> running"):
        statuses.transition(task, TaskState.RUNNING)


def test_readers_receive_copies() -> None:
    task = _task("repoA")
    statuses = TaskStatusCollection([task])
    held = statuses.get(task)

    statuses.transition(task, TaskState.RUNNING)

    assert held.state is TaskState.PENDING
    assert statuses.get(task).state is TaskState.RUNNING


def test_listener_and_copy_statuses() -> None:
    seen: list[TaskState] = []
    task = _task("repoA")
    statuses = TaskStatusCollection(listener=lambda status: seen.append(status.state))
    statuses.add(task)
    statuses.add(task)

    statuses.transition(task, TaskState.RUNNING)
    statuses.transition(task, TaskState.COMPLETED)

    copied: list[list[TaskStatus]] = []
    statuses.copy_statuses(copied.append)

    assert seen == [TaskState.RUNNING, TaskState.COMPLETED]
    assert len(copied[0]) == 1
    assert copied[0][0].state is TaskState.COMPLETED


def test_unknown_task_raises_key_error() -> None:
    statuses = TaskStatusCollection()

    with pytest.raises(KeyError):
        statuses.get(_task("missing"))
