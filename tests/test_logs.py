import logging
from pathlib import Path

from batchexec.logs import NullLogManager, TaskLogManager, configure_logging
from batchexec.models import Repository, Task


def test_task_log_records_headers_and_output(tmp_path: Path) -> None:
    manager = TaskLogManager(tmp_path / "logs")
    log = manager.open(Task(repository=Repository("github.com/org/repo"), path="a/b"))

    log.write("step 1: gofmt -w .")
    log.output("stdout", "formatted main.go")
    manager.close(log, succeeded=False)

    assert log.path is not None
    assert log.path.name.startswith("batchexec-github.com-org-repo-a-b-")
    content = log.path.read_text(encoding="utf-8")
    assert "step 1: gofmt -w ." in content
    assert "stdout | formatted main.go" in content


def test_successful_logs_are_removed_unless_kept(tmp_path: Path) -> None:
    task = Task(repository=Repository("repoA"))
    removed = TaskLogManager(tmp_path / "removed")
    kept = TaskLogManager(tmp_path / "kept", keep_logs=True)

    first, second = removed.open(task), kept.open(task)
    removed.close(first, succeeded=True)
    kept.close(second, succeeded=True)

    assert first.path is not None and not first.path.exists()
    assert second.path is not None and second.path.exists()


def test_null_log_manager_discards_output() -> None:
    manager = NullLogManager()
    log = manager.open(Task(repository=Repository("repoA")))

    log.write("ignored")
    manager.close(log, succeeded=False)

    assert log.path is None


def test_configure_logging_sets_the_root_level() -> None:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    try:
        configure_logging("debug", force=True)
        assert root.level == logging.DEBUG
        configure_logging("not-a-level", force=True)
        assert root.level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)
