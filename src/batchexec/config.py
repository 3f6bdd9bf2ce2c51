from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ExecutorConfig:
    parallelism: int = 0
    timeout_seconds: float = 3600.0
    fail_fast: bool = False
    skip_errors: bool = False


@dataclass(slots=True)
class WorkspaceConfig:
    temp_dir: str = ""
    keep_workspaces: bool = False


@dataclass(slots=True)
class ArchivesConfig:
    endpoint: str = ""
    access_token: str = ""
    cache_dir: str = ".batchexec/cache"
    clean_archives: bool = False
    fetch_ignore_files: bool = True
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class ProcessConfig:
    shell: str = "/bin/sh"
    docker_binary: str = "docker"
    grace_period_seconds: float = 2.0
    poll_interval_seconds: float = 0.05
    kill_deadline_seconds: float = 10.0


@dataclass(slots=True)
class LogsConfig:
    directory: str = ""
    keep_logs: bool = False
    level: str = "WARNING"


@dataclass(slots=True)
class BatchExecConfig:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    archives: ArchivesConfig = field(default_factory=ArchivesConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)

    @classmethod
    def default(cls) -> BatchExecConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> BatchExecConfig:
        return cls(
            executor=ExecutorConfig(**data.get("executor", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            archives=ArchivesConfig(**data.get("archives", {})),
            process=ProcessConfig(**data.get("process", {})),
            logs=LogsConfig(**data.get("logs", {})),
        )

    def to_dict(self) -> dict:
        return {
            "executor": asdict(self.executor),
            "workspace": asdict(self.workspace),
            "archives": asdict(self.archives),
            "process": asdict(self.process),
            "logs": asdict(self.logs),
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if "." not in rendered:
            rendered = f"{rendered}.0"
        return rendered
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BatchExecConfig) -> str:
    lines: list[str] = []
    for section, values in config.to_dict().items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BatchExecConfig:
    if not path.exists():
        return BatchExecConfig.default()
    return BatchExecConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: BatchExecConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
