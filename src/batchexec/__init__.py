from batchexec.config import BatchExecConfig, load_config, save_config
from batchexec.errors import (
    BatchExecError,
    ExecutionErrors,
    ExecutionTimeoutError,
    FetchError,
    LaunchError,
    ProcessTerminationError,
    StepExecutionError,
    TaskCancelledError,
    TaskExecutionError,
    TemplateError,
    WorkspaceError,
)
from batchexec.executor import Executor, ExecutorOptions, executor_from_config, new_executor
from batchexec.models import (
    BatchChangeAttributes,
    ChangedFiles,
    Output,
    Repository,
    Step,
    StepContext,
    StepResult,
    Task,
    TaskResult,
    TaskState,
    TaskStatus,
    Value,
)
from batchexec.status import TaskStatusCollection

__version__ = "0.1.0"

__all__ = [
    "BatchChangeAttributes",
    "BatchExecConfig",
    "BatchExecError",
    "ChangedFiles",
    "ExecutionErrors",
    "ExecutionTimeoutError",
    "Executor",
    "ExecutorOptions",
    "FetchError",
    "LaunchError",
    "Output",
    "ProcessTerminationError",
    "Repository",
    "Step",
    "StepContext",
    "StepExecutionError",
    "StepResult",
    "Task",
    "TaskCancelledError",
    "TaskExecutionError",
    "TaskResult",
    "TaskState",
    "TaskStatus",
    "TaskStatusCollection",
    "TemplateError",
    "Value",
    "WorkspaceError",
    "__version__",
    "executor_from_config",
    "load_config",
    "new_executor",
    "save_config",
]
