from __future__ import annotations

from collections.abc import Callable
from typing import Any

from batchexec.errors import BatchExecError
from batchexec.logs import TaskLog
from batchexec.models import Output, Step, StepContext, StepResult, Task, Value, ValueKind
from batchexec.templating import evaluate_condition, evaluate_template, render_template
from batchexec.workspace import Workspace

StepEventHook = Callable[[dict[str, Any]], None]


def _output_value(output: Output, context: StepContext) -> Value:
    value = evaluate_template(output.value, context)
    if output.format == "lines" and value.kind is not ValueKind.LIST:
        return Value.of_list([line for line in value.render().splitlines() if line.strip()])
    return value


class StepRunner:
    """Runs a task's steps in order, threading a new context through each one.

    A step is skipped when its ``if_condition`` renders false or its
    ``skip_condition`` renders true. The first error ends the task.
    """

    def __init__(self, event_hook: StepEventHook | None = None) -> None:
        self.event_hook = event_hook

    def _emit(self, on_event: StepEventHook | None, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)
        if on_event:
            on_event(event)

    @staticmethod
    def should_run(step: Step, context: StepContext) -> bool:
        if step.if_condition is not None and not evaluate_condition(step.if_condition, context):
            return False
        if step.skip_condition is not None and evaluate_condition(step.skip_condition, context):
            return False
        return True

    async def run(
        self,
        task: Task,
        workspace: Workspace,
        *,
        log: TaskLog | None = None,
        on_event: StepEventHook | None = None,
    ) -> StepContext:
        context = StepContext.for_task(task)
        for index, step in enumerate(task.steps, start=1):
            try:
                context = await self.run_step(
                    index, step, workspace, context, log=log, on_event=on_event
                )
            except BatchExecError as exc:
                exc.step_index = index
                self._emit(
                    on_event,
                    {"event": "step_failed", "task": task.key, "step": index, "error": str(exc)},
                )
                raise
        return context

    async def run_step(
        self,
        index: int,
        step: Step,
        workspace: Workspace,
        context: StepContext,
        *,
        log: TaskLog | None = None,
        on_event: StepEventHook | None = None,
    ) -> StepContext:
        task_key = workspace.task.key
        if not self.should_run(step, context):
            if log is not None:
                log.write(f"step {index}: skipped")
            self._emit(on_event, {"event": "step_skipped", "task": task_key, "step": index})
            return context.with_step(StepResult(skipped=True))

        env = {name: render_template(value, context) for name, value in step.env.items()}
        command = render_template(step.run, context)
        if log is not None:
            log.write(f"step {index}: {command}")
        self._emit(
            on_event,
            {
                "event": "step_started",
                "task": task_key,
                "step": index,
                "command": command,
                "container": step.container,
            },
        )

        proc = await workspace.apply_step(
            command,
            image=step.container,
            env=env,
            on_output=log.output if log is not None else None,
        )
        files = await workspace.changed_files()
        result = StepResult(stdout=proc.stdout, stderr=proc.stderr, files=files)

        bound = context.bind_current(result)
        outputs = {name: _output_value(output, bound) for name, output in step.outputs.items()}
        self._emit(
            on_event,
            {
                "event": "step_finished",
                "task": task_key,
                "step": index,
                "added_files": list(files.added),
                "modified_files": list(files.modified),
                "deleted_files": list(files.deleted),
                "outputs": sorted(outputs),
            },
        )
        return context.with_step(result, outputs)
