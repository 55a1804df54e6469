"""Task decomposition requests.

When a task is too large, the agent can ask for it to be split instead of
attempting it. It prints DECOMPOSITION_MARKER followed by a JSON payload
between DECOMPOSITION_START and DECOMPOSITION_END. The orchestrator replaces
the original task with the suggested subtasks, in place, and restarts the
iteration.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentloop.models import Task, TaskList

logger = logging.getLogger(__name__)

DECOMPOSITION_MARKER = "<request>DECOMPOSE_TASK</request>"
DECOMPOSITION_START = "<decomposition>"
DECOMPOSITION_END = "</decomposition>"


class DecompositionSubtask(BaseModel):
    """One suggested replacement task."""

    model_config = ConfigDict(strict=True)

    title: str
    description: str
    steps: list[str]

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class DecompositionRequest(BaseModel):
    """The agent's request to split a task."""

    model_config = ConfigDict(strict=True, populate_by_name=True)

    original_task_title: str = Field(..., alias="originalTaskTitle")
    reason: str
    suggested_subtasks: list[DecompositionSubtask] = Field(
        ..., alias="suggestedSubtasks", min_length=1
    )

    @field_validator("original_task_title", "reason")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


@dataclass
class DecompositionResult:
    """Outcome of scanning agent output for a decomposition request.

    Attributes:
        detected: The marker was present
        request: The parsed request, None if absent or malformed
        error: Why a detected request could not be parsed
    """

    detected: bool
    request: DecompositionRequest | None = None
    error: str | None = None


@dataclass
class ApplyDecompositionResult:
    success: bool
    task_list: TaskList | None = None
    subtasks_created: int = 0
    error: str | None = None


def parse_decomposition_request(output: str) -> DecompositionResult:
    """Find and parse a decomposition request in agent output.

    Args:
        output: Agent output text

    Returns:
        DecompositionResult; detected is False when there is no marker
    """
    if DECOMPOSITION_MARKER not in output:
        return DecompositionResult(detected=False)

    start_index = output.find(DECOMPOSITION_START)
    end_index = output.find(DECOMPOSITION_END)
    if start_index == -1 or end_index == -1 or start_index >= end_index:
        return DecompositionResult(
            detected=True,
            error="Decomposition marker found but JSON payload is missing or malformed",
        )

    json_content = output[start_index + len(DECOMPOSITION_START) : end_index].strip()
    try:
        data = json.loads(json_content)
    except json.JSONDecodeError as e:
        return DecompositionResult(
            detected=True, error=f"Failed to parse decomposition JSON: {e}"
        )

    try:
        request = DecompositionRequest.model_validate(data)
    except ValidationError as e:
        return DecompositionResult(
            detected=True,
            error=f"Invalid decomposition request structure: {e.error_count()} error(s)",
        )

    return DecompositionResult(detected=True, request=request)


def apply_decomposition(
    task_list: TaskList, request: DecompositionRequest
) -> ApplyDecompositionResult:
    """Replace the requested task with its subtasks, keeping its position.

    The original task is matched by title, case-insensitively. A task that
    is already done is never replaced. The input task list is not modified.
    """
    target = request.original_task_title.lower()
    original_index = next(
        (i for i, task in enumerate(task_list.tasks) if task.title.lower() == target),
        -1,
    )
    if original_index == -1:
        return ApplyDecompositionResult(
            success=False,
            error=f'Original task "{request.original_task_title}" not found in task list',
        )

    if task_list.tasks[original_index].done:
        return ApplyDecompositionResult(
            success=False,
            error=f'Original task "{request.original_task_title}" is already marked as done',
        )

    subtasks = [
        Task(title=subtask.title, description=subtask.description, steps=list(subtask.steps))
        for subtask in request.suggested_subtasks
    ]
    tasks = (
        task_list.tasks[:original_index] + subtasks + task_list.tasks[original_index + 1 :]
    )
    return ApplyDecompositionResult(
        success=True,
        task_list=task_list.model_copy(update={"tasks": tasks}),
        subtasks_created=len(subtasks),
    )


def format_decomposition_for_progress(request: DecompositionRequest) -> str:
    lines = [
        "=== Task Decomposition ===",
        f"Original task: {request.original_task_title}",
        f"Reason: {request.reason}",
        f"Subtasks created: {len(request.suggested_subtasks)}",
    ]
    for number, subtask in enumerate(request.suggested_subtasks, start=1):
        lines.append(f"  {number}. {subtask.title}")
    lines.append("")
    return "\n".join(lines)


class DecompositionHandler:
    """Applies decomposition requests, at most N times per task.

    Args:
        max_decompositions_per_task: Limit per original task title
        save_task_list: Persists the updated task list
        append_progress: Writes a summary to the progress log
        on_task_list_update: Called with the updated task list
        on_restart_iteration: Called to re-run the current iteration
    """

    def __init__(
        self,
        max_decompositions_per_task: int,
        save_task_list: Callable[[TaskList], None],
        append_progress: Callable[[str], None] | None = None,
        on_task_list_update: Callable[[TaskList], None] | None = None,
        on_restart_iteration: Callable[[], None] | None = None,
    ) -> None:
        self.max_decompositions_per_task = max_decompositions_per_task
        self.save_task_list = save_task_list
        self.append_progress = append_progress
        self.on_task_list_update = on_task_list_update
        self.on_restart_iteration = on_restart_iteration
        self._counts: dict[str, int] = {}

    def reset(self) -> None:
        self._counts = {}

    def decomposition_count(self, task_title: str) -> int:
        return self._counts.get(task_title.lower(), 0)

    def handle(self, request: DecompositionRequest, task_list: TaskList | None) -> bool:
        """Apply a decomposition request.

        Returns:
            True if the task list was updated and the iteration restarted
        """
        task_key = request.original_task_title.lower()
        current_count = self._counts.get(task_key, 0)

        if current_count >= self.max_decompositions_per_task:
            logger.warning(
                f"Max decompositions ({self.max_decompositions_per_task}) reached for "
                f"'{request.original_task_title}', proceeding without decomposition"
            )
            return False

        if task_list is None:
            logger.error("Cannot apply decomposition: task list not found")
            return False

        result = apply_decomposition(task_list, request)
        if not result.success or result.task_list is None:
            logger.error(f"Failed to apply decomposition: {result.error}")
            return False

        self.save_task_list(result.task_list)
        self._counts[task_key] = current_count + 1
        logger.info(
            f"Decomposed '{request.original_task_title}' into "
            f"{result.subtasks_created} subtasks: {request.reason}"
        )

        if self.append_progress is not None:
            self.append_progress(format_decomposition_for_progress(request))
        if self.on_task_list_update is not None:
            self.on_task_list_update(result.task_list)
        if self.on_restart_iteration is not None:
            self.on_restart_iteration()
        return True
