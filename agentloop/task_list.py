"""Task list (PRD) persistence and queries.

The task list lives in a JSON file that the agent itself edits (it marks
tasks done), so it is read fresh from disk whenever the orchestrator needs
it and written back with a whole-file replace.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from agentloop.errors import ConfigValidationError, ErrorCode
from agentloop.models import Task, TaskList, decode_record

logger = logging.getLogger(__name__)

INSTRUCTIONS_FILE_NAME = "instructions.md"


def write_json_atomic(path: Path, data: object, indent: int | str = 2) -> None:
    """Write JSON to path by writing a temp file and renaming it into place.

    Raises:
        OSError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=indent)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class TaskListStore:
    """Loads and saves the task list file.

    Attributes:
        path: Location of the task list JSON file
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> TaskList | None:
        """Read the task list from disk.

        Returns:
            TaskList, or None if the file does not exist

        Raises:
            ConfigValidationError: If the file is not valid JSON or does not
                have the task list structure
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(self.path), code=ErrorCode.PRD_INVALID_FORMAT
            ) from e

        return decode_record(
            TaskList, data, source=str(self.path), code=ErrorCode.PRD_INVALID_FORMAT
        )

    def save(self, task_list: TaskList) -> None:
        """Write the task list, replacing the file atomically."""
        write_json_atomic(self.path, task_list.to_json_dict(), indent="\t")
        logger.debug(f"Saved task list with {len(task_list.tasks)} tasks to {self.path}")

    def load_instructions(self) -> str | None:
        """Read optional project instructions stored next to the task list."""
        instructions_path = self.path.parent / INSTRUCTIONS_FILE_NAME
        if not instructions_path.exists():
            return None
        return instructions_path.read_text()


def create_empty(project: str) -> TaskList:
    return TaskList(project=project, tasks=[])


def is_complete(task_list: TaskList) -> bool:
    """True when every task is done (vacuously true for an empty list)."""
    return all(task.done for task in task_list.tasks)


def has_pending_tasks(task_list: TaskList) -> bool:
    return any(not task.done for task in task_list.tasks)


def get_next_task(task_list: TaskList) -> str | None:
    """Title of the first task not yet done."""
    next_task = get_next_task_with_index(task_list)
    return next_task[0] if next_task is not None else None


def get_next_task_with_index(task_list: TaskList) -> tuple[str, int] | None:
    """Title and position of the first task not yet done.

    Returns:
        (title, index) tuple, or None if every task is done
    """
    for index, task in enumerate(task_list.tasks):
        if not task.done:
            return task.title, index
    return None


def get_current_task_index(task_list: TaskList) -> int:
    """Index of the first task not yet done, -1 if none."""
    next_task = get_next_task_with_index(task_list)
    return next_task[1] if next_task is not None else -1


def get_task_by_title(task_list: TaskList, title: str) -> Task | None:
    """Case-insensitive lookup by title."""
    normalized = title.lower()
    for task in task_list.tasks:
        if task.title.lower() == normalized:
            return task
    return None


def get_task_by_key(task_list: TaskList, key: str) -> Task | None:
    """Lookup by id, falling back to title for lists without ids."""
    for task in task_list.tasks:
        if task.key == key:
            return task
    return None


def count_completed(task_list: TaskList) -> int:
    return sum(1 for task in task_list.tasks if task.done)
