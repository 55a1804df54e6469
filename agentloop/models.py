"""Data models for agentloop.

Records kept on disk are pydantic models so that anything read back is
decoded strictly, failing with the list of offending fields. On disk their
keys are camelCase; snake_case keys are accepted when reading. Runtime
results that never touch disk on their own are plain dataclasses.
"""

from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from agentloop.errors import ConfigValidationError, ErrorCode

M = TypeVar("M", bound=BaseModel)


def decode_record(
    model_type: type[M],
    data: Any,
    source: str,
    code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
) -> M:
    """Validate raw JSON data against a model.

    Args:
        model_type: Pydantic model class to validate against
        data: Parsed JSON data
        source: Name of the record, used in error messages
        code: Error code to attach on failure

    Returns:
        A validated instance of model_type

    Raises:
        ConfigValidationError: Listing every offending field
    """
    try:
        return model_type.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError.from_pydantic(e, source=source, code=code) from e


class Record(BaseModel):
    """Base for records persisted as JSON with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize using the on-disk key names."""
        return self.model_dump(mode="json", by_alias=True)


class Task(Record):
    """A single work item in the task list.

    Identity is the ``id`` when present, the title otherwise (legacy lists).
    """

    id: str | None = Field(None, description="Stable task identifier")
    title: str = Field(..., min_length=1, description="Short task title")
    description: str = Field("", description="What needs to be done")
    steps: list[str] = Field(default_factory=list, description="Suggested steps")
    done: bool = Field(False, description="Whether the task is complete")
    depends_on: list[str] | None = Field(
        None, alias="dependsOn", description="Ids of tasks that must finish first"
    )

    @property
    def key(self) -> str:
        """Identity used for scheduling and execution tracking."""
        return self.id if self.id is not None else self.title


class TaskList(Record):
    """The task list (PRD) the agent works through."""

    project: str = Field(..., description="Project name")
    tasks: list[Task] = Field(default_factory=list, description="Ordered tasks")

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with on-disk key names, leaving out unset optional keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RetryContext(Record):
    """What was learned from one failed attempt before retrying."""

    attempt_number: int
    failure_category: str
    root_cause: str
    context_injected: bool


@dataclass
class AgentRunResult:
    """Result of running the agent, including its internal retries.

    ``is_complete`` is true only when the raw agent output contained the
    completion sentinel.
    """

    success: bool
    exit_code: int | None
    output: str
    is_complete: bool
    retry_count: int = 0
    error: str | None = None
    is_fatal: bool = False
    aborted: bool = False
    retry_contexts: list[RetryContext] = field(default_factory=list)
