"""In-process publish/subscribe between the orchestrator and its observers.

Handlers run synchronously inside emit(), in subscription order. The CLI
subscribes to print progress; nothing in the orchestrator depends on who is
listening.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentloop.decomposition import DecompositionRequest
from agentloop.models import RetryContext

AGENT_START = "agent:start"
AGENT_COMPLETE = "agent:complete"
AGENT_ERROR = "agent:error"
AGENT_RETRY = "agent:retry"
AGENT_OUTPUT = "agent:output"
ITERATION_START = "iteration:start"
ITERATION_COMPLETE = "iteration:complete"
ITERATION_DELAY = "iteration:delay"
SESSION_START = "session:start"
SESSION_RESUME = "session:resume"
SESSION_STOP = "session:stop"
SESSION_COMPLETE = "session:complete"
PARALLEL_GROUP_START = "parallel:group_start"
PARALLEL_GROUP_COMPLETE = "parallel:group_complete"
PARALLEL_TASK_START = "parallel:task_start"
PARALLEL_TASK_COMPLETE = "parallel:task_complete"
BRANCH_CREATED = "branch:created"
BRANCH_PR_CREATED = "branch:pr_created"
BRANCH_PR_FAILED = "branch:pr_failed"

EVENT_NAMES = (
    AGENT_START,
    AGENT_COMPLETE,
    AGENT_ERROR,
    AGENT_RETRY,
    AGENT_OUTPUT,
    ITERATION_START,
    ITERATION_COMPLETE,
    ITERATION_DELAY,
    SESSION_START,
    SESSION_RESUME,
    SESSION_STOP,
    SESSION_COMPLETE,
    PARALLEL_GROUP_START,
    PARALLEL_GROUP_COMPLETE,
    PARALLEL_TASK_START,
    PARALLEL_TASK_COMPLETE,
    BRANCH_CREATED,
    BRANCH_PR_CREATED,
    BRANCH_PR_FAILED,
)


@dataclass
class AgentStartEvent:
    iteration: int
    process_id: str
    task_title: str | None = None


@dataclass
class AgentCompleteEvent:
    is_complete: bool
    exit_code: int | None
    output_length: int
    output_preview: str
    retry_count: int
    process_id: str = "default"
    retry_contexts: list[RetryContext] = field(default_factory=list)
    decomposition_request: DecompositionRequest | None = None

    @property
    def has_decomposition_request(self) -> bool:
        return self.decomposition_request is not None


@dataclass
class AgentErrorEvent:
    error: str
    exit_code: int | None
    is_fatal: bool
    process_id: str = "default"
    retry_contexts: list[RetryContext] = field(default_factory=list)


@dataclass
class AgentRetryEvent:
    attempt: int
    max_retries: int
    delay_ms: int
    error: str
    process_id: str = "default"


@dataclass
class AgentOutputEvent:
    text: str
    process_id: str = "default"


@dataclass
class IterationStartEvent:
    iteration: int
    total_iterations: int


@dataclass
class IterationCompleteEvent:
    iteration: int
    is_project_complete: bool


@dataclass
class IterationDelayEvent:
    iteration: int
    delay_ms: int


@dataclass
class SessionEvent:
    """Payload of every session:* event."""

    project_name: str
    total_iterations: int
    current_iteration: int = 0
    reason: str | None = None


@dataclass
class ParallelGroupEvent:
    group_index: int
    task_titles: list[str]
    completed: int = 0
    failed: int = 0


@dataclass
class ParallelTaskEvent:
    task_id: str
    task_title: str
    process_id: str
    success: bool | None = None
    error: str | None = None


@dataclass
class BranchEvent:
    branch_name: str
    task_title: str | None = None
    pr_url: str | None = None
    error: str | None = None


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous event emitter keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler.

        Returns:
            A function that unsubscribes the handler when called
        """
        handlers = self._handlers.setdefault(event_name, [])
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            self.off(event_name, handler)

        return unsubscribe

    def off(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, event: Any) -> None:
        """Call every handler subscribed to event_name with the payload.

        Handler exceptions propagate to the emitter.
        """
        for handler in list(self._handlers.get(event_name, [])):
            handler(event)

    def remove_all_listeners(self, event_name: str | None = None) -> None:
        if event_name is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event_name, None)

    def listener_count(self, event_name: str | None = None) -> int:
        if event_name is not None:
            return len(self._handlers.get(event_name, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def listener_stats(self) -> dict[str, int]:
        return {name: len(handlers) for name, handlers in self._handlers.items()}
