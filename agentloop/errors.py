"""Shared error types for the agentloop package.

Errors that reach the user carry a stable code (``E0xx``) and an actionable
suggestion, so the CLI can print something more useful than a traceback.
"""

import re
from enum import Enum

from pydantic import ValidationError


class ErrorCode(str, Enum):
    """Stable error codes shown to the user."""

    CONFIG_NOT_FOUND = "E001"
    CONFIG_INVALID_JSON = "E002"
    CONFIG_VALIDATION_FAILED = "E003"
    PRD_NOT_FOUND = "E010"
    PRD_INVALID_FORMAT = "E011"
    PRD_NO_TASKS = "E012"
    PRD_TASK_NOT_FOUND = "E013"
    AGENT_NOT_FOUND = "E020"
    AGENT_NOT_EXECUTABLE = "E021"
    AGENT_TIMEOUT = "E022"
    AGENT_STUCK = "E023"
    AGENT_AUTH_FAILED = "E024"
    AGENT_PERMISSION_DENIED = "E025"
    AGENT_MAX_RETRIES = "E026"
    SESSION_NOT_FOUND = "E030"
    SESSION_CORRUPTED = "E031"
    SESSION_ALREADY_RUNNING = "E032"
    SESSION_WRITE_FAILED = "E033"
    DEPENDENCY_INVALID = "E040"
    BRANCH_MODE_INVALID = "E050"
    UNKNOWN = "E999"


ERROR_SUGGESTIONS: dict[ErrorCode, str] = {
    ErrorCode.CONFIG_NOT_FOUND: (
        "Create .agentloop/config.json or rely on the built-in defaults."
    ),
    ErrorCode.CONFIG_INVALID_JSON: (
        "Check your config file for syntax errors. Use a JSON validator to find issues."
    ),
    ErrorCode.CONFIG_VALIDATION_FAILED: (
        "Review the validation errors above and fix the invalid fields in your config file."
    ),
    ErrorCode.PRD_NOT_FOUND: (
        "Create a task list at .agentloop/prd.json with a project name and tasks."
    ),
    ErrorCode.PRD_INVALID_FORMAT: (
        "Check your task list for syntax errors and make sure every task has a title."
    ),
    ErrorCode.PRD_NO_TASKS: (
        "Add tasks to your task list. Each task needs a 'title' and optionally "
        "'description' and 'steps'."
    ),
    ErrorCode.PRD_TASK_NOT_FOUND: (
        "Check the task identifier. Use 'agentloop status' to see available tasks."
    ),
    ErrorCode.AGENT_NOT_FOUND: (
        "Ensure the agent CLI is installed and on PATH, or set AGENTLOOP_AGENT_COMMAND."
    ),
    ErrorCode.AGENT_NOT_EXECUTABLE: (
        "Check file permissions for the agent executable. Try reinstalling the agent CLI."
    ),
    ErrorCode.AGENT_TIMEOUT: (
        "The agent took too long. Increase 'agent_timeout_ms' or break the task "
        "into smaller pieces."
    ),
    ErrorCode.AGENT_STUCK: (
        "The agent stopped producing output. Increase 'stuck_threshold_ms' or check "
        "whether the agent is waiting for input."
    ),
    ErrorCode.AGENT_AUTH_FAILED: (
        "Check your API key or authentication. Ensure you're logged in to the agent CLI."
    ),
    ErrorCode.AGENT_PERMISSION_DENIED: (
        "The agent lacks permissions. Check file/directory permissions."
    ),
    ErrorCode.AGENT_MAX_RETRIES: (
        "The agent failed repeatedly. Check the iteration logs for the root cause, "
        "or increase 'max_retries'."
    ),
    ErrorCode.SESSION_NOT_FOUND: (
        "No active session found. Run 'agentloop run' to start a new session."
    ),
    ErrorCode.SESSION_CORRUPTED: (
        "The session file is corrupted. Delete .agentloop/session.json and start "
        "a new session."
    ),
    ErrorCode.SESSION_ALREADY_RUNNING: (
        "An agentloop session is already running in this directory. Stop it first."
    ),
    ErrorCode.SESSION_WRITE_FAILED: (
        "The session could not be saved. Check disk space and permissions on the "
        "state directory."
    ),
    ErrorCode.DEPENDENCY_INVALID: (
        "Fix the task dependencies (missing ids or cycles) or run without --parallel."
    ),
    ErrorCode.BRANCH_MODE_INVALID: (
        "Commit or stash your changes before using branch mode, or disable it."
    ),
    ErrorCode.UNKNOWN: "An unexpected error occurred. Check the logs for more details.",
}


class AgentLoopError(Exception):
    """Base exception for agentloop errors.

    Use this for user-facing errors that should have actionable messages.
    """

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def suggestion(self) -> str | None:
        """Actionable suggestion for this error's code."""
        return ERROR_SUGGESTIONS.get(self.code)

    def format(self) -> str:
        """Format the error with its code and suggestion for display."""
        lines = [f"Error [{self.code.value}]: {self.message}"]
        if self.suggestion:
            lines.append("")
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)


class AgentError(AgentLoopError):
    """Raised for agent invocation failures that must end the session."""

    pass


class ConfigValidationError(AgentLoopError):
    """Raised when an on-disk record does not match its expected structure.

    Attributes:
        errors: One "field: problem" entry per offending field
    """

    def __init__(
        self,
        errors: list[str],
        source: str = "record",
        code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
    ) -> None:
        self.errors = errors
        self.source = source
        super().__init__(f"Invalid {source}: " + "; ".join(errors), code)

    @classmethod
    def from_pydantic(
        cls,
        exc: ValidationError,
        source: str = "record",
        code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
    ) -> "ConfigValidationError":
        """Build from a pydantic ValidationError, one entry per offending field.

        Args:
            exc: The pydantic validation error
            source: Human-readable name of the record being decoded
            code: Error code to attach

        Returns:
            ConfigValidationError listing "field.path: message" entries
        """
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "<root>"
            errors.append(f"{location}: {error['msg']}")
        return cls(errors, source=source, code=code)


class SessionPersistenceError(AgentLoopError):
    """Raised when the session record cannot be written or read back."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.SESSION_WRITE_FAILED)


class DependencyValidationError(AgentLoopError):
    """Raised when parallel mode is requested for an invalid dependency graph."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(
            "Invalid task dependencies: " + "; ".join(errors),
            ErrorCode.DEPENDENCY_INVALID,
        )


def categorize_agent_error(error_message: str, exit_code: int | None) -> ErrorCode:
    """Map an agent failure to the most specific error code.

    Args:
        error_message: Error text reported for the failed run
        exit_code: Process exit code, if the process exited

    Returns:
        The matching ErrorCode, UNKNOWN when nothing matches
    """
    if re.search(r"command not found", error_message, re.I) or exit_code == 127:
        return ErrorCode.AGENT_NOT_FOUND
    if re.search(r"not executable", error_message, re.I) or exit_code == 126:
        return ErrorCode.AGENT_NOT_EXECUTABLE
    if re.search(
        r"invalid api key|authentication failed|unauthorized|\bauth", error_message, re.I
    ):
        return ErrorCode.AGENT_AUTH_FAILED
    if re.search(r"permission denied|access denied|forbidden", error_message, re.I):
        return ErrorCode.AGENT_PERMISSION_DENIED
    if re.search(r"timeout|timed out", error_message, re.I):
        return ErrorCode.AGENT_TIMEOUT
    if re.search(r"stuck|no output", error_message, re.I):
        return ErrorCode.AGENT_STUCK
    return ErrorCode.UNKNOWN
