"""Tests for the error hierarchy and error codes."""

import pytest
from pydantic import BaseModel, ValidationError

from agentloop.errors import (
    ERROR_SUGGESTIONS,
    AgentError,
    AgentLoopError,
    ConfigValidationError,
    DependencyValidationError,
    ErrorCode,
    SessionPersistenceError,
    categorize_agent_error,
)


class _Record(BaseModel):
    name: str
    count: int


class TestAgentLoopError:
    """Tests for the base exception."""

    def test_defaults_to_unknown_code(self):
        """Errors without a code are UNKNOWN."""
        error = AgentLoopError("boom")

        assert error.code == ErrorCode.UNKNOWN
        assert str(error) == "boom"

    def test_format_includes_code_and_suggestion(self):
        """format() shows the code and the actionable suggestion."""
        error = AgentLoopError("Task list not found", ErrorCode.PRD_NOT_FOUND)

        formatted = error.format()

        assert formatted.startswith("Error [E010]: Task list not found")
        assert f"Suggestion: {ERROR_SUGGESTIONS[ErrorCode.PRD_NOT_FOUND]}" in formatted

    def test_every_code_has_a_suggestion(self):
        """No error code is left without guidance."""
        assert set(ERROR_SUGGESTIONS) == set(ErrorCode)

    def test_hierarchy(self):
        """Every specific error is an AgentLoopError."""
        assert issubclass(AgentError, AgentLoopError)
        assert issubclass(ConfigValidationError, AgentLoopError)
        assert issubclass(SessionPersistenceError, AgentLoopError)
        assert issubclass(DependencyValidationError, AgentLoopError)


class TestConfigValidationError:
    """Tests for ConfigValidationError."""

    def test_from_pydantic_lists_each_field(self):
        """Each offending field becomes one entry."""
        with pytest.raises(ValidationError) as exc_info:
            _Record.model_validate({"count": "many"})

        error = ConfigValidationError.from_pydantic(exc_info.value, source="session.json")

        assert len(error.errors) == 2
        assert any(entry.startswith("name:") for entry in error.errors)
        assert any(entry.startswith("count:") for entry in error.errors)
        assert "Invalid session.json" in error.message
        assert error.code == ErrorCode.CONFIG_VALIDATION_FAILED

    def test_custom_code(self):
        """A custom error code is kept."""
        error = ConfigValidationError(["x: bad"], code=ErrorCode.SESSION_CORRUPTED)

        assert error.code == ErrorCode.SESSION_CORRUPTED


class TestSpecificErrors:
    """Tests for the remaining error types."""

    def test_session_persistence_error_code(self):
        assert SessionPersistenceError("disk full").code == ErrorCode.SESSION_WRITE_FAILED

    def test_dependency_validation_error(self):
        """The message joins every dependency problem."""
        error = DependencyValidationError(["cycle: a -> b -> a", "missing: c"])

        assert error.code == ErrorCode.DEPENDENCY_INVALID
        assert error.errors == ["cycle: a -> b -> a", "missing: c"]
        assert "cycle: a -> b -> a; missing: c" in error.message


class TestCategorizeAgentError:
    """Tests for categorize_agent_error()."""

    @pytest.mark.parametrize(
        ("message", "exit_code", "expected"),
        [
            ("claude: command not found", 1, ErrorCode.AGENT_NOT_FOUND),
            ("", 127, ErrorCode.AGENT_NOT_FOUND),
            ("file is not executable", 1, ErrorCode.AGENT_NOT_EXECUTABLE),
            ("", 126, ErrorCode.AGENT_NOT_EXECUTABLE),
            ("Invalid API key", 1, ErrorCode.AGENT_AUTH_FAILED),
            ("permission denied", 1, ErrorCode.AGENT_PERMISSION_DENIED),
            ("request timed out", None, ErrorCode.AGENT_TIMEOUT),
            ("agent stuck", None, ErrorCode.AGENT_STUCK),
            ("segfault", 139, ErrorCode.UNKNOWN),
        ],
    )
    def test_codes(self, message: str, exit_code: int | None, expected: ErrorCode):
        assert categorize_agent_error(message, exit_code) == expected
