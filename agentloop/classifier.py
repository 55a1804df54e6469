"""Error classification for agent failures.

Two independent steps:

- classify_error() decides fatal vs retryable. Fatal errors end the session
  because retrying cannot fix them (missing binary, bad credentials).
- analyze_failure() labels a failure (build, test, network, ...) so the next
  retry's prompt can tell the agent what went wrong. It never changes the
  fatal/retryable decision.
"""

import re
from dataclasses import dataclass
from typing import Literal

from agentloop.errors import ERROR_SUGGESTIONS, ErrorCode, categorize_agent_error

ErrorCategory = Literal["fatal", "retryable"]

FailureCategory = Literal[
    "build_failure",
    "test_failure",
    "lint_error",
    "permission_error",
    "timeout",
    "stuck",
    "network_error",
    "syntax_error",
    "dependency_error",
    "unknown",
]

FATAL_ERROR_PATTERNS = [
    re.compile(r"permission denied", re.I),
    re.compile(r"command not found", re.I),
    re.compile(r"ENOENT", re.I),
    re.compile(r"no such file or directory", re.I),
    re.compile(r"invalid api key", re.I),
    re.compile(r"authentication failed", re.I),
    re.compile(r"unauthorized", re.I),
    re.compile(r"access denied", re.I),
    re.compile(r"forbidden", re.I),
]


@dataclass
class ErrorClassification:
    """Fatal/retryable verdict for a failed agent run.

    Attributes:
        category: "fatal" ends the session, "retryable" goes through backoff
        code: Most specific error code for the failure
        message: Human-readable message
        suggestion: Actionable hint for fatal errors
    """

    category: ErrorCategory
    code: ErrorCode
    message: str
    suggestion: str | None = None

    @property
    def is_fatal(self) -> bool:
        return self.category == "fatal"


def classify_error(error: str, exit_code: int | None) -> ErrorClassification:
    """Classify a failed agent run as fatal or retryable.

    Rules in order: fatal text pattern, exit code 127, exit code 126,
    exit code 1 (retryable), anything else (retryable).

    Args:
        error: Error text (usually stderr) of the failed run
        exit_code: Process exit code, None if the process never exited

    Returns:
        ErrorClassification with category, code and message
    """
    for pattern in FATAL_ERROR_PATTERNS:
        if pattern.search(error):
            code = categorize_agent_error(error, exit_code)
            if code not in (
                ErrorCode.AGENT_NOT_FOUND,
                ErrorCode.AGENT_NOT_EXECUTABLE,
                ErrorCode.AGENT_AUTH_FAILED,
                ErrorCode.AGENT_PERMISSION_DENIED,
            ):
                code = ErrorCode.AGENT_NOT_FOUND
            return ErrorClassification(
                category="fatal",
                code=code,
                message=error.strip(),
                suggestion=ERROR_SUGGESTIONS[code],
            )

    if exit_code == 127:
        return ErrorClassification(
            category="fatal",
            code=ErrorCode.AGENT_NOT_FOUND,
            message="Agent command not found",
            suggestion=ERROR_SUGGESTIONS[ErrorCode.AGENT_NOT_FOUND],
        )

    if exit_code == 126:
        return ErrorClassification(
            category="fatal",
            code=ErrorCode.AGENT_NOT_EXECUTABLE,
            message="Agent command not executable",
            suggestion=ERROR_SUGGESTIONS[ErrorCode.AGENT_NOT_EXECUTABLE],
        )

    code = categorize_agent_error(error, exit_code)
    if code not in (ErrorCode.AGENT_TIMEOUT, ErrorCode.AGENT_STUCK):
        code = ErrorCode.UNKNOWN
    return ErrorClassification(category="retryable", code=code, message=error.strip())


@dataclass
class FailureAnalysis:
    """Diagnosis of a failed attempt, used to steer the next retry.

    Attributes:
        category: Failure category label
        root_cause: Short description of what went wrong
        suggested_approach: One-line recommendation
        context_injection: Paragraph appended to the next prompt
        should_retry: Whether retrying is worthwhile
    """

    category: FailureCategory
    root_cause: str
    suggested_approach: str
    context_injection: str
    should_retry: bool = True


@dataclass
class _FailurePattern:
    pattern: re.Pattern[str]
    analysis: FailureAnalysis


# Order matters: the first matching pattern wins.
FAILURE_PATTERNS = [
    _FailurePattern(
        re.compile(r"error:?\s*ts\d+|typescript\s*error|type\s*error|cannot find module", re.I),
        FailureAnalysis(
            category="build_failure",
            root_cause="Type checking or compilation error",
            suggested_approach="Fix type errors before proceeding",
            context_injection=(
                "The previous attempt failed due to type errors. Before making changes, "
                "run the type checker or compiler to identify and fix all type errors. "
                "Pay close attention to type definitions and imports."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"build\s*(failed|error)|compilation\s*(failed|error)|cannot\s*compile", re.I),
        FailureAnalysis(
            category="build_failure",
            root_cause="Build process failed",
            suggested_approach="Run build command first and fix any errors",
            context_injection=(
                "The previous attempt resulted in a build failure. Before making any new "
                "changes, run the build command to see the current errors and fix them "
                "first. Ensure the codebase builds successfully before proceeding."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(
            r"tests?\s*(failed|failure)|assertion\s*(failed|error)|assertionerror|"
            r"expect.*to(be|equal|match)",
            re.I,
        ),
        FailureAnalysis(
            category="test_failure",
            root_cause="Test assertion failed",
            suggested_approach="Run tests first and fix failing tests",
            context_injection=(
                "The previous attempt caused test failures. Before continuing, run the "
                "test suite to identify which tests are failing. Fix the failing tests "
                "or update the implementation to make them pass."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"lint\s*(error|failed)|eslint|ruff|flake8|biome|prettier.*error", re.I),
        FailureAnalysis(
            category="lint_error",
            root_cause="Linting or formatting error",
            suggested_approach="Run linter and fix style issues",
            context_injection=(
                "The previous attempt had linting errors. Run the linter to see all "
                "issues and fix them. Follow the project's code style conventions."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"permission\s*denied|eacces|access\s*denied|forbidden", re.I),
        FailureAnalysis(
            category="permission_error",
            root_cause="File or directory permission error",
            suggested_approach="Check file permissions and ownership",
            context_injection=(
                "The previous attempt failed due to permission issues. Check if the "
                "files you're trying to modify have the correct permissions. You may "
                "need to use different files or directories."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"timeout|timed\s*out|exceeded.*time", re.I),
        FailureAnalysis(
            category="timeout",
            root_cause="Operation timed out",
            suggested_approach="Break task into smaller pieces",
            context_injection=(
                "The previous attempt timed out. The task may be too large to complete "
                "in one iteration. Focus on completing a smaller, more focused portion "
                "of the task. Consider breaking it into multiple commits."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"stuck|no\s*output|unresponsive", re.I),
        FailureAnalysis(
            category="stuck",
            root_cause="Agent became unresponsive",
            suggested_approach="Simplify the approach",
            context_injection=(
                "The previous attempt got stuck without producing output. Try a simpler "
                "approach. Avoid operations that might cause the agent to hang, such as "
                "interactive commands. Work incrementally."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(
            r"network\s*error|econnrefused|enotfound|socket\s*hang\s*up|fetch\s*failed|"
            r"connection\s*refused",
            re.I,
        ),
        FailureAnalysis(
            category="network_error",
            root_cause="Network connectivity issue",
            suggested_approach="Check network connectivity and retry",
            context_injection=(
                "The previous attempt failed due to network issues. This may be a "
                "transient error. If the task requires network access, ensure the "
                "required services are available."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(r"syntax\s*error|unexpected\s*token|parsing\s*error|invalid\s*syntax", re.I),
        FailureAnalysis(
            category="syntax_error",
            root_cause="Code syntax error",
            suggested_approach="Fix syntax errors in the code",
            context_injection=(
                "The previous attempt introduced syntax errors. Carefully review the "
                "code for missing brackets, quotes or indentation problems. Use the "
                "error message to locate the exact problem."
            ),
        ),
    ),
    _FailurePattern(
        re.compile(
            r"cannot\s*find\s*package|module\s*not\s*found|modulenotfounderror|"
            r"dependency.*not\s*found|npm\s*err|yarn\s*error|pip.*error",
            re.I,
        ),
        FailureAnalysis(
            category="dependency_error",
            root_cause="Missing or incompatible dependency",
            suggested_approach="Install missing dependencies",
            context_injection=(
                "The previous attempt failed due to missing dependencies. Check if all "
                "required packages are installed. Run the package manager install "
                "command if needed."
            ),
        ),
    ),
]


def analyze_failure(error: str, output: str, exit_code: int | None) -> FailureAnalysis:
    """Label a failed attempt by pattern-matching its error and output.

    Falls back to the exit code when no text pattern matches.

    Args:
        error: Error text of the failed attempt
        output: Agent output of the failed attempt
        exit_code: Process exit code, if any

    Returns:
        FailureAnalysis for the first matching pattern
    """
    combined_text = f"{error}\n{output}"
    for failure_pattern in FAILURE_PATTERNS:
        if failure_pattern.pattern.search(combined_text):
            analysis = failure_pattern.analysis
            return FailureAnalysis(
                category=analysis.category,
                root_cause=analysis.root_cause,
                suggested_approach=analysis.suggested_approach,
                context_injection=analysis.context_injection,
                should_retry=analysis.should_retry,
            )

    exit_code_analysis = _analyze_exit_code(exit_code)
    if exit_code_analysis is not None:
        return exit_code_analysis

    return FailureAnalysis(
        category="unknown",
        root_cause=error or "Unknown error occurred",
        suggested_approach="Review the error message and try a different approach",
        context_injection=(
            "The previous attempt failed. Review what went wrong and try a different "
            "approach. Check the error message for clues about the root cause."
        ),
    )


def _analyze_exit_code(exit_code: int | None) -> FailureAnalysis | None:
    if exit_code is None:
        return None

    if exit_code == 1:
        return FailureAnalysis(
            category="unknown",
            root_cause="General error (exit code 1)",
            suggested_approach="Check the output for specific error details",
            context_injection=(
                "The previous attempt failed with a general error. Carefully review any "
                "error messages and try to address the specific issue mentioned."
            ),
        )

    if exit_code == 2:
        return FailureAnalysis(
            category="syntax_error",
            root_cause="Misuse of command or syntax error (exit code 2)",
            suggested_approach="Check command syntax and arguments",
            context_injection=(
                "The previous attempt failed due to incorrect command usage or syntax. "
                "Verify the commands being used are correct."
            ),
        )

    # Shells report death-by-signal as 128 + N, asyncio as -N.
    if exit_code >= 128 or exit_code < 0:
        signal_number = exit_code - 128 if exit_code >= 128 else -exit_code
        return FailureAnalysis(
            category="unknown",
            root_cause=f"Process terminated by signal {signal_number}",
            suggested_approach="The process was forcefully terminated",
            context_injection=(
                f"The previous attempt was terminated by signal {signal_number}. This "
                "may indicate a timeout, memory issue, or external interruption. Try a "
                "simpler approach."
            ),
        )

    return None


def _ordinal(number: int) -> str:
    if number == 1:
        return "1st"
    if number == 2:
        return "2nd"
    if number == 3:
        return "3rd"
    return f"{number}th"


def generate_retry_context(analysis: FailureAnalysis, attempt_number: int) -> str:
    """Render the retry-context block appended to the next prompt.

    Args:
        analysis: Diagnosis of the failed attempt
        attempt_number: 1-based retry attempt number

    Returns:
        Markdown block describing the previous failure
    """
    category = analysis.category.replace("_", " ")
    return "\n".join(
        [
            f"## Retry Context ({_ordinal(attempt_number)} retry attempt)",
            f"**Previous failure:** {analysis.root_cause}",
            f"**Category:** {category}",
            f"**Recommended approach:** {analysis.suggested_approach}",
            analysis.context_injection,
            "IMPORTANT: Address the issue described above before proceeding with the "
            "task. Do not repeat the same mistake.",
        ]
    )
