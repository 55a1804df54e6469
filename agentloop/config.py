"""Configuration for agentloop.

Provides centralized configuration with sensible defaults, an optional JSON
config file and environment variable overrides for the agent command,
retry/timeout tuning, verification, branch mode and notifications.
"""

import json
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path

from pydantic import ConfigDict, TypeAdapter, ValidationError

from agentloop.errors import ConfigValidationError, ErrorCode

DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
]

CONFIG_FILE_NAME = "config.json"


@dataclass
class VerificationConfig:
    """Post-iteration build/lint/test checks.

    Attributes:
        enabled: Run checks after each iteration
        build_command: Shell command for the build check
        lint_command: Shell command for the lint check
        test_command: Shell command for the test check
        custom_checks: Extra shell commands, reported as custom-1, custom-2, ...
        timeout_seconds: Per-check timeout
    """

    __pydantic_config__ = ConfigDict(extra="forbid")

    enabled: bool = False
    build_command: str | None = None
    lint_command: str | None = None
    test_command: str | None = None
    custom_checks: list[str] = field(default_factory=list)
    timeout_seconds: int = 600


@dataclass
class BranchModeConfig:
    """Per-task git branch workflow settings."""

    __pydantic_config__ = ConfigDict(extra="forbid")

    enabled: bool = False
    branch_prefix: str = "agentloop"
    commit_after_task: bool = True
    push_after_commit: bool = True
    return_to_base_branch: bool = True


@dataclass
class GitProviderConfig:
    """Pull request creation settings."""

    __pydantic_config__ = ConfigDict(extra="forbid")

    auto_create_pr: bool = False
    pr_draft: bool = True
    pr_labels: list[str] = field(default_factory=list)
    pr_reviewers: list[str] = field(default_factory=list)
    github_token: str | None = field(default_factory=lambda: os.getenv("GITHUB_TOKEN"))
    github_api_url: str = "https://api.github.com"


@dataclass
class NotificationConfig:
    """Where session notifications are delivered."""

    __pydantic_config__ = ConfigDict(extra="forbid")

    system_notification: bool = False
    webhook_url: str | None = None
    marker_file_path: str | None = None


@dataclass
class LoopConfig:
    """Configuration for an agentloop run.

    All settings have sensible defaults. A JSON config file can override them
    and environment variables override both via the from_env() factory method.
    Durations are in milliseconds; 0 disables the agent timeout, the stall
    detector and the runtime budget.
    """

    __pydantic_config__ = ConfigDict(extra="forbid")

    # Agent invocation
    agent_command: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    max_retries: int = 3
    retry_delay_ms: int = 5000
    agent_timeout_ms: int = 30 * 60 * 1000
    stuck_threshold_ms: int = 5 * 60 * 1000
    max_output_history_bytes: int = 5 * 1024 * 1024
    output_throttle_ms: int = 0
    retry_with_context: bool = True

    # Loop
    iterations: int = 10
    iteration_delay_ms: int = 2000
    max_runtime_ms: int = 0
    full_mode: bool = False

    # Parallel execution
    parallel: bool = False
    max_concurrent_tasks: int = 2

    # Feedback handlers
    max_decompositions_per_task: int = 2
    learning_enabled: bool = True
    guardrails_enabled: bool = True
    technical_debt_review: bool = True
    verification: VerificationConfig = field(default_factory=VerificationConfig)

    # Git workflow
    branch_mode: BranchModeConfig = field(default_factory=BranchModeConfig)
    git_provider: GitProviderConfig = field(default_factory=GitProviderConfig)

    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "agentloop"

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path(".agentloop"))
    task_list_file: str = "prd.json"

    @property
    def task_list_path(self) -> Path:
        """Path of the task list (PRD) file."""
        return self.state_dir / self.task_list_file

    @classmethod
    def load(cls, path: Path) -> "LoopConfig":
        """Load config from a JSON file.

        A missing file is not an error; defaults are returned instead.

        Args:
            path: Path to the JSON config file

        Returns:
            LoopConfig with file values applied over defaults

        Raises:
            ConfigValidationError: If the file is not valid JSON or has
                unknown or mistyped fields
        """
        if not path.exists():
            return cls()

        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(path), code=ErrorCode.CONFIG_INVALID_JSON
            ) from e

        try:
            return TypeAdapter(cls).validate_python(data)
        except ValidationError as e:
            raise ConfigValidationError.from_pydantic(e, source=str(path)) from e

    @classmethod
    def from_env(cls, config_file: Path | None = None) -> "LoopConfig":
        """Load config with environment variable overrides.

        Environment variables:
            AGENTLOOP_STATE_DIR: Override state_dir (default: .agentloop)
            AGENTLOOP_AGENT_COMMAND: Agent command line, shell-quoted
            AGENTLOOP_MAX_RETRIES: Override max_retries (default: 3)
            AGENTLOOP_RETRY_DELAY_MS: Override retry_delay_ms (default: 5000)
            AGENTLOOP_AGENT_TIMEOUT_MS: Override agent_timeout_ms (default: 30 min)
            AGENTLOOP_STUCK_THRESHOLD_MS: Override stuck_threshold_ms (default: 5 min)
            AGENTLOOP_ITERATIONS: Override iterations (default: 10)
            AGENTLOOP_ITERATION_DELAY_MS: Override iteration_delay_ms (default: 2000)
            AGENTLOOP_MAX_RUNTIME_MS: Override max_runtime_ms (default: 0, disabled)
            AGENTLOOP_MAX_CONCURRENT_TASKS: Override max_concurrent_tasks (default: 2)
            AGENTLOOP_WEBHOOK_URL: Notification webhook URL
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)

        Args:
            config_file: JSON config file to load first. Defaults to
                config.json inside the state directory.
        """
        state_dir_env = os.getenv("AGENTLOOP_STATE_DIR")
        state_dir = Path(state_dir_env or ".agentloop")
        base = cls.load(config_file or state_dir / CONFIG_FILE_NAME)

        overrides: dict = {}
        if state_dir_env:
            overrides["state_dir"] = state_dir
        int_settings = {
            "AGENTLOOP_MAX_RETRIES": "max_retries",
            "AGENTLOOP_RETRY_DELAY_MS": "retry_delay_ms",
            "AGENTLOOP_AGENT_TIMEOUT_MS": "agent_timeout_ms",
            "AGENTLOOP_STUCK_THRESHOLD_MS": "stuck_threshold_ms",
            "AGENTLOOP_ITERATIONS": "iterations",
            "AGENTLOOP_ITERATION_DELAY_MS": "iteration_delay_ms",
            "AGENTLOOP_MAX_RUNTIME_MS": "max_runtime_ms",
            "AGENTLOOP_MAX_CONCURRENT_TASKS": "max_concurrent_tasks",
        }
        for env_name, attr in int_settings.items():
            value = os.getenv(env_name)
            if value is not None:
                overrides[attr] = int(value)

        agent_command = os.getenv("AGENTLOOP_AGENT_COMMAND")
        if agent_command:
            overrides["agent_command"] = shlex.split(agent_command)

        otlp_endpoint = os.getenv("OTLP_ENDPOINT")
        if otlp_endpoint:
            overrides["otlp_endpoint"] = otlp_endpoint

        webhook_url = os.getenv("AGENTLOOP_WEBHOOK_URL")
        if webhook_url:
            overrides["notifications"] = replace(
                base.notifications, webhook_url=webhook_url
            )

        return replace(base, **overrides)
