"""Per-task git branch workflow.

With branch mode enabled each task runs on its own branch. After the task
succeeds its changes are committed, the branch is pushed, a pull request is
optionally opened and the working tree returns to the base branch.
"""

import logging
from dataclasses import dataclass

from agentloop.config import BranchModeConfig, GitProviderConfig
from agentloop.events import (
    BRANCH_CREATED,
    BRANCH_PR_CREATED,
    BRANCH_PR_FAILED,
    BranchEvent,
    EventBus,
)
from agentloop.git import GitBranchService
from agentloop.git_provider import PullRequestOptions, detect_provider, get_provider
from agentloop.models import TaskList
from agentloop.progress import ProgressLog

logger = logging.getLogger(__name__)

DIRTY_TREE_ERROR = (
    "Working directory has uncommitted or untracked changes. "
    "Please commit or stash changes before using branch mode."
)


@dataclass
class InitializeResult:
    is_valid: bool
    error: str | None = None


@dataclass
class BranchResult:
    success: bool
    branch_name: str | None = None
    error: str | None = None


@dataclass
class CompleteTaskResult:
    success: bool
    pushed: bool = False
    pr_url: str | None = None
    error: str | None = None


@dataclass
class PullRequestResult:
    success: bool
    pr_url: str | None = None
    error: str | None = None


def generate_pr_body(task_list: TaskList | None, branch_name: str) -> str:
    """Markdown body for an automatically created pull request."""
    lines = ["## Summary", ""]
    if task_list is not None and task_list.project:
        lines.append(f"Automated PR created by agentloop for project: **{task_list.project}**")
    else:
        lines.append("Automated PR created by agentloop.")
    lines += ["", f"Branch: `{branch_name}`"]

    if task_list is not None and task_list.tasks:
        completed = [task for task in task_list.tasks if task.done]
        lines += [
            "",
            "## Tasks Completed",
            "",
            f"{len(completed)} / {len(task_list.tasks)} tasks completed.",
            "",
        ]
        lines += [f"- [x] {task.title}" for task in completed]

    return "\n".join(lines)


class BranchModeManager:
    """Owns the base branch and the branch of the task in progress.

    Args:
        config: Branch mode settings; nothing happens unless enabled
        provider_config: Pull request settings
        git: Git service for the working directory
        events: Bus for branch:* events
        progress_log: Receives a line per branch operation
    """

    def __init__(
        self,
        config: BranchModeConfig,
        provider_config: GitProviderConfig | None = None,
        git: GitBranchService | None = None,
        events: EventBus | None = None,
        progress_log: ProgressLog | None = None,
    ) -> None:
        self.config = config
        self.provider_config = provider_config or GitProviderConfig()
        self.git = git or GitBranchService()
        self.events = events or EventBus()
        self.progress_log = progress_log
        self.base_branch: str | None = None
        self.current_task_branch: str | None = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def initialize(self) -> InitializeResult:
        """Check the working tree and remember the base branch.

        A dirty tree makes branch mode invalid; no branch is created.
        """
        if not self.enabled:
            return InitializeResult(is_valid=True)

        if not self.git.is_repository():
            return InitializeResult(is_valid=False, error="Not a git repository")

        status = self.git.get_working_directory_status()
        if not status.is_clean:
            logger.warning(
                f"Branch mode initialization failed: dirty working directory "
                f"(modified: {status.modified_files}, untracked: {status.untracked_files})"
            )
            return InitializeResult(is_valid=False, error=DIRTY_TREE_ERROR)

        info = self.git.get_branch_info()
        self.base_branch = info.current_branch
        logger.info(
            f"Branch mode initialized (base: {self.base_branch}, remote: {info.has_remote})"
        )
        self._progress(f"=== Branch Mode Enabled ===\nBase branch: {self.base_branch}\n")
        return InitializeResult(is_valid=True)

    def create_task_branch(self, task_title: str, task_index: int) -> BranchResult:
        """Check out the task's branch, creating it when needed."""
        if not self.enabled:
            return BranchResult(success=True)

        result = self.git.create_and_checkout_task_branch(
            task_title, task_index, self.config.branch_prefix
        )
        if result.status == "error":
            logger.error(f"Failed to create task branch for '{task_title}': {result.error}")
            return BranchResult(success=False, branch_name=result.branch_name, error=result.error)

        self.current_task_branch = result.branch_name
        logger.info(result.message)
        self._progress(f"Switched to branch: {self.current_task_branch}\n")
        self.events.emit(
            BRANCH_CREATED, BranchEvent(branch_name=result.branch_name or "", task_title=task_title)
        )
        return BranchResult(success=True, branch_name=result.branch_name)

    async def complete_task(
        self, task_list: TaskList | None, task_title: str | None = None
    ) -> CompleteTaskResult:
        """Commit, push, open a PR and return to the base branch.

        Push and PR failures are logged as warnings and do not fail the task.
        Only a failed commit or a failed return to the base branch does.
        """
        if not self.enabled or self.current_task_branch is None:
            return CompleteTaskResult(success=True)

        branch_name = self.current_task_branch

        if self.config.commit_after_task:
            message = f"agentloop: {task_title}" if task_title else f"agentloop: {branch_name}"
            commit = self.git.commit_changes(message)
            if commit.status == "error":
                logger.error(f"Failed to commit on {branch_name}: {commit.error}")
                return CompleteTaskResult(success=False, error=commit.error)
            self._progress(f"{commit.message}\n")

        pushed = False
        if self.config.push_after_commit:
            push = self.git.push_branch(branch_name)
            if push.status == "error":
                logger.warning(f"Failed to push branch {branch_name}: {push.error}")
                self._progress(f"Warning: Failed to push branch {branch_name}: {push.error}\n")
            elif push.status == "success":
                pushed = True
                self._progress(f"Pushed branch: {branch_name}\n")
            else:
                self._progress(f"Skipped push: {push.message}\n")

        pr_url = None
        if pushed and self.provider_config.auto_create_pr:
            pr = await self.create_pull_request(branch_name, task_list)
            pr_url = pr.pr_url

        if self.config.return_to_base_branch and self.base_branch:
            result = self.git.return_to_base_branch(self.base_branch)
            if result.status == "error":
                logger.error(f"Failed to return to base branch {self.base_branch}: {result.error}")
                return CompleteTaskResult(
                    success=False, pushed=pushed, pr_url=pr_url, error=result.error
                )
            self._progress(f"Returned to base branch: {self.base_branch}\n")

        self.current_task_branch = None
        return CompleteTaskResult(success=True, pushed=pushed, pr_url=pr_url)

    async def create_pull_request(
        self, branch_name: str, task_list: TaskList | None
    ) -> PullRequestResult:
        """Open a pull request from branch_name into the base branch."""
        result = await self._open_pull_request(branch_name, task_list)
        if result.success and result.pr_url:
            self.events.emit(
                BRANCH_PR_CREATED, BranchEvent(branch_name=branch_name, pr_url=result.pr_url)
            )
        elif not result.success:
            logger.warning(f"Pull request for {branch_name} not created: {result.error}")
            self.events.emit(
                BRANCH_PR_FAILED, BranchEvent(branch_name=branch_name, error=result.error)
            )
        return result

    async def _open_pull_request(
        self, branch_name: str, task_list: TaskList | None
    ) -> PullRequestResult:
        if self.base_branch is None:
            return PullRequestResult(success=False, error="Branch mode not initialized")

        remote_url = self.git.get_remote_url()
        if remote_url is None:
            return PullRequestResult(success=False, error="No remote URL configured")

        remote = detect_provider(remote_url)
        if remote.provider == "none":
            return PullRequestResult(
                success=False, error=f"Unknown git provider for remote: {remote_url}"
            )

        provider = get_provider(
            remote, self.provider_config.github_token, self.provider_config.github_api_url
        )
        if provider is None:
            return PullRequestResult(
                success=False, error=f"{remote.provider} provider not supported"
            )
        if not provider.is_configured:
            return PullRequestResult(success=False, error=f"{remote.provider} token not configured")

        title = (
            f"[agentloop] {task_list.project}: {branch_name}"
            if task_list is not None and task_list.project
            else f"[agentloop] {branch_name}"
        )
        result = await provider.create_pull_request(
            PullRequestOptions(
                title=title,
                body=generate_pr_body(task_list, branch_name),
                head=branch_name,
                base=self.base_branch,
                draft=self.provider_config.pr_draft,
                labels=list(self.provider_config.pr_labels),
                reviewers=list(self.provider_config.pr_reviewers),
            )
        )
        if not result.success or result.pull_request is None:
            return PullRequestResult(success=False, error=result.error)

        pr = result.pull_request
        self._progress(f"\n=== Pull Request Created ===\nPR #{pr.number}: {pr.url}\n")
        return PullRequestResult(success=True, pr_url=pr.url)

    def reset(self) -> None:
        self.base_branch = None
        self.current_task_branch = None

    def _progress(self, text: str) -> None:
        if self.progress_log is not None:
            self.progress_log.append(text)
