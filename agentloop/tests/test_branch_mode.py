"""Tests for the per-task branch workflow."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentloop.branch_mode import DIRTY_TREE_ERROR, BranchModeManager, generate_pr_body
from agentloop.config import BranchModeConfig, GitProviderConfig
from agentloop.events import BRANCH_CREATED, BRANCH_PR_CREATED, BRANCH_PR_FAILED, EventBus
from agentloop.git import BranchInfo, GitBranchService, GitResult, WorkingDirectoryStatus
from agentloop.git_provider import ProviderResult, PullRequest
from agentloop.models import Task, TaskList
from agentloop.progress import ProgressLog


def make_git(
    modified: list[str] | None = None, untracked: list[str] | None = None
) -> MagicMock:
    """Git service mock for a repository on main."""
    git = MagicMock(spec=GitBranchService)
    git.is_repository.return_value = True
    git.get_working_directory_status.return_value = WorkingDirectoryStatus(
        is_clean=not modified and not untracked,
        modified_files=modified or [],
        untracked_files=untracked or [],
    )
    git.get_branch_info.return_value = BranchInfo(
        current_branch="main", base_branch="main", has_remote=True, remote_name="origin"
    )
    git.create_and_checkout_task_branch.return_value = GitResult(
        "success", "Created and checked out branch", branch_name="agentloop/task-1-setup"
    )
    git.commit_changes.return_value = GitResult("success", "Changes committed successfully")
    git.push_branch.return_value = GitResult("success", "Pushed", branch_name="x")
    git.return_to_base_branch.return_value = GitResult("success", "Checked out branch: main")
    git.get_remote_url.return_value = "git@github.com:acme/widgets.git"
    return git


def make_manager(git: MagicMock, events: EventBus | None = None, **provider) -> BranchModeManager:
    return BranchModeManager(
        BranchModeConfig(enabled=True),
        GitProviderConfig(**provider),
        git=git,
        events=events,
    )


def make_task_list() -> TaskList:
    return TaskList(
        project="Demo", tasks=[Task(title="Setup", done=True), Task(title="Build")]
    )


class TestInitialize:
    """Tests for initialize()."""

    def test_disabled_is_always_valid(self):
        git = make_git(untracked=["x"])
        manager = BranchModeManager(BranchModeConfig(enabled=False), git=git)

        assert manager.initialize().is_valid
        git.get_working_directory_status.assert_not_called()

    def test_untracked_file_rejected(self):
        """An untracked file makes branch mode invalid and no branch is created."""
        git = make_git(untracked=["notes.txt"])
        manager = make_manager(git)

        result = manager.initialize()

        assert not result.is_valid
        assert "untracked" in result.error
        assert result.error == DIRTY_TREE_ERROR
        git.create_and_checkout_task_branch.assert_not_called()
        git.create_branch.assert_not_called()

    def test_not_a_repository(self):
        git = make_git()
        git.is_repository.return_value = False

        result = make_manager(git).initialize()

        assert result.error == "Not a git repository"

    def test_clean_tree_records_base_branch(self, tmp_path: Path):
        progress = ProgressLog(tmp_path)
        manager = BranchModeManager(
            BranchModeConfig(enabled=True), git=make_git(), progress_log=progress
        )

        assert manager.initialize().is_valid
        assert manager.base_branch == "main"
        assert "Base branch: main" in progress.path.read_text()


class TestTaskBranches:
    """Tests for creating and completing task branches."""

    def test_create_task_branch_emits_event(self):
        events = EventBus()
        seen = []
        events.on(BRANCH_CREATED, seen.append)
        manager = make_manager(make_git(), events)
        manager.initialize()

        result = manager.create_task_branch("Setup", 0)

        assert result.success
        assert manager.current_task_branch == "agentloop/task-1-setup"
        assert seen[0].branch_name == "agentloop/task-1-setup"
        assert seen[0].task_title == "Setup"

    def test_create_task_branch_failure(self):
        git = make_git()
        git.create_and_checkout_task_branch.return_value = GitResult(
            "error", "Failed", "fatal: bad ref", "agentloop/task-1-setup"
        )
        manager = make_manager(git)

        result = manager.create_task_branch("Setup", 0)

        assert not result.success
        assert result.error == "fatal: bad ref"
        assert manager.current_task_branch is None

    @pytest.mark.asyncio
    async def test_complete_task_commits_pushes_and_returns(self):
        git = make_git()
        manager = make_manager(git)
        manager.initialize()
        manager.create_task_branch("Setup", 0)

        result = await manager.complete_task(make_task_list(), "Setup")

        assert result.success
        assert result.pushed
        assert result.pr_url is None
        git.commit_changes.assert_called_once_with("agentloop: Setup")
        git.push_branch.assert_called_once_with("agentloop/task-1-setup")
        git.return_to_base_branch.assert_called_once_with("main")
        assert manager.current_task_branch is None

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_task(self):
        git = make_git()
        git.push_branch.return_value = GitResult("error", "Failed to push", "rejected")
        manager = make_manager(git)
        manager.initialize()
        manager.create_task_branch("Setup", 0)

        result = await manager.complete_task(make_task_list(), "Setup")

        assert result.success
        assert not result.pushed

    @pytest.mark.asyncio
    async def test_commit_failure_fails_task(self):
        git = make_git()
        git.commit_changes.return_value = GitResult("error", "Failed to commit", "hook failed")
        manager = make_manager(git)
        manager.initialize()
        manager.create_task_branch("Setup", 0)

        result = await manager.complete_task(make_task_list(), "Setup")

        assert not result.success
        assert result.error == "hook failed"
        git.return_to_base_branch.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_without_branch_is_noop(self):
        git = make_git()
        manager = make_manager(git)

        result = await manager.complete_task(make_task_list())

        assert result.success
        git.commit_changes.assert_not_called()


class TestPullRequests:
    """Tests for automatic pull requests."""

    @pytest.mark.asyncio
    async def test_pr_created_after_push(self):
        events = EventBus()
        created = []
        events.on(BRANCH_PR_CREATED, created.append)
        provider = MagicMock()
        provider.is_configured = True
        provider.create_pull_request = AsyncMock(
            return_value=ProviderResult(
                success=True,
                pull_request=PullRequest(
                    number=3,
                    url="https://github.com/acme/widgets/pull/3",
                    title="t",
                    head="agentloop/task-1-setup",
                    base="main",
                    draft=True,
                ),
            )
        )
        manager = make_manager(make_git(), events, auto_create_pr=True, github_token="t")
        manager.initialize()
        manager.create_task_branch("Setup", 0)

        with patch("agentloop.branch_mode.get_provider", return_value=provider):
            result = await manager.complete_task(make_task_list(), "Setup")

        assert result.pr_url == "https://github.com/acme/widgets/pull/3"
        assert created[0].pr_url == result.pr_url
        options = provider.create_pull_request.call_args.args[0]
        assert options.base == "main"
        assert options.head == "agentloop/task-1-setup"
        assert options.title == "[agentloop] Demo: agentloop/task-1-setup"

    @pytest.mark.asyncio
    async def test_missing_token_emits_failure(self):
        events = EventBus()
        failed = []
        events.on(BRANCH_PR_FAILED, failed.append)
        manager = make_manager(make_git(), events, auto_create_pr=True, github_token=None)
        manager.initialize()

        result = await manager.create_pull_request("agentloop/task-1-setup", make_task_list())

        assert not result.success
        assert result.error == "github token not configured"
        assert failed[0].error == result.error

    @pytest.mark.asyncio
    async def test_unsupported_provider(self):
        git = make_git()
        git.get_remote_url.return_value = "git@gitlab.com:acme/widgets.git"
        manager = make_manager(git, auto_create_pr=True, github_token="t")
        manager.initialize()

        result = await manager.create_pull_request("b", make_task_list())

        assert result.error == "gitlab provider not supported"

    @pytest.mark.asyncio
    async def test_uninitialized(self):
        result = await make_manager(make_git()).create_pull_request("b", None)

        assert result.error == "Branch mode not initialized"

    def test_pr_body_lists_completed_tasks(self):
        body = generate_pr_body(make_task_list(), "agentloop/task-1-setup")

        assert "**Demo**" in body
        assert "1 / 2 tasks completed." in body
        assert "- [x] Setup" in body
        assert "Build" not in body
