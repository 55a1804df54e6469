"""Git operations for branch mode.

Every operation returns a GitResult with status success, skipped or error
instead of raising, so the branch workflow can decide which failures matter.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60
MAX_BRANCH_SLUG_LENGTH = 50

GitStatus = Literal["success", "skipped", "error"]


@dataclass
class GitResult:
    """Outcome of a git operation."""

    status: GitStatus
    message: str
    error: str | None = None
    branch_name: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class WorkingDirectoryStatus:
    is_clean: bool
    modified_files: list[str] = field(default_factory=list)
    untracked_files: list[str] = field(default_factory=list)

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self.modified_files)

    @property
    def has_untracked_files(self) -> bool:
        return bool(self.untracked_files)


@dataclass
class BranchInfo:
    current_branch: str
    base_branch: str
    has_remote: bool
    remote_name: str | None


def sanitize_branch_name(name: str) -> str:
    """Lowercase, replace anything outside [a-z0-9-] with '-', collapse and trim."""
    slug = re.sub(r"[^a-z0-9-]", "-", name.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:MAX_BRANCH_SLUG_LENGTH]


def generate_branch_name(task_title: str, task_index: int, prefix: str = "agentloop") -> str:
    """Branch name for a task, e.g. agentloop/task-3-add-login-form."""
    return f"{prefix}/task-{task_index + 1}-{sanitize_branch_name(task_title)}"


class GitBranchService:
    """Runs git in a working directory.

    Args:
        cwd: Repository directory (defaults to the process working directory)
    """

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def _git(self, *args: str) -> tuple[bool, str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return False, str(e)
        if result.returncode != 0:
            return False, (result.stderr or result.stdout).strip()
        return True, result.stdout.rstrip()

    def is_repository(self) -> bool:
        ok, output = self._git("rev-parse", "--is-inside-work-tree")
        return ok and output == "true"

    def get_current_branch(self) -> str | None:
        if not self.is_repository():
            return None
        ok, output = self._git("branch", "--show-current")
        if ok and output:
            return output
        ok, output = self._git("rev-parse", "--abbrev-ref", "HEAD")
        return output if ok else None

    def get_base_branch(self) -> str:
        """main if it exists, else master, else main."""
        for candidate in ("main", "master"):
            ok, _ = self._git("show-ref", "--verify", "--quiet", f"refs/heads/{candidate}")
            if ok:
                return candidate
        return "main"

    def get_remote_name(self) -> str | None:
        ok, output = self._git("remote")
        if not ok or not output:
            return None
        return output.splitlines()[0]

    def has_remote(self) -> bool:
        return self.get_remote_name() is not None

    def get_remote_url(self) -> str | None:
        remote = self.get_remote_name()
        if remote is None:
            return None
        ok, output = self._git("remote", "get-url", remote)
        return output if ok and output else None

    def get_working_directory_status(self) -> WorkingDirectoryStatus:
        ok, output = self._git("status", "--porcelain")
        if not ok:
            return WorkingDirectoryStatus(is_clean=False)

        modified, untracked = [], []
        for line in output.splitlines():
            if not line:
                continue
            if line.startswith("??"):
                untracked.append(line[3:])
            else:
                modified.append(line[3:])
        return WorkingDirectoryStatus(
            is_clean=not modified and not untracked,
            modified_files=modified,
            untracked_files=untracked,
        )

    def is_working_directory_clean(self) -> bool:
        return self.get_working_directory_status().is_clean

    def branch_exists(self, branch_name: str) -> bool:
        ok, _ = self._git("show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}")
        return ok

    def create_branch(self, branch_name: str) -> GitResult:
        ok, output = self._git("branch", branch_name)
        if not ok:
            return GitResult(
                "error", f"Failed to create branch: {branch_name}", output, branch_name
            )
        return GitResult("success", f"Created branch: {branch_name}", branch_name=branch_name)

    def checkout_branch(self, branch_name: str) -> GitResult:
        ok, output = self._git("checkout", branch_name)
        if not ok:
            return GitResult(
                "error", f"Failed to checkout branch: {branch_name}", output, branch_name
            )
        return GitResult("success", f"Checked out branch: {branch_name}", branch_name=branch_name)

    def delete_branch(self, branch_name: str) -> GitResult:
        ok, output = self._git("branch", "-d", branch_name)
        if not ok:
            return GitResult(
                "error", f"Failed to delete branch: {branch_name}", output, branch_name
            )
        return GitResult("success", f"Deleted branch: {branch_name}", branch_name=branch_name)

    def create_and_checkout_task_branch(
        self, task_title: str, task_index: int, prefix: str = "agentloop"
    ) -> GitResult:
        """Check out the task's branch, creating it if it does not exist."""
        if not self.is_repository():
            return GitResult(
                "error",
                "Not a git repository",
                "The current directory is not a git repository",
            )

        branch_name = generate_branch_name(task_title, task_index, prefix)
        if self.branch_exists(branch_name):
            return self.checkout_branch(branch_name)

        ok, output = self._git("checkout", "-b", branch_name)
        if not ok:
            return GitResult(
                "error",
                f"Failed to create and checkout branch: {branch_name}",
                output,
                branch_name,
            )
        return GitResult(
            "success", f"Created and checked out branch: {branch_name}", branch_name=branch_name
        )

    def commit_changes(self, message: str) -> GitResult:
        """Stage everything and commit. Nothing to commit is reported as skipped."""
        ok, output = self._git("add", "-A")
        if not ok:
            return GitResult("error", "Failed to stage changes", output)

        ok, output = self._git("commit", "-m", message)
        if not ok:
            if "nothing to commit" in output:
                return GitResult("skipped", "No changes to commit")
            return GitResult("error", "Failed to commit changes", output)
        return GitResult("success", "Changes committed successfully")

    def push_branch(self, branch_name: str) -> GitResult:
        remote = self.get_remote_name()
        if remote is None:
            return GitResult(
                "skipped", "No remote configured, skipping push", branch_name=branch_name
            )

        ok, output = self._git("push", "-u", remote, branch_name)
        if not ok:
            return GitResult("error", f"Failed to push branch: {branch_name}", output, branch_name)
        return GitResult(
            "success", f"Pushed branch to {remote}: {branch_name}", branch_name=branch_name
        )

    def return_to_base_branch(self, base_branch: str) -> GitResult:
        return self.checkout_branch(base_branch)

    def get_branch_info(self) -> BranchInfo:
        remote = self.get_remote_name()
        return BranchInfo(
            current_branch=self.get_current_branch() or "unknown",
            base_branch=self.get_base_branch(),
            has_remote=remote is not None,
            remote_name=remote,
        )
