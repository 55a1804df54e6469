"""Git hosting provider detection and pull request creation.

Only GitHub can open pull requests. GitLab and Bitbucket remotes are
recognized so the branch workflow can report why a PR was skipped.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

import httpx

logger = logging.getLogger(__name__)

ProviderType = Literal["github", "gitlab", "bitbucket", "none"]

GITHUB_API_VERSION = "2022-11-28"
HTTP_TIMEOUT_SECONDS = 10.0

_PROVIDER_HOSTS: list[tuple[ProviderType, str]] = [
    ("github", "github.com"),
    ("gitlab", "gitlab.com"),
    ("bitbucket", "bitbucket.org"),
]


@dataclass
class RemoteInfo:
    provider: ProviderType
    owner: str
    repo: str
    hostname: str


@dataclass
class PullRequestOptions:
    title: str
    head: str
    base: str
    body: str = ""
    draft: bool = False
    labels: list[str] = field(default_factory=list)
    reviewers: list[str] = field(default_factory=list)


@dataclass
class PullRequest:
    number: int
    url: str
    title: str
    head: str
    base: str
    draft: bool
    state: str = "open"


@dataclass
class ProviderResult:
    """Outcome of a provider call. Exactly one of pull_request or error is set."""

    success: bool
    pull_request: PullRequest | None = None
    error: str | None = None


def _remote_patterns(hostname: str) -> tuple[re.Pattern, re.Pattern]:
    host = re.escape(hostname)
    ssh = re.compile(rf"^git@{host}:([^/]+)/(.+?)(?:\.git)?$")
    https = re.compile(rf"^https?://{host}/([^/]+)/(.+?)(?:\.git)?$")
    return ssh, https


def _extract_hostname(url: str) -> str:
    ssh_match = re.match(r"^git@([^:]+):", url)
    if ssh_match:
        return ssh_match.group(1)
    return httpx.URL(url).host if "://" in url else ""


def detect_provider(remote_url: str) -> RemoteInfo:
    """Identify the hosting provider and owner/repo of a remote URL.

    Recognizes ``git@host:owner/repo(.git)`` and
    ``https://host/owner/repo(.git)`` for github.com, gitlab.com and
    bitbucket.org. Anything else is provider "none".
    """
    url = remote_url.strip()
    for provider, hostname in _PROVIDER_HOSTS:
        for pattern in _remote_patterns(hostname):
            match = pattern.match(url)
            if match:
                return RemoteInfo(
                    provider=provider,
                    owner=match.group(1),
                    repo=match.group(2).removesuffix(".git"),
                    hostname=hostname,
                )

    try:
        hostname = _extract_hostname(url)
    except httpx.InvalidURL:
        hostname = ""
    return RemoteInfo(provider="none", owner="", repo="", hostname=hostname)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    message = body.get("message", f"HTTP {response.status_code}")
    details = [e.get("message") for e in body.get("errors", []) if e.get("message")]
    if details:
        message += f": {', '.join(details)}"
    return message


class GitHubProvider:
    """Pull request operations against the GitHub REST API.

    Args:
        remote: Owner and repository the PRs are opened against
        token: Personal access token, sent as a Bearer token
        api_url: API base URL (GitHub Enterprise uses its own)
        transport: Optional httpx transport, for tests
    """

    def __init__(
        self,
        remote: RemoteInfo,
        token: str | None,
        api_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.remote = remote
        self.token = token
        self.api_url = api_url.rstrip("/")
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._headers(),
            timeout=HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def create_pull_request(self, options: PullRequestOptions) -> ProviderResult:
        """Open a pull request, then add labels and reviewers.

        Label and reviewer failures are logged; the PR itself still counts as
        created.
        """
        if not self.is_configured:
            return ProviderResult(success=False, error="GitHub token is not configured")

        repo_path = f"/repos/{self.remote.owner}/{self.remote.repo}"
        payload = {
            "title": options.title,
            "body": options.body,
            "head": options.head,
            "base": options.base,
            "draft": options.draft,
        }

        try:
            async with self._client() as client:
                response = await client.post(f"{repo_path}/pulls", json=payload)
                if response.status_code >= 400:
                    return ProviderResult(success=False, error=_error_message(response))

                data = response.json()
                pull_request = PullRequest(
                    number=data["number"],
                    url=data["html_url"],
                    title=data["title"],
                    head=data["head"]["ref"],
                    base=data["base"]["ref"],
                    draft=data.get("draft", False),
                    state="merged" if data.get("merged") else data.get("state", "open"),
                )

                if options.labels:
                    await self._post_extra(
                        client,
                        f"{repo_path}/issues/{pull_request.number}/labels",
                        {"labels": options.labels},
                    )
                if options.reviewers:
                    await self._post_extra(
                        client,
                        f"{repo_path}/pulls/{pull_request.number}/requested_reviewers",
                        {"reviewers": options.reviewers},
                    )
        except httpx.TimeoutException:
            return ProviderResult(success=False, error="GitHub API request timed out")
        except httpx.HTTPError as e:
            return ProviderResult(success=False, error=f"GitHub API request failed: {e}")

        logger.info(f"Created pull request #{pull_request.number}: {pull_request.url}")
        return ProviderResult(success=True, pull_request=pull_request)

    async def _post_extra(self, client: httpx.AsyncClient, path: str, payload: dict) -> None:
        response = await client.post(path, json=payload)
        if response.status_code >= 400:
            logger.warning(f"GitHub request {path} failed: {_error_message(response)}")


def get_provider(
    remote: RemoteInfo, token: str | None, api_url: str = "https://api.github.com"
) -> GitHubProvider | None:
    """Provider able to open PRs for the remote, or None if unsupported."""
    if remote.provider != "github":
        return None
    return GitHubProvider(remote, token, api_url)
