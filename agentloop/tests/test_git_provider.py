"""Tests for provider detection and GitHub pull requests."""

import json

import httpx
import pytest

from agentloop.git_provider import (
    GitHubProvider,
    PullRequestOptions,
    RemoteInfo,
    detect_provider,
    get_provider,
)

REMOTE = RemoteInfo(provider="github", owner="acme", repo="widgets", hostname="github.com")


def pr_response(number: int = 7, draft: bool = True) -> dict:
    return {
        "number": number,
        "html_url": f"https://github.com/acme/widgets/pull/{number}",
        "title": "Add login",
        "head": {"ref": "agentloop/task-1-add-login"},
        "base": {"ref": "main"},
        "draft": draft,
        "state": "open",
    }


def make_options(**overrides) -> PullRequestOptions:
    settings = {"title": "Add login", "head": "agentloop/task-1-add-login", "base": "main"}
    settings.update(overrides)
    return PullRequestOptions(**settings)


class TestDetectProvider:
    """Tests for detect_provider()."""

    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:acme/widgets.git",
            "git@github.com:acme/widgets",
            "https://github.com/acme/widgets.git",
            "https://github.com/acme/widgets",
        ],
    )
    def test_github_urls(self, url: str):
        remote = detect_provider(url)

        assert remote.provider == "github"
        assert (remote.owner, remote.repo) == ("acme", "widgets")

    def test_gitlab_and_bitbucket(self):
        assert detect_provider("git@gitlab.com:team/app.git").provider == "gitlab"
        assert detect_provider("https://bitbucket.org/team/app").provider == "bitbucket"

    def test_unknown_host(self):
        remote = detect_provider("https://git.internal.example/team/app.git")

        assert remote.provider == "none"
        assert remote.hostname == "git.internal.example"

    def test_get_provider_only_for_github(self):
        assert isinstance(get_provider(REMOTE, "token"), GitHubProvider)
        gitlab = RemoteInfo(provider="gitlab", owner="t", repo="a", hostname="gitlab.com")
        assert get_provider(gitlab, "token") is None


class TestCreatePullRequest:
    """Tests for GitHubProvider.create_pull_request()."""

    @pytest.mark.asyncio
    async def test_creates_pr_with_labels_and_reviewers(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/pulls"):
                return httpx.Response(201, json=pr_response())
            return httpx.Response(200, json={})

        provider = GitHubProvider(REMOTE, "secret", transport=httpx.MockTransport(handler))

        result = await provider.create_pull_request(
            make_options(draft=True, labels=["automated"], reviewers=["octocat"])
        )

        assert result.success
        assert result.pull_request.number == 7
        assert result.pull_request.draft is True
        assert [r.url.path for r in requests] == [
            "/repos/acme/widgets/pulls",
            "/repos/acme/widgets/issues/7/labels",
            "/repos/acme/widgets/pulls/7/requested_reviewers",
        ]
        assert requests[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(requests[0].content)["draft"] is True

    @pytest.mark.asyncio
    async def test_label_failure_still_succeeds(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/pulls"):
                return httpx.Response(201, json=pr_response())
            return httpx.Response(422, json={"message": "Validation Failed"})

        provider = GitHubProvider(REMOTE, "secret", transport=httpx.MockTransport(handler))

        result = await provider.create_pull_request(make_options(labels=["x"]))

        assert result.success

    @pytest.mark.asyncio
    async def test_api_error_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                422,
                json={
                    "message": "Validation Failed",
                    "errors": [{"message": "A pull request already exists"}],
                },
            )

        provider = GitHubProvider(REMOTE, "secret", transport=httpx.MockTransport(handler))

        result = await provider.create_pull_request(make_options())

        assert not result.success
        assert result.error == "Validation Failed: A pull request already exists"

    @pytest.mark.asyncio
    async def test_non_json_error(self):
        provider = GitHubProvider(
            REMOTE,
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad")),
        )

        result = await provider.create_pull_request(make_options())

        assert result.error == "HTTP 502: Bad Gateway"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        provider = GitHubProvider(REMOTE, "secret", transport=httpx.MockTransport(handler))

        result = await provider.create_pull_request(make_options())

        assert result.error == "GitHub API request timed out"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = GitHubProvider(REMOTE, "secret", transport=httpx.MockTransport(handler))

        result = await provider.create_pull_request(make_options())

        assert result.error.startswith("GitHub API request failed")

    @pytest.mark.asyncio
    async def test_missing_token(self):
        result = await GitHubProvider(REMOTE, None).create_pull_request(make_options())

        assert not result.success
        assert result.error == "GitHub token is not configured"
