"""Tests for the GitHub client: error mapping and response shaping."""
import httpx
import pytest

from errors import (
    BadRequest, GitHubNotFound, GitHubUnauthorized, RateLimited,
    UpstreamError, UpstreamTimeout,
)
from github_client import GitHubClient

from tests.conftest import get_auth_headers


def _client(handler):
    return GitHubClient("gho_test", base_url="https://gh.test", transport=httpx.MockTransport(handler))


def _status(code, headers=None):
    def handler(request):
        return httpx.Response(code, json={"message": "x"}, headers=headers or {})
    return handler


@pytest.mark.asyncio
@pytest.mark.parametrize("code,headers,error", [
    (404, None, GitHubNotFound),
    (401, None, GitHubUnauthorized),
    (403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"}, RateLimited),
    (429, None, RateLimited),
    (403, {"x-ratelimit-remaining": "12"}, UpstreamError),
    (500, None, UpstreamError),
])
async def test_status_codes_map_to_typed_errors(code, headers, error):
    async with _client(_status(code, headers)) as github:
        with pytest.raises(error):
            await github.get_repository("octo", "app")


@pytest.mark.asyncio
async def test_rate_limit_carries_reset_time():
    async with _client(_status(403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"})) as github:
        with pytest.raises(RateLimited) as excinfo:
            await github.list_repositories()
    assert excinfo.value.details == {"reset": "1700000000"}
    assert excinfo.value.status_code == 429


@pytest.mark.asyncio
async def test_timeout_maps_to_upstream_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as github:
        with pytest.raises(UpstreamTimeout):
            await github.get_authenticated_user()


@pytest.mark.asyncio
async def test_connection_error_maps_to_upstream_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as github:
        with pytest.raises(UpstreamError):
            await github.get_authenticated_user()


@pytest.mark.asyncio
async def test_sends_token_and_accept_headers():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json={"login": "octocat", "id": 1})

    async with _client(handler) as github:
        user = await github.get_authenticated_user()
    assert user["login"] == "octocat"
    assert seen["authorization"] == "token gho_test"
    assert seen["accept"] == "application/vnd.github.v3+json"


@pytest.mark.asyncio
async def test_list_issues_excludes_pull_requests():
    def handler(request):
        return httpx.Response(200, json=[
            {"id": 1, "number": 1, "state": "open", "title": "Bug"},
            {"id": 2, "number": 2, "state": "open", "title": "Fix", "pull_request": {"url": "u"}},
        ])

    async with _client(handler) as github:
        issues = await github.list_issues("octo", "app")
    assert [i["number"] for i in issues] == [1]


@pytest.mark.asyncio
async def test_search_repositories_shape():
    def handler(request):
        assert request.url.params["q"] == "taskboard"
        return httpx.Response(200, json={"total_count": 1, "items": [{"full_name": "octo/taskboard"}]})

    async with _client(handler) as github:
        result = await github.search_repositories("taskboard")
    assert result == {"total_count": 1, "items": [{"full_name": "octo/taskboard"}]}


@pytest.mark.asyncio
async def test_commit_metadata_uses_first_message_line():
    def handler(request):
        return httpx.Response(200, json={
            "sha": "abc123",
            "html_url": "https://github.com/octo/app/commit/abc123",
            "author": {"login": "octocat", "avatar_url": "https://a/1"},
            "commit": {"message": "Fix crash\n\nLonger body", "author": {"date": "2024-01-01T00:00:00Z"}},
        })

    async with _client(handler) as github:
        metadata = await github.get_attachment_metadata("octo", "app", "commit", "abc123")
    assert metadata["title"] == "Fix crash"
    assert metadata["author"] == {"login": "octocat", "avatar_url": "https://a/1"}


@pytest.mark.asyncio
async def test_branch_metadata_follows_head_commit():
    def handler(request):
        if request.url.path.endswith("/branches/main"):
            return httpx.Response(200, json={"name": "main", "commit": {"sha": "def456"}})
        return httpx.Response(200, json={
            "sha": "def456",
            "author": None,
            "commit": {"message": "Release", "author": {"date": "2024-02-01T00:00:00Z"}},
        })

    async with _client(handler) as github:
        metadata = await github.get_attachment_metadata("octo", "app", "branch", "main")
    assert metadata["url"] == "https://github.com/octo/app/tree/main"
    assert metadata["lastCommit"]["sha"] == "def456"
    assert metadata["author"] is None


@pytest.mark.asyncio
async def test_unsupported_attachment_kind():
    async with _client(_status(200)) as github:
        with pytest.raises(BadRequest):
            await github.get_attachment_metadata("octo", "app", "gist", "1")


# ============================================================
# ROUTER
# ============================================================

def _fake_github(handler):
    def factory(token):
        assert token == "gho_linked"
        return GitHubClient(token, base_url="https://gh.test", transport=httpx.MockTransport(handler))
    return factory


def _github_api(request):
    if request.url.path == "/user":
        return httpx.Response(200, json={"login": "octocat", "id": 1, "name": "Octo"})
    if request.url.path == "/repos/octo/app/issues":
        return httpx.Response(200, json=[{"id": 1, "number": 3, "state": "open", "title": "Bug"}])
    return httpx.Response(404, json={"message": "Not Found"})


@pytest.mark.asyncio
async def test_connect_status_and_disconnect(client, services, owner):
    services.github_factory = _fake_github(_github_api)
    headers = get_auth_headers(owner)

    resp = await client.put("/api/v1/github/connect", json={"accessToken": "gho_linked"}, headers=headers)
    assert resp.json()["profile"]["login"] == "octocat"
    status = await client.get("/api/v1/github/status", headers=headers)
    assert status.json()["connected"] is True

    await client.delete("/api/v1/github/disconnect", headers=headers)
    assert (await client.get("/api/v1/github/status", headers=headers)).json()["connected"] is False


@pytest.mark.asyncio
async def test_proxy_requires_linked_account(client, owner):
    resp = await client.get("/api/v1/github/repositories", headers=get_auth_headers(owner))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_proxy_maps_upstream_errors(client, services, store, owner):
    services.github_factory = _fake_github(_github_api)
    await store.update(f"users/{owner['id']}", {"githubAccessToken": "gho_linked"})
    headers = get_auth_headers(owner)

    issues = await client.get("/api/v1/github/repositories/octo/app/issues", headers=headers)
    assert [i["number"] for i in issues.json()] == [3]

    missing = await client.get("/api/v1/github/repositories/octo/gone", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "upstream_not_found"
