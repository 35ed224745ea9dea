# github_client.py - Read-only GitHub REST client
# Metadata is fetched fresh on every call; nothing here is persisted.

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from errors import (
    BadRequest, GitHubNotFound, GitHubUnauthorized, RateLimited,
    UpstreamError, UpstreamTimeout,
)

logger = logging.getLogger("taskboard.github")

GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_TIMEOUT_SECONDS = float(os.getenv("GITHUB_TIMEOUT_SECONDS", "10"))


def _user(data: Optional[dict]) -> Optional[dict]:
    if not data:
        return None
    return {"login": data.get("login"), "avatar_url": data.get("avatar_url")}


class GitHubClient:
    """Thin wrapper over the GitHub v3 API for one access token.

    Use as an async context manager so the underlying httpx client is closed.
    """

    def __init__(
        self,
        token: str,
        base_url: str = GITHUB_API_URL,
        timeout: float = GITHUB_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"GitHub timeout on {path}")
            raise UpstreamTimeout("GitHub did not respond in time") from e
        except httpx.HTTPError as e:
            logger.warning(f"GitHub request failed on {path}: {e}")
            raise UpstreamError("GitHub request failed") from e

        if resp.status_code == 404:
            raise GitHubNotFound(f"GitHub resource not found: {path}")
        if resp.status_code == 401:
            raise GitHubUnauthorized("GitHub token is invalid or revoked")
        if resp.status_code == 429 or (
            resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
        ):
            reset = resp.headers.get("x-ratelimit-reset")
            logger.warning(f"GitHub rate limit exceeded, resets at {reset}")
            raise RateLimited("GitHub API rate limit exceeded", {"reset": reset})
        if resp.status_code >= 400:
            raise UpstreamError(
                f"GitHub returned {resp.status_code}",
                {"status": resp.status_code, "path": path},
            )
        return resp.json()

    # ============================================================
    # ACCOUNT & REPOSITORIES
    # ============================================================

    async def get_authenticated_user(self) -> dict:
        data = await self._get("/user")
        return {
            "login": data.get("login"),
            "id": data.get("id"),
            "name": data.get("name"),
            "avatar_url": data.get("avatar_url"),
            "html_url": data.get("html_url"),
        }

    async def list_repositories(self, page: int = 1, per_page: int = 100) -> List[dict]:
        return await self._get(
            "/user/repos",
            {"type": "all", "sort": "updated", "page": page, "per_page": per_page},
        )

    async def search_repositories(self, query: str, page: int = 1, per_page: int = 30) -> dict:
        data = await self._get(
            "/search/repositories",
            {"q": query, "sort": "updated", "page": page, "per_page": per_page},
        )
        return {"total_count": data.get("total_count", 0), "items": data.get("items", [])}

    async def get_repository(self, owner: str, repo: str) -> dict:
        return await self._get(f"/repos/{owner}/{repo}")

    # ============================================================
    # REPOSITORY CONTENTS
    # ============================================================

    async def list_branches(self, owner: str, repo: str, page: int = 1, per_page: int = 30) -> List[dict]:
        data = await self._get(f"/repos/{owner}/{repo}/branches", {"page": page, "per_page": per_page})
        return [
            {
                "id": f"{owner}/{repo}/branch/{b['name']}",
                "name": b["name"],
                "commit": {"sha": b["commit"]["sha"], "url": b["commit"].get("url")},
                "html_url": f"https://github.com/{owner}/{repo}/tree/{b['name']}",
            }
            for b in data
        ]

    async def list_issues(self, owner: str, repo: str, state: str = "open", page: int = 1, per_page: int = 30) -> List[dict]:
        data = await self._get(
            f"/repos/{owner}/{repo}/issues",
            {"state": state, "page": page, "per_page": per_page},
        )
        # The issues endpoint also returns pull requests
        return [
            {
                "id": i["id"],
                "number": i["number"],
                "state": i["state"],
                "title": i["title"],
                "body": i.get("body"),
                "html_url": i.get("html_url"),
                "user": _user(i.get("user")),
                "created_at": i.get("created_at"),
                "updated_at": i.get("updated_at"),
            }
            for i in data
            if "pull_request" not in i
        ]

    async def get_issue(self, owner: str, repo: str, number: int) -> dict:
        return await self._get(f"/repos/{owner}/{repo}/issues/{number}")

    async def list_pulls(self, owner: str, repo: str, state: str = "open", page: int = 1, per_page: int = 30) -> List[dict]:
        data = await self._get(
            f"/repos/{owner}/{repo}/pulls",
            {"state": state, "page": page, "per_page": per_page},
        )
        return [
            {
                "id": p["id"],
                "number": p["number"],
                "state": p["state"],
                "title": p["title"],
                "body": p.get("body"),
                "html_url": p.get("html_url"),
                "user": _user(p.get("user")),
                "created_at": p.get("created_at"),
                "updated_at": p.get("updated_at"),
            }
            for p in data
        ]

    async def get_pull(self, owner: str, repo: str, number: int) -> dict:
        return await self._get(f"/repos/{owner}/{repo}/pulls/{number}")

    async def list_commits(
        self, owner: str, repo: str, sha: Optional[str] = None, page: int = 1, per_page: int = 30,
    ) -> List[dict]:
        params = {"page": page, "per_page": per_page}
        if sha:
            params["sha"] = sha
        data = await self._get(f"/repos/{owner}/{repo}/commits", params)
        return [
            {
                "sha": c["sha"],
                "message": c["commit"]["message"],
                "author": c["commit"].get("author"),
                "html_url": c.get("html_url"),
                "user": _user(c.get("author")),
            }
            for c in data
        ]

    async def get_commit(self, owner: str, repo: str, sha: str) -> dict:
        return await self._get(f"/repos/{owner}/{repo}/commits/{sha}")

    # ============================================================
    # ATTACHMENT METADATA
    # ============================================================

    async def get_attachment_metadata(self, owner: str, repo: str, kind: str, github_id: str) -> dict:
        """Summary used to render a task attachment (title, url, author, state)."""
        if kind == "branch":
            branch = await self._get(f"/repos/{owner}/{repo}/branches/{github_id}")
            commit = await self.get_commit(owner, repo, branch["commit"]["sha"])
            return {
                "type": "branch",
                "title": branch["name"],
                "url": f"https://github.com/{owner}/{repo}/tree/{branch['name']}",
                "author": _user(commit.get("author")),
                "lastCommit": {
                    "sha": commit["sha"],
                    "message": commit["commit"]["message"],
                    "date": commit["commit"]["author"]["date"],
                },
            }
        if kind == "commit":
            commit = await self.get_commit(owner, repo, github_id)
            return {
                "type": "commit",
                "sha": commit["sha"],
                "title": commit["commit"]["message"].split("\n")[0],
                "url": commit.get("html_url"),
                "author": _user(commit.get("author")),
                "date": commit["commit"]["author"]["date"],
            }
        if kind in ("issue", "pull_request"):
            if kind == "issue":
                item = await self.get_issue(owner, repo, int(github_id))
            else:
                item = await self.get_pull(owner, repo, int(github_id))
            return {
                "type": kind,
                "number": item["number"],
                "title": item["title"],
                "url": item.get("html_url"),
                "author": _user(item.get("user")),
                "state": item.get("state"),
                "createdAt": item.get("created_at"),
                "updatedAt": item.get("updated_at"),
            }
        raise BadRequest(f"Unsupported attachment type: {kind}")
