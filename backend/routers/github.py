# routers/github.py - GitHub account link and read-only repository proxy
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from auth import get_current_user, CurrentUser
from errors import BadRequest
from github_client import GitHubClient
from models import CamelModel, iso_now
from services import Services, get_services

router = APIRouter(prefix="/api/v1/github", tags=["GitHub"])


class ConnectRequest(CamelModel):
    access_token: str = Field(..., min_length=1)


async def github_for_user(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Yields a GitHubClient for the caller's stored token."""
    record = await services.store.get(f"users/{user.id}") or {}
    token = record.get("githubAccessToken")
    if not token:
        raise BadRequest("GitHub account not connected")
    async with services.github_factory(token) as client:
        yield client


# ============================================================
# ACCOUNT LINK
# ============================================================

@router.get("/status")
async def github_status(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    record = await services.store.get(f"users/{user.id}") or {}
    return {
        "connected": bool(record.get("githubAccessToken")),
        "profile": record.get("githubProfile"),
    }


@router.put("/connect")
async def connect_github(
    data: ConnectRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    async with services.github_factory(data.access_token) as client:
        profile = await client.get_authenticated_user()
    await services.store.update(f"users/{user.id}", {
        "githubAccessToken": data.access_token,
        "githubProfile": profile,
        "updatedAt": iso_now(),
    })
    return {"connected": True, "profile": profile}


@router.delete("/disconnect")
async def disconnect_github(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.store.update(f"users/{user.id}", {
        "githubAccessToken": None,
        "githubProfile": None,
        "updatedAt": iso_now(),
    })
    return {"connected": False}


# ============================================================
# REPOSITORIES
# ============================================================

@router.get("/repositories")
async def list_repositories(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=100, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.list_repositories(page=page, per_page=per_page)


@router.get("/repositories/search")
async def search_repositories(
    q: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.search_repositories(q, page=page, per_page=per_page)


@router.get("/repositories/{owner}/{repo}")
async def repository_info(owner: str, repo: str, github: GitHubClient = Depends(github_for_user)):
    return await github.get_repository(owner, repo)


@router.get("/repositories/{owner}/{repo}/branches")
async def list_branches(
    owner: str,
    repo: str,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.list_branches(owner, repo, page=page, per_page=per_page)


@router.get("/repositories/{owner}/{repo}/issues")
async def list_issues(
    owner: str,
    repo: str,
    state: str = Query(default="open", pattern=r"^(open|closed|all)$"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.list_issues(owner, repo, state=state, page=page, per_page=per_page)


@router.get("/repositories/{owner}/{repo}/issues/{number}")
async def get_issue(owner: str, repo: str, number: int, github: GitHubClient = Depends(github_for_user)):
    return await github.get_issue(owner, repo, number)


@router.get("/repositories/{owner}/{repo}/pulls")
async def list_pulls(
    owner: str,
    repo: str,
    state: str = Query(default="open", pattern=r"^(open|closed|all)$"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.list_pulls(owner, repo, state=state, page=page, per_page=per_page)


@router.get("/repositories/{owner}/{repo}/pulls/{number}")
async def get_pull(owner: str, repo: str, number: int, github: GitHubClient = Depends(github_for_user)):
    return await github.get_pull(owner, repo, number)


@router.get("/repositories/{owner}/{repo}/commits")
async def list_commits(
    owner: str,
    repo: str,
    sha: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100),
    github: GitHubClient = Depends(github_for_user),
):
    return await github.list_commits(owner, repo, sha=sha, page=page, per_page=per_page)


@router.get("/repositories/{owner}/{repo}/commits/{sha}")
async def get_commit(owner: str, repo: str, sha: str, github: GitHubClient = Depends(github_for_user)):
    return await github.get_commit(owner, repo, sha)
