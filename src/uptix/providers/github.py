"""GitHub branch and release resolvers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from uptix.config import DEFAULT_GITHUB_API_URL
from uptix.errors import ProviderError, ProviderErrorKind
from uptix.models import Declaration, DependencyKind, DependencyMetadata, LockEntry
from uptix.providers.base import json_body, send
from uptix.providers.prefetch import Prefetcher

logger = logging.getLogger(__name__)

RATE_LIMIT_HINT = "Set GITHUB_TOKEN to raise the GitHub API rate limit."


def version(tag: str) -> str:
    """Strip one leading ``v`` from a release tag: ``v2.0.1`` -> ``2.0.1``."""
    return tag[1:] if tag.startswith("v") else tag


@dataclass(slots=True)
class GithubApi:
    client: httpx.AsyncClient
    base_url: str = DEFAULT_GITHUB_API_URL
    token: str | None = None

    async def get(self, path: str, *, operation: str) -> httpx.Response:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = f"{self.base_url.rstrip('/')}{path}"
        response = await send(self.client, "GET", url, headers=headers, operation=operation)
        if _rate_limited(response):
            raise ProviderError(
                "GitHub API rate limit exceeded.",
                kind=ProviderErrorKind.RATE_LIMITED,
                hint=RATE_LIMIT_HINT,
                context={
                    "operation": operation,
                    "url": url,
                    "reset": response.headers.get("x-ratelimit-reset", ""),
                },
            )
        return response

    async def repository_exists(self, owner: str, repo: str) -> bool:
        response = await self.get(f"/repos/{owner}/{repo}", operation="github_repository")
        if response.status_code == 404:
            return False
        _raise_unexpected(response, operation="github_repository")
        return True


@dataclass(slots=True)
class GithubBranchResolver:
    api: GithubApi
    prefetcher: Prefetcher | None = None
    kind: DependencyKind = DependencyKind.GITHUB_BRANCH

    async def resolve(self, declaration: Declaration) -> LockEntry:
        owner = str(declaration.args["owner"])
        repo = str(declaration.args["repo"])
        branch = str(declaration.args["branch"])
        rev = await self.latest_commit(owner, repo, branch)
        lock = await _github_lock(declaration, rev, self.prefetcher)
        return LockEntry(
            lock=lock,
            metadata=DependencyMetadata(
                name=f"{owner}/{repo}",
                selected_version=branch,
                resolved_version=rev,
                dep_type=DependencyKind.GITHUB_BRANCH.value,
                description=f"GitHub branch {branch} of {owner}/{repo}",
            ),
        )

    async def latest_commit(self, owner: str, repo: str, branch: str) -> str:
        operation = "github_branch"
        response = await self.api.get(f"/repos/{owner}/{repo}/branches/{branch}", operation=operation)
        context = {"operation": operation, "repository": f"{owner}/{repo}", "branch": branch}
        if response.status_code == 404:
            message = _error_message(response)
            if "branch" in message.lower():
                raise ProviderError(
                    "Branch not found.",
                    kind=ProviderErrorKind.NOT_FOUND,
                    context=context,
                )
            raise ProviderError(
                "Repository not found.",
                kind=ProviderErrorKind.NOT_FOUND,
                hint="Private repositories need a GITHUB_TOKEN with read access.",
                context=context,
            )
        _raise_unexpected(response, operation=operation)
        body = json_body(response, operation=operation)
        sha = _dig(body, "commit", "sha")
        if not isinstance(sha, str) or not sha:
            raise ProviderError(
                "GitHub branch response did not contain a commit.",
                kind=ProviderErrorKind.UNREACHABLE,
                context=context,
            )
        return sha


@dataclass(slots=True)
class GithubReleaseResolver:
    api: GithubApi
    prefetcher: Prefetcher | None = None
    kind: DependencyKind = DependencyKind.GITHUB_RELEASE

    async def resolve(self, declaration: Declaration) -> LockEntry:
        owner = str(declaration.args["owner"])
        repo = str(declaration.args["repo"])
        tag = await self.latest_release(owner, repo)
        lock = await _github_lock(declaration, tag, self.prefetcher)
        return LockEntry(
            lock=lock,
            metadata=DependencyMetadata(
                name=f"{owner}/{repo}",
                selected_version="latest",
                resolved_version=tag,
                dep_type=DependencyKind.GITHUB_RELEASE.value,
                description=f"GitHub release from {owner}/{repo}",
            ),
        )

    async def latest_release(self, owner: str, repo: str) -> str:
        operation = "github_release"
        response = await self.api.get(f"/repos/{owner}/{repo}/releases/latest", operation=operation)
        context = {"operation": operation, "repository": f"{owner}/{repo}"}
        if response.status_code == 404:
            if await self.api.repository_exists(owner, repo):
                raise ProviderError(
                    "No published releases found.",
                    kind=ProviderErrorKind.NOT_FOUND,
                    hint="Track a branch with uptix.githubBranch instead.",
                    context=context,
                )
            raise ProviderError(
                "Repository not found.",
                kind=ProviderErrorKind.NOT_FOUND,
                hint="Private repositories need a GITHUB_TOKEN with read access.",
                context=context,
            )
        _raise_unexpected(response, operation=operation)
        body = json_body(response, operation=operation)
        tag = body.get("tag_name") if isinstance(body, dict) else None
        if not isinstance(tag, str) or not tag:
            raise ProviderError(
                "GitHub release response did not contain a tag.",
                kind=ProviderErrorKind.UNREACHABLE,
                context=context,
            )
        return tag


async def _github_lock(
    declaration: Declaration,
    rev: str,
    prefetcher: Prefetcher | None,
) -> dict[str, Any]:
    owner = str(declaration.args["owner"])
    repo = str(declaration.args["repo"])
    logger.debug("Locking %s/%s at %s", owner, repo, rev)
    lock: dict[str, Any] = {"owner": owner, "repo": repo, "rev": rev}
    if prefetcher is not None:
        lock["sha256"] = await prefetcher.prefetch_git(
            f"https://github.com/{owner}/{repo}/",
            rev,
            fetch_submodules=declaration.flag("fetchSubmodules"),
            deep_clone=declaration.flag("deepClone"),
            leave_dot_git=declaration.flag("leaveDotGit"),
        )
    for name in ("fetchSubmodules", "deepClone", "leaveDotGit"):
        if declaration.flag(name):
            lock[name] = True
    return lock


def _rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


def _raise_unexpected(response: httpx.Response, *, operation: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    kind = (
        ProviderErrorKind.AUTHENTICATION_FAILED
        if status in {401, 403}
        else ProviderErrorKind.UNREACHABLE
    )
    raise ProviderError(
        "GitHub API request failed.",
        kind=kind,
        context={
            "operation": operation,
            "url": str(response.request.url),
            "status": str(status),
            "message": _error_message(response),
        },
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    message = body.get("message") if isinstance(body, dict) else None
    return message if isinstance(message, str) else ""


def _dig(payload: Any, *path: str) -> Any:
    for name in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(name)
    return payload
