"""Resolvers for each dependency kind."""

from __future__ import annotations

from typing import Any

import httpx

from uptix.config import Settings
from uptix.models import DependencyKind

from .base import Resolver, user_agent
from .credentials import Credentials, lookup_credentials
from .docker import DockerRegistryResolver, parse_challenge, select_platform_digest
from .github import GithubApi, GithubBranchResolver, GithubReleaseResolver, version
from .prefetch import NixPrefetcher, Prefetcher


def build_resolvers(
    settings: Settings,
    client: httpx.AsyncClient,
    prefetcher: Prefetcher | None = None,
    **docker_options: Any,
) -> dict[DependencyKind, Resolver]:
    """Build one resolver per dependency kind sharing ``client``.

    ``prefetcher`` is dropped when ``settings.prefetch`` is false so lock
    entries carry revisions only.
    """
    if not settings.prefetch:
        prefetcher = None
    api = GithubApi(client=client, base_url=settings.github_api_url, token=settings.github_token)
    docker = DockerRegistryResolver(
        client=client,
        platform=settings.platform,
        username=settings.docker_username,
        password=settings.docker_password,
        config_path=settings.docker_config_path,
        prefetcher=prefetcher,
        rate_limit_backoff=settings.rate_limit_backoff,
        **docker_options,
    )
    return {
        DependencyKind.DOCKER_IMAGE: docker,
        DependencyKind.GITHUB_BRANCH: GithubBranchResolver(api=api, prefetcher=prefetcher),
        DependencyKind.GITHUB_RELEASE: GithubReleaseResolver(api=api, prefetcher=prefetcher),
    }


__all__ = [
    "Credentials",
    "DockerRegistryResolver",
    "GithubApi",
    "GithubBranchResolver",
    "GithubReleaseResolver",
    "NixPrefetcher",
    "Prefetcher",
    "Resolver",
    "build_resolvers",
    "lookup_credentials",
    "parse_challenge",
    "select_platform_digest",
    "user_agent",
    "version",
]
