"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest


@dataclass
class FakePrefetcher:
    """Stands in for nix-prefetch-git/nix-prefetch-docker and records calls."""

    git_hash: str = "sha256-git0000000000000000000000000000000000000000="
    docker_hash: str = "sha256-docker000000000000000000000000000000000000="
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def prefetch_git(
        self,
        url: str,
        rev: str,
        *,
        fetch_submodules: bool = False,
        deep_clone: bool = False,
        leave_dot_git: bool = False,
    ) -> str:
        self.calls.append(
            (
                "git",
                {
                    "url": url,
                    "rev": rev,
                    "fetch_submodules": fetch_submodules,
                    "deep_clone": deep_clone,
                    "leave_dot_git": leave_dot_git,
                },
            )
        )
        return self.git_hash

    async def prefetch_docker(
        self,
        image_name: str,
        image_digest: str,
        *,
        tag: str,
        platform: str,
    ) -> str:
        self.calls.append(
            (
                "docker",
                {"image_name": image_name, "image_digest": image_digest, "tag": tag, "platform": platform},
            )
        )
        return self.docker_hash


@pytest.fixture
def prefetcher() -> FakePrefetcher:
    return FakePrefetcher()


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real credentials and overrides out of the tests."""
    for name in (
        "GITHUB_TOKEN",
        "DOCKER_USERNAME",
        "DOCKER_PASSWORD",
        "DOCKER_CONFIG",
        "UPTIX_PLATFORM",
        "UPTIX_TIMEOUT",
        "UPTIX_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
