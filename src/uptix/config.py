"""Run settings and environment loading."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

LOCK_FILE_NAME = "uptix.lock"
DEFAULT_PLATFORM = "linux/amd64"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_NAMESPACES = ("uptix",)


@dataclass(frozen=True, slots=True)
class Settings:
    root: Path = field(default_factory=Path.cwd)
    lock_path: Path | None = None
    platform: str = DEFAULT_PLATFORM
    timeout: float = 30.0
    github_api_url: str = DEFAULT_GITHUB_API_URL
    github_token: str | None = None
    docker_username: str | None = None
    docker_password: str | None = None
    docker_config_path: Path | None = None
    namespaces: tuple[str, ...] = DEFAULT_NAMESPACES
    max_concurrency: int = 8
    prefetch: bool = True
    rate_limit_backoff: float = 2.0

    @property
    def lock_file(self) -> Path:
        return self.lock_path if self.lock_path is not None else self.root / LOCK_FILE_NAME

    @classmethod
    def from_env(
        cls,
        root: str | Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> Settings:
        """Build settings from environment variables, then apply overrides.

        Recognized variables: ``GITHUB_TOKEN``, ``DOCKER_USERNAME``,
        ``DOCKER_PASSWORD``, ``DOCKER_CONFIG`` (directory holding
        ``config.json``), ``UPTIX_PLATFORM`` and ``UPTIX_TIMEOUT``.
        """
        env = os.environ if environ is None else environ
        docker_config_dir = env.get("DOCKER_CONFIG")
        docker_config_path = (
            Path(docker_config_dir) / "config.json"
            if docker_config_dir
            else Path.home() / ".docker" / "config.json"
        )
        settings = cls(
            root=Path(root) if root is not None else Path.cwd(),
            platform=env.get("UPTIX_PLATFORM") or DEFAULT_PLATFORM,
            timeout=_float_env(env, "UPTIX_TIMEOUT", 30.0),
            github_token=env.get("GITHUB_TOKEN") or None,
            docker_username=env.get("DOCKER_USERNAME") or None,
            docker_password=env.get("DOCKER_PASSWORD") or None,
            docker_config_path=docker_config_path,
        )
        provided = {name: value for name, value in overrides.items() if value is not None}
        return replace(settings, **provided) if provided else settings


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


__all__ = ["DEFAULT_PLATFORM", "LOCK_FILE_NAME", "Settings"]
