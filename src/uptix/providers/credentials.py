"""Registry credential lookup: environment first, then the Docker CLI config."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from uptix.models import DOCKER_HUB_REGISTRY

logger = logging.getLogger(__name__)

DOCKER_HUB_CONFIG_KEYS = frozenset(
    {"https://index.docker.io/v1/", "index.docker.io", "docker.io", DOCKER_HUB_REGISTRY}
)


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


def lookup_credentials(
    registry: str,
    *,
    username: str | None = None,
    password: str | None = None,
    config_path: Path | None = None,
) -> Credentials | None:
    """Find credentials for ``registry``.

    ``username``/``password`` come from the environment and only apply to
    Docker Hub. The Docker config file is read, never written.
    """
    if registry == DOCKER_HUB_REGISTRY and username and password:
        return Credentials(username=username, password=password)
    if config_path is None:
        return None
    return _from_docker_config(registry, config_path)


def _from_docker_config(registry: str, config_path: Path) -> Credentials | None:
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Ignoring unreadable Docker config %s: %s", config_path, exc)
        return None
    try:
        config = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring invalid Docker config %s: %s", config_path, exc)
        return None

    auths = config.get("auths") if isinstance(config, dict) else None
    if not isinstance(auths, dict):
        return None
    for key, entry in auths.items():
        if not isinstance(entry, dict) or not _same_registry(key, registry):
            continue
        credentials = _decode_entry(entry)
        if credentials is not None:
            return credentials
        logger.debug("Docker config entry for %s has no inline credentials", key)
    return None


def _same_registry(config_key: str, registry: str) -> bool:
    if registry == DOCKER_HUB_REGISTRY and config_key in DOCKER_HUB_CONFIG_KEYS:
        return True
    host = urlsplit(config_key).netloc if "://" in config_key else config_key.split("/", 1)[0]
    return host == registry


def _decode_entry(entry: dict[str, object]) -> Credentials | None:
    auth = entry.get("auth")
    if isinstance(auth, str) and auth:
        try:
            decoded = base64.b64decode(auth).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if sep and username:
            return Credentials(username=username, password=password)
        return None
    username = entry.get("username")
    password = entry.get("password")
    if isinstance(username, str) and isinstance(password, str) and username:
        return Credentials(username=username, password=password)
    return None
