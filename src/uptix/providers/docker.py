"""Docker registry resolver: tag to per-platform manifest digest.

Registries speak the distribution API: an anonymous manifest request either
succeeds or answers ``401`` with a ``WWW-Authenticate: Bearer`` challenge
naming the token service. The token is fetched (with credentials when we
have them) and the manifest request is retried exactly once.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from uptix.config import DEFAULT_PLATFORM
from uptix.errors import ProviderError, ProviderErrorKind
from uptix.models import (
    Declaration,
    DependencyKind,
    DependencyMetadata,
    DockerReference,
    LockEntry,
)
from uptix.providers.base import json_body, send
from uptix.providers.credentials import lookup_credentials
from uptix.providers.prefetch import Prefetcher

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MANIFEST_LIST_TYPES = frozenset({MANIFEST_LIST_V2, OCI_INDEX})
ACCEPT_MANIFESTS = ", ".join((MANIFEST_LIST_V2, OCI_INDEX, MANIFEST_V2, OCI_MANIFEST))
MAX_BACKOFF = 30.0
RATE_LIMIT_HINT = (
    "Set DOCKER_USERNAME/DOCKER_PASSWORD or run `docker login` to raise the registry pull limit."
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Challenge:
    scheme: str
    params: dict[str, str]


def parse_challenge(header: str) -> Challenge | None:
    scheme, _, rest = header.strip().partition(" ")
    if not scheme:
        return None
    return Challenge(scheme=scheme.lower(), params=dict(_CHALLENGE_PARAM.findall(rest)))


@dataclass(slots=True)
class DockerRegistryResolver:
    client: httpx.AsyncClient
    platform: str = DEFAULT_PLATFORM
    username: str | None = None
    password: str | None = None
    config_path: Path | None = None
    prefetcher: Prefetcher | None = None
    rate_limit_backoff: float = 2.0
    sleep: Sleep = field(default=asyncio.sleep)
    scheme: str = "https"
    kind: DependencyKind = DependencyKind.DOCKER_IMAGE

    async def resolve(self, declaration: Declaration) -> LockEntry:
        reference = declaration.docker_reference
        digest = await self.latest_digest(reference)
        lock: Any = digest
        if declaration.args.get("store_hash") is True:
            if self.prefetcher is None:
                raise ProviderError(
                    "A store hash was requested but prefetching is disabled.",
                    kind=ProviderErrorKind.PREFETCH_FAILED,
                    hint="Drop --no-prefetch or use uptix.dockerImage instead of pullDockerImage.",
                    context={"image": declaration.key},
                )
            sha256 = await self.prefetcher.prefetch_docker(
                _image_name(declaration.key),
                digest,
                tag=reference.tag,
                platform=self.platform,
            )
            lock = {"imageDigest": digest, "sha256": sha256}
        return LockEntry(
            lock=lock,
            metadata=DependencyMetadata(
                name=_image_name(declaration.key),
                selected_version=reference.tag,
                resolved_version=digest,
                dep_type=DependencyKind.DOCKER_IMAGE.value,
                description=f"Docker image {declaration.key}",
            ),
        )

    async def latest_digest(self, reference: DockerReference) -> str:
        url = (
            f"{self.scheme}://{reference.registry}/v2/{reference.repository}"
            f"/manifests/{reference.reference}"
        )
        response = await self._manifest(url, token=None)
        if response.status_code == 401:
            token = await self._token(response, reference)
            response = await self._manifest(url, token=token)
            if response.status_code == 401:
                raise ProviderError(
                    "Registry rejected the bearer token.",
                    kind=ProviderErrorKind.AUTHENTICATION_FAILED,
                    hint="Check the registry credentials in the environment or Docker config.",
                    context={"operation": "docker_manifest", "url": url},
                )
        self._raise_for_status(response, url=url, operation="docker_manifest")
        return self._select_digest(response, reference)

    async def _manifest(self, url: str, *, token: str | None) -> httpx.Response:
        headers = {"Accept": ACCEPT_MANIFESTS}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        response = await send(self.client, "GET", url, headers=headers, operation="docker_manifest")
        if response.status_code != 429:
            return response
        delay = min(_retry_after(response, self.rate_limit_backoff), MAX_BACKOFF)
        logger.warning("Registry rate limit hit for %s, retrying once in %.1fs", url, delay)
        await self.sleep(delay)
        return await send(self.client, "GET", url, headers=headers, operation="docker_manifest")

    async def _token(self, response: httpx.Response, reference: DockerReference) -> str:
        header = response.headers.get("WWW-Authenticate", "")
        challenge = parse_challenge(header)
        if challenge is None or challenge.scheme != "bearer" or "realm" not in challenge.params:
            raise ProviderError(
                "Registry requires authentication but sent no bearer challenge.",
                kind=ProviderErrorKind.AUTHENTICATION_FAILED,
                context={"operation": "docker_token", "www_authenticate": header},
            )
        params = {"scope": challenge.params.get("scope", f"repository:{reference.repository}:pull")}
        if "service" in challenge.params:
            params["service"] = challenge.params["service"]
        credentials = lookup_credentials(
            reference.registry,
            username=self.username,
            password=self.password,
            config_path=self.config_path,
        )
        kwargs: dict[str, Any] = {"params": params}
        if credentials is not None:
            kwargs["auth"] = (credentials.username, credentials.password)
        realm = challenge.params["realm"]
        token_response = await send(self.client, "GET", realm, operation="docker_token", **kwargs)
        if token_response.status_code in {401, 403}:
            raise ProviderError(
                "Registry token exchange was rejected.",
                kind=ProviderErrorKind.AUTHENTICATION_FAILED,
                hint="Check the registry credentials in the environment or Docker config.",
                context={
                    "operation": "docker_token",
                    "realm": realm,
                    "status": str(token_response.status_code),
                },
            )
        self._raise_for_status(token_response, url=realm, operation="docker_token")
        body = json_body(token_response, operation="docker_token")
        token = (body.get("token") or body.get("access_token")) if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise ProviderError(
                "Registry token response did not contain a token.",
                kind=ProviderErrorKind.AUTHENTICATION_FAILED,
                context={"operation": "docker_token", "realm": realm},
            )
        return token

    def _raise_for_status(self, response: httpx.Response, *, url: str, operation: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        context = {"operation": operation, "url": url, "status": str(status)}
        if status == 404:
            raise ProviderError(
                "Manifest not found: the tag does not exist.",
                kind=ProviderErrorKind.NOT_FOUND,
                context=context,
            )
        if status == 429:
            raise ProviderError(
                "Registry rate limit exceeded.",
                kind=ProviderErrorKind.RATE_LIMITED,
                hint=RATE_LIMIT_HINT,
                context=context,
            )
        if status in {401, 403}:
            raise ProviderError(
                "Registry denied access.",
                kind=ProviderErrorKind.AUTHENTICATION_FAILED,
                context=context,
            )
        raise ProviderError(
            "Registry returned an unexpected status.",
            kind=ProviderErrorKind.UNREACHABLE,
            context=context,
        )

    def _select_digest(self, response: httpx.Response, reference: DockerReference) -> str:
        media_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        if media_type in MANIFEST_LIST_TYPES:
            body = json_body(response, operation="docker_manifest")
            return select_platform_digest(body, self.platform, image=reference.short_name)
        header = response.headers.get("Docker-Content-Digest")
        if header:
            return header
        return "sha256:" + hashlib.sha256(response.content).hexdigest()


def select_platform_digest(index: Any, platform: str, *, image: str = "") -> str:
    """Pick the manifest digest for ``platform`` (``os/arch[/variant]``) from an index."""
    os_name, _, rest = platform.partition("/")
    architecture, _, variant = rest.partition("/")
    manifests = index.get("manifests") if isinstance(index, dict) else None
    available: list[str] = []
    for entry in manifests if isinstance(manifests, list) else []:
        entry_platform = entry.get("platform") if isinstance(entry, dict) else None
        if not isinstance(entry_platform, dict):
            continue
        entry_os = entry_platform.get("os", "")
        entry_arch = entry_platform.get("architecture", "")
        entry_variant = entry_platform.get("variant", "")
        available.append("/".join(part for part in (entry_os, entry_arch, entry_variant) if part))
        if entry_os != os_name or entry_arch != architecture:
            continue
        if variant and entry_variant != variant:
            continue
        digest = entry.get("digest")
        if isinstance(digest, str) and digest:
            return digest
    raise ProviderError(
        f"No manifest for platform {platform}.",
        kind=ProviderErrorKind.NOT_FOUND,
        hint="Choose one of the published platforms with --platform.",
        context={"image": image, "available": ", ".join(available)},
    )


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return max(float(response.headers.get("Retry-After", default)), 0.0)
    except ValueError:
        return default


def _image_name(text: str) -> str:
    name = text.split("@", 1)[0]
    colon = name.rfind(":")
    if colon != -1 and "/" not in name[colon + 1 :]:
        name = name[:colon]
    return name
