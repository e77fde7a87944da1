import asyncio
import base64
import hashlib
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from uptix.errors import ProviderError, ProviderErrorKind
from uptix.models import Declaration
from uptix.providers.credentials import lookup_credentials
from uptix.providers.docker import (
    MANIFEST_LIST_V2,
    MANIFEST_V2,
    DockerRegistryResolver,
    parse_challenge,
    select_platform_digest,
)

MANIFEST_URL = "https://registry-1.docker.io/v2/library/postgres/manifests/15"
TOKEN_URL = "https://auth.docker.io/token"
CHALLENGE = (
    'Bearer realm="https://auth.docker.io/token",service="registry.docker.io",'
    'scope="repository:library/postgres:pull"'
)
DIGEST = "sha256:" + "1" * 64
AMD64_DIGEST = "sha256:" + "2" * 64
ARM64_DIGEST = "sha256:" + "3" * 64


def test_anonymous_manifest_uses_content_digest_header() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _manifest_response(DIGEST)

    entry = _resolve(handler, Declaration.docker_image("postgres:15"))

    assert entry.lock == DIGEST
    assert entry.metadata is not None
    assert entry.metadata.name == "postgres"
    assert entry.metadata.selected_version == "15"
    assert entry.metadata.resolved_version == DIGEST
    assert entry.metadata.dep_type == "docker"
    assert str(requests[0].url) == MANIFEST_URL
    assert MANIFEST_LIST_V2 in requests[0].headers["Accept"]
    assert requests[0].headers["User-Agent"].startswith("uptix/")


def test_bearer_challenge_fetches_token_and_retries_once() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.url.host}{request.url.path}")
        if request.url.host == "auth.docker.io":
            assert request.url.params["service"] == "registry.docker.io"
            assert request.url.params["scope"] == "repository:library/postgres:pull"
            return httpx.Response(200, json={"token": "t0ken"})
        if request.headers.get("Authorization") == "Bearer t0ken":
            return _manifest_response(DIGEST)
        return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

    entry = _resolve(handler, Declaration.docker_image("postgres:15"))

    assert entry.lock == DIGEST
    assert seen == [
        "registry-1.docker.io/v2/library/postgres/manifests/15",
        "auth.docker.io/token",
        "registry-1.docker.io/v2/library/postgres/manifests/15",
    ]


def test_rejected_token_retry_fails_with_authentication_error() -> None:
    manifest_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.docker.io":
            return httpx.Response(200, json={"access_token": "t0ken"})
        manifest_requests.append(request)
        return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15"))

    assert excinfo.value.kind is ProviderErrorKind.AUTHENTICATION_FAILED
    assert len(manifest_requests) == 2
    assert "Authorization" not in manifest_requests[0].headers
    assert manifest_requests[1].headers["Authorization"] == "Bearer t0ken"


def test_token_exchange_rejection_is_authentication_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.docker.io":
            return httpx.Response(401, json={"details": "incorrect username or password"})
        return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15"), username="me", password="bad")

    assert excinfo.value.kind is ProviderErrorKind.AUTHENTICATION_FAILED


def test_environment_credentials_are_presented_to_docker_hub() -> None:
    token_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.docker.io":
            token_requests.append(request)
            return httpx.Response(200, json={"token": "t0ken"})
        if "Authorization" in request.headers:
            return _manifest_response(DIGEST)
        return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

    _resolve(handler, Declaration.docker_image("postgres:15"), username="me", password="s3cret")

    expected = "Basic " + base64.b64encode(b"me:s3cret").decode()
    assert token_requests[0].headers["Authorization"] == expected


def test_rate_limit_backs_off_once_then_succeeds() -> None:
    calls = {"count": 0}
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, headers={"Retry-After": "3"})
        return _manifest_response(DIGEST)

    entry = _resolve(handler, Declaration.docker_image("postgres:15"), sleep=_recorder(delays))

    assert entry.lock == DIGEST
    assert delays == [3.0]


def test_persistent_rate_limit_is_surfaced_with_guidance() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    with pytest.raises(ProviderError) as excinfo:
        _resolve(
            handler,
            Declaration.docker_image("postgres:15"),
            sleep=_recorder(delays),
            rate_limit_backoff=1.5,
        )

    assert excinfo.value.kind is ProviderErrorKind.RATE_LIMITED
    assert "DOCKER_USERNAME" in str(excinfo.value)
    assert delays == [1.5]


def test_missing_tag_is_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15"))

    assert excinfo.value.kind is ProviderErrorKind.NOT_FOUND


def test_network_failure_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15"))

    assert excinfo.value.kind is ProviderErrorKind.UNREACHABLE


def test_request_timeout_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15"))

    assert excinfo.value.kind is ProviderErrorKind.UNREACHABLE
    assert excinfo.value.context["url"] == MANIFEST_URL


def test_redirect_loop_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": str(request.url)})

    async def run() -> Any:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
            return await DockerRegistryResolver(client=client).resolve(
                Declaration.docker_image("postgres:15")
            )

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(run())

    assert excinfo.value.kind is ProviderErrorKind.UNREACHABLE


def test_manifest_list_resolves_platform_digest() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"Content-Type": MANIFEST_LIST_V2, "Docker-Content-Digest": DIGEST},
            content=json.dumps(_index()).encode(),
        )

    amd64 = _resolve(handler, Declaration.docker_image("postgres:15"))
    arm64 = _resolve(handler, Declaration.docker_image("postgres:15"), platform="linux/arm64/v8")

    assert amd64.lock == AMD64_DIGEST
    assert arm64.lock == ARM64_DIGEST


def test_unknown_platform_lists_available_ones() -> None:
    with pytest.raises(ProviderError) as excinfo:
        select_platform_digest(_index(), "linux/s390x", image="postgres")

    assert excinfo.value.kind is ProviderErrorKind.NOT_FOUND
    assert excinfo.value.context["available"] == "linux/amd64, linux/arm64/v8"


def test_missing_digest_header_falls_back_to_body_hash() -> None:
    body = json.dumps({"schemaVersion": 2, "mediaType": MANIFEST_V2}).encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Type": MANIFEST_V2}, content=body)

    entry = _resolve(handler, Declaration.docker_image("postgres:15"))

    assert entry.lock == "sha256:" + hashlib.sha256(body).hexdigest()


def test_private_registry_uses_its_own_host() -> None:
    urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return _manifest_response(DIGEST)

    entry = _resolve(handler, Declaration.docker_image("ghcr.io/luizribeiro/uptix:v1"))

    assert urls == ["https://ghcr.io/v2/luizribeiro/uptix/manifests/v1"]
    assert entry.metadata is not None
    assert entry.metadata.name == "ghcr.io/luizribeiro/uptix"


def test_store_hash_declarations_lock_digest_and_nix_hash(prefetcher: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _manifest_response(DIGEST)

    entry = _resolve(
        handler,
        Declaration.docker_image("postgres:15", store_hash=True),
        prefetcher=prefetcher,
    )

    assert entry.lock == {"imageDigest": DIGEST, "sha256": prefetcher.docker_hash}
    assert prefetcher.calls == [
        (
            "docker",
            {
                "image_name": "postgres",
                "image_digest": DIGEST,
                "tag": "15",
                "platform": "linux/amd64",
            },
        )
    ]


def test_store_hash_without_prefetcher_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _manifest_response(DIGEST)

    with pytest.raises(ProviderError) as excinfo:
        _resolve(handler, Declaration.docker_image("postgres:15", store_hash=True))

    assert excinfo.value.kind is ProviderErrorKind.PREFETCH_FAILED


def test_parse_challenge_reads_bearer_parameters() -> None:
    challenge = parse_challenge(CHALLENGE)

    assert challenge is not None
    assert challenge.scheme == "bearer"
    assert challenge.params["realm"] == TOKEN_URL
    assert challenge.params["service"] == "registry.docker.io"


def test_docker_config_credentials_are_used_for_matching_registry(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text(
        json.dumps(
            {
                "auths": {
                    "https://index.docker.io/v1/": {
                        "auth": base64.b64encode(b"hub:token").decode(),
                    },
                    "ghcr.io": {"username": "gh", "password": "pat"},
                }
            }
        ),
        encoding="utf-8",
    )

    hub = lookup_credentials("registry-1.docker.io", config_path=config)
    ghcr = lookup_credentials("ghcr.io", config_path=config)

    assert hub is not None and (hub.username, hub.password) == ("hub", "token")
    assert ghcr is not None and (ghcr.username, ghcr.password) == ("gh", "pat")
    assert lookup_credentials("quay.io", config_path=config) is None
    assert "pat" not in repr(ghcr)


def test_environment_credentials_win_for_docker_hub_only(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"

    hub = lookup_credentials("registry-1.docker.io", username="me", password="pw", config_path=missing)
    other = lookup_credentials("ghcr.io", username="me", password="pw", config_path=missing)

    assert hub is not None and hub.username == "me"
    assert other is None


def test_invalid_docker_config_is_ignored(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text("{not json", encoding="utf-8")

    assert lookup_credentials("ghcr.io", config_path=config) is None


def _resolve(
    handler: Callable[[httpx.Request], httpx.Response],
    declaration: Declaration,
    **options: Any,
) -> Any:
    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = DockerRegistryResolver(client=client, **options)
            return await resolver.resolve(declaration)

    return asyncio.run(run())


def _recorder(delays: list[float]) -> Callable[[float], Any]:
    async def sleep(delay: float) -> None:
        delays.append(delay)

    return sleep


def _manifest_response(digest: str) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"Content-Type": MANIFEST_V2, "Docker-Content-Digest": digest},
        content=b'{"schemaVersion": 2}',
    )


def _index() -> dict[str, Any]:
    return {
        "schemaVersion": 2,
        "mediaType": MANIFEST_LIST_V2,
        "manifests": [
            {
                "digest": AMD64_DIGEST,
                "platform": {"architecture": "amd64", "os": "linux"},
            },
            {
                "digest": ARM64_DIGEST,
                "platform": {"architecture": "arm64", "os": "linux", "variant": "v8"},
            },
            {
                "digest": "sha256:" + "4" * 64,
                "annotations": {"vnd.docker.reference.type": "attestation-manifest"},
            },
        ],
    }
