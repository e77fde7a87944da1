"""Protocol for dependency resolvers and shared HTTP helpers."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from uptix._version import __version__
from uptix.errors import ProviderError, ProviderErrorKind
from uptix.models import Declaration, DependencyKind, LockEntry

logger = logging.getLogger(__name__)


class Resolver(Protocol):
    kind: DependencyKind

    async def resolve(self, declaration: Declaration) -> LockEntry:
        """Resolve ``declaration`` to an immutable lock entry."""


def user_agent() -> str:
    return f"uptix/{__version__}"


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    operation: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, mapping transport failures and timeouts to ``Unreachable``."""
    headers = {"User-Agent": user_agent(), **kwargs.pop("headers", {})}
    logger.debug("%s %s", method, url)
    try:
        return await client.request(method, url, headers=headers, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderError(
            "Request timed out.",
            kind=ProviderErrorKind.UNREACHABLE,
            hint="Check network connectivity or raise the timeout.",
            context={"operation": operation, "url": url},
        ) from exc
    except httpx.TransportError as exc:
        raise ProviderError(
            "Unable to reach remote service.",
            kind=ProviderErrorKind.UNREACHABLE,
            hint="Check network connectivity.",
            context={"operation": operation, "url": url, "reason": str(exc)},
        ) from exc
    except httpx.RequestError as exc:
        # Redirect loops and undecodable bodies.
        raise ProviderError(
            "Remote service returned an unusable response.",
            kind=ProviderErrorKind.UNREACHABLE,
            context={"operation": operation, "url": url, "reason": str(exc)},
        ) from exc


def json_body(response: httpx.Response, *, operation: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(
            "Remote service returned invalid JSON.",
            kind=ProviderErrorKind.UNREACHABLE,
            context={
                "operation": operation,
                "url": str(response.request.url),
                "status": str(response.status_code),
            },
        ) from exc
