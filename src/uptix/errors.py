"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    SCAN = "E_SCAN"
    SELECTOR = "E_SELECTOR"
    PROVIDER = "E_PROVIDER"
    LOCKFILE = "E_LOCKFILE"
    RESOLUTION = "E_RESOLUTION"


class ProviderErrorKind(StrEnum):
    UNREACHABLE = "unreachable"
    AUTHENTICATION_FAILED = "authentication_failed"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    PREFETCH_FAILED = "prefetch_failed"


class UptixError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ScanError(UptixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SCAN, hint=hint, context=context)


class SelectorError(UptixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SELECTOR, hint=hint, context=context)


class LockfileError(UptixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOCKFILE, hint=hint, context=context)


class ProviderError(UptixError):
    """A single dependency failed to resolve.

    ``kind`` classifies the failure; ``dependency`` is the canonical key of
    the declaration being resolved, filled in by the orchestrator when the
    provider itself does not know it.
    """

    kind: ProviderErrorKind
    dependency: str | None

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind,
        dependency: str | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PROVIDER, hint=hint, context=context)
        self.kind = kind
        self.dependency = dependency

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        if self.dependency is not None:
            payload["dependency"] = self.dependency
        return payload


class ResolutionError(UptixError):
    """One or more dependencies failed to resolve during a run."""

    failures: tuple[ProviderError, ...]

    def __init__(self, failures: Sequence[ProviderError]) -> None:
        self.failures = tuple(failures)
        lines = [f"Failed to resolve {len(self.failures)} dependencies:"]
        for failure in self.failures:
            summary = Exception.__str__(failure)
            lines.append(f"  {failure.dependency or '<unknown>'}: {summary} [{failure.kind}]")
        hints = sorted({failure.hint for failure in self.failures if failure.hint})
        super().__init__(
            "\n".join(lines),
            code=ErrorCode.RESOLUTION,
            hint=" ".join(hints) if hints else "The lock file was left unchanged.",
        )


@dataclass(frozen=True, slots=True)
class ScanWarning:
    """A declaration that was recognized but could not be used."""

    path: str
    line: int
    column: int
    function: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column}: {self.function}: {self.message}"


__all__ = [
    "ErrorCode",
    "LockfileError",
    "ProviderError",
    "ProviderErrorKind",
    "ResolutionError",
    "ScanError",
    "ScanWarning",
    "SelectorError",
    "UptixError",
]
