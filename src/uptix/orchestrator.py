"""Update orchestration: discover, match, resolve, merge, write.

A run moves through :class:`RunState` in order and ends in ``DONE`` or
``FAILED``. Resolution fans out one task per matched declaration; every task
runs to completion before any failure is reported, and the lock file is only
written when all of them succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import httpx

from uptix.config import Settings
from uptix.errors import ProviderError, ResolutionError, UptixError
from uptix.lockfile import load_lockfile, merge_lock, read_lockfile, stale_keys, write_lockfile
from uptix.models import (
    Declaration,
    DependencyKind,
    LockData,
    LockEntry,
    declaration_from_key,
)
from uptix.observability import RunLog
from uptix.providers import NixPrefetcher, Prefetcher, Resolver, build_resolvers
from uptix.scan import ScanResult, scan_project
from uptix.selector import select

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    DISCOVERING = "discovering"
    MATCHING = "matching"
    RESOLVING = "resolving"
    MERGING = "merging"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class UpdateResult:
    scan: ScanResult
    matched: list[Declaration]
    resolved: dict[str, LockEntry]
    lock: LockData
    lock_path: Path
    selector: str | None = None
    dropped: list[str] = field(default_factory=list)

    @property
    def full(self) -> bool:
        return self.selector is None


@dataclass(frozen=True, slots=True)
class ListedDependency:
    declaration: Declaration
    entry: LockEntry | None

    @property
    def locked(self) -> bool:
        return self.entry is not None


def _log_info(message: str) -> None:
    logger.info("%s", message)


@dataclass(slots=True)
class Updater:
    """Runs update, list and show against one project root.

    ``transport`` and ``docker_options`` exist for tests: the former is
    handed to the shared ``httpx.AsyncClient``, the latter to the Docker
    resolver (for example a fake ``sleep``).
    """

    settings: Settings
    prefetcher: Prefetcher | None = None
    transport: httpx.AsyncBaseTransport | None = None
    docker_options: dict[str, Any] = field(default_factory=dict)
    run_log: RunLog = field(default_factory=RunLog)
    echo: Callable[[str], None] = _log_info
    state: RunState = RunState.DISCOVERING

    def update(self, selector: str | None = None) -> UpdateResult:
        """Resolve every declaration (or those matching ``selector``) and write the lock."""
        try:
            return self._update(selector)
        except UptixError as exc:
            self._transition(RunState.FAILED, message=str(exc).splitlines()[0], level="error")
            raise

    def _update(self, selector: str | None) -> UpdateResult:
        self._transition(RunState.DISCOVERING, message="Scanning Nix files.")
        scan = self.discover()

        self._transition(RunState.MATCHING, message="Selecting dependencies.")
        if selector is None:
            matched = list(scan.declarations)
        else:
            matched = select(selector, scan.declarations)
            self.echo(f"Found {len(matched)} dependencies matching '{selector}'")
        # Load before resolving so an unreadable lock aborts without network traffic.
        existing = load_lockfile(self.settings.lock_file)

        self._transition(RunState.RESOLVING, message=f"Resolving {len(matched)} dependencies.")
        resolved = asyncio.run(self.resolve(matched))

        self._transition(RunState.MERGING, message="Merging lock entries.")
        full = selector is None
        dropped = stale_keys(existing, set(resolved)) if full else []
        for key in dropped:
            self.run_log.log(
                operation="drop_stale",
                state=self.state.value,
                dependency=key,
                message="Dropped lock entry with no declaration.",
            )
        lock = merge_lock(existing, resolved, full=full)

        self._transition(RunState.WRITING, message="Writing lock file.")
        lock_path = write_lockfile(lock, self.settings.lock_file)
        self.echo(f"Wrote {lock_path}")

        self._transition(RunState.DONE, message="Update complete.")
        return UpdateResult(
            scan=scan,
            matched=matched,
            resolved=resolved,
            lock=lock,
            lock_path=lock_path,
            selector=selector,
            dropped=dropped,
        )

    def discover(self) -> ScanResult:
        scan = scan_project(self.settings.root, namespaces=self.settings.namespaces)
        self.echo(f"Found {len(scan.files)} nix files")
        for warning in scan.warnings:
            self.run_log.log(
                operation="scan_warning",
                state=self.state.value,
                dependency=None,
                message=str(warning),
                level="warning",
            )
        return scan

    async def resolve(self, declarations: Sequence[Declaration]) -> dict[str, LockEntry]:
        """Resolve ``declarations`` concurrently.

        Raises :class:`ResolutionError` carrying every provider failure once
        all tasks have finished. Nothing is written here.
        """
        if not declarations:
            return {}
        prefetcher = self.prefetcher
        if prefetcher is None and self.settings.prefetch:
            prefetcher = NixPrefetcher()
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))
        async with self._client() as client:
            resolvers = build_resolvers(self.settings, client, prefetcher, **self.docker_options)

            async def resolve_one(declaration: Declaration) -> LockEntry:
                async with semaphore:
                    return await self._resolve_one(resolvers, declaration)

            outcomes = await asyncio.gather(
                *(resolve_one(declaration) for declaration in declarations),
                return_exceptions=True,
            )

        resolved: dict[str, LockEntry] = {}
        failures: list[ProviderError] = []
        for declaration, outcome in zip(declarations, outcomes):
            if isinstance(outcome, ProviderError):
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                resolved[declaration.key] = outcome
        if failures:
            raise ResolutionError(failures)
        return resolved

    async def _resolve_one(
        self,
        resolvers: dict[DependencyKind, Resolver],
        declaration: Declaration,
    ) -> LockEntry:
        try:
            entry = await resolvers[declaration.kind].resolve(declaration)
        except ProviderError as exc:
            if exc.dependency is None:
                exc.dependency = declaration.key
            logger.error("Failed to resolve %s: %s", declaration.display_name, exc)
            self.run_log.log(
                operation="resolve",
                state=self.state.value,
                dependency=declaration.key,
                message=Exception.__str__(exc),
                level="error",
                extra={"kind": exc.kind.value},
            )
            raise
        logger.info("Resolved %s to %s", declaration.display_name, entry.locked_version)
        self.run_log.log(
            operation="resolve",
            state=self.state.value,
            dependency=declaration.key,
            message="Resolved dependency.",
            extra={"version": entry.locked_version},
        )
        return entry

    def list_dependencies(self) -> list[ListedDependency]:
        """Scan the project and pair each declaration with its lock entry, offline."""
        scan = self.discover()
        lock = load_lockfile(self.settings.lock_file)
        return [
            ListedDependency(declaration=declaration, entry=lock.get(declaration.key))
            for declaration in scan.declarations
        ]

    def show(self, selector: str) -> list[tuple[str, LockEntry]]:
        """Return lock entries whose keys match ``selector`` without resolving anything."""
        lock = read_lockfile(self.settings.lock_file)
        text = selector.strip()
        if text in lock:
            return [(text, lock[text])]
        declarations = []
        for key in lock:
            declaration = declaration_from_key(key)
            if declaration is not None and declaration.key == key:
                declarations.append(declaration)
        chosen = select(selector, declarations)
        return [(declaration.key, lock[declaration.key]) for declaration in chosen]

    def _client(self) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {"timeout": self.settings.timeout, "follow_redirects": True}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return httpx.AsyncClient(**kwargs)

    def _transition(self, state: RunState, *, message: str, level: str = "info") -> None:
        self.state = state
        logger.debug("State %s: %s", state.value, message)
        self.run_log.log(
            operation="transition",
            state=state.value,
            dependency=None,
            message=message,
            level=level,
        )


def update(
    settings: Settings,
    selector: str | None = None,
    *,
    prefetcher: Prefetcher | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> UpdateResult:
    return Updater(settings, prefetcher=prefetcher, transport=transport).update(selector)


__all__ = ["ListedDependency", "RunState", "UpdateResult", "Updater", "update"]
