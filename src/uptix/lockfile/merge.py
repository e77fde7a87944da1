"""Reconciliation of freshly resolved entries with an existing lock."""

from __future__ import annotations

from collections.abc import Mapping

from uptix.models import LockData, LockEntry


def merge_lock(
    existing: Mapping[str, LockEntry],
    updates: Mapping[str, LockEntry],
    *,
    full: bool,
) -> LockData:
    """Combine ``updates`` into ``existing``.

    A full run covers every discovered declaration, so the result is exactly
    ``updates`` and stale keys disappear. A partial run replaces or inserts
    only the updated keys and leaves every other entry untouched.
    """
    if full:
        return {key: updates[key] for key in sorted(updates)}
    merged = dict(existing)
    merged.update(updates)
    return {key: merged[key] for key in sorted(merged)}


def stale_keys(existing: Mapping[str, LockEntry], discovered: set[str]) -> list[str]:
    return sorted(key for key in existing if key not in discovered)
