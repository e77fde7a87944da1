"""Lock file parser, serializer and atomic writer."""

from __future__ import annotations

import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

from uptix.errors import LockfileError
from uptix.models import DependencyMetadata, LockData, LockEntry

EMPTY_LOCK_FILE = "{}"
METADATA_FIELDS = frozenset(
    {"name", "selected_version", "resolved_version", "dep_type", "description"}
)


def serialize_lockfile(lock: LockData) -> str:
    payload = {key: _entry_payload(entry) for key, entry in lock.items()}
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def parse_lockfile(raw: str) -> LockData:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LockfileError("Invalid lockfile JSON.", hint=str(exc)) from exc

    if not isinstance(payload, dict):
        raise LockfileError("Invalid lockfile payload type.", hint="Expected a JSON object.")
    return {key: _parse_entry(key, value) for key, value in payload.items()}


def load_lockfile(path: str | Path) -> LockData:
    """Read the lock file, treating a missing file as empty."""
    lock_path = Path(path)
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise LockfileError(
            "Unable to read lockfile.",
            context={"path": str(lock_path), "reason": str(exc)},
        ) from exc
    return parse_lockfile(raw)


def read_lockfile(path: str | Path) -> LockData:
    """Read the lock file, failing when it does not exist."""
    lock_path = Path(path)
    if not lock_path.exists():
        raise LockfileError(
            f"No {lock_path.name} file found.",
            hint="Run `uptix update` to resolve dependencies, or `uptix init` for an empty lock.",
            context={"path": str(lock_path)},
        )
    return load_lockfile(lock_path)


def write_lockfile(lock: LockData, path: str | Path) -> Path:
    return _atomic_write(Path(path), serialize_lockfile(lock))


def init_lockfile(path: str | Path) -> Path:
    lock_path = Path(path)
    if lock_path.exists():
        raise LockfileError(
            f"{lock_path.name} already exists.",
            hint="Remove it first if you really want to start over.",
            context={"path": str(lock_path)},
        )
    return _atomic_write(lock_path, EMPTY_LOCK_FILE)


def _atomic_write(lock_path: Path, content: str) -> Path:
    """Write via a sibling temp file and rename so readers never see a partial file."""
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{lock_path.name}.",
            suffix=".tmp",
            dir=str(lock_path.parent),
        )
    except OSError as exc:
        raise LockfileError(
            "Unable to write lockfile.",
            context={"path": str(lock_path), "reason": str(exc)},
        ) from exc
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, _target_mode(lock_path))
        os.replace(temp_path, lock_path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise LockfileError(
            "Unable to write lockfile.",
            hint="The previous lockfile was left untouched.",
            context={"path": str(lock_path), "reason": str(exc)},
        ) from exc
    return lock_path


def _target_mode(lock_path: Path) -> int:
    """Keep an existing file's permissions; new files get the usual umask default."""
    try:
        return stat.S_IMODE(lock_path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _entry_payload(entry: LockEntry) -> Any:
    if entry.metadata is None:
        return entry.lock
    metadata = entry.metadata
    return {
        "metadata": {
            "name": metadata.name,
            "selected_version": metadata.selected_version,
            "resolved_version": metadata.resolved_version,
            "dep_type": metadata.dep_type,
            "description": metadata.description,
        },
        "lock": entry.lock,
    }


def _parse_entry(key: str, value: Any) -> LockEntry:
    # Anything that is not exactly {metadata, lock} is kept verbatim.
    if not isinstance(value, dict) or set(value) != {"metadata", "lock"}:
        return LockEntry(lock=value)
    metadata = value["metadata"]
    if not isinstance(metadata, dict):
        raise LockfileError(f"Invalid lockfile metadata for `{key}`.")
    if set(metadata) != METADATA_FIELDS:
        return LockEntry(lock=value)
    return LockEntry(
        lock=value["lock"],
        metadata=DependencyMetadata(
            name=_required_str(metadata, "name", key),
            selected_version=_optional_str(metadata, "selected_version", key),
            resolved_version=_optional_str(metadata, "resolved_version", key),
            dep_type=_required_str(metadata, "dep_type", key),
            description=_required_str(metadata, "description", key, allow_empty=True),
        ),
    )


def _required_str(
    payload: dict[str, Any],
    name: str,
    key: str,
    *,
    allow_empty: bool = False,
) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or (not value and not allow_empty):
        raise LockfileError(f"Invalid lockfile `{name}` value for `{key}`.")
    return value


def _optional_str(payload: dict[str, Any], name: str, key: str) -> str | None:
    value = payload.get(name)
    if value is not None and not isinstance(value, str):
        raise LockfileError(f"Invalid lockfile `{name}` value for `{key}`.")
    return value
