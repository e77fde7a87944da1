import json
import os
import stat
from pathlib import Path

import pytest

from uptix.errors import LockfileError
from uptix.lockfile import (
    init_lockfile,
    load_lockfile,
    merge_lock,
    parse_lockfile,
    read_lockfile,
    serialize_lockfile,
    stale_keys,
    write_lockfile,
)
from uptix.models import DependencyMetadata, LockEntry

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64


def test_serializer_is_sorted_indented_and_newline_terminated() -> None:
    lock = {
        "redis:7": _docker_entry("redis", "7", DIGEST_B),
        "postgres:15": _docker_entry("postgres", "15", DIGEST_A),
    }

    encoded = serialize_lockfile(lock)

    assert encoded.endswith("}\n")
    assert encoded.index('"postgres:15"') < encoded.index('"redis:7"')
    assert json.loads(encoded)["postgres:15"] == {
        "lock": DIGEST_A,
        "metadata": {
            "dep_type": "docker",
            "description": "Docker image postgres:15",
            "name": "postgres",
            "resolved_version": DIGEST_A,
            "selected_version": "15",
        },
    }
    assert parse_lockfile(encoded) == lock


def test_legacy_entries_are_kept_verbatim() -> None:
    raw = json.dumps(
        {
            "postgres:15": DIGEST_A,
            "$GITHUB_BRANCH$:o/r:main$": {"owner": "o", "repo": "r", "rev": "abc", "sha256": "x"},
            "odd": {"metadata": {"name": "only"}, "lock": "v"},
        }
    )

    lock = parse_lockfile(raw)

    assert lock["postgres:15"] == LockEntry(lock=DIGEST_A)
    assert lock["postgres:15"].locked_version == DIGEST_A
    assert lock["$GITHUB_BRANCH$:o/r:main$"].locked_version == "abc"
    assert lock["odd"].metadata is None
    assert json.loads(serialize_lockfile(lock)) == json.loads(raw)


def test_invalid_lockfile_payloads_are_rejected() -> None:
    with pytest.raises(LockfileError):
        parse_lockfile("{not json")
    with pytest.raises(LockfileError):
        parse_lockfile("[]")
    with pytest.raises(LockfileError):
        parse_lockfile(json.dumps({"k": {"metadata": "nope", "lock": "v"}}))


def test_missing_lockfile_loads_as_empty(tmp_path: Path) -> None:
    assert load_lockfile(tmp_path / "uptix.lock") == {}


def test_read_lockfile_requires_the_file(tmp_path: Path) -> None:
    with pytest.raises(LockfileError) as excinfo:
        read_lockfile(tmp_path / "uptix.lock")

    assert "No uptix.lock file found" in str(excinfo.value)


def test_write_lockfile_replaces_atomically(tmp_path: Path) -> None:
    lock_path = tmp_path / "uptix.lock"
    lock_path.write_text("{}", encoding="utf-8")

    write_lockfile({"postgres:15": _docker_entry("postgres", "15", DIGEST_A)}, lock_path)

    assert read_lockfile(lock_path)["postgres:15"].locked_version == DIGEST_A
    assert [path.name for path in tmp_path.iterdir()] == ["uptix.lock"]


def test_write_lockfile_keeps_existing_permissions(tmp_path: Path) -> None:
    lock_path = tmp_path / "uptix.lock"
    lock_path.write_text("{}", encoding="utf-8")
    lock_path.chmod(0o644)

    write_lockfile({"postgres:15": _docker_entry("postgres", "15", DIGEST_A)}, lock_path)

    assert stat.S_IMODE(lock_path.stat().st_mode) == 0o644


def test_new_lockfile_follows_umask(tmp_path: Path) -> None:
    previous = os.umask(0o022)
    try:
        init_lockfile(tmp_path / "uptix.lock")
    finally:
        os.umask(previous)

    assert stat.S_IMODE((tmp_path / "uptix.lock").stat().st_mode) == 0o644


def test_non_ascii_text_is_written_raw(tmp_path: Path) -> None:
    lock_path = tmp_path / "uptix.lock"
    entry = LockEntry(
        lock=DIGEST_A,
        metadata=DependencyMetadata(
            name="café",
            selected_version="15",
            resolved_version=DIGEST_A,
            dep_type="docker",
            description="Docker image café:15",
        ),
    )

    write_lockfile({"café:15": entry}, lock_path)

    raw = lock_path.read_text(encoding="utf-8")
    assert '"café:15"' in raw
    assert "\\u00e9" not in raw
    assert read_lockfile(lock_path) == {"café:15": entry}


def test_failed_write_keeps_previous_lockfile(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lock_path = tmp_path / "uptix.lock"
    lock_path.write_text("{}\n", encoding="utf-8")

    def fail_replace(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("uptix.lockfile.io.os.replace", fail_replace)

    with pytest.raises(LockfileError) as excinfo:
        write_lockfile({"postgres:15": _docker_entry("postgres", "15", DIGEST_A)}, lock_path)

    assert "disk full" in str(excinfo.value)
    assert lock_path.read_text(encoding="utf-8") == "{}\n"
    assert [path.name for path in tmp_path.iterdir()] == ["uptix.lock"]


def test_init_writes_empty_lock_and_refuses_to_overwrite(tmp_path: Path) -> None:
    lock_path = tmp_path / "uptix.lock"

    init_lockfile(lock_path)

    assert lock_path.read_text(encoding="utf-8") == "{}"
    with pytest.raises(LockfileError) as excinfo:
        init_lockfile(lock_path)
    assert "uptix.lock already exists" in str(excinfo.value)


def test_full_merge_is_exactly_the_updates() -> None:
    existing = {
        "stale:1": LockEntry(lock=DIGEST_A),
        "postgres:15": _docker_entry("postgres", "15", DIGEST_A),
    }
    updates = {"postgres:15": _docker_entry("postgres", "15", DIGEST_B)}

    merged = merge_lock(existing, updates, full=True)

    assert merged == updates
    assert stale_keys(existing, set(updates)) == ["stale:1"]


def test_partial_merge_preserves_untouched_entries() -> None:
    existing = {
        "a:1": _docker_entry("a", "1", DIGEST_A),
        "b:1": _docker_entry("b", "1", DIGEST_A),
        "c:1": LockEntry(lock=DIGEST_A),
    }
    updates = {"b:1": _docker_entry("b", "1", DIGEST_B), "d:1": _docker_entry("d", "1", DIGEST_B)}

    merged = merge_lock(existing, updates, full=False)

    assert list(merged) == ["a:1", "b:1", "c:1", "d:1"]
    assert merged["a:1"] is existing["a:1"]
    assert merged["c:1"] is existing["c:1"]
    assert merged["b:1"].locked_version == DIGEST_B
    assert set(existing) == {"a:1", "b:1", "c:1"}


def _docker_entry(name: str, tag: str, digest: str) -> LockEntry:
    return LockEntry(
        lock=digest,
        metadata=DependencyMetadata(
            name=name,
            selected_version=tag,
            resolved_version=digest,
            dep_type="docker",
            description=f"Docker image {name}:{tag}",
        ),
    )
