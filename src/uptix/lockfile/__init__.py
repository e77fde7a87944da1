"""Lock file persistence APIs."""

from .io import (
    init_lockfile,
    load_lockfile,
    parse_lockfile,
    read_lockfile,
    serialize_lockfile,
    write_lockfile,
)
from .merge import merge_lock, stale_keys

__all__ = [
    "init_lockfile",
    "load_lockfile",
    "merge_lock",
    "parse_lockfile",
    "read_lockfile",
    "serialize_lockfile",
    "stale_keys",
    "write_lockfile",
]
