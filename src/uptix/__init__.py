"""Public package entrypoint for uptix."""

from ._version import __version__
from .config import Settings
from .errors import (
    ErrorCode,
    LockfileError,
    ProviderError,
    ProviderErrorKind,
    ResolutionError,
    ScanError,
    ScanWarning,
    SelectorError,
    UptixError,
)
from .models import (
    Declaration,
    DependencyKind,
    DependencyMetadata,
    DockerReference,
    LockEntry,
    parse_docker_reference,
)
from .orchestrator import RunState, UpdateResult, Updater, update
from .providers import version
from .selector import parse_selector, select

__all__ = [
    "Declaration",
    "DependencyKind",
    "DependencyMetadata",
    "DockerReference",
    "ErrorCode",
    "LockEntry",
    "LockfileError",
    "ProviderError",
    "ProviderErrorKind",
    "ResolutionError",
    "RunState",
    "ScanError",
    "ScanWarning",
    "SelectorError",
    "Settings",
    "UpdateResult",
    "Updater",
    "UptixError",
    "__version__",
    "parse_docker_reference",
    "parse_selector",
    "select",
    "update",
    "version",
]
