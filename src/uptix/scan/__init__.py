"""Declaration scanning over Nix configuration trees."""

from .declarations import (
    FUNCTIONS,
    ScanResult,
    deduplicate,
    discover_nix_files,
    scan_files,
    scan_project,
    scan_source,
)
from .syntax import Group, Lexer, Token, parse

__all__ = [
    "FUNCTIONS",
    "Group",
    "Lexer",
    "ScanResult",
    "Token",
    "deduplicate",
    "discover_nix_files",
    "parse",
    "scan_files",
    "scan_project",
    "scan_source",
]
