"""Declaration discovery over Nix sources."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from uptix.config import DEFAULT_NAMESPACES
from uptix.errors import ScanError, ScanWarning
from uptix.models import GIT_FLAGS, Declaration, is_github_name
from uptix.scan.syntax import Group, Node, Token, parse

logger = logging.getLogger(__name__)

DOCKER_IMAGE = "dockerImage"
PULL_DOCKER_IMAGE = "pullDockerImage"
GITHUB_BRANCH = "githubBranch"
GITHUB_RELEASE = "githubRelease"
FUNCTIONS = frozenset({DOCKER_IMAGE, PULL_DOCKER_IMAGE, GITHUB_BRANCH, GITHUB_RELEASE})

_USAGE = {
    DOCKER_IMAGE: 'uptix.dockerImage "postgres:15"',
    PULL_DOCKER_IMAGE: 'uptix.pullDockerImage "postgres:15"',
    GITHUB_BRANCH: 'uptix.githubBranch { owner = "luizribeiro"; repo = "uptix"; branch = "main"; }',
    GITHUB_RELEASE: 'uptix.githubRelease { owner = "luizribeiro"; repo = "uptix"; }',
}


class _Computed(Exception):
    """Raised while reading a literal that turns out to be an expression."""


@dataclass(slots=True)
class ScanResult:
    files: list[Path] = field(default_factory=list)
    declarations: list[Declaration] = field(default_factory=list)
    warnings: list[ScanWarning] = field(default_factory=list)


def discover_nix_files(root: str | Path) -> list[Path]:
    """Return every ``.nix`` file under ``root`` in a stable order.

    Hidden files and directories are skipped, except ``root`` itself.
    """
    root_path = Path(root)
    found: list[Path] = []
    for current, dirnames, filenames in os.walk(root_path):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in sorted(filenames):
            if name.startswith(".") or not name.endswith(".nix"):
                continue
            found.append(Path(current) / name)
    return sorted(found)


def scan_source(
    source: str,
    *,
    path: str = "<string>",
    namespaces: Sequence[str] = DEFAULT_NAMESPACES,
) -> tuple[list[Declaration], list[ScanWarning]]:
    """Find declarations in a single Nix document."""
    tree = parse(source, path=path)
    visitor = _Visitor(path=path, namespaces=namespaces)
    visitor.collect_aliases(tree)
    visitor.visit(tree)
    return visitor.declarations, visitor.warnings


def scan_files(
    files: Iterable[Path],
    *,
    namespaces: Sequence[str] = DEFAULT_NAMESPACES,
    relative_to: Path | None = None,
) -> ScanResult:
    """Scan ``files`` in order and deduplicate declarations by canonical key.

    Any unreadable or malformed file aborts the whole scan.
    """
    result = ScanResult()
    for file_path in files:
        display = _display_path(file_path, relative_to)
        try:
            source = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ScanError(
                "Unable to read Nix file.",
                context={"path": display, "reason": str(exc)},
            ) from exc
        declarations, warnings = scan_source(source, path=display, namespaces=namespaces)
        result.files.append(file_path)
        result.declarations.extend(declarations)
        result.warnings.extend(warnings)
    result.declarations = deduplicate(result.declarations)
    for warning in result.warnings:
        logger.warning("Skipping declaration: %s", warning)
    return result


def scan_project(
    root: str | Path,
    *,
    namespaces: Sequence[str] = DEFAULT_NAMESPACES,
) -> ScanResult:
    root_path = Path(root)
    return scan_files(discover_nix_files(root_path), namespaces=namespaces, relative_to=root_path)


def deduplicate(declarations: Iterable[Declaration]) -> list[Declaration]:
    """Collapse declarations sharing a key, keeping first-seen order."""
    merged: dict[str, Declaration] = {}
    for declaration in declarations:
        existing = merged.get(declaration.key)
        if existing is None:
            merged[declaration.key] = declaration
            continue
        args = dict(existing.args)
        if declaration.args.get("store_hash") is True:
            args["store_hash"] = True
        merged[declaration.key] = replace(
            existing,
            args=args,
            locations=existing.locations + declaration.locations,
        )
    return list(merged.values())


def _display_path(path: Path, root: Path | None) -> str:
    if root is None:
        return str(path)
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


class _Visitor:
    def __init__(self, *, path: str, namespaces: Sequence[str]) -> None:
        self.path = path
        self.namespaces = set(namespaces)
        self.function_aliases: dict[str, str] = {}
        self.declarations: list[Declaration] = []
        self.warnings: list[ScanWarning] = []

    # ------------------------------------------------------------------
    # Alias discovery
    # ------------------------------------------------------------------

    def collect_aliases(self, tree: Group) -> None:
        """Track ``name = uptix;`` and ``inherit (uptix) fn;`` bindings."""
        changed = True
        while changed:
            changed = False
            for children in _walk_groups(tree):
                changed |= self._aliases_in(children)

    def _aliases_in(self, children: list[Node]) -> bool:
        changed = False
        for index, node in enumerate(children):
            if not _is_ident(node):
                continue
            if (
                _is_op(_at(children, index + 1), "=")
                and _is_ident(_at(children, index + 2))
                and _is_op(_at(children, index + 3), ";")
                and not _is_op(_at(children, index - 1), ".")
            ):
                target = _token(children[index + 2]).text
                name = _token(node).text
                if target in self.namespaces and name not in self.namespaces:
                    self.namespaces.add(name)
                    changed = True
                elif target in self.function_aliases and name not in self.function_aliases:
                    self.function_aliases[name] = self.function_aliases[target]
                    changed = True
            if _token(node).text == "inherit":
                source = _at(children, index + 1)
                if not isinstance(source, Group) or source.open != "(":
                    continue
                if len(source.children) != 1 or not _is_ident(source.children[0]):
                    continue
                if _token(source.children[0]).text not in self.namespaces:
                    continue
                cursor = index + 2
                while _is_ident(_at(children, cursor)):
                    name = _token(children[cursor]).text
                    if name in FUNCTIONS and name not in self.function_aliases:
                        self.function_aliases[name] = name
                        changed = True
                    cursor += 1
        return changed

    # ------------------------------------------------------------------
    # Call discovery
    # ------------------------------------------------------------------

    def visit(self, group: Group) -> None:
        children = group.children
        index = 0
        while index < len(children):
            node = children[index]
            if isinstance(node, Group):
                self.visit(node)
                index += 1
                continue
            callee = self._callee_at(children, index)
            if callee is None:
                index += 1
                continue
            function, end = callee
            self._declaration(function, _token(node), children, end)
            index = end

    def _callee_at(self, children: list[Node], index: int) -> tuple[str, int] | None:
        """Match a select chain ``ns.fn`` or a bare aliased ``fn`` at ``index``."""
        if not _is_ident(children[index]) or _is_op(_at(children, index - 1), "."):
            return None
        chain = [_token(children[index]).text]
        cursor = index + 1
        while _is_op(_at(children, cursor), ".") and _is_ident(_at(children, cursor + 1)):
            chain.append(_token(children[cursor + 1]).text)
            cursor += 2
        if _is_op(_at(children, cursor), "="):
            return None
        argument = _at(children, cursor)
        if argument is None or (isinstance(argument, Token) and argument.kind == "op"):
            return None
        if len(chain) >= 2 and chain[-1] in FUNCTIONS and chain[-2] in self.namespaces:
            return chain[-1], cursor
        if len(chain) == 1 and chain[0] in self.function_aliases:
            if _inside_inherit(children, index):
                return None
            return self.function_aliases[chain[0]], cursor
        return None

    def _declaration(self, function: str, at: Token, children: list[Node], index: int) -> None:
        argument = _at(children, index)
        if _is_ident(argument) and _token(argument).text == "rec":
            argument = _at(children, index + 1)
        try:
            if function in {DOCKER_IMAGE, PULL_DOCKER_IMAGE}:
                declaration = self._docker(function, argument)
            else:
                declaration = self._github(function, argument)
        except _Computed as exc:
            self._warn(at, function, str(exc))
            return
        location = f"{self.path}:{at.line}"
        self.declarations.append(replace(declaration, locations=(location,)))

    def _docker(self, function: str, argument: Node | None) -> Declaration:
        value = _literal(_unwrap(argument))
        if not isinstance(value, str):
            raise _Computed(f"expected a string literal argument, e.g. {_USAGE[function]}")
        try:
            return Declaration.docker_image(value, store_hash=function == PULL_DOCKER_IMAGE)
        except ValueError as exc:
            raise _Computed(str(exc)) from exc

    def _github(self, function: str, argument: Node | None) -> Declaration:
        value = _literal(_unwrap(argument))
        if not isinstance(value, dict):
            raise _Computed(f"expected an attribute set argument, e.g. {_USAGE[function]}")
        required = ("owner", "repo", "branch") if function == GITHUB_BRANCH else ("owner", "repo")
        for name in required:
            if not isinstance(value.get(name), str) or not value[name]:
                raise _Computed(f"missing string attribute `{name}`")
        for name in ("owner", "repo"):
            if not is_github_name(value[name]):
                raise _Computed(f"invalid GitHub {name} {value[name]!r}")
        flags: dict[str, bool] = {}
        for name, _ in GIT_FLAGS:
            flag = value.get(name, False)
            if not isinstance(flag, bool):
                raise _Computed(f"attribute `{name}` must be a boolean literal")
            flags[name] = flag
        if function == GITHUB_BRANCH:
            return Declaration.github_branch(value["owner"], value["repo"], value["branch"], **flags)
        return Declaration.github_release(value["owner"], value["repo"], **flags)

    def _warn(self, at: Token, function: str, message: str) -> None:
        self.warnings.append(
            ScanWarning(
                path=self.path,
                line=at.line,
                column=at.column,
                function=f"uptix.{function}",
                message=message,
            )
        )


def _unwrap(node: Node | None) -> Node | None:
    while isinstance(node, Group) and node.open == "(" and len(node.children) == 1:
        node = node.children[0]
    return node


def _literal(node: Node | None) -> Any:
    """Read a literal Nix value, raising ``_Computed`` for anything else."""
    if node is None:
        raise _Computed("missing argument")
    if isinstance(node, Group):
        if node.open != "{":
            raise _Computed("argument is not a literal")
        return _attr_set(node)
    if node.kind == "string":
        if node.interpolated:
            raise _Computed("interpolated strings are not literal")
        return node.value
    if node.kind == "int":
        return int(node.text)
    if node.kind == "float":
        return float(node.text)
    if node.kind == "ident" and node.text in {"true", "false"}:
        return node.text == "true"
    if node.kind == "ident" and node.text == "null":
        return None
    raise _Computed("argument is not a literal")


def _attr_set(group: Group) -> dict[str, Any]:
    attrs: dict[str, Any] = {}
    children = group.children
    index = 0
    while index < len(children):
        path: list[str] = []
        while True:
            key = _at(children, index)
            if _is_ident(key):
                if _token(key).text == "inherit":
                    raise _Computed("`inherit` inside arguments is not literal")
                path.append(_token(key).text)
            elif isinstance(key, Token) and key.kind == "string" and not key.interpolated:
                path.append(key.value or "")
            else:
                raise _Computed("attribute names must be literal")
            index += 1
            if not _is_op(_at(children, index), "."):
                break
            index += 1
        if not _is_op(_at(children, index), "="):
            raise _Computed("expected `=` after attribute name")
        value = _literal(_unwrap(_at(children, index + 1)))
        if not _is_op(_at(children, index + 2), ";"):
            raise _Computed(f"value of `{'.'.join(path)}` is not a literal")
        target = attrs
        for part in path[:-1]:
            nested = target.setdefault(part, {})
            if not isinstance(nested, dict):
                raise _Computed(f"attribute `{part}` is defined twice")
            target = nested
        target[path[-1]] = value
        index += 3
    return attrs


def _inside_inherit(children: list[Node], index: int) -> bool:
    cursor = index - 1
    while cursor >= 0:
        node = children[cursor]
        if _is_ident(node) and _token(node).text == "inherit":
            return True
        if not (_is_ident(node) or (isinstance(node, Group) and node.open == "(")):
            return False
        cursor -= 1
    return False


def _walk_groups(group: Group) -> Iterable[list[Node]]:
    yield group.children
    for child in group.children:
        if isinstance(child, Group):
            yield from _walk_groups(child)


def _at(children: list[Node], index: int) -> Node | None:
    if 0 <= index < len(children):
        return children[index]
    return None


def _token(node: Node | None) -> Token:
    assert isinstance(node, Token)
    return node


def _is_ident(node: Node | None) -> bool:
    return isinstance(node, Token) and node.kind == "ident"


def _is_op(node: Node | None, text: str) -> bool:
    return isinstance(node, Token) and node.kind == "op" and node.text == text


__all__ = [
    "FUNCTIONS",
    "ScanResult",
    "deduplicate",
    "discover_nix_files",
    "scan_files",
    "scan_project",
    "scan_source",
]
