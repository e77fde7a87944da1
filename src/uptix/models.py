"""Core typed dataclasses for declarations, image references and lock entries."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", DOCKER_HUB_REGISTRY})
DEFAULT_TAG = "latest"

BRANCH_KEY_PREFIX = "$GITHUB_BRANCH$:"
RELEASE_KEY_PREFIX = "$GITHUB_RELEASE$:"

GIT_FLAGS = (
    ("fetchSubmodules", "f"),
    ("deepClone", "d"),
    ("leaveDotGit", "l"),
)

_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_DOMAIN = re.compile(
    r"^(?:localhost|[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?(?:\.[a-zA-Z0-9-]+)*)(?::[0-9]+)?$"
)
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")
_GITHUB_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_BRANCH_KEY = re.compile(r"^\$GITHUB_BRANCH\$:([^/:$]+)/([^/:$]+):([^$]+)\$([fdl]*)$")
_RELEASE_KEY = re.compile(r"^\$GITHUB_RELEASE\$:([^/:$]+)/([^/:$]+)\$([fdl]*)$")


class DependencyKind(StrEnum):
    DOCKER_IMAGE = "docker"
    GITHUB_BRANCH = "github-branch"
    GITHUB_RELEASE = "github-release"


@dataclass(frozen=True, slots=True)
class DockerReference:
    """A parsed ``[registry/]path[:tag][@digest]`` image reference."""

    registry: str
    repository: str
    tag: str = DEFAULT_TAG
    digest: str | None = None
    tag_explicit: bool = False

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DOCKER_HUB_REGISTRY

    @property
    def reference(self) -> str:
        """Manifest reference to request: the digest if pinned, else the tag."""
        return self.digest or self.tag

    @property
    def short_name(self) -> str:
        if self.is_docker_hub and self.repository.startswith("library/"):
            return self.repository.removeprefix("library/")
        if self.is_docker_hub:
            return self.repository
        return f"{self.registry}/{self.repository}"

    def same_image(self, other: DockerReference) -> bool:
        return self.registry == other.registry and self.repository == other.repository


def parse_docker_reference(text: str) -> DockerReference:
    """Parse an image reference, raising ``ValueError`` on malformed input."""
    if not text or text != text.strip():
        raise ValueError(f"invalid image reference: {text!r}")
    remainder = text
    digest: str | None = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST.fullmatch(digest):
            raise ValueError(f"invalid digest in image reference: {text!r}")

    tag: str | None = None
    last_colon = remainder.rfind(":")
    if last_colon != -1 and "/" not in remainder[last_colon + 1 :]:
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1 :]
        if not _TAG.fullmatch(tag):
            raise ValueError(f"invalid tag in image reference: {text!r}")

    components = remainder.split("/")
    registry = DOCKER_HUB_REGISTRY
    first = components[0]
    if len(components) > 1 and ("." in first or ":" in first or first == "localhost"):
        if not _DOMAIN.fullmatch(first):
            raise ValueError(f"invalid registry in image reference: {text!r}")
        registry = DOCKER_HUB_REGISTRY if first in DOCKER_HUB_ALIASES else first
        components = components[1:]
    if not components or not all(_PATH_COMPONENT.fullmatch(part) for part in components):
        raise ValueError(f"invalid repository in image reference: {text!r}")

    if registry == DOCKER_HUB_REGISTRY and len(components) == 1:
        components = ["library", *components]
    return DockerReference(
        registry=registry,
        repository="/".join(components),
        tag=tag or DEFAULT_TAG,
        digest=digest,
        tag_explicit=tag is not None,
    )


def is_github_name(value: str) -> bool:
    return bool(_GITHUB_NAME.fullmatch(value)) and value not in {".", ".."}


def git_flags(args: Mapping[str, Any]) -> str:
    return "".join(letter for name, letter in GIT_FLAGS if args.get(name) is True)


def branch_key(owner: str, repo: str, branch: str, flags: str = "") -> str:
    return f"{BRANCH_KEY_PREFIX}{owner}/{repo}:{branch}${flags}"


def release_key(owner: str, repo: str, flags: str = "") -> str:
    return f"{RELEASE_KEY_PREFIX}{owner}/{repo}${flags}"


@dataclass(frozen=True, slots=True)
class Declaration:
    """A dependency reference discovered in the configuration tree.

    ``args`` holds the literal arguments of the call: ``image`` and
    ``store_hash`` for Docker images, ``owner``/``repo``/``branch`` and the
    optional git flags for GitHub sources. ``locations`` records where the
    declaration was seen and does not take part in equality.
    """

    key: str
    kind: DependencyKind
    args: Mapping[str, Any] = field(default_factory=dict)
    locations: tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def docker_image(cls, image: str, *, store_hash: bool = False) -> Declaration:
        parse_docker_reference(image)
        return cls(
            key=image,
            kind=DependencyKind.DOCKER_IMAGE,
            args={"image": image, "store_hash": store_hash},
        )

    @classmethod
    def github_branch(
        cls,
        owner: str,
        repo: str,
        branch: str,
        **flags: bool,
    ) -> Declaration:
        args: dict[str, Any] = {"owner": owner, "repo": repo, "branch": branch}
        args.update(_true_flags(flags))
        return cls(
            key=branch_key(owner, repo, branch, git_flags(args)),
            kind=DependencyKind.GITHUB_BRANCH,
            args=args,
        )

    @classmethod
    def github_release(cls, owner: str, repo: str, **flags: bool) -> Declaration:
        args: dict[str, Any] = {"owner": owner, "repo": repo}
        args.update(_true_flags(flags))
        return cls(
            key=release_key(owner, repo, git_flags(args)),
            kind=DependencyKind.GITHUB_RELEASE,
            args=args,
        )

    @property
    def docker_reference(self) -> DockerReference:
        return parse_docker_reference(str(self.args["image"]))

    @property
    def display_name(self) -> str:
        if self.kind is DependencyKind.DOCKER_IMAGE:
            return str(self.args["image"])
        if self.kind is DependencyKind.GITHUB_BRANCH:
            return f"{self.args['owner']}/{self.args['repo']}:{self.args['branch']}"
        return f"{self.args['owner']}/{self.args['repo']}"

    def flag(self, name: str) -> bool:
        return self.args.get(name) is True


def _true_flags(flags: Mapping[str, bool]) -> dict[str, bool]:
    known = {name for name, _ in GIT_FLAGS}
    unknown = set(flags) - known
    if unknown:
        raise ValueError(f"unknown git flags: {', '.join(sorted(unknown))}")
    return {name: True for name, _ in GIT_FLAGS if flags.get(name) is True}


def declaration_from_key(key: str) -> Declaration | None:
    """Rebuild the declaration a canonical lock key was produced from."""
    letters = {letter: name for name, letter in GIT_FLAGS}
    if key.startswith(BRANCH_KEY_PREFIX):
        match = _BRANCH_KEY.fullmatch(key)
        if match is None:
            return None
        owner, repo, branch, flags = match.groups()
        return Declaration.github_branch(owner, repo, branch, **{letters[f]: True for f in flags})
    if key.startswith(RELEASE_KEY_PREFIX):
        match = _RELEASE_KEY.fullmatch(key)
        if match is None:
            return None
        owner, repo, flags = match.groups()
        return Declaration.github_release(owner, repo, **{letters[f]: True for f in flags})
    try:
        return Declaration.docker_image(key)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class DependencyMetadata:
    name: str
    selected_version: str | None
    resolved_version: str | None
    dep_type: str
    description: str


@dataclass(frozen=True, slots=True)
class LockEntry:
    """Persisted resolution result for one canonical key.

    ``metadata`` is ``None`` for legacy entries that store the bare payload.
    """

    lock: Any
    metadata: DependencyMetadata | None = None

    @property
    def locked_version(self) -> str | None:
        if self.metadata is not None and self.metadata.resolved_version:
            return self.metadata.resolved_version
        if isinstance(self.lock, str):
            return self.lock
        if isinstance(self.lock, dict):
            for name in ("rev", "imageDigest"):
                value = self.lock.get(name)
                if isinstance(value, str):
                    return value
        return None


LockData = dict[str, LockEntry]


__all__ = [
    "DEFAULT_TAG",
    "DOCKER_HUB_REGISTRY",
    "Declaration",
    "DependencyKind",
    "DependencyMetadata",
    "DockerReference",
    "LockData",
    "LockEntry",
    "branch_key",
    "declaration_from_key",
    "git_flags",
    "is_github_name",
    "parse_docker_reference",
    "release_key",
]
