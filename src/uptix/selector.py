"""Selector parsing and matching against discovered declarations.

Selector forms, tried in order:

1. a canonical key (``$GITHUB_RELEASE$:owner/repo$`` or
   ``$GITHUB_BRANCH$:owner/repo:branch$``), matched verbatim;
2. ``owner/repo:branch`` for a GitHub branch;
3. ``owner/repo`` for a GitHub release;
4. anything else is an image reference, ``image[:tag]``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from uptix.errors import SelectorError
from uptix.models import (
    BRANCH_KEY_PREFIX,
    RELEASE_KEY_PREFIX,
    Declaration,
    DependencyKind,
    DockerReference,
    is_github_name,
    parse_docker_reference,
)


@dataclass(frozen=True, slots=True)
class CanonicalSelector:
    key: str

    def matches(self, declaration: Declaration) -> bool:
        return declaration.key == self.key


@dataclass(frozen=True, slots=True)
class GithubBranchSelector:
    owner: str
    repo: str
    branch: str

    def matches(self, declaration: Declaration) -> bool:
        return (
            declaration.kind is DependencyKind.GITHUB_BRANCH
            and declaration.args.get("owner") == self.owner
            and declaration.args.get("repo") == self.repo
            and declaration.args.get("branch") == self.branch
        )


@dataclass(frozen=True, slots=True)
class GithubReleaseSelector:
    owner: str
    repo: str

    def matches(self, declaration: Declaration) -> bool:
        return (
            declaration.kind is DependencyKind.GITHUB_RELEASE
            and declaration.args.get("owner") == self.owner
            and declaration.args.get("repo") == self.repo
        )


@dataclass(frozen=True, slots=True)
class DockerSelector:
    image: str
    tag: str
    reference: DockerReference

    def matches(self, declaration: Declaration) -> bool:
        if declaration.kind is not DependencyKind.DOCKER_IMAGE:
            return False
        candidate = declaration.docker_reference
        if not candidate.same_image(self.reference):
            return False
        if self.reference.digest is not None and candidate.digest != self.reference.digest:
            return False
        return not self.reference.tag_explicit or candidate.tag == self.reference.tag


Selector = CanonicalSelector | GithubBranchSelector | GithubReleaseSelector | DockerSelector


def parse_selector(text: str) -> Selector:
    """Parse a user or declaration supplied selector string."""
    if not text or not text.strip():
        raise SelectorError("Empty dependency selector.")
    text = text.strip()

    if text.startswith((BRANCH_KEY_PREFIX, RELEASE_KEY_PREFIX)):
        if not text.rstrip("fdl").endswith("$"):
            raise SelectorError(
                "Malformed canonical dependency key.",
                context={"selector": text},
            )
        return CanonicalSelector(key=text)

    # Branch names may contain "/", so only the part before ":" is checked.
    repo_part, separator, branch = text.partition(":")
    if repo_part.count("/") == 1:
        owner, _, repo = repo_part.partition("/")
        if is_github_name(owner) and is_github_name(repo):
            if separator and branch and ":" not in branch:
                return GithubBranchSelector(owner=owner, repo=repo, branch=branch)
            if not separator:
                return GithubReleaseSelector(owner=owner, repo=repo)

    try:
        reference = parse_docker_reference(text)
    except ValueError as exc:
        raise SelectorError(
            "Dependency selector does not match any known form.",
            hint="Use owner/repo, owner/repo:branch, image[:tag] or a key from uptix.lock.",
            context={"selector": text, "reason": str(exc)},
        ) from exc
    image = text.split("@", 1)[0]
    if reference.tag_explicit:
        image = image[: image.rfind(":")]
    return DockerSelector(image=image, tag=reference.tag, reference=reference)


def matches(text: str, declaration: Declaration) -> bool:
    """Return True when ``text`` selects ``declaration``.

    A selector equal to the declaration's canonical key always matches it,
    which keeps keys such as ``owner/image:tag`` usable even though the
    ergonomic form would read them as a GitHub branch.
    """
    if text.strip() == declaration.key:
        return True
    return parse_selector(text).matches(declaration)


def select(text: str, declarations: Iterable[Declaration]) -> list[Declaration]:
    """Filter ``declarations`` down to those matching ``text``.

    Declarations sharing a canonical key count once, and a declaration whose
    key equals ``text`` exactly shadows every looser match. Zero matches is
    an error; more than one is not.
    """
    parse_selector(text)
    candidates = list(declarations)
    exact = [declaration for declaration in candidates if declaration.key == text.strip()]
    selected: list[Declaration] = []
    seen: set[str] = set()
    for declaration in exact or candidates:
        if declaration.key in seen or not matches(text, declaration):
            continue
        seen.add(declaration.key)
        selected.append(declaration)
    if not selected:
        raise SelectorError(
            f"Dependency '{text}' not found",
            hint="Run `uptix list` to see the dependencies discovered in this project.",
            context={"selector": text},
        )
    return selected


__all__ = [
    "CanonicalSelector",
    "DockerSelector",
    "GithubBranchSelector",
    "GithubReleaseSelector",
    "Selector",
    "matches",
    "parse_selector",
    "select",
]
