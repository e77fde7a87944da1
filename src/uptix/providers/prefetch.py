"""Nix store hash computation via ``nix-prefetch-git`` and ``nix-prefetch-docker``.

Both tools download the source into the Nix store and print a JSON document
whose ``sha256`` (or SRI ``hash``) field is what ``fetchFromGitHub`` and
``dockerTools.pullImage`` expect.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from typing import Protocol

from uptix.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


class Prefetcher(Protocol):
    async def prefetch_git(
        self,
        url: str,
        rev: str,
        *,
        fetch_submodules: bool = False,
        deep_clone: bool = False,
        leave_dot_git: bool = False,
    ) -> str:
        """Return the Nix sha256 of ``url`` checked out at ``rev``."""

    async def prefetch_docker(
        self,
        image_name: str,
        image_digest: str,
        *,
        tag: str,
        platform: str,
    ) -> str:
        """Return the Nix sha256 of the image archive for ``image_digest``."""


@dataclass(slots=True)
class NixPrefetcher:
    timeout: float = 600.0

    async def prefetch_git(
        self,
        url: str,
        rev: str,
        *,
        fetch_submodules: bool = False,
        deep_clone: bool = False,
        leave_dot_git: bool = False,
    ) -> str:
        options = ["--deepClone" if deep_clone else "--no-deepClone"]
        if fetch_submodules:
            options.append("--fetch-submodules")
        # fetchgit implies leaveDotGit whenever deepClone is set
        if leave_dot_git or deep_clone:
            options.append("--leave-dotGit")
        argv = ["nix-prefetch-git", *options, "--quiet", "--rev", rev, url]
        return await self._run(argv, operation="prefetch_git")

    async def prefetch_docker(
        self,
        image_name: str,
        image_digest: str,
        *,
        tag: str,
        platform: str,
    ) -> str:
        os_name, _, arch = platform.partition("/")
        argv = [
            "nix-prefetch-docker",
            "--json",
            "--quiet",
            "--image-name",
            image_name,
            "--image-digest",
            image_digest,
            "--final-image-tag",
            tag,
            "--os",
            os_name or "linux",
            "--arch",
            arch.split("/", 1)[0] or "amd64",
        ]
        return await self._run(argv, operation="prefetch_docker")

    async def _run(self, argv: list[str], *, operation: str) -> str:
        if shutil.which(argv[0]) is None:
            raise ProviderError(
                f"`{argv[0]}` was not found in PATH.",
                kind=ProviderErrorKind.PREFETCH_FAILED,
                hint="Run uptix inside a Nix shell that provides nix-prefetch-scripts, "
                "or pass --no-prefetch.",
                context={"operation": operation},
            )
        logger.debug("Running %s", " ".join(argv))
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProviderError(
                f"`{argv[0]}` timed out.",
                kind=ProviderErrorKind.PREFETCH_FAILED,
                context={"operation": operation, "argv": " ".join(argv)},
            ) from exc
        if process.returncode != 0:
            raise ProviderError(
                f"`{argv[0]}` failed.",
                kind=ProviderErrorKind.PREFETCH_FAILED,
                hint="Inspect the prefetch output for network or source errors.",
                context={
                    "operation": operation,
                    "argv": " ".join(argv),
                    "returncode": str(process.returncode),
                    "stderr": stderr.decode("utf-8", "replace").strip()[-2000:],
                },
            )
        return _parse_hash(stdout.decode("utf-8", "replace"), operation=operation)


def _parse_hash(output: str, *, operation: str) -> str:
    try:
        info = json.loads(output)
    except json.JSONDecodeError as exc:
        raise ProviderError(
            "Prefetch output is not valid JSON.",
            kind=ProviderErrorKind.PREFETCH_FAILED,
            context={"operation": operation, "output": output.strip()[-500:]},
        ) from exc
    for name in ("sha256", "hash"):
        value = info.get(name) if isinstance(info, dict) else None
        if isinstance(value, str) and value:
            return value
    raise ProviderError(
        "Prefetch output does not contain a hash.",
        kind=ProviderErrorKind.PREFETCH_FAILED,
        context={"operation": operation},
    )
