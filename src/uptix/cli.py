"""Command line entry point.

Usage:
    uptix                          update every dependency
    uptix update --dependency SEL  update only matching dependencies
    uptix list                     list discovered dependencies (offline)
    uptix show SEL                 print locked metadata for SEL
    uptix init                     write an empty uptix.lock
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from uptix._version import __version__
from uptix.config import Settings
from uptix.errors import UptixError
from uptix.lockfile import init_lockfile
from uptix.models import DependencyKind
from uptix.observability import setup_logging
from uptix.orchestrator import Updater


def cmd_update(args: argparse.Namespace, updater: Updater) -> None:
    updater.update(args.dependency)


def cmd_list(args: argparse.Namespace, updater: Updater) -> None:
    listed = updater.list_dependencies()
    print("Dependencies found in project:")
    for item in listed:
        status = item.entry.locked_version if item.entry is not None else "not locked"
        print(f"{item.declaration.kind.value:<15} {item.declaration.display_name}  ({status})")
        if args.verbose:
            print(f"    key: {item.declaration.key}")
            for location in item.declaration.locations:
                print(f"    at:  {location}")


def cmd_show(args: argparse.Namespace, updater: Updater) -> None:
    for index, (key, entry) in enumerate(updater.show(args.selector)):
        if index:
            print()
        print(f"Dependency: {key}")
        metadata = entry.metadata
        if metadata is None:
            print("Type: unknown (entry has no metadata)")
            print(f"Locked version: {entry.locked_version or '-'}")
            continue
        print(f"Type: {_type_label(metadata.dep_type)}")
        print(f"Selected version: {metadata.selected_version or '-'}")
        print(f"Locked version: {metadata.resolved_version or '-'}")
        print(f"Description: {metadata.description}")


def cmd_init(args: argparse.Namespace, updater: Updater) -> None:
    path = init_lockfile(updater.settings.lock_file)
    print(f"Wrote {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uptix",
        description="Lock Docker images and GitHub sources referenced from Nix files",
    )
    parser.add_argument("--version", action="version", version=f"uptix {__version__}")
    parser.add_argument("--root", type=Path, default=None, help="Project root to scan")
    parser.add_argument("--lock-file", type=Path, default=None, help="Lock file path")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--platform", default=None, help="Image platform, e.g. linux/arm64")
    parser.add_argument(
        "--no-prefetch",
        action="store_true",
        help="Skip Nix store hash computation",
    )
    parser.add_argument("--report", type=Path, default=None, help="Write the run log as JSON lines")
    sub = parser.add_subparsers(dest="command")

    update_p = sub.add_parser("update", help="Resolve dependencies and write uptix.lock")
    update_p.add_argument("--dependency", default=None, help="Only update matching dependencies")

    list_p = sub.add_parser("list", help="List discovered dependencies")
    list_p.add_argument("-v", "--verbose", action="store_true", help="Show keys and locations")

    show_p = sub.add_parser("show", help="Show locked metadata for a dependency")
    show_p.add_argument("selector", help="Dependency selector or lock key")

    sub.add_parser("init", help="Create an empty uptix.lock")
    return parser


COMMANDS = {
    "update": cmd_update,
    "list": cmd_list,
    "show": cmd_show,
    "init": cmd_init,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "update"
        args.dependency = None
    setup_logging(args.log_level)

    settings = Settings.from_env(
        args.root,
        lock_path=args.lock_file,
        platform=args.platform,
        prefetch=False if args.no_prefetch else None,
    )
    updater = Updater(settings, echo=print)
    try:
        COMMANDS[args.command](args, updater)
    except UptixError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        if args.report is not None:
            updater.run_log.to_json_lines(args.report)
    return 0


def _type_label(dep_type: str) -> str:
    labels = {
        DependencyKind.DOCKER_IMAGE.value: "Docker image",
        DependencyKind.GITHUB_BRANCH.value: "GitHub branch",
        DependencyKind.GITHUB_RELEASE.value: "GitHub release",
    }
    return labels.get(dep_type, dep_type)


if __name__ == "__main__":
    sys.exit(main())
