"""Console logging setup and the structured per-run log."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

LOG_LEVEL_ENV = "UPTIX_LOG_LEVEL"
LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


def setup_logging(level: str | None = None) -> None:
    """Configure console logging through RichHandler.

    Level resolution (first match wins):
      1) argument ``level``
      2) env var ``UPTIX_LOG_LEVEL``
      3) default = "INFO"

    Safe to call more than once.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    level = str(level).upper().strip()
    if level not in LOG_LEVELS:
        level = "INFO"

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%H:%M:%S]",
        handlers=[
            RichHandler(
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                show_path=False,
                show_time=True,
            )
        ],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(logging.WARNING, root.level))


@dataclass(slots=True)
class RunLog:
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        state: str | None,
        dependency: str | None,
        message: str,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "state": state,
            "dependency": dependency,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)

    def records_for_dependency(self, dependency: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("dependency") == dependency]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path


__all__ = ["LOG_LEVEL_ENV", "RunLog", "setup_logging"]
