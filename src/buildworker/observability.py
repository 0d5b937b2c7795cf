"""Structured activity log shared by every step of a build environment."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class ActivityLog:
    """Append-only, timestamped record of what a request did.

    Safe to share between the worker thread and compile-matrix threads.
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def log(
        self,
        message: str,
        *,
        operation: str,
        level: str = "info",
        module: str | None = None,
        platform: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
            "level": level,
            "operation": operation,
            "module": module,
            "platform": platform,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        with self._lock:
            self.records.append(record)

    def info(self, message: str, *, operation: str, **kwargs: Any) -> None:
        self.log(message, operation=operation, level="info", **kwargs)

    def error(self, message: str, *, operation: str, **kwargs: Any) -> None:
        self.log(message, operation=operation, level="error", **kwargs)

    def critical(self, message: str, *, operation: str, **kwargs: Any) -> None:
        self.log(message, operation=operation, level="critical", **kwargs)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self.records)

    def to_text(self) -> str:
        lines = []
        for record in self.snapshot():
            prefix = record["timestamp"]
            if record["level"] != "info":
                prefix += f" [{record['level'].upper()}]"
            lines.append(f"{prefix} {record['message']}")
        return "\n".join(lines) + ("\n" if lines else "")

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.snapshot()]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
