from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Attach a console handler to the package logger once."""

    root = logging.getLogger("voxdispatch")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)


def _make_json_safe(obj: Any) -> Any:
    """Recursively convert values into JSON-serialisable types."""
    if isinstance(obj, Path):
        return obj.as_posix()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(key): _make_json_safe(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_make_json_safe(value) for value in obj]
    return obj


class JSONLWriter:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def emit(self, record: dict[str, Any]) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(_make_json_safe(record), ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not write to event log %s: %s", self.path, exc)


class JobEventLog:
    """Append-only JSONL record of job lifecycle events.

    A log without a path is a no-op so callers never have to branch.
    """

    def __init__(self, path: Path | None = None):
        self.jsonl = JSONLWriter(path) if path is not None else None

    def event(self, event: str, request_id: str, **fields: Any) -> None:
        if self.jsonl is None:
            return
        record = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "request_id": request_id,
            "event": event,
        }
        record.update(fields)
        self.jsonl.emit(record)


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    """Return ``num_bytes`` as a short human readable size."""

    if num_bytes <= 0:
        return "0 Bytes"
    size = float(num_bytes)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            break
        size /= 1024
    return f"{round(size, max(0, decimals)):g} {unit}"


__all__ = ["LOG_FORMAT", "JSONLWriter", "JobEventLog", "configure_logging", "format_bytes"]
