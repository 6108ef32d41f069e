"""
JSONL event logger.

Rules:
- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Every record carries ts_ms (filled in when the caller omits it)
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Callable, Mapping


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print


def now_ms() -> int:
    """Wall-clock milliseconds for log correlation."""
    return time.time_ns() // 1_000_000


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies event_type, session_id, and any structured fields.
    ts_ms is added when absent.

    This function:
    - Serializes to JSON
    - Writes exactly one line
    - Flushes immediately (no buffering)
    - Never raises
    """
    record = dict(event)
    record.setdefault("ts_ms", now_ms())

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the runtime
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)


def log_exception(
    event_type: str,
    exc: BaseException,
    *,
    session_id: str | None = None,
    **fields: Any,
) -> None:
    """Log a caught exception as a structured record."""
    log_event({
        "event_type": event_type,
        "session_id": session_id,
        "exception": type(exc).__name__,
        "message": str(exc),
        **fields,
    })
