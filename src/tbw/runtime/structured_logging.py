# src/tbw/runtime/structured_logging.py
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _json_default(v: Any) -> str:
    # Decimal amounts and similar scalars are logged by their exact string form.
    return str(v)


def configure_structured_logging(level_name: Optional[str] = None) -> None:
    """Configure stdlib logging for JSONL output (stderr).

    - Level from the argument (default INFO).
    - Safe to call multiple times.
    """
    level = getattr(logging, (level_name or "INFO").strip().upper(), logging.INFO)

    root = logging.getLogger()
    if getattr(root, "_tbw_configured", False):  # type: ignore[attr-defined]
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers = [handler]
    root.setLevel(level)
    setattr(root, "_tbw_configured", True)  # type: ignore[attr-defined]


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a single JSONL log event."""
    if not logger.isEnabledFor(level):
        return
    payload: Json = {"ts_ms": _now_ms(), "event": str(event)}
    payload.update(fields)
    logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default))
