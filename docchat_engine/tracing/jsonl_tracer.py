"""JSONL file-based trace collector."""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

from docchat_engine.tracing.interface import TraceCollector

logger = logging.getLogger(__name__)


class JSONLTraceCollector(TraceCollector):
    """Writes trace events to ``{trace_dir}/{session_id}.jsonl``.

    Events are buffered per exchange and appended to the session's file when
    the exchange ends, so one file holds a session's exchanges in order.
    """

    def __init__(self, trace_dir: str = "./traces") -> None:
        self._dir = Path(trace_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._buffers: dict[str, list[dict[str, Any]]] = {}

    async def emit(self, exchange_id: str, event_type: str, data: dict[str, Any]) -> None:
        entry = {
            "ts": time.time(),
            "exchange_id": exchange_id,
            "event": event_type,
            **data,
        }
        self._buffers.setdefault(exchange_id, []).append(entry)

    async def flush(self, exchange_id: str) -> None:
        entries = self._buffers.pop(exchange_id, [])
        if not entries:
            return
        session_id = next((e["session_id"] for e in entries if e.get("session_id")), exchange_id)
        safe_name = re.sub(r"[^\w.-]", "_", session_id)
        path = self._dir / f"{safe_name}.jsonl"
        try:
            with open(path, "a") as f:
                for entry in entries:
                    f.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            logger.warning("could not write trace %s: %s", path, exc)
