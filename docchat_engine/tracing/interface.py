"""Trace collectors receive one event stream per exchange."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class TraceCollector(ABC):
    """Buffers structured events for an exchange until it is flushed.

    ``exchange_start`` events carry the ``session_id`` so collectors can
    group exchanges by session.
    """

    @abstractmethod
    async def emit(self, exchange_id: str, event_type: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def flush(self, exchange_id: str) -> None: ...


class NullTraceCollector(TraceCollector):
    """Discards everything. Used when no trace sink is configured."""

    async def emit(self, exchange_id: str, event_type: str, data: dict[str, Any]) -> None:
        return None

    async def flush(self, exchange_id: str) -> None:
        return None
