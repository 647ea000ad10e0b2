"""Authoring session and its store: the explicit context object."""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from docchat_engine.engine.cancellation import CancellationController
from docchat_engine.engine.conversation import ConversationHistory
from docchat_engine.engine.ledger import VersionLedger
from docchat_engine.engine.models import SelectionContext


@dataclass
class AuthoringSession:
    """Everything one authoring session owns, passed to the engine explicitly."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    history: ConversationHistory = field(default_factory=ConversationHistory)
    ledger: VersionLedger = field(default_factory=VersionLedger)
    cancellation: CancellationController = field(default_factory=CancellationController)
    source_documents: list[str] = field(default_factory=list)
    selection: SelectionContext | None = None
    model: str | None = None
    pending_input: str = ""
    is_loading: bool = False
    is_streaming: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class SesStore(ABC):
    """Async session persistence interface."""

    @abstractmethod
    async def get(self, session_id: str) -> AuthoringSession | None: ...

    @abstractmethod
    async def save(self, session: AuthoringSession) -> None: ...

    @abstractmethod
    async def delete(self, session_id: str) -> None: ...

    async def get_or_create(self, session_id: str) -> AuthoringSession:
        session = await self.get(session_id)
        if session is None:
            session = AuthoringSession(session_id=session_id)
            await self.save(session)
        return session


class InMemorySesStore(SesStore):
    """Dict-backed store: sessions are process-local."""

    def __init__(self) -> None:
        self._store: dict[str, AuthoringSession] = {}

    async def get(self, session_id: str) -> AuthoringSession | None:
        return self._store.get(session_id)

    async def save(self, session: AuthoringSession) -> None:
        session.updated_at = time.time()
        self._store[session.session_id] = session

    async def delete(self, session_id: str) -> None:
        session = self._store.pop(session_id, None)
        if session is not None:
            session.cancellation.stop("session deleted")
