"""Хранилище и утилиты для управления сессиями MCP."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:  # pragma: no cover - только для аннотаций
    from mcp_session_server.engine.server import McpEngine
    from mcp_session_server.transport.streamable_http import SessionTransport

logger = logging.getLogger("mcp_session_server.core.session")


@dataclass(frozen=True, slots=True)
class SessionId:
    """Непрозрачный идентификатор сессии из заголовка `mcp-session-id`.

    Обёртка нужна, чтобы идентификатор сессии не путался с прочими
    строковыми значениями заголовков.
    """

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value:
            raise ValueError("session id must be a non-empty string")

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_header(cls, raw: Optional[str]) -> Optional["SessionId"]:
        """Отсутствующий или пустой заголовок означает «сессия не указана»."""
        if raw is None:
            return None
        token = raw.strip()
        if not token:
            return None
        return cls(token)


class SessionCollisionError(RuntimeError):
    """Свежесгенерированный идентификатор уже занят живой сессией."""

    def __init__(self, session_id: SessionId) -> None:
        super().__init__(f"Session id '{session_id}' is already registered")
        self.session_id = session_id


@dataclass(slots=True)
class Session:
    """Живая сессия: транспорт и движок протокола, принадлежащие одному клиенту."""

    id: SessionId
    transport: "SessionTransport"
    engine: "McpEngine"
    created_at: float = field(default_factory=time.monotonic)


class SessionRegistry:
    """Реестр живых сессий процесса.

    Чтение (`lookup`) не блокируется; `create` и `remove` сериализуются
    одним `asyncio.Lock`. Идентификатор находится в реестре тогда и только
    тогда, когда транспорт сессии открыт: удаление выполняется только из
    уведомления о закрытии транспорта.
    """

    def __init__(self) -> None:
        self._sessions: Dict[SessionId, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def ids(self) -> List[SessionId]:
        return list(self._sessions)

    def lookup(self, session_id: SessionId) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def create(
        self,
        session_id: SessionId,
        transport: "SessionTransport",
        engine: "McpEngine",
    ) -> Session:
        async with self._lock:
            if session_id in self._sessions:
                raise SessionCollisionError(session_id)
            session = Session(id=session_id, transport=transport, engine=engine)
            self._sessions[session_id] = session
        logger.info("Session %s created (%d live)", session_id, len(self._sessions))
        return session

    async def remove(self, session_id: SessionId) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug("Session %s already removed", session_id)
            return False
        logger.info("Session %s removed (%d live)", session_id, len(self._sessions))
        return True

    async def close_all(self) -> None:
        """Закрыть все транспорты; записи уходят из реестра через их уведомления."""
        sessions = list(self._sessions.values())
        for session in sessions:
            await session.transport.close()
        if sessions:
            logger.info("Closed %d session(s) on shutdown", len(sessions))


__all__ = [
    "Session",
    "SessionCollisionError",
    "SessionId",
    "SessionRegistry",
]
