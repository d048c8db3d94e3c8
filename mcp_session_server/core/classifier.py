"""Классификация входящих запросов относительно реестра сессий."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

from mcp_session_server.core.session import Session, SessionId, SessionRegistry
from mcp_session_server.models.json_rpc import is_initialize_request


class RequestAction(str, enum.Enum):
    INITIALIZE = "initialize"
    CONTINUE = "continue"
    REJECT = "reject"


class RejectReason(str, enum.Enum):
    NO_VALID_SESSION = "no_valid_session"
    MISSING_OR_INVALID_SESSION = "missing_or_invalid_session"


@dataclass(frozen=True, slots=True)
class Classification:
    action: RequestAction
    session: Optional[Session] = None
    reason: Optional[RejectReason] = None

    @classmethod
    def initialize(cls) -> "Classification":
        return cls(action=RequestAction.INITIALIZE)

    @classmethod
    def proceed(cls, session: Session) -> "Classification":
        return cls(action=RequestAction.CONTINUE, session=session)

    @classmethod
    def reject(cls, reason: RejectReason) -> "Classification":
        return cls(action=RequestAction.REJECT, reason=reason)


def classify_request(
    session_id: Optional[SessionId],
    payload: Any,
    registry: SessionRegistry,
) -> Classification:
    """Классифицировать запрос с телом (POST).

    - нет идентификатора и тело является `initialize` -> новая сессия;
    - идентификатор указывает на живую сессию -> продолжение;
    - всё остальное -> отказ `NO_VALID_SESSION`.
    """
    if session_id is None:
        if is_initialize_request(payload):
            return Classification.initialize()
        return Classification.reject(RejectReason.NO_VALID_SESSION)

    session = registry.lookup(session_id)
    if session is None:
        return Classification.reject(RejectReason.NO_VALID_SESSION)
    return Classification.proceed(session)


def classify_directive(session_id: Optional[SessionId], registry: SessionRegistry) -> Classification:
    """Классифицировать запрос без тела (GET-поток или DELETE)."""
    session = registry.lookup(session_id) if session_id is not None else None
    if session is None:
        return Classification.reject(RejectReason.MISSING_OR_INVALID_SESSION)
    return Classification.proceed(session)


__all__ = [
    "Classification",
    "RejectReason",
    "RequestAction",
    "classify_directive",
    "classify_request",
]
