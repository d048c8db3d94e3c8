"""Маршрутизация запросов к сессиям: создание, продолжение, отказ."""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, Optional
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from mcp_session_server.core.classifier import (
    Classification,
    RejectReason,
    RequestAction,
    classify_directive,
    classify_request,
)
from mcp_session_server.core.config import SESSION_HEADER
from mcp_session_server.core.session import SessionCollisionError, SessionId, SessionRegistry
from mcp_session_server.engine.server import McpEngine
from mcp_session_server.models.json_rpc import SERVER_ERROR, SESSION_ERROR, json_rpc_error
from mcp_session_server.transport.streamable_http import SessionTransport

logger = logging.getLogger("mcp_session_server.core.router")

NO_VALID_SESSION_MESSAGE = "Bad Request: No valid session ID provided"
INVALID_SESSION_MESSAGE = "Invalid or missing session ID"

IdGenerator = Callable[[], str]
EngineFactory = Callable[[], McpEngine]
TransportFactory = Callable[[SessionId], SessionTransport]


def _default_id() -> str:
    return str(uuid4())


class SessionRouter:
    """Связывает классификатор и реестр и передаёт запрос транспорту нужной сессии."""

    def __init__(
        self,
        registry: SessionRegistry,
        engine_factory: EngineFactory,
        *,
        id_generator: Optional[IdGenerator] = None,
        transport_factory: TransportFactory = SessionTransport,
    ) -> None:
        self._registry = registry
        self._engine_factory = engine_factory
        self._id_generator = id_generator or _default_id
        self._transport_factory = transport_factory

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def handle_post(self, request: Request, payload: Any) -> Response:
        session_id = SessionId.from_header(request.headers.get(SESSION_HEADER))
        classification = classify_request(session_id, payload, self._registry)
        logger.debug("POST session=%s -> %s", session_id, classification.action.value)

        if classification.action is RequestAction.INITIALIZE:
            return await self._create_session(request, payload)
        session = classification.session
        if classification.action is RequestAction.CONTINUE and session is not None:
            return await session.transport.handle_request(request, payload)
        return self._reject(classification)

    async def handle_directive(self, request: Request) -> Response:
        """GET (поток server -> client) и DELETE (завершение сессии)."""
        session_id = SessionId.from_header(request.headers.get(SESSION_HEADER))
        classification = classify_directive(session_id, self._registry)
        logger.debug("%s session=%s -> %s", request.method, session_id, classification.action.value)

        session = classification.session
        if classification.action is RequestAction.CONTINUE and session is not None:
            return await session.transport.handle_request(request)
        return self._reject(classification)

    async def _create_session(self, request: Request, payload: Any) -> Response:
        session_id = SessionId(self._id_generator())
        transport = self._transport_factory(session_id)
        engine = self._engine_factory()
        engine.connect(transport)

        try:
            session = await self._registry.create(session_id, transport, engine)
        except SessionCollisionError:
            logger.error("Generated session id %s collides with a live session", session_id)
            # Транспорт ещё без подписчика: закрытие не затронет существующую сессию.
            await transport.close()
            request_id = payload.get("id") if isinstance(payload, dict) else None
            return JSONResponse(
                json_rpc_error(SESSION_ERROR, "Internal error: session id collision", request_id=request_id),
                status_code=500,
            )

        # Единственный путь удаления сессии из реестра.
        transport.subscribe_closed(partial(self._registry.remove, session.id))

        response = await transport.handle_request(request, payload)
        if not transport.initialized:
            # Транспорт отклонил handshake: сессия не должна остаться в реестре.
            logger.debug("Initialize for %s rejected with %s", session.id, response.status_code)
            await transport.close()
        if transport.closed:
            if SESSION_HEADER in response.headers:
                del response.headers[SESSION_HEADER]
        else:
            response.headers[SESSION_HEADER] = str(session.id)
        return response

    @staticmethod
    def _reject(classification: Classification) -> Response:
        if classification.reason is RejectReason.MISSING_OR_INVALID_SESSION:
            return PlainTextResponse(INVALID_SESSION_MESSAGE, status_code=400)
        return JSONResponse(json_rpc_error(SERVER_ERROR, NO_VALID_SESSION_MESSAGE), status_code=400)


__all__ = [
    "EngineFactory",
    "INVALID_SESSION_MESSAGE",
    "IdGenerator",
    "NO_VALID_SESSION_MESSAGE",
    "SessionRouter",
    "TransportFactory",
]
