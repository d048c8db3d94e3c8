"""Streamable HTTP транспорт одной MCP-сессии.

Транспорт принимает POST с JSON-RPC сообщениями, держит не более одного
GET-потока (SSE) для сообщений сервер -> клиент и закрывается по DELETE.
Закрытие одноразовое: первое `close()` уведомляет единственного подписчика,
повторные вызовы ничего не делают.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from mcp_session_server.core.config import SESSION_HEADER
from mcp_session_server.core.session import SessionId
from mcp_session_server.models.json_rpc import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    SERVER_ERROR,
    SESSION_ERROR,
    json_rpc_error,
)

if TYPE_CHECKING:  # pragma: no cover
    from mcp_session_server.engine.server import McpEngine

logger = logging.getLogger("mcp_session_server.transport.streamable_http")

CloseCallback = Callable[[], Awaitable[Any]]

_STREAM_END = object()


class TransportClosedError(RuntimeError):
    """Операция над уже закрытым транспортом."""


class SessionTransport:
    """Канал запросов и server-push сообщений одной сессии."""

    def __init__(self, session_id: SessionId, *, ping_interval: int = 15) -> None:
        self.session_id = session_id
        self.ping_interval = ping_interval
        self._engine: Optional["McpEngine"] = None
        self._initialized = False
        self._closed = False
        self._close_callback: Optional[CloseCallback] = None
        self._stream_queue: Optional[asyncio.Queue] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def has_stream(self) -> bool:
        return self._stream_queue is not None

    def bind_engine(self, engine: "McpEngine") -> None:
        if self._engine is not None:
            raise RuntimeError(f"Transport {self.session_id} already has an engine bound")
        self._engine = engine

    def subscribe_closed(self, callback: CloseCallback) -> None:
        """Подписаться на закрытие транспорта. Допускается ровно один подписчик."""
        if self._closed:
            raise TransportClosedError(f"Transport {self.session_id} is already closed")
        if self._close_callback is not None:
            raise RuntimeError(f"Transport {self.session_id} already has a close subscriber")
        self._close_callback = callback

    async def close(self) -> None:
        if self._closed:
            return
        # Флаг выставляется до первого await: конкурирующие вызовы выйдут выше.
        self._closed = True
        if self._stream_queue is not None:
            self._stream_queue.put_nowait(_STREAM_END)
        callback, self._close_callback = self._close_callback, None
        logger.debug("Transport %s closed", self.session_id)
        if callback is not None:
            await callback()

    async def send(self, message: Dict[str, Any]) -> None:
        """Отправить сообщение клиенту через открытый GET-поток."""
        if self._closed:
            raise TransportClosedError(f"Transport {self.session_id} is already closed")
        if self._stream_queue is None:
            logger.debug("No stream attached to %s, dropping %s", self.session_id, message.get("method"))
            return
        self._stream_queue.put_nowait(message)

    async def handle_request(self, request: Request, body: Any = None) -> Response:
        if self._closed:
            return self._error_response(404, SESSION_ERROR, "Session terminated")

        method = request.method.upper()
        try:
            if method == "POST":
                return await self._handle_post(request, body)
            if method == "GET":
                return self._handle_get(request)
            if method == "DELETE":
                return await self._handle_delete()
        except Exception:
            logger.exception("Transport %s failed on %s", self.session_id, method)
            await self.close()
            return self._error_response(500, INTERNAL_ERROR, "Internal error")

        return self._error_response(
            405,
            SERVER_ERROR,
            "Method not allowed",
            headers={"Allow": "GET, POST, DELETE"},
        )

    # --- внутренние методы ---

    async def _handle_post(self, request: Request, body: Any) -> Response:
        content_type = request.headers.get("content-type", "").lower()
        if "application/json" not in content_type:
            return self._error_response(
                415, SERVER_ERROR, "Unsupported Media Type: Content-Type must be application/json"
            )
        accept = request.headers.get("accept", "").lower()
        if "application/json" not in accept or "text/event-stream" not in accept:
            return self._error_response(
                406,
                SERVER_ERROR,
                "Not Acceptable: Client must accept both application/json and text/event-stream",
            )

        is_batch = isinstance(body, list)
        messages: List[Any] = body if is_batch else [body]
        if not messages or not all(isinstance(item, dict) for item in messages):
            return self._error_response(400, INVALID_REQUEST, "Invalid Request")

        has_initialize = any(item.get("method") == "initialize" for item in messages)
        if has_initialize:
            if self._initialized:
                return self._error_response(400, INVALID_REQUEST, "Invalid Request: Server already initialized")
            if len(messages) > 1:
                return self._error_response(
                    400, INVALID_REQUEST, "Invalid Request: Only one initialization request is allowed"
                )
            self._initialized = True
        elif not self._initialized:
            return self._error_response(400, SERVER_ERROR, "Bad Request: Server not initialized")

        if self._engine is None:
            raise RuntimeError(f"Transport {self.session_id} has no engine bound")

        replies: List[Dict[str, Any]] = []
        for message in messages:
            reply = await self._engine.handle_message(message)
            if reply is not None:
                replies.append(reply)

        if not replies:
            return Response(status_code=202, headers=self._headers())
        content: Any = replies if is_batch else replies[0]
        return JSONResponse(content, headers=self._headers())

    def _handle_get(self, request: Request) -> Response:
        accept = request.headers.get("accept", "")
        if "text/event-stream" not in accept:
            return self._error_response(406, SERVER_ERROR, "Not Acceptable: Client must accept text/event-stream")
        if self._stream_queue is not None:
            return self._error_response(409, SERVER_ERROR, "Conflict: Only one SSE stream is allowed per session")

        queue: asyncio.Queue = asyncio.Queue()
        self._stream_queue = queue
        logger.debug("Stream opened for %s", self.session_id)
        return EventSourceResponse(self._event_stream(queue), ping=self.ping_interval, headers=self._headers())

    async def _event_stream(self, queue: asyncio.Queue) -> AsyncIterator[Dict[str, Any]]:
        try:
            yield {"comment": "stream opened"}
            while True:
                message = await queue.get()
                if message is _STREAM_END:
                    break
                yield {"event": "message", "data": json.dumps(message, ensure_ascii=False)}
        finally:
            # Отключение клиента снимает поток, но не закрывает сессию.
            if self._stream_queue is queue:
                self._stream_queue = None
            logger.debug("Stream detached from %s", self.session_id)

    async def _handle_delete(self) -> Response:
        headers = self._headers()
        await self.close()
        logger.info("Session %s terminated by client", self.session_id)
        return Response(status_code=200, headers=headers)

    def _headers(self) -> Dict[str, str]:
        return {SESSION_HEADER: str(self.session_id)}

    def _error_response(
        self,
        status_code: int,
        code: int,
        message: str,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> JSONResponse:
        merged = self._headers()
        if headers:
            merged.update(headers)
        return JSONResponse(json_rpc_error(code, message), status_code=status_code, headers=merged)


__all__ = ["CloseCallback", "SessionTransport", "TransportClosedError"]
