"""FastAPI-маршруты MCP API."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from mcp_session_server.core.router import SessionRouter
from mcp_session_server.models.json_rpc import PARSE_ERROR, json_rpc_error

logger = logging.getLogger("mcp_session_server.api.routes")


def _session_router(request: Request) -> SessionRouter:
    return request.app.state.session_router


async def mcp_post(request: Request) -> Response:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Rejecting POST with undecodable body")
        return JSONResponse(json_rpc_error(PARSE_ERROR, "Parse error: Invalid JSON"), status_code=400)
    return await _session_router(request).handle_post(request, payload)


async def mcp_session_request(request: Request) -> Response:
    return await _session_router(request).handle_directive(request)


def health(request: Request) -> Dict[str, Any]:
    return {"status": "ok", "sessions": len(_session_router(request).registry)}


def build_router(endpoint_path: str = "/mcp") -> APIRouter:
    """Собрать роутер; путь endpoint берётся из настроек приложения."""
    router = APIRouter()
    router.add_api_route("/health", health, methods=["GET"])
    router.add_api_route(endpoint_path, mcp_post, methods=["POST"])
    router.add_api_route(endpoint_path, mcp_session_request, methods=["GET", "DELETE"])
    return router


__all__ = ["build_router", "mcp_post", "mcp_session_request"]
