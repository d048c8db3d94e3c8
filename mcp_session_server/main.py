# mcp_session_server/main.py
"""Точка входа FastAPI: MCP-сервер с несколькими сессиями на одном Streamable HTTP endpoint.

Каждый `initialize` без заголовка `mcp-session-id` создаёт новую сессию со
своим транспортом и движком; последующие запросы адресуются ей по заголовку.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import build_router
from .core.config import SESSION_HEADER, SETTINGS, ServerSettings
from .core.router import IdGenerator, SessionRouter
from .core.session import SessionRegistry
from .transport import SessionTransport
from .tools.handlers import build_echo_engine

logger = logging.getLogger("mcp_session_server")
if not logger.handlers:
    logging.basicConfig(level=getattr(logging, SETTINGS.log_level, logging.INFO))


def create_app(
    settings: Optional[ServerSettings] = None,
    *,
    registry: Optional[SessionRegistry] = None,
    id_generator: Optional[IdGenerator] = None,
) -> FastAPI:
    """Собрать приложение с собственным реестром сессий."""
    settings = settings or SETTINGS
    if registry is None:
        registry = SessionRegistry()
    session_router = SessionRouter(
        registry,
        engine_factory=partial(build_echo_engine, settings.server_info),
        id_generator=id_generator,
        transport_factory=partial(SessionTransport, ping_interval=settings.sse_ping_interval),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info("MCP session endpoint ready at %s", settings.endpoint_path)
        try:
            yield
        finally:
            await registry.close_all()

    application = FastAPI(title="MCP Session Server", version=settings.server_version, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )
    application.state.session_router = session_router
    application.include_router(build_router(settings.endpoint_path))
    return application


app = create_app()


def main() -> None:
    logger.info("Server is running on http://%s:%s%s", SETTINGS.host, SETTINGS.port, SETTINGS.endpoint_path)
    uvicorn.run(app, host=SETTINGS.host, port=SETTINGS.port, log_level=SETTINGS.log_level.lower())


if __name__ == "__main__":  # pragma: no cover
    main()
