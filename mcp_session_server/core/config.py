"""Глобальные константы и настройки MCP Session Server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

logger = logging.getLogger("mcp_session_server.core.config")

SESSION_HEADER = "mcp-session-id"

# Первая версия в списке считается актуальной и отдаётся клиенту,
# если запрошенная им версия не поддерживается.
SUPPORTED_PROTOCOL_VERSIONS: Tuple[str, ...] = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

SERVER_CAPABILITIES: Dict[str, Dict[str, object]] = {
    "tools": {"listChanged": False},
    "resources": {"listChanged": False, "subscribe": False},
    "prompts": {"listChanged": False},
    "logging": {},
}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid value %s=%r, falling back to %s", name, raw, default)
        return default


def _get_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _normalise_path(path: str) -> str:
    path = path.strip() or "/mcp"
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path


@dataclass(slots=True)
class ServerSettings:
    """Настройки сервера, получаемые из окружения."""

    host: str = "0.0.0.0"
    port: int = 3000
    endpoint_path: str = "/mcp"
    server_name: str = "example-server"
    server_version: str = "1.0.0"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    sse_ping_interval: int = 15

    @property
    def server_info(self) -> Dict[str, str]:
        return {"name": self.server_name, "version": self.server_version}

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            host=os.getenv("MCP_HOST", "0.0.0.0"),
            port=_get_int("MCP_PORT", 3000),
            endpoint_path=_normalise_path(os.getenv("MCP_ENDPOINT_PATH", "/mcp")),
            server_name=os.getenv("MCP_SERVER_NAME", "example-server"),
            server_version=os.getenv("APP_VERSION", "1.0.0"),
            cors_origins=_get_list("MCP_CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            sse_ping_interval=max(1, _get_int("MCP_SSE_PING_INTERVAL", 15)),
        )


SETTINGS = ServerSettings.from_env()

__all__ = [
    "LATEST_PROTOCOL_VERSION",
    "SERVER_CAPABILITIES",
    "SESSION_HEADER",
    "SETTINGS",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "ServerSettings",
]
