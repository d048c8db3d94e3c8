"""Echo-возможности, которые получает каждая новая сессия."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from mcp_session_server.engine.server import McpEngine
from mcp_session_server.tools.registry import (
    PromptArgument,
    PromptSpec,
    ResourceTemplateSpec,
    ToolResponse,
    ToolSchema,
    ToolSpec,
)

logger = logging.getLogger("mcp_session_server.tools.handlers")


def _tool_ok(*, content: Optional[List[Dict[str, Any]]] = None) -> ToolResponse:
    return {"content": content or [], "isError": False}


def _tool_error(message: str) -> ToolResponse:
    return {"content": [{"type": "text", "text": message}], "isError": True}


ECHO_TOOL = ToolSpec(
    name="echo",
    title="Echo Tool",
    description="Echoes back the provided message",
    input_schema=ToolSchema(
        properties={"message": {"type": "string"}},
        required=["message"],
    ),
)

ECHO_RESOURCE = ResourceTemplateSpec(
    name="echo",
    uri_template="echo://{message}",
    title="Echo Resource",
    description="Echoes back messages as resources",
)

ECHO_PROMPT = PromptSpec(
    name="echo",
    title="Echo Prompt",
    description="Creates a prompt to process a message",
    arguments=[PromptArgument(name="message", required=True)],
)


def _handle_echo(arguments: Dict[str, Any]) -> ToolResponse:
    message = arguments.get("message")
    if not isinstance(message, str):
        return _tool_error("Invalid params: 'message' must be a string")
    return _tool_ok(content=[{"type": "text", "text": f"Tool echo: {message}"}])


def _read_echo_resource(uri: str, variables: Dict[str, str]) -> Dict[str, Any]:
    return {
        "contents": [
            {"uri": uri, "text": f"Resource echo: {variables.get('message', '')}"},
        ]
    }


def _get_echo_prompt(arguments: Dict[str, str]) -> Dict[str, Any]:
    return {
        "messages": [
            {
                "role": "user",
                "content": {
                    "type": "text",
                    "text": f"Please process this message: {arguments['message']}",
                },
            }
        ]
    }


def register_echo_capabilities(engine: McpEngine) -> McpEngine:
    engine.add_resource_template(ECHO_RESOURCE, _read_echo_resource)
    engine.add_tool(ECHO_TOOL, _handle_echo)
    engine.add_prompt(ECHO_PROMPT, _get_echo_prompt)
    return engine


def build_echo_engine(server_info: Dict[str, str]) -> McpEngine:
    """Создать движок для новой сессии с уже зарегистрированными echo-возможностями."""
    logger.debug("Building engine for %s", server_info.get("name"))
    return register_echo_capabilities(McpEngine(server_info))


__all__ = [
    "ECHO_PROMPT",
    "ECHO_RESOURCE",
    "ECHO_TOOL",
    "_handle_echo",
    "_tool_error",
    "_tool_ok",
    "build_echo_engine",
    "register_echo_capabilities",
]
