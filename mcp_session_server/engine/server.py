"""Движок протокола MCP: разбор JSON-RPC сообщений одной сессии."""

from __future__ import annotations

import copy
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from mcp_session_server.core.config import (
    LATEST_PROTOCOL_VERSION,
    SERVER_CAPABILITIES,
    SUPPORTED_PROTOCOL_VERSIONS,
)
from mcp_session_server.models.json_rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    InitializeParams,
    JsonRpcNotification,
    JsonRpcRequest,
    is_notification,
    is_request,
    json_rpc_error,
    json_rpc_result,
)
from mcp_session_server.tools.registry import (
    PromptHandler,
    PromptSpec,
    ResourceHandler,
    ResourceTemplateSpec,
    ToolHandler,
    ToolSpec,
)
from mcp_session_server.transport.streamable_http import SessionTransport

logger = logging.getLogger("mcp_session_server.engine.server")

LOG_LEVELS = ("debug", "info", "notice", "warning", "error", "critical", "alert", "emergency")


class McpError(Exception):
    def __init__(self, message: str, *, code: int = INVALID_PARAMS, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class McpEngine:
    """Обработчик протокола, привязанный к транспорту одной сессии.

    Инструменты, шаблоны ресурсов и промпты регистрируются до подключения;
    сам движок ничего не знает о реестре сессий.
    """

    def __init__(self, server_info: Dict[str, str], *, instructions: Optional[str] = None) -> None:
        self._server_info = dict(server_info)
        self._instructions = instructions
        self._transport: Optional[SessionTransport] = None
        self._tools: Dict[str, Tuple[ToolSpec, ToolHandler]] = {}
        self._resource_templates: Dict[str, Tuple[ResourceTemplateSpec, ResourceHandler]] = {}
        self._prompts: Dict[str, Tuple[PromptSpec, PromptHandler]] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/templates/list": self._handle_resource_templates_list,
            "resources/read": self._handle_resources_read,
            "prompts/list": self._handle_prompts_list,
            "prompts/get": self._handle_prompts_get,
            "logging/setLevel": self._handle_set_level,
        }

        self.protocol_version: Optional[str] = None
        self.client_info: Dict[str, Any] = {}
        self.client_capabilities: Dict[str, Any] = {}
        self.client_ready = False
        self.log_level = "info"

    @property
    def transport(self) -> Optional[SessionTransport]:
        return self._transport

    def connect(self, transport: SessionTransport) -> None:
        if self._transport is not None:
            raise RuntimeError("Engine is already connected to a transport")
        transport.bind_engine(self)
        self._transport = transport

    def add_tool(self, spec: ToolSpec, handler: ToolHandler) -> None:
        self._tools[spec.name] = (spec, handler)

    def add_resource_template(self, spec: ResourceTemplateSpec, handler: ResourceHandler) -> None:
        self._resource_templates[spec.name] = (spec, handler)

    def add_prompt(self, spec: PromptSpec, handler: PromptHandler) -> None:
        self._prompts[spec.name] = (spec, handler)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if self._transport is None or self._transport.closed:
            return
        message = JsonRpcNotification(method=method, params=params).model_dump(exclude_none=True)
        await self._transport.send(message)

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Обработать одно сообщение. Для уведомлений и ответов возвращает None."""
        if is_notification(message):
            self._handle_notification(message)
            return None
        if not is_request(message):
            if "id" in message and ("result" in message or "error" in message):
                logger.debug("Ignoring client response for id=%r", message.get("id"))
                return None
            return json_rpc_error(INVALID_REQUEST, "Invalid Request", request_id=message.get("id"))

        try:
            request = JsonRpcRequest.model_validate(message)
        except ValidationError as exc:
            return json_rpc_error(
                INVALID_REQUEST,
                "Invalid Request",
                data=exc.errors(include_url=False, include_context=False),
                request_id=message.get("id"),
            )

        handler = self._handlers.get(request.method)
        if handler is None:
            return json_rpc_error(METHOD_NOT_FOUND, "Method not found", data={"method": request.method}, request_id=request.id)

        params = request.params or {}
        try:
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
        except McpError as exc:
            return json_rpc_error(exc.code, str(exc), data=exc.data, request_id=request.id)
        except Exception as exc:
            logger.exception("Unhandled error in %s", request.method)
            return json_rpc_error(INTERNAL_ERROR, "Internal error", data=str(exc), request_id=request.id)
        return json_rpc_result(result, request.id)

    # --- обработчики методов ---

    def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if method == "notifications/initialized":
            self.client_ready = True
            logger.debug("Client reported initialized")
        elif method == "notifications/cancelled":
            logger.debug("Client cancelled request %r", (message.get("params") or {}).get("requestId"))
        else:
            logger.debug("Ignoring notification %s", method)

    def _handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            parsed = InitializeParams.model_validate(params)
        except ValidationError as exc:
            raise McpError(
                "Invalid initialize params",
                data=exc.errors(include_url=False, include_context=False),
            ) from exc

        requested = parsed.protocolVersion
        self.protocol_version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        self.client_info = parsed.clientInfo.model_dump()
        self.client_capabilities = parsed.capabilities

        result: Dict[str, Any] = {
            "protocolVersion": self.protocol_version,
            "capabilities": copy.deepcopy(SERVER_CAPABILITIES),
            "serverInfo": self._server_info,
        }
        if self._instructions:
            result["instructions"] = self._instructions
        return result

    def _handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _handle_tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": [spec.as_mcp_dict() for spec, _ in self._tools.values()]}

    async def _handle_tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or name not in self._tools:
            raise McpError(
                "Tool not found",
                code=METHOD_NOT_FOUND,
                data={"available": list(self._tools.keys())},
            )
        if not isinstance(arguments, dict):
            raise McpError("Invalid params: 'arguments' must be an object")

        _, handler = self._tools[name]
        result = handler(arguments)

        progress_token = (params.get("_meta") or {}).get("progressToken")
        if progress_token is not None:
            await self.notify(
                "notifications/progress",
                {"progressToken": progress_token, "progress": 1, "total": 1},
            )
        return result

    def _handle_resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        # Статических ресурсов нет, всё отдаётся через шаблоны.
        return {"resources": []}

    def _handle_resource_templates_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resourceTemplates": [spec.as_mcp_dict() for spec, _ in self._resource_templates.values()]}

    def _handle_resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise McpError("Invalid params: 'uri' must be a non-empty string")
        for spec, handler in self._resource_templates.values():
            variables = spec.match(uri)
            if variables is not None:
                return handler(uri, variables)
        raise McpError(f"Resource {uri} not found", data={"uri": uri})

    def _handle_prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"prompts": [spec.as_mcp_dict() for spec, _ in self._prompts.values()]}

    def _handle_prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or name not in self._prompts:
            raise McpError(f"Prompt {name} not found", data={"available": list(self._prompts.keys())})
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict) or not all(isinstance(v, str) for v in arguments.values()):
            raise McpError("Invalid params: 'arguments' must be an object of strings")

        spec, handler = self._prompts[name]
        missing = [arg.name for arg in spec.arguments if arg.required and arg.name not in arguments]
        if missing:
            raise McpError(f"Missing required arguments: {', '.join(missing)}", data={"missing": missing})
        return handler(arguments)

    def _handle_set_level(self, params: Dict[str, Any]) -> Dict[str, Any]:
        level = params.get("level")
        if level not in LOG_LEVELS:
            raise McpError("Invalid params: unknown logging level", data={"allowed": list(LOG_LEVELS)})
        self.log_level = level
        return {}


__all__ = ["LOG_LEVELS", "McpEngine", "McpError"]
