"""Pydantic-модели JSON-RPC 2.0 и handshake-сообщений MCP."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

# Коды ошибок JSON-RPC, которые использует сервер.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# Диапазон -32000..-32099 зарезервирован под ошибки сервера.
SERVER_ERROR = -32000
SESSION_ERROR = -32001

RequestId = Union[StrictStr, StrictInt]


class JsonRpcRequest(BaseModel):
    """Стандартный JSON-RPC 2.0 запрос."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None
    id: RequestId


class JsonRpcNotification(BaseModel):
    """JSON-RPC 2.0 уведомление (без `id`, ответ не ожидается)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JsonRpcResponse(BaseModel):
    """Успешный JSON-RPC 2.0 ответ."""

    jsonrpc: Literal["2.0"] = "2.0"
    result: Any = None
    id: Optional[Any] = None


class JsonRpcErrorObj(BaseModel):
    """Структура ошибки JSON-RPC 2.0."""

    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcError(BaseModel):
    """JSON-RPC 2.0 ответ с ошибкой."""

    jsonrpc: Literal["2.0"] = "2.0"
    error: JsonRpcErrorObj
    id: Optional[Any] = None

    def to_wire(self) -> Dict[str, Any]:
        """Сериализация без `error.data`, если оно не задано; `id` остаётся даже при null."""
        payload = self.model_dump()
        if payload["error"].get("data") is None:
            payload["error"].pop("data", None)
        return payload


class ClientInfo(BaseModel):
    name: StrictStr
    version: StrictStr


class InitializeParams(BaseModel):
    """Параметры метода `initialize` MCP."""

    protocolVersion: StrictStr
    capabilities: Dict[str, Any]
    clientInfo: ClientInfo


class InitializeRequest(BaseModel):
    """Запрос `initialize` в строгой форме, используемой для распознавания handshake."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    method: Literal["initialize"]
    id: RequestId
    params: InitializeParams


def json_rpc_error(code: int, message: str, *, data: Any = None, request_id: Any = None) -> Dict[str, Any]:
    return JsonRpcError(
        error=JsonRpcErrorObj(code=code, message=message, data=data),
        id=request_id,
    ).to_wire()


def json_rpc_result(result: Any, request_id: Any) -> Dict[str, Any]:
    return JsonRpcResponse(result=result, id=request_id).model_dump()


def is_initialize_request(payload: Any) -> bool:
    """Проверить, что тело запроса является корректным `initialize`.

    Решение принимается только по форме сообщения: отдельного поля с типом
    запроса в протоколе нет. Батчи и всё, что не проходит строгую валидацию,
    считаются не-initialize.
    """
    if not isinstance(payload, dict):
        return False
    try:
        InitializeRequest.model_validate(payload)
    except ValidationError:
        return False
    return True


def is_request(message: Dict[str, Any]) -> bool:
    return "method" in message and "id" in message


def is_notification(message: Dict[str, Any]) -> bool:
    return "method" in message and "id" not in message


__all__ = [
    "ClientInfo",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "InitializeParams",
    "InitializeRequest",
    "JsonRpcError",
    "JsonRpcErrorObj",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "SERVER_ERROR",
    "SESSION_ERROR",
    "is_initialize_request",
    "is_notification",
    "is_request",
    "json_rpc_error",
    "json_rpc_result",
]
