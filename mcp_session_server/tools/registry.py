"""Описание схем MCP-инструментов, шаблонов ресурсов и промптов."""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote

from pydantic import BaseModel, Field, PrivateAttr

ToolResponse = Dict[str, Any]
ToolHandler = Callable[[Dict[str, Any]], ToolResponse]
ResourceHandler = Callable[[str, Dict[str, str]], Dict[str, Any]]
PromptHandler = Callable[[Dict[str, str]], Dict[str, Any]]

_TEMPLATE_VAR = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ToolSchema(BaseModel):
    """JSON-схема аргументов/результатов инструмента MCP."""

    type: str = "object"
    properties: Dict[str, Any] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    additionalProperties: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class ToolSpec(BaseModel):
    """Спецификация инструмента MCP, публикуемая в `tools/list`."""

    name: str
    title: Optional[str] = None
    description: str
    input_schema: ToolSchema

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.as_dict(),
        }
        if self.title:
            payload["title"] = self.title
        return payload


class ResourceTemplateSpec(BaseModel):
    """Шаблон ресурса вида `echo://{message}` (RFC 6570, только простые переменные)."""

    name: str
    uri_template: str
    title: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = None

    _pattern: re.Pattern = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        parts: List[str] = []
        last = 0
        for match in _TEMPLATE_VAR.finditer(self.uri_template):
            parts.append(re.escape(self.uri_template[last : match.start()]))
            parts.append(f"(?P<{match.group(1)}>[^/?#]+)")
            last = match.end()
        parts.append(re.escape(self.uri_template[last:]))
        self._pattern = re.compile("^" + "".join(parts) + "$")

    def match(self, uri: str) -> Optional[Dict[str, str]]:
        found = self._pattern.match(uri)
        if found is None:
            return None
        return {key: unquote(value) for key, value in found.groupdict().items()}

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "uriTemplate": self.uri_template}
        if self.title:
            payload["title"] = self.title
        if self.description:
            payload["description"] = self.description
        if self.mime_type:
            payload["mimeType"] = self.mime_type
        return payload


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = True


class PromptSpec(BaseModel):
    """Промпт, публикуемый в `prompts/list`."""

    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "arguments": [arg.model_dump(exclude_none=True) for arg in self.arguments],
        }
        if self.title:
            payload["title"] = self.title
        if self.description:
            payload["description"] = self.description
        return payload


__all__ = [
    "PromptArgument",
    "PromptHandler",
    "PromptSpec",
    "ResourceHandler",
    "ResourceTemplateSpec",
    "ToolHandler",
    "ToolResponse",
    "ToolSchema",
    "ToolSpec",
]
