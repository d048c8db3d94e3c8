"""MCP Session Server: несколько stateful MCP-сессий на одном HTTP endpoint."""

__version__ = "1.0.0"
