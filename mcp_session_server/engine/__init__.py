from .server import McpEngine, McpError

__all__ = ["McpEngine", "McpError"]
