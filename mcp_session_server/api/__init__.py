"""HTTP-слой приложения."""

from .routes import build_router

__all__ = ["build_router"]
