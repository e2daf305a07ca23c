"""Middleware components for request processing."""

from trustcore.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
