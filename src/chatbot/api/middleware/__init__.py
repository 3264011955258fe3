"""HTTP middleware: structured request logging."""

from src.chatbot.api.middleware.logging import LoggingMiddleware, configure_structlog

__all__ = ["LoggingMiddleware", "configure_structlog"]
