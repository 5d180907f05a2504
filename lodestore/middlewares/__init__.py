from .base import BaseMiddleware
from .logging_middleware import RequestLoggingMiddleware

__all__ = ["BaseMiddleware", "RequestLoggingMiddleware"]
