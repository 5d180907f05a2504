import logging
import uuid
import time
import contextvars
from typing import Any, Dict

from ..core.messages import Request
from ..exceptions import QueryError
from .base import BaseMiddleware, Handler

correlation_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter to inject the correlation_id into log records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        return True


# Configure logger with structured data filter
logger = logging.getLogger(__name__)
logger.addFilter(CorrelationIdFilter())


def _fmt_ctx(ctx: Dict[str, Any]) -> str:
    """Return a deterministic key=value string used in log messages."""
    return " ".join(f"{k}={v}" for k, v in ctx.items() if v is not None)


class RequestLoggingMiddleware(BaseMiddleware):
    """
    This middleware logs submitted requests with structured logs,
    correlation IDs and execution time.
    """

    async def __call__(self, handler: Handler, request: Request, data: Dict[str, Any]) -> Any:
        cid = str(uuid.uuid4())
        correlation_id_ctx.set(cid)
        data["correlation_id"] = cid

        incoming_ctx = {
            "correlation_id": cid,
            "request": request.name,
        }
        logger.debug(f"Submitting request {_fmt_ctx(incoming_ctx)}", extra=incoming_ctx)

        start_time = time.monotonic()
        outcome = "ok"
        try:
            return await handler(request, data)

        except QueryError as e:
            outcome = "error"
            err_ctx = {
                "correlation_id": cid,
                "request": request.name,
                "error_type": e.type,
                "description": e.details.message,
            }
            logger.warning(f"Query failed {_fmt_ctx(err_ctx)}", extra=err_ctx)
            raise

        except Exception as e:
            outcome = "exception"
            exc_ctx = {
                "correlation_id": cid,
                "request": request.name,
                "error": str(e),
            }
            logger.exception(f"Exception while submitting request {_fmt_ctx(exc_ctx)}", extra=exc_ctx)
            raise

        finally:
            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            processed_ctx = {
                "correlation_id": cid,
                "request": request.name,
                "request_id": request.request_id or None,
                "outcome": outcome,
                "execution_time_ms": elapsed_ms,
            }
            logger.info(f"Request processed {_fmt_ctx(processed_ctx)}", extra=processed_ctx)
