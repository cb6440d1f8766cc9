"""
Observability for the Credit Ledger Service.

Configures the service logger and adds correlation IDs and structured
logging context to requests.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from credit_ledger.app.core.config import settings

# Service-wide structured logger
logger = logging.getLogger("credit_ledger")


def configure_logging(level: str = None) -> None:
    """Attach a stream handler to the service logger once."""
    logger.setLevel((level or settings.log_level).upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logger.addHandler(handler)


# Account-scoped routes carry the account id as the segment after these prefixes
_ACCOUNT_PREFIXES = ("credits", "integrations")


def account_id_from_path(path: str):
    """Pull the account id out of an account-scoped route, if there is one."""
    parts = [part for part in path.split("/") if part]
    for index, part in enumerate(parts[:-1]):
        if part in _ACCOUNT_PREFIXES and parts[index + 1].isdigit():
            return int(parts[index + 1])
    return None


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Stamps every response with a correlation ID and logs one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"

        context = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "account_id": account_id_from_path(request.url.path),
            "status_code": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
        }
        if response.status_code >= 500:
            logger.error("Request failed", extra=context)
        elif response.status_code >= 400:
            logger.warning("Request rejected", extra=context)
        else:
            logger.info("Request served", extra=context)

        return response
