"""
Global middleware and error handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.exceptions import (
    ConfigurationError,
    ConnectorError,
    InputError,
    InvalidState,
    ProviderApiError,
    ProviderNotFound,
    RedirectMismatch,
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_STATUS_FOR_ERROR = (
    (ProviderNotFound, status.HTTP_400_BAD_REQUEST),
    (InvalidState, status.HTTP_400_BAD_REQUEST),
    (RedirectMismatch, status.HTTP_400_BAD_REQUEST),
    (InputError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ProviderApiError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: ConnectorError) -> int:
    for cls, code in _STATUS_FOR_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and the connector error handler."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        # Only the path: callback query strings carry authorization codes.
        logger.debug(
            "%s %s -> %d (%.3fs)",
            request.method, request.url.path, response.status_code, elapsed,
        )
        return response

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            detail = "Internal error while talking to the financial provider"
        else:
            detail = str(exc)
        return JSONResponse(status_code=code, content={"detail": detail, "code": exc.code})
