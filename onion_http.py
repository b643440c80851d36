"""
HTTP plumbing shared by the registry, router and user apps
"""
import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from onion_errors import OnionRoutingError

OCTET_STREAM = {"Content-Type": "application/octet-stream"}


def install_error_handlers(app: FastAPI, logger: logging.Logger):
    """Map protocol errors and malformed bodies to {"error": ...} responses"""

    @app.exception_handler(OnionRoutingError)
    async def onion_error_handler(request: Request, exc: OnionRoutingError):
        logger.warning(f"{request.method} {request.url.path} -> {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc), "kind": type(exc).__name__}
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"{request.method} {request.url.path} -> invalid request body")
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "kind": "ValidationError"}
        )


def make_http_client(timeout: float) -> httpx.AsyncClient:
    """Pooled client with a bounded per-request timeout"""
    return httpx.AsyncClient(
        limits=httpx.Limits(max_keepalive_connections=50, max_connections=100),
        timeout=httpx.Timeout(timeout),
    )
