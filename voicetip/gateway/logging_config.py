"""Loguru setup shared by the gateway and worker processes, plus HTTP error rendering."""

import logging
import sys
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from voicetip.gateway.exceptions import APIError
from voicetip.gateway.metrics import log_error, log_event

STDOUT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[service]}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
HTTP_REQUEST_ID_HEADER = "X-Request-ID"


class InterceptHandler(logging.Handler):
    """Forward stdlib log records (uvicorn, sqlalchemy, auth) to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = sys._getframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(log_dir: Path, service: str = "gateway", level: str = "INFO") -> None:
    """Colored stdout plus a rotating `<service>.jsonl` file; stdlib logging is routed through loguru."""
    logger.remove()
    logger.configure(extra={"service": service})
    logger.add(sys.stdout, format=STDOUT_FORMAT, level=level, colorize=True)

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / f"{service}.jsonl",
        format="{message}",
        level=level,
        serialize=True,
        rotation="100 MB",
        retention=100,
        compression="gz",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag every log line of an HTTP request with a correlation id and record the outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        http_request_id = request.headers.get(HTTP_REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request.state.http_request_id = http_request_id
        start = time.perf_counter()

        with logger.contextualize(http_request_id=http_request_id):
            response = await call_next(request)

        response.headers[HTTP_REQUEST_ID_HEADER] = http_request_id
        await log_event(
            "http_request",
            endpoint=request.url.path,
            method=request.method,
            status_code=response.status_code,
            data={"duration_ms": int((time.perf_counter() - start) * 1000)},
        )
        return response


async def api_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render APIError subclasses with their status code, payload and headers."""
    assert isinstance(exc, APIError)
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_request_id = getattr(request.state, "http_request_id", None)
    user_id = getattr(request.state, "user_id", None)

    context = f"{request.method} {request.url.path} http_request_id={http_request_id}"
    if user_id is not None:
        context += f" user_id={user_id}"
    logger.exception(f"Unhandled exception on {context}: {exc}")

    await log_error(
        f"Unhandled 500: {exc}",
        method=request.method,
        path=request.url.path,
        http_request_id=http_request_id,
        user_id=user_id,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
