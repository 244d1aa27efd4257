import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from roomchat.metrics import record_http_request


# Set per HTTP request by the middleware
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Set by a live session once its user and room are known
live_session_ctx: ContextVar[Optional[Dict[str, int]]] = ContextVar("live_session", default=None)


class ChatLogFormatter(jsonlogger.JsonFormatter):
    """JSON log lines with a UTC ts, the level and whichever request or live session is current."""

    def add_fields(self, log_record, record, message_dict):
        super(ChatLogFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id

        session = live_session_ctx.get()
        if session:
            for key, value in session.items():
                log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO"):
    """Route root and uvicorn loggers to one stdout JSON handler."""
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(ChatLogFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access lines
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys: ts, level, request_id, method, path, status, latency_ms.
    Chat routes may add room_id, message_id and result through log_chat_data().
    WebSocket sessions bypass this middleware and log on their own.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Label by route template once routing has matched
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }
            if hasattr(request.state, "chat_log_data"):
                log_data.update(request.state.chat_log_data)

            logger = logging.getLogger("roomchat.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_chat_data(request: Request, room_id: int = None, message_id: int = None, result: str = None):
    """
    Attach chat-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        room_id: Room the request acted on
        message_id: Message the request acted on
        result: Processing result (created, deleted, joined, left, validation_error, ...)
    """
    chat_data = {}
    if room_id is not None:
        chat_data["room_id"] = room_id
    if message_id is not None:
        chat_data["message_id"] = message_id
    if result is not None:
        chat_data["result"] = result
    request.state.chat_log_data = chat_data
