import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from menubot.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

# Set by RequestLoggingMiddleware for the duration of one request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("menubot.requests")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping the record time in UTC and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = created.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON stdout handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    root.handlers = [json_handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True
    # Provider calls are logged by WhatsAppClient
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every HTTP request as one structured JSON line.

    Keys: ts, level, request_id, method, path, status, latency_ms.
    /webhook requests also carry result, events, skipped and failed.

    An incoming X-Request-ID is reused so callers can correlate retries;
    otherwise a fresh UUID is generated. Either way it is echoed back.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            elapsed = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            request_logger.log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    result: str,
    events: int = 0,
    skipped: int = 0,
    failed: int = 0,
):
    """
    Attach the webhook outcome to the request so the middleware logs it.

    Args:
        request: FastAPI request object
        result: accepted, storage_error, invalid_signature or invalid_payload
        events: Inbound events processed successfully
        skipped: Payload items dropped during normalization
        failed: Events aborted by a storage or delivery error
    """
    request.state.webhook_log_data = {
        "result": result,
        "events": events,
        "skipped": skipped,
        "failed": failed,
    }
