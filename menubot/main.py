import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

import uvicorn
from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from menubot.config import settings
from menubot.conversation import (
    DeliveryError,
    Direction,
    PolicyViolation,
    StorageError,
    effective_state,
)
from menubot.dispatcher import OutboundDispatcher, process_batch
from menubot.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from menubot.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from menubot.schemas import (
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MessageLogResponse,
    MessagesListResponse,
    SendMessageRequest,
    StatusResponse,
)
from menubot.storage import init_db, check_db_health, get_db, get_conversation, get_messages
from menubot.templates import TemplateCatalog, load_template_catalog
from menubot.utils import verify_hub_signature
from menubot.webhook import InvalidWebhookPayload, parse_webhook
from menubot.whatsapp import WhatsAppClient


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: create tables, open the provider client, load the template
      catalog. A failed catalog fetch aborts startup.
    - Shutdown: close the provider client.
    """
    init_db()
    client = WhatsAppClient(
        messages_url=settings.WHATSAPP_URL,
        token=settings.WHATSAPP_TOKEN,
        language=settings.TEMPLATE_LANGUAGE,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    try:
        app.state.catalog = load_template_catalog(client, settings.WHATSAPP_BUSINESS_URL)
    except Exception:
        logger.exception("Failed to load message templates")
        client.close()
        raise
    app.state.whatsapp = client
    yield
    client.close()


app = FastAPI(
    title="Menubot",
    description="WhatsApp conversation router for the tours and transfers menu",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_catalog(request: Request) -> TemplateCatalog:
    return request.app.state.catalog


def get_whatsapp_client(request: Request) -> WhatsAppClient:
    return request.app.state.whatsapp


def get_dispatcher(
    db: Session = Depends(get_db),
    catalog: TemplateCatalog = Depends(get_catalog),
    client: WhatsAppClient = Depends(get_whatsapp_client),
) -> OutboundDispatcher:
    return OutboundDispatcher(db=db, catalog=catalog, client=client)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_TOKEN is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WHATSAPP_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=StatusResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed JSON or no recognizable batch"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Request body unreadable or conversation store failure"},
    }
)
async def webhook(
    request: Request,
    x_hub_signature: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    dispatcher: OutboundDispatcher = Depends(get_dispatcher),
) -> StatusResponse:
    """
    Receive WhatsApp deliveries and answer each text message.

    Every well-formed message runs through the conversation engine; items
    that do not look like text messages are skipped. Once the batch is
    accepted the other events are still processed, but a storage failure on
    any of them turns the response into a 500. Delivery failures do not.
    """
    try:
        raw_body = await request.body()
    except Exception:
        logger.exception("Failed to read webhook body")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="could not read request body"
        )

    if settings.WHATSAPP_APP_SECRET and not verify_hub_signature(
        raw_body, x_hub_signature, settings.WHATSAPP_APP_SECRET
    ):
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        batch = parse_webhook(json.loads(raw_body))
    except ValueError as e:
        logger.warning(f"Invalid webhook JSON: {e}")
        record_webhook_outcome("invalid_payload")
        log_webhook_data(request=request, result="invalid_payload")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid JSON: {e}")
    except InvalidWebhookPayload as e:
        logger.warning(f"Unrecognized webhook payload: {e}")
        record_webhook_outcome("invalid_payload")
        log_webhook_data(request=request, result="invalid_payload")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    result = await run_in_threadpool(process_batch, dispatcher, batch)

    logger.info(
        f"Webhook processed: events={result.processed}, failed={result.failed}, skipped={result.skipped}"
    )
    result_label = "storage_error" if result.storage_failed else "accepted"
    record_webhook_outcome(result_label)
    log_webhook_data(
        request=request,
        result=result_label,
        events=result.processed,
        skipped=result.skipped,
        failed=result.failed,
    )
    if result.storage_failed:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to access conversation store"
        )
    return StatusResponse(status="ok")


# =============================================================================
# Freeform Send Route
# =============================================================================

@app.post(
    "/send-message",
    response_model=StatusResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed JSON or missing field"},
        403: {"model": ErrorResponse, "description": "No interaction within the last 24 hours"},
        500: {"model": ErrorResponse, "description": "Storage error"},
        502: {"model": ErrorResponse, "description": "Provider unreachable or rejected the message"},
    }
)
async def send_message(
    request: Request,
    dispatcher: OutboundDispatcher = Depends(get_dispatcher),
) -> StatusResponse:
    """
    Send a message written by a human agent from the management panel.

    Body: {"sender_id": "...", "body": "..."}. The body "/cerrar" ends the
    agent session and sends the goodbye template instead.
    """
    raw_body = await request.body()
    try:
        send_request = SendMessageRequest.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning(f"Invalid send-message request: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        await run_in_threadpool(dispatcher.send_freeform, send_request.sender_id, send_request.body)
    except PolicyViolation as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.reason)
    except DeliveryError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except StorageError as e:
        logger.error(f"Storage error on send-message: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to access conversation store"
        )

    return StatusResponse(status="ok")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get(
    "/conversations/{sender_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown sender"}},
)
async def get_conversation_state(
    sender_id: str,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Stored and effective conversation state of one sender."""
    try:
        record = get_conversation(db, sender_id)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")

    return ConversationResponse(
        sender_id=record.sender_id,
        stored_state=record.state,
        effective_state=effective_state(record.state, record.last_updated),
        last_updated=record.last_updated,
    )


@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of entries to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of entries to skip")] = 0,
    sender_id: Annotated[str | None, Query(description="Filter by sender (exact match)")] = None,
    direction: Annotated[Direction | None, Query(description="INBOUND or OUTBOUND")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    Message log, oldest first (timestamp, then insertion order).

    Used by the management panel to review a conversation's history.
    """
    entries, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        sender_id=sender_id,
        direction=direction,
    )

    return MessagesListResponse(
        data=[MessageLogResponse.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def run() -> None:
    uvicorn.run("menubot.main:app", host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    run()
