import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from twilio.twiml.messaging_response import MessagingResponse

from app import storage
from app.config import settings
from app.dependencies import get_inbound_ingestion, get_outbound_dispatch
from app.dispatch import DispatchResult, OutboundDispatch
from app.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from app.ingestion import InboundIngestion
from app.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from app.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_send_outcome,
    record_webhook_outcome,
)
from app.models import (
    CONVERSATION_ACTIVE,
    CONVERSATION_NEW,
    CONVERSATION_RESOLVED,
    CONVERSATION_STATUSES,
    MESSAGE_FAILED,
    OUTBOUND,
)
from app.schemas import (
    ConversationResponse,
    ConversationsListResponse,
    ConversationUpdate,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    RetryRequest,
    RetryResponse,
    SendRequest,
    SendResponse,
    StatsResponse,
    TranslationFailedResponse,
)
from app.storage import check_db_health, get_db, init_db
from app.utils import parse_form_body, signed_url


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="SMS Translation Relay",
    description="Relays SMS between volunteers and contacts with automatic translation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. TWILIO_AUTH_TOKEN is set (needed to verify webhooks)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.TWILIO_AUTH_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TWILIO_AUTH_TOKEN not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Inbound Webhook Route
# =============================================================================

@app.post(
    "/api/webhook",
    response_class=Response,
    responses={
        200: {"content": {"text/xml": {}}, "description": "Empty TwiML acknowledgment"},
        400: {"model": ErrorResponse, "description": "Missing From or Body"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    }
)
async def webhook(
    request: Request,
    x_twilio_signature: Annotated[Optional[str], Header(alias="X-Twilio-Signature")] = None,
    ingestion: InboundIngestion = Depends(get_inbound_ingestion),
) -> Response:
    """
    Receive an inbound SMS from Twilio.

    - Verifies X-Twilio-Signature over the exact callback URL and form body
    - Translates the message to English (failures are stored, not fatal)
    - Finds or creates the sender's conversation and appends the message
    - Replies with empty TwiML (the relay never auto-replies)
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    try:
        params = parse_form_body(raw_body)
    except UnicodeDecodeError as e:
        logger.error(f"Undecodable webhook body: {e}")
        record_webhook_outcome("validation_error")
        log_request_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid body")

    url = signed_url(str(request.url), settings.PUBLIC_BASE_URL)
    message_sid = params.get("MessageSid")

    try:
        result = await run_in_threadpool(ingestion.ingest, url, params, x_twilio_signature)
    except AuthenticationError as e:
        logger.error(f"Rejected webhook: {e}")
        record_webhook_outcome("invalid_signature")
        log_request_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
    except ValidationError as e:
        logger.error(f"Webhook validation error: {e}")
        record_webhook_outcome("validation_error")
        log_request_data(request, message_sid=message_sid, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.exception(f"Webhook processing failed: {e}")
        record_webhook_outcome("error")
        log_request_data(request, message_sid=message_sid, result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    outcome = "duplicate" if result.duplicate else "created"
    logger.info(f"Inbound message processed: {message_sid}, result: {outcome}")
    record_webhook_outcome(outcome)
    log_request_data(
        request,
        message_sid=message_sid,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        result=outcome,
    )

    return Response(content=str(MessagingResponse()), media_type="text/xml")


# =============================================================================
# Outbound Send Routes
# =============================================================================

def _dispatch_response(result: DispatchResult, retry: bool = False) -> JSONResponse:
    """Serialize a dispatch outcome. Failures are reported with status 200."""
    if result.translation_failed:
        body = TranslationFailedResponse(
            translation_error=result.translation_error,
            original_text=result.original_text,
        )
    elif retry:
        body = RetryResponse(
            success=result.success,
            message_id=result.message_id,
            error=result.error,
            translated_text=result.translated_text,
            replaced_message_id=result.replaced_message_id,
        )
    else:
        body = SendResponse(
            success=result.success,
            message_id=result.message_id,
            error=result.error,
            translated_text=result.translated_text,
        )
    return JSONResponse(content=body.model_dump(by_alias=True))


def _send_outcome(result: DispatchResult) -> str:
    if result.translation_failed:
        return "translation_error"
    return "sent" if result.success else "failed"


async def _parse_json(request: Request, schema):
    raw_body = await request.body()
    try:
        return schema.model_validate(json.loads(raw_body or b"{}"))
    except ValueError as e:
        # json.JSONDecodeError and pydantic's ValidationError are both ValueErrors
        logger.error(f"Invalid request body: {e}")
        record_send_outcome("validation_error")
        log_request_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request body")


@app.post(
    "/api/send",
    responses={
        200: {"description": "Send completed; check `success` (SendResponse or TranslationFailedResponse)"},
        400: {"model": ErrorResponse, "description": "Missing required fields"},
        404: {"model": ErrorResponse, "description": "Conversation not found"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    }
)
async def send_message(
    request: Request,
    dispatch: OutboundDispatch = Depends(get_outbound_dispatch),
) -> JSONResponse:
    """
    Send a volunteer reply to a conversation.

    Body (JSON):
        - conversationId, messageText, volunteerId: required
        - volunteerName: optional
        - sendUntranslated: optional, deliver the English text as-is

    Translation failure returns {success: false, translationError, originalText}
    without storing or sending anything. Otherwise returns
    {success, messageId, error, translatedText}.
    """
    send_request = await _parse_json(request, SendRequest)
    log_request_data(request, conversation_id=send_request.conversation_id)

    try:
        result = await run_in_threadpool(
            dispatch.send,
            conversation_id=send_request.conversation_id,
            message_text=send_request.message_text,
            volunteer_id=send_request.volunteer_id,
            volunteer_name=send_request.volunteer_name,
            send_untranslated=send_request.send_untranslated,
        )
    except ValidationError as e:
        record_send_outcome("validation_error")
        log_request_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        record_send_outcome("not_found")
        log_request_data(request, result="not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.exception(f"Send failed: {e}")
        record_send_outcome("error")
        log_request_data(request, result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    outcome = _send_outcome(result)
    record_send_outcome(outcome)
    log_request_data(request, message_id=result.message_id, attempts=result.attempts, result=outcome)
    return _dispatch_response(result)


@app.post(
    "/api/messages/{message_id}/retry",
    responses={
        400: {"model": ErrorResponse, "description": "Missing volunteerId"},
        404: {"model": ErrorResponse, "description": "Message not found"},
        409: {"model": ErrorResponse, "description": "Message is not a failed outbound message"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    }
)
async def retry_message(
    message_id: str,
    request: Request,
    dispatch: OutboundDispatch = Depends(get_outbound_dispatch),
) -> JSONResponse:
    """
    Re-send a failed outbound message with its original text.

    A new message is created; the failed one is deleted only when the new
    one is delivered.
    """
    retry_request = await _parse_json(request, RetryRequest)
    log_request_data(request, replaces=message_id)

    try:
        result = await run_in_threadpool(
            dispatch.retry,
            message_id=message_id,
            volunteer_id=retry_request.volunteer_id,
            volunteer_name=retry_request.volunteer_name,
            send_untranslated=retry_request.send_untranslated,
        )
    except ValidationError as e:
        record_send_outcome("validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        record_send_outcome("not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        record_send_outcome("conflict")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.exception(f"Retry of {message_id} failed: {e}")
        record_send_outcome("error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    outcome = _send_outcome(result)
    record_send_outcome(outcome)
    log_request_data(request, message_id=result.message_id, attempts=result.attempts, result=outcome)
    return _dispatch_response(result, retry=True)


@app.delete(
    "/api/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={
        404: {"model": ErrorResponse, "description": "Message not found"},
        409: {"model": ErrorResponse, "description": "Message is not a failed outbound message"},
    }
)
async def delete_failed_message(message_id: str, db: Session = Depends(get_db)) -> Response:
    """Remove a failed outbound message. Every other message is permanent."""
    try:
        message = storage.get_message(db, message_id)
        if message is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
        if message.direction != OUTBOUND or message.status != MESSAGE_FAILED:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Only failed outbound messages can be deleted"
            )
        storage.delete_message(db, message_id)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Conversation Routes
# =============================================================================

# Manual status changes; new -> active only happens through a delivered reply
MANUAL_TRANSITIONS = {
    CONVERSATION_NEW: {CONVERSATION_RESOLVED},
    CONVERSATION_ACTIVE: {CONVERSATION_RESOLVED},
    CONVERSATION_RESOLVED: {CONVERSATION_ACTIVE},
}


def _get_conversation_or_404(db: Session, conversation_id: str):
    try:
        conversation = storage.get_conversation(db, conversation_id)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@app.get("/api/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    status_filter: Annotated[Optional[str], Query(alias="status", description="new, active or resolved")] = None,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """List conversations, most recently active first."""
    if status_filter is not None and status_filter not in CONVERSATION_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")

    try:
        conversations = storage.list_conversations(db, status=status_filter)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    logger.info(f"GET /api/conversations: returned {len(conversations)} conversations")
    return ConversationsListResponse(
        data=[ConversationResponse.model_validate(c) for c in conversations],
        total=len(conversations),
    )


@app.get(
    "/api/conversations/{conversation_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_conversation(conversation_id: str, db: Session = Depends(get_db)) -> ConversationResponse:
    return ConversationResponse.model_validate(_get_conversation_or_404(db, conversation_id))


@app.patch(
    "/api/conversations/{conversation_id}",
    response_model=ConversationResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid status transition"},
        404: {"model": ErrorResponse},
    },
)
async def update_conversation(
    conversation_id: str,
    update: ConversationUpdate,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """
    Rename the contact and/or resolve/reopen the conversation.

    - contactName: empty string clears the name
    - status: "resolved" (from new or active) or "active" (from resolved)
    """
    conversation = _get_conversation_or_404(db, conversation_id)

    changes = {}
    if "contact_name" in update.model_fields_set:
        changes["contact_name"] = update.contact_name or None

    if update.status is not None and update.status != conversation.status:
        allowed = MANUAL_TRANSITIONS.get(conversation.status, set())
        if update.status not in allowed:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot change status from {conversation.status} to {update.status}"
            )
        changes["status"] = update.status

    if not changes:
        return ConversationResponse.model_validate(conversation)

    try:
        conversation = storage.update_conversation(db, conversation_id, **changes)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    logger.info(f"Conversation {conversation_id} updated: {sorted(changes)}")
    return ConversationResponse.model_validate(conversation)


@app.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def list_conversation_messages(
    conversation_id: str,
    since: Annotated[Optional[str], Query(description="Only messages with created_at >= since (ISO-8601 UTC)")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    Messages of a conversation in creation order.

    Readers poll with `since` set to the newest created_at they have seen.
    """
    _get_conversation_or_404(db, conversation_id)

    if since:
        try:
            since = storage.normalize_timestamp(since)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="since must be an ISO-8601 timestamp",
            )

    try:
        messages = storage.list_messages(db, conversation_id, since=since)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return MessagesListResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        total=len(messages),
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """
    Conversation counts by status and message counts by direction and
    delivery status.
    """
    try:
        stats = storage.get_stats(db)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    logger.info(f"GET /stats: {stats['total_messages']} messages in {stats['total_conversations']} conversations")
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
