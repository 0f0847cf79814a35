import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
from pydantic import ValidationError as SchemaValidationError

from chatrelay.config import settings
from chatrelay.domain import Contact
from chatrelay.errors import ChatRelayError, NotFoundError, StorageError, ValidationError
from chatrelay.hub import FanoutHub
from chatrelay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging, viewer_context
from chatrelay.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from chatrelay.schemas import (
    ContactUpdateRequest,
    ContactsListResponse,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageRemovedResponse,
    PresenceUpdateRequest,
    RebuildResponse,
    SearchResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    ThreadResponse,
    WebhookRequest,
    WebhookResponse,
    WsInbound,
    WsOutbound,
)
from chatrelay.service import ChatService
from chatrelay.storage import SqlMessageStore, check_db_health, init_db
from chatrelay.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, wire the chat core and load the conversation list.
    Shutdown: stop background tasks and close live connections.
    """
    init_db()
    chat = ChatService(
        store=SqlMessageStore(),
        hub=FanoutHub(queue_size=settings.VIEWER_QUEUE_SIZE),
        page_size=settings.THREAD_PAGE_SIZE,
        simulate_status=settings.SIMULATE_STATUS_UPDATES,
        delivered_delay=settings.SIMULATED_DELIVERED_DELAY,
        read_delay=settings.SIMULATED_READ_DELAY,
    )
    await chat.start()
    app.state.chat = chat
    yield
    await chat.stop()


app = FastAPI(
    title="Chat Relay API",
    description="Chat backend: webhook ingestion, delivery status, conversations and live updates",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


def get_chat(request: Request) -> ChatService:
    return request.app.state.chat


Chat = Annotated[ChatService, Depends(get_chat)]


# =============================================================================
# Error Mapping
# =============================================================================

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _status_for(exc: ChatRelayError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(ChatRelayError)
async def chat_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


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
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

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

def _reject_webhook(request: Request, result: str, status_code: int, detail: str) -> HTTPException:
    record_webhook_outcome(result)
    log_webhook_data(request=request, result=result)
    return HTTPException(status_code=status_code, detail=detail)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
async def webhook(
    request: Request,
    chat: Chat,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> WebhookResponse:
    """
    Apply a provider delivery: new messages and delivery receipts.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Validates the whole delivery before anything is written
    - Idempotent: redelivered message ids are counted as duplicates

    Headers:
        - Content-Type: application/json
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET,
          optionally prefixed with "sha256="
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request received: {len(raw_body)} bytes")

    if not x_signature:
        logger.error("Missing X-Signature header")
        raise _reject_webhook(request, "invalid_signature", status.HTTP_401_UNAUTHORIZED, "invalid signature")

    if not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Invalid HMAC signature")
        raise _reject_webhook(request, "invalid_signature", status.HTTP_401_UNAUTHORIZED, "invalid signature")

    try:
        payload = WebhookRequest.model_validate(json.loads(raw_body))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        raise _reject_webhook(
            request, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, f"Invalid JSON: {e}"
        )
    except SchemaValidationError as e:
        logger.error(f"Validation error: {e}")
        raise _reject_webhook(request, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, str(e))

    try:
        outcome = await chat.handle_webhook(payload)
    except ValidationError as e:
        logger.error(f"Webhook rejected: {e}")
        raise _reject_webhook(request, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, e.message)
    except StorageError as e:
        logger.error(f"Webhook failed: {e}")
        raise _reject_webhook(request, "error", status.HTTP_503_SERVICE_UNAVAILABLE, e.message)

    record_webhook_outcome("processed")
    log_webhook_data(
        request=request,
        result="processed",
        ingested=outcome.ingested,
        duplicates=outcome.duplicates,
        status_updates=outcome.status_updates,
        not_found=outcome.not_found,
    )
    return WebhookResponse(
        status="ok",
        ingested=outcome.ingested,
        duplicates=outcome.duplicates,
        status_updates=outcome.status_updates,
        not_found=outcome.not_found,
    )


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(chat: Chat) -> list[ConversationResponse]:
    """Conversation list, most recent conversation first."""
    rows = await chat.list_conversations_with_contacts()
    return [
        ConversationResponse(
            contact_id=entry.contact_id,
            contact=contact,
            last_message=entry.last_message,
            unread_count=entry.unread_count,
            message_count=entry.message_count,
            ordering_key=entry.ordering_key,
        )
        for entry, contact in rows
    ]


@app.get("/conversations/{contact_id}/messages", response_model=ThreadResponse)
async def get_thread(
    contact_id: str,
    chat: Chat,
    limit: Annotated[int | None, Query(ge=1, le=200, description="Page size")] = None,
    before: Annotated[datetime | None, Query(description="Only messages older than this timestamp")] = None,
    before_seq: Annotated[int | None, Query(description="Tie-breaker for messages sharing ``before``")] = None,
    mark_read: Annotated[bool, Query(description="Mark the thread read while opening it")] = True,
) -> ThreadResponse:
    """
    One page of a thread, oldest first.

    Opening a thread marks its inbound messages read unless mark_read=false.
    Pass the page's ``next_before`` / ``next_before_seq`` as ``before`` /
    ``before_seq`` to load older history.
    """
    page = await chat.get_thread(
        contact_id, limit=limit, before=before, mark_read=mark_read, before_seq=before_seq
    )
    logger.info(f"GET thread {contact_id}: returned {len(page.messages)} of {page.total_messages}")
    return ThreadResponse(
        contact=page.contact,
        messages=page.messages,
        has_more=page.has_more,
        total_messages=page.total_messages,
        next_before=page.next_before,
        next_before_seq=page.next_before_seq,
    )


@app.post("/conversations/{contact_id}/read", response_model=MarkReadResponse)
async def mark_thread_read(contact_id: str, chat: Chat) -> MarkReadResponse:
    result = await chat.mark_thread_read(contact_id)
    return MarkReadResponse(
        contact_id=contact_id,
        marked=len(result.message_ids),
        message_ids=result.message_ids,
    )


# =============================================================================
# Message Routes
# =============================================================================

@app.post("/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(request_body: SendMessageRequest, chat: Chat) -> SendMessageResponse:
    """Send a text message to a contact; it is stored with status ``sent``."""
    result = await chat.send_message(request_body.contact_id, request_body.body)
    return SendMessageResponse(success=True, message=result.message)


@app.get("/messages/search", response_model=SearchResponse)
async def search_messages(
    chat: Chat,
    q: Annotated[str, Query(min_length=1, description="Case-insensitive text to find in message bodies")],
    contact_id: Annotated[str | None, Query(description="Restrict to one thread")] = None,
) -> SearchResponse:
    messages = await chat.search(q, contact_id)
    return SearchResponse(messages=messages, count=len(messages))


@app.patch(
    "/messages/{message_id}/status",
    response_model=StatusUpdateResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def update_message_status(
    message_id: str, request_body: StatusUpdateRequest, chat: Chat
) -> StatusUpdateResponse:
    """
    Move a message along its delivery lifecycle.

    ``message_id`` may also be a provider correlation id. Repeated or
    backwards updates succeed with ``changed: false``.
    """
    result = await chat.update_status(message_id, request_body.status)
    return StatusUpdateResponse(
        message=result.message,
        changed=result.changed,
        old_status=result.old_status,
    )


@app.delete(
    "/messages/{message_id}",
    response_model=MessageRemovedResponse,
    responses={404: {"model": ErrorResponse}},
)
async def delete_message(message_id: str, chat: Chat) -> MessageRemovedResponse:
    removed = await chat.delete_message(message_id)
    return MessageRemovedResponse(message_id=removed.id, contact_id=removed.contact_id)


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/contacts", response_model=ContactsListResponse)
async def list_contacts(
    chat: Chat,
    search: Annotated[str | None, Query(description="Match on display name or contact id")] = None,
    online_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ContactsListResponse:
    contacts, total = await chat.list_contacts(search, online_only, limit, offset)
    return ContactsListResponse(contacts=contacts, total=total, limit=limit, offset=offset)


@app.get("/contacts/{contact_id}", response_model=Contact, responses={404: {"model": ErrorResponse}})
async def get_contact(contact_id: str, chat: Chat) -> Contact:
    return await chat.require_contact(contact_id)


@app.patch("/contacts/{contact_id}", response_model=Contact, responses={404: {"model": ErrorResponse}})
async def update_contact(contact_id: str, request_body: ContactUpdateRequest, chat: Chat) -> Contact:
    """Edit a contact's display name or avatar; omitted fields are kept."""
    return await chat.update_contact(
        contact_id,
        display_name=request_body.display_name,
        avatar_ref=request_body.avatar_ref,
    )


@app.patch(
    "/contacts/{contact_id}/presence",
    response_model=Contact,
    responses={404: {"model": ErrorResponse}},
)
async def update_presence(contact_id: str, request_body: PresenceUpdateRequest, chat: Chat) -> Contact:
    return await chat.set_presence(contact_id, request_body.presence)


# =============================================================================
# Stats, Admin and Metrics Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(chat: Chat) -> StatsResponse:
    """
    Message-level analytics.

    Response:
        - total_messages: Total count of all messages
        - total_conversations: Number of contact threads
        - today_messages: Messages since UTC midnight
        - messages_by_kind / messages_by_status: Counts, descending
    """
    stats = await chat.stats()
    logger.info(f"GET /stats: returned stats for {stats['total_messages']} messages")
    return StatsResponse(**stats)


@app.post("/admin/rebuild", response_model=RebuildResponse)
async def rebuild_conversations(chat: Chat) -> RebuildResponse:
    """Recompute the conversation list from the store and report drift."""
    drifted = await chat.rebuild_conversations()
    return RebuildResponse(conversations=len(chat.aggregator), drifted=drifted)


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Live Updates
# =============================================================================

def _required(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' is required", details={"field": key})
    return value.strip()


async def _handle_frame(chat: ChatService, viewer_id: str, frame: WsInbound) -> Optional[WsOutbound]:
    if frame.type == "ping":
        return WsOutbound(type="pong")

    if frame.type == "subscribe":
        contact_id = _required(frame.data, "contact_id")
        previous = chat.hub.subscribe(viewer_id, contact_id)
        # Opening a thread reads it
        result = await chat.mark_thread_read(contact_id)
        return WsOutbound(type="subscribed", data={
            "contact_id": contact_id,
            "previous": previous,
            "marked": len(result.message_ids),
        })

    if frame.type == "unsubscribe":
        contact_id = _required(frame.data, "contact_id")
        left = chat.hub.unsubscribe(viewer_id, contact_id)
        return WsOutbound(type="unsubscribed", data={"contact_id": contact_id, "was_watching": left})

    if frame.type == "watch_list":
        enabled = bool(frame.data.get("enabled", True))
        chat.hub.watch_list(viewer_id, enabled)
        return WsOutbound(type="list_watch", data={"enabled": enabled})

    if frame.type == "send_message":
        result = await chat.send_message(
            _required(frame.data, "contact_id"),
            _required(frame.data, "body"),
        )
        return WsOutbound(type="message_sent", data={"message": result.message.model_dump(mode="json")})

    if frame.type == "mark_read":
        contact_id = _required(frame.data, "contact_id")
        result = await chat.mark_thread_read(contact_id)
        return WsOutbound(type="marked_read", data={
            "contact_id": contact_id,
            "message_ids": result.message_ids,
        })

    return None


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, viewer_id: Optional[str] = None):
    """
    Live updates for one viewer.

    The viewer starts on the conversation-list channel and watches at most
    one thread at a time. Replies and pushed events share the
    ``{"type", "data"}`` envelope and arrive in order.
    """
    chat: ChatService = websocket.app.state.chat
    viewer_id = viewer_id or f"viewer_{uuid.uuid4().hex[:12]}"

    with viewer_context(viewer_id):
        await websocket.accept()
        chat.hub.connect(viewer_id, websocket)
        chat.hub.send_to(viewer_id, WsOutbound(type="connected", data={"viewer_id": viewer_id}).model_dump())

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = WsInbound.model_validate_json(raw)
                    reply = await _handle_frame(chat, viewer_id, frame)
                except SchemaValidationError as e:
                    reply = WsOutbound(type="error", data={
                        "message": "Invalid frame",
                        "errors": [error["msg"] for error in e.errors()],
                    })
                except ChatRelayError as e:
                    logger.info(f"Frame {raw[:64]!r} rejected: {e}")
                    reply = WsOutbound(type="error", data={"message": e.message, "details": e.details})
                if reply is not None:
                    chat.hub.send_to(viewer_id, reply.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.debug("WebSocket closed by viewer")
        except RuntimeError:
            # Raised by receive after the hub closed a socket it could not push to
            if websocket.application_state != WebSocketState.DISCONNECTED:
                raise
            logger.debug("WebSocket closed after a failed push")
        finally:
            chat.hub.disconnect(viewer_id, connection=websocket)
