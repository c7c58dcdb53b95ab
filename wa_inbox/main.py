import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, Response, Request, Depends, Header, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_inbox.config import settings
from wa_inbox.gateway import EvolutionClient, GatewayError
from wa_inbox.instances import (
    AccountNotFound,
    InstanceAlreadyProvisioned,
    InstanceError,
    InstanceNameTaken,
    InstanceService,
    InstanceState,
    NoInstance,
)
from wa_inbox.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from wa_inbox.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from wa_inbox.normalizer import get_instance_name, normalize
from wa_inbox.schemas import (
    CreateInstanceRequest,
    ErrorResponse,
    HealthResponse,
    InstanceStateResponse,
    LivenessResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookAck,
    WebhookEvent,
)
from wa_inbox.storage import (
    init_db,
    check_db_health,
    get_db,
    find_account_by_instance_name,
    find_message_by_external_id,
    persist_message,
)
from wa_inbox.utils import format_display_name, verify_shared_secret


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
    title="WhatsApp Inbox API",
    description="Ingests Evolution API webhooks and manages per-account connection instances",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_current_account_id(
    x_account_id: Annotated[str | None, Header(alias="X-Account-ID")] = None,
) -> str:
    """
    Account id of the caller, as asserted by the authenticated-session
    layer in front of this service. Trusted as-is.
    """
    if not x_account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
    return x_account_id


def get_gateway_client() -> EvolutionClient:
    return EvolutionClient(settings.gateway_config())


def get_instance_service(
    db: Session = Depends(get_db),
    client: EvolutionClient = Depends(get_gateway_client),
) -> InstanceService:
    return InstanceService(
        db=db,
        client=client,
        callback_url=settings.webhook_callback_url,
        webhook_secret=settings.WEBHOOK_SECRET,
    )


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
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

def _ack(request: Request, result: str, instance: str, **fields) -> WebhookAck:
    record_webhook_outcome(result)
    log_webhook_data(
        request=request,
        instance=instance,
        external_id=fields.get("external_id"),
        dup=result == "duplicate",
        result=result,
    )
    return WebhookAck(status=result, **fields)


@app.post(
    "/webhook",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    responses={
        401: {"model": ErrorResponse, "description": "Missing or wrong webhook secret"},
        500: {"model": ErrorResponse, "description": "Malformed payload or store failure"},
    }
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_secret: Annotated[str | None, Header(alias="X-Webhook-Secret")] = None,
    db: Session = Depends(get_db)
) -> WebhookAck:
    """
    Ingest gateway callbacks, storing each message at most once.

    Every benign outcome is a 200 so the gateway does not retry:
    no_user, ignored, no_data, duplicate, processing. Only malformed
    payloads and store failures return 500.

    The message itself is written by a background task after the
    response; the duplicate check before it is synchronous.
    """
    raw_body = await request.body()

    if not verify_shared_secret(x_webhook_secret, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid X-Webhook-Secret header")
        record_webhook_outcome("unauthorized")
        log_webhook_data(request=request, result="unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid webhook secret"
        )

    try:
        event = WebhookEvent.model_validate_json(raw_body)
    except ValidationError as e:
        logger.error(f"Malformed webhook payload: {e}")
        record_webhook_outcome("malformed")
        log_webhook_data(request=request, result="malformed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Malformed payload"
        )

    instance_name = get_instance_name(event.instance)

    try:
        owner = find_account_by_instance_name(db, instance_name)
    except SQLAlchemyError as e:
        logger.error(f"Store unavailable resolving instance {instance_name}: {e}")
        record_webhook_outcome("error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if owner is None:
        logger.warning(f"No account found for instance: {instance_name}")
        return _ack(request, "no_user", instance_name, instance=instance_name)

    if not event.event or "message" not in event.event:
        logger.info(f"Account {owner.id}: ignoring non-message event: {event.event}")
        return _ack(request, "ignored", instance_name)

    try:
        message = normalize(event)
    except ValidationError as e:
        logger.error(f"Account {owner.id}: malformed message data: {e}")
        record_webhook_outcome("malformed")
        log_webhook_data(request=request, instance=instance_name, result="malformed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Malformed payload"
        )

    if message is None:
        logger.info(f"Account {owner.id}: could not extract message data from {event.event}")
        return _ack(request, "no_data", instance_name)

    try:
        existing = find_message_by_external_id(db, message.external_id)
    except SQLAlchemyError as e:
        logger.error(f"Store unavailable checking {message.external_id}: {e}")
        record_webhook_outcome("error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if existing is not None:
        logger.info(f"Account {owner.id}: duplicate message ignored: {message.external_id}")
        return _ack(request, "duplicate", instance_name, external_id=message.external_id)

    message = message.model_copy(update={"owner_id": owner.id})
    background_tasks.add_task(persist_message, message)

    logger.info(
        f"Account {owner.id}: queued {message.message_type.value} {message.direction.value} "
        f"message {message.external_id} from "
        f"{format_display_name(message.sender_display_name, message.sender_address)}"
    )
    return _ack(
        request,
        "processing",
        instance_name,
        external_id=message.external_id,
        owner_id=owner.id,
    )


@app.get("/webhook", response_model=LivenessResponse)
async def webhook_liveness() -> LivenessResponse:
    """Liveness probe for the gateway side."""
    return LivenessResponse(
        status="online",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


# =============================================================================
# Instance Routes
# =============================================================================

def _state_response(state: InstanceState) -> InstanceStateResponse:
    return InstanceStateResponse(
        account_id=state.account_id,
        instance_name=state.instance_name,
        status=state.status,
        phase=state.phase.value,
        qr_image=state.qr_image,
        pairing_code=state.pairing_code,
    )


def _raise_instance_error(exc: InstanceError):
    if isinstance(exc, (AccountNotFound, NoInstance)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InstanceAlreadyProvisioned, InstanceNameTaken)):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=str(exc)) from exc


@app.post(
    "/instance",
    response_model=InstanceStateResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Instance exists or name taken"},
        502: {"model": ErrorResponse, "description": "Gateway refused the instance"},
    }
)
def create_instance(
    body: CreateInstanceRequest,
    account_id: str = Depends(get_current_account_id),
    service: InstanceService = Depends(get_instance_service),
) -> InstanceStateResponse:
    """Create the caller's instance and return its QR / pairing code."""
    try:
        state = service.create(account_id, body.instance_name)
    except InstanceError as e:
        _raise_instance_error(e)
    except GatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to create instance: {e.message}"
        )
    return _state_response(state)


@app.get("/instance", response_model=InstanceStateResponse)
def get_instance(
    account_id: str = Depends(get_current_account_id),
    service: InstanceService = Depends(get_instance_service),
) -> InstanceStateResponse:
    try:
        state = service.get_state(account_id)
    except InstanceError as e:
        _raise_instance_error(e)
    return _state_response(state)


@app.put("/instance", response_model=InstanceStateResponse)
def refresh_instance(
    account_id: str = Depends(get_current_account_id),
    service: InstanceService = Depends(get_instance_service),
) -> InstanceStateResponse:
    """
    Poll the gateway for the connection state.

    When the connection is closed a fresh QR / pairing code is fetched.
    Gateway failures never fail this call; they show up as status UNKNOWN.
    """
    try:
        state = service.refresh(account_id)
    except InstanceError as e:
        _raise_instance_error(e)
    return _state_response(state)


@app.delete("/instance", response_model=InstanceStateResponse)
def disconnect_instance(
    account_id: str = Depends(get_current_account_id),
    service: InstanceService = Depends(get_instance_service),
) -> InstanceStateResponse:
    """Logout and delete the instance; local state is cleared regardless."""
    try:
        state = service.disconnect(account_id)
    except InstanceError as e:
        _raise_instance_error(e)
    return _state_response(state)


@app.post(
    "/instance/messages",
    response_model=SendMessageResponse,
    responses={502: {"model": ErrorResponse, "description": "Gateway refused the message"}},
)
def send_message(
    body: SendMessageRequest,
    account_id: str = Depends(get_current_account_id),
    service: InstanceService = Depends(get_instance_service),
) -> SendMessageResponse:
    try:
        result = service.send_message(account_id, body.to, body.text)
    except InstanceError as e:
        _raise_instance_error(e)
    except GatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to send message: {e.message}"
        )
    return SendMessageResponse(id=result.id, timestamp=result.timestamp, status=result.status)


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
