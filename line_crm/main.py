import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status

from line_crm.config import Settings, settings
from line_crm.events import MalformedBatchError, parse_webhook_body
from line_crm.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from line_crm.messaging import LineMessagingClient
from line_crm.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from line_crm.pipeline import IngestionPipeline, UserNotFoundError
from line_crm.ports import MessagingError, MessagingPort, ProfileNotFoundError
from line_crm.schemas import (
    BatchRefreshRequest,
    BatchRefreshResponse,
    ErrorResponse,
    HealthResponse,
    OutcomeCounts,
    RefreshedUser,
    RefreshProfileResponse,
    WebhookResponse,
)
from line_crm.storage import SessionLocal, SqlAlchemyPersistence, check_db_health, init_db
from line_crm.utils import verify_line_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_pipeline(app_settings: Settings, messaging: MessagingPort) -> IngestionPipeline:
    """Wire the ingestion pipeline to the SQLAlchemy store and the given LINE client."""
    return IngestionPipeline(
        persistence=SqlAlchemyPersistence(SessionLocal),
        messaging=messaging,
        persistence_timeout=app_settings.PERSISTENCE_TIMEOUT_SECONDS,
        enrichment_timeout=app_settings.ENRICHMENT_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the LINE client and the ingestion pipeline
    - Shutdown: wait for pending profile enrichment, close the LINE client
    """
    init_db()
    messaging = LineMessagingClient(
        channel_access_token=settings.LINE_CHANNEL_ACCESS_TOKEN,
        base_url=settings.LINE_API_BASE_URL,
        timeout=settings.LINE_API_TIMEOUT_SECONDS,
    )
    pipeline = build_pipeline(settings, messaging)
    app.state.pipeline = pipeline
    yield
    await pipeline.drain()
    await messaging.aclose()


app = FastAPI(
    title="LINE CRM API",
    description="LINE webhook ingestion and customer profile service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


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
    1. LINE_CHANNEL_SECRET is set (webhooks cannot be verified otherwise)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.LINE_CHANNEL_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="LINE_CHANNEL_SECRET not configured"
        )

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
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Body is not a LINE event batch"},
    }
)
async def webhook(
    request: Request,
    x_line_signature: Annotated[str | None, Header(alias="X-Line-Signature")] = None,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Ingest a batch of LINE webhook events.

    - Validates X-Line-Signature (base64 HMAC-SHA256 of the raw body) before
      anything else touches the body or the database
    - Applies each event independently; individual failures are reported in
      the response counts and never turn into a 5xx

    Headers:
        - Content-Type: application/json
        - X-Line-Signature: base64 HMAC-SHA256 of raw body using LINE_CHANNEL_SECRET
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request body size: {len(raw_body)} bytes")

    if not x_line_signature or not verify_line_signature(
        raw_body, x_line_signature, settings.LINE_CHANNEL_SECRET
    ):
        logger.error("Missing or invalid X-Line-Signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        events = parse_webhook_body(raw_body)
    except MalformedBatchError as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    logger.info(f"Webhook received {len(events)} events")

    try:
        batch = await pipeline.ingest(events)
    except Exception as e:
        logger.exception(f"Webhook batch could not be ingested: {e}")
        record_webhook_outcome("error")
        log_webhook_data(request=request, result="error", events=len(events))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ingestion unavailable"
        )

    for failure in batch.failures:
        logger.warning(f"Event {failure.index} ({failure.kind}) failed: {failure.reason}")

    counts = batch.counts()
    record_webhook_outcome("processed")
    log_webhook_data(request=request, result="processed", events=batch.processed, outcomes=counts)

    return WebhookResponse(
        success=True,
        processed=batch.processed,
        results=OutcomeCounts(**counts),
    )


# =============================================================================
# User Profile Routes
# =============================================================================

@app.post(
    "/api/users/batch-refresh",
    response_model=BatchRefreshResponse,
    responses={400: {"model": ErrorResponse, "description": "No user ids given"}},
)
async def batch_refresh_profiles(
    body: BatchRefreshRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> BatchRefreshResponse:
    """
    Refresh the LINE profile of several users.

    Body: {"userIds": [1, 2, 3]}
    Users are processed one by one; failures are listed, not raised.
    """
    if not body.user_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="userIds must be a non-empty list"
        )

    logger.info(f"Batch refresh of {len(body.user_ids)} users")
    report = await pipeline.refresh_profiles(body.user_ids)
    return BatchRefreshResponse(**report)


@app.post(
    "/api/users/{user_id}/refresh-profile",
    response_model=RefreshProfileResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown user or blocked contact"},
        502: {"model": ErrorResponse, "description": "LINE API failure"},
    },
)
async def refresh_profile(
    user_id: int,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> RefreshProfileResponse:
    """Re-fetch one user's LINE profile (name, avatar, status, language)."""
    logger.info(f"Refreshing profile of user {user_id}")

    try:
        user = await pipeline.refresh_profile(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    except ProfileNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="user blocked the channel or deleted the account"
        )
    except (MessagingError, asyncio.TimeoutError) as e:
        logger.error(f"Profile refresh failed for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="LINE API request failed")

    return RefreshProfileResponse(
        user=RefreshedUser(
            id=user.id,
            display_name=user.display_name,
            picture_url=user.picture_url,
            updated_at=user.updated_at,
        )
    )


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
