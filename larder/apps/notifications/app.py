from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import hmac
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from larder.core.config import Settings, get_settings
from larder.core.logging import configure_logging
from larder.domain.messages import ChannelKind, EmailPayload, NotificationMessage
from larder.persistence.repos.recipients import get_recipient, list_live_subscriptions
from larder.providers.channels.factory import email_channel_configured, push_channel_configured
from larder.services.content import diagnostic_push_content, parse_language
from larder.services.runtime import NotificationRuntime
from larder.services.scheduling.jobs import build_weekly_summary_email, subscription_message, to_local
from larder.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"
_OPEN_PREFIXES = ("/health",)


class UserTriggerRequest(BaseModel):
    user_id: int = Field(gt=0)


class SendEmailRequest(BaseModel):
    to: str = Field(min_length=3, max_length=320)
    subject: str = Field(min_length=1, max_length=998)
    html_body: str = ""
    text_body: str = ""


class EnqueueResponse(BaseModel):
    enqueued: int
    message_ids: list[str]


class LiveResponse(BaseModel):
    status: str


class ReadyResponse(BaseModel):
    status: str
    checks: dict[str, str]
    queues: dict[str, int]
    workers: dict[str, dict[str, int | bool]]
    schedulers: list[str]


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    external_calls: dict[str, dict[str, float | None]]


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_db_health(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    # Keep the DB check to a single lightweight round trip.
    try:
        async with session_factory() as session:
            await session.execute(select(1))
        return True
    except (SQLAlchemyError, OSError):
        logger.warning("readiness_db_check_failed", exc_info=True)
        return False


def create_app(
    *,
    settings: Settings | None = None,
    runtime: NotificationRuntime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    manage_runtime: bool = True,
) -> FastAPI:
    """Build the trigger API around a notification runtime.

    When ``manage_runtime`` is set the lifespan starts the runtime's workers and
    schedulers and stops them on shutdown; tests pass their own runtime instead.
    """
    configure_logging()
    resolved = settings or get_settings()
    owned_runtime = runtime or NotificationRuntime(settings=resolved, session_factory=session_factory)
    if session_factory is None:
        from larder.persistence.db import SessionLocal

        session_factory = SessionLocal

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_runtime:
            owned_runtime.start()
        try:
            yield
        finally:
            if manage_runtime:
                await owned_runtime.stop()

    app = FastAPI(title="Larder Notifications", lifespan=lifespan)
    app.state.runtime = owned_runtime
    app.state.settings = resolved

    @app.middleware("http")
    async def api_key_middleware(request: Request, call_next):  # type: ignore[override]
        if request.url.path.startswith(_OPEN_PREFIXES):
            return await call_next(request)
        expected = resolved.notifications_api_key
        if not expected:
            logger.error("notifications_api_key_missing path=%s", request.url.path)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": {"code": "API_KEY_NOT_CONFIGURED", "message": "API key is not configured"}},
            )
        provided = request.headers.get(API_KEY_HEADER) or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": {"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid API key"}},
            )
        return await call_next(request)

    @app.get("/health/live", response_model=LiveResponse)
    async def live() -> LiveResponse:
        return LiveResponse(status="ok")

    @app.get("/health/ready", response_model=ReadyResponse)
    async def ready() -> JSONResponse:
        snapshot = owned_runtime.status()
        checks = {
            "database": "ok" if await _check_db_health(session_factory) else "unavailable",
            "email_channel": "ok" if email_channel_configured(resolved) else "misconfigured",
            "push_channel": "ok" if push_channel_configured(resolved) else "misconfigured",
        }
        if snapshot["stopping"]:
            overall = "stopping"
        elif any(value != "ok" for value in checks.values()):
            overall = "degraded"
        else:
            overall = "ok"
        payload = ReadyResponse(
            status=overall,
            checks=checks,
            queues=snapshot["queues"],
            workers=snapshot["workers"],
            schedulers=snapshot["schedulers"],
        )
        status_code = status.HTTP_200_OK if overall == "ok" else status.HTTP_503_SERVICE_UNAVAILABLE
        if status_code != status.HTTP_200_OK:
            logger.warning("readiness_failed status=%s checks=%s", overall, checks)
        return JSONResponse(status_code=status_code, content=payload.model_dump())

    @app.get("/metrics", response_model=MetricsResponse)
    async def metrics(window_s: int = 3600) -> MetricsResponse:
        # JSON snapshot of delivery counters, queue gauges and channel latency.
        return MetricsResponse(
            counters=counters_snapshot(),
            gauges=gauges_snapshot(),
            external_calls=external_latency_by_integration(max(1, window_s)),
        )

    def _enqueue_all(messages: list[NotificationMessage]) -> EnqueueResponse:
        accepted = [message for message in messages if owned_runtime.enqueue(message)]
        if not accepted:
            raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "QUEUE_UNAVAILABLE", "Notification queue is not accepting messages")
        return EnqueueResponse(enqueued=len(accepted), message_ids=[message.message_id for message in accepted])

    @app.post("/notifications/test-push", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
    async def test_push(body: UserTriggerRequest) -> EnqueueResponse:
        async with session_factory() as session:
            recipient = await get_recipient(session, body.user_id)
            if recipient is None:
                raise _error(status.HTTP_404_NOT_FOUND, "USER_NOT_FOUND", "User not found")
            subscriptions = await list_live_subscriptions(session, body.user_id)
        if not subscriptions:
            raise _error(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "NO_PUSH_SUBSCRIPTION",
                "User has no active push subscription",
            )
        payload = diagnostic_push_content(
            parse_language(recipient.language, resolved.default_language),
            url=resolved.app_base_url,
        )
        messages = [
            subscription_message(subscription=sub, payload=payload, kind="test_push", user_id=recipient.user_id)
            for sub in subscriptions
        ]
        response = _enqueue_all(messages)
        logger.info("test_push_enqueued user_id=%s count=%s", recipient.user_id, response.enqueued)
        return response

    @app.post("/notifications/test-email", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
    async def test_email(body: UserTriggerRequest) -> EnqueueResponse:
        async with session_factory() as session:
            recipient = await get_recipient(session, body.user_id)
            if recipient is None:
                raise _error(status.HTTP_404_NOT_FOUND, "USER_NOT_FOUND", "User not found")
            local_now = to_local(_utc_now(), recipient.time_zone, resolved.default_time_zone)
            message = await build_weekly_summary_email(session, recipient, local_now, resolved)
        response = _enqueue_all([message])
        logger.info("test_email_enqueued user_id=%s message_id=%s", recipient.user_id, message.message_id)
        return response

    @app.post("/email/send", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
    async def send_email(body: SendEmailRequest) -> EnqueueResponse:
        if not body.html_body and not body.text_body:
            raise _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "EMPTY_BODY", "html_body or text_body is required")
        message = NotificationMessage(
            recipient=body.to,
            channel=ChannelKind.EMAIL,
            payload=EmailPayload(subject=body.subject, html_body=body.html_body, text_body=body.text_body),
            kind="adhoc_email",
        )
        return _enqueue_all([message])

    return app
