"""
WhatsApp Webhook API — HTTP front door for the follow-up pipeline.

Endpoints:
  GET  /api/whatsapp/webhook        Subscription handshake (echo hub.challenge)
  POST /api/whatsapp/webhook        Inbound messages and delivery statuses
  GET  /api/whatsapp/status         Active queues + channel info
  GET  /api/whatsapp/health         Pipeline health check
  GET  /api/whatsapp/metrics        Processing and alert metrics
  GET  /api/whatsapp/dlq            Failed messages for ops review

POST responses:
  200  processed, duplicate, unregistered sender or status-only delivery
  400  body is not a JSON object
  401  missing or invalid X-Hub-Signature-256
  429  source address over the rate limit (Retry-After header set)
  500  a message failed internally; nothing was committed, so the
       provider's retry is processed from scratch
  503  pipeline not initialized
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from postop.gateway.errors import AuthenticationError, ConfigurationError, RateLimited
from postop.gateway.security import (
    SIGNATURE_HEADER,
    client_ip,
    verify_handshake,
    verify_signature,
)

logger = logging.getLogger("gateway.api")

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


# ── Response Models ──


class WebhookResponse(BaseModel):
    """Response for POST /api/whatsapp/webhook."""

    status: str = "ok"
    received: int = 0
    processed: int = 0
    duplicates: int = 0
    statuses: int = 0
    ignored: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)


class PipelineStatusResponse(BaseModel):
    """Response for GET /api/whatsapp/status."""

    status: str = "ok"
    channel: str = ""
    active_queues: int = 0
    alerts_pending: int = 0
    outbox_running: bool = False
    rate_limit: dict[str, Any] = Field(default_factory=dict)


# ── Webhook ──


@router.get("/webhook")
async def verify_webhook(request: Request):
    """Meta subscription handshake: echo hub.challenge if the token matches."""
    from postop.gateway.setup import get_settings

    settings = get_settings()
    if settings is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")

    params = request.query_params
    try:
        challenge = verify_handshake(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            settings.verify_token,
        )
    except AuthenticationError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    logger.info("Webhook subscription verified")
    return PlainTextResponse(challenge)


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(request: Request):
    """
    Receive a WhatsApp Cloud API delivery.

    Each message goes through the per-sender queue and is awaited, so a
    2xx is returned only after every message is committed.
    """
    from postop.gateway.setup import (
        get_gateway,
        get_ingest,
        get_queue_manager,
        get_rate_limiter,
        get_settings,
    )

    gateway = get_gateway()
    queue_manager = get_queue_manager()
    ingest = get_ingest()
    settings = get_settings()
    if gateway is None or queue_manager is None or ingest is None or settings is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")

    # 1. Rate limit by source address
    rate_limiter = get_rate_limiter()
    if rate_limiter is not None:
        peer = request.client.host if request.client else None
        try:
            rate_limiter.check(client_ip(request.headers, peer))
        except RateLimited as exc:
            return JSONResponse(
                status_code=429,
                content={"detail": str(exc)},
                headers={"Retry-After": str(exc.retry_after)},
            )

    # 2. Signature over the raw bytes
    raw_body = await request.body()
    try:
        verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.app_secret)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc))

    # 3. Parse
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    batch = ingest.parse(payload)
    for status in batch.statuses:
        log = logger.warning if status.status == "failed" else logger.debug
        log(
            "Delivery status %s for %s (recipient ending %s) %s",
            status.status, status.message_id, status.recipient_phone[-4:],
            status.errors or "",
        )

    response = WebhookResponse(
        received=len(batch.messages),
        statuses=len(batch.statuses),
        ignored=batch.ignored,
    )
    if not batch.messages:
        return response

    # 4. Process through the per-sender queues
    futures = [await queue_manager.enqueue(message) for message in batch.messages]
    outcomes = await asyncio.gather(*futures, return_exceptions=True)

    failed = 0
    for message, outcome in zip(batch.messages, outcomes):
        if isinstance(outcome, BaseException):
            failed += 1
            response.results.append({
                "message_id": message.message_id,
                "outcome": "failed",
                "error": type(outcome).__name__,
            })
            continue
        if outcome.duplicate:
            response.duplicates += 1
        else:
            response.processed += 1
        response.results.append({
            "message_id": outcome.message_id,
            "outcome": outcome.outcome,
            "final_level": outcome.final_level.value if outcome.final_level else None,
        })

    if failed:
        logger.error(
            "%d/%d messages failed in webhook delivery — answering 500 for provider retry",
            failed, len(batch.messages),
        )
        response.status = "error"
        return JSONResponse(status_code=500, content=response.model_dump())

    return response


# ── Operations ──


@router.get("/status", response_model=PipelineStatusResponse)
async def pipeline_status():
    """Active queue info for the pipeline."""
    from postop.gateway.setup import (
        get_alert_outbox,
        get_gateway,
        get_messenger,
        get_queue_manager,
        get_rate_limiter,
    )

    gateway = get_gateway()
    if gateway is None:
        return PipelineStatusResponse(status="not_initialized")

    queue_manager = get_queue_manager()
    messenger = get_messenger()
    rate_limiter = get_rate_limiter()
    outbox = get_alert_outbox()
    return PipelineStatusResponse(
        status="ok",
        channel=messenger.channel_name if messenger else "",
        active_queues=queue_manager.active_count if queue_manager else 0,
        alerts_pending=gateway.health_check()["alerts_pending"],
        outbox_running=bool(outbox and outbox.running),
        rate_limit=(
            {
                "max_requests": rate_limiter.max_requests,
                "window_seconds": rate_limiter.window_seconds,
            }
            if rate_limiter
            else {}
        ),
    )


@router.get("/health")
async def pipeline_health():
    """Detailed health check: store, channel, classifier."""
    from postop.gateway.setup import get_gateway

    gateway = get_gateway()
    if gateway is None:
        return {"healthy": False, "reason": "Gateway not initialized"}

    return gateway.health_check()


@router.get("/metrics")
async def pipeline_metrics():
    """Observability metrics: processing times, error rates, alerts, DLQ size."""
    from postop.gateway.setup import get_gateway

    gateway = get_gateway()
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")

    return gateway.get_metrics()


@router.get("/dlq")
async def pipeline_dlq(limit: int = 50):
    """Dead Letter Queue: failed messages for ops review."""
    from postop.gateway.setup import get_gateway

    gateway = get_gateway()
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")

    entries = gateway.get_dlq(limit=limit)
    return {"count": len(entries), "entries": entries}
