"""
Gateway Setup — initializes and wires together all pipeline components.

Called once during app startup.  Unlike optional integrations, missing
webhook credentials are fatal: ``initialize_gateway`` raises
ConfigurationError and the app refuses to start.
"""

from __future__ import annotations

import logging

from postop.gateway.agents.risk_classifier import GeminiRiskClassifier, RiskClassifier
from postop.gateway.alerts import AlertDispatcher, AlertOutbox
from postop.gateway.channels import Messenger, ReplyDispatcher
from postop.gateway.conversation import ConversationManager
from postop.gateway.dispatchers.recording_dispatcher import RecordingMessenger
from postop.gateway.dispatchers.whatsapp_dispatcher import WhatsAppCloudMessenger
from postop.gateway.gateway import Gateway
from postop.gateway.handlers.patient_resolver import PatientResolver
from postop.gateway.ingest.whatsapp_ingest import WhatsAppIngest
from postop.gateway.queue import PatientQueueManager
from postop.gateway.security import SlidingWindowRateLimiter
from postop.gateway.store import InMemoryRecordStore, RecordStore
from postop.settings import Settings, load_settings

logger = logging.getLogger("gateway.setup")

# Module-level singletons (set during initialize)
_settings: Settings | None = None
_gateway: Gateway | None = None
_queue_manager: PatientQueueManager | None = None
_store: RecordStore | None = None
_messenger: Messenger | None = None
_ingest: WhatsAppIngest | None = None
_rate_limiter: SlidingWindowRateLimiter | None = None
_alert_outbox: AlertOutbox | None = None


async def initialize_gateway(
    settings: Settings | None = None,
    *,
    store: RecordStore | None = None,
    messenger: Messenger | None = None,
    classifier: RiskClassifier | None = None,
) -> Gateway:
    """
    Wire together all pipeline components and start background tasks.

    ``store``, ``messenger`` and ``classifier`` override the defaults
    derived from settings (used by tests and local runs).
    """
    global _settings, _gateway, _queue_manager, _store, _messenger
    global _ingest, _rate_limiter, _alert_outbox

    settings = settings or load_settings()
    settings.validate_required()
    _settings = settings

    logger.info("Initializing post-op follow-up gateway...")

    # 1. Record store
    _store = store or InMemoryRecordStore()

    # 2. Outbound transport
    if messenger is not None:
        _messenger = messenger
    elif settings.messenger_enabled:
        _messenger = WhatsAppCloudMessenger(
            access_token=settings.access_token,
            phone_number_id=settings.phone_number_id,
            api_version=settings.api_version,
        )
    else:
        logger.warning(
            "WHATSAPP_ACCESS_TOKEN / WHATSAPP_PHONE_NUMBER_ID not set — "
            "outbound messages are only recorded, not delivered"
        )
        _messenger = RecordingMessenger()

    # 3. Risk classifier (optional; rule-only when absent)
    if classifier is None and settings.classifier_enabled:
        classifier = GeminiRiskClassifier(
            model=settings.classifier_model,
            timeout_seconds=settings.classifier_timeout_seconds,
        )
    if classifier is None:
        logger.warning("GOOGLE_API_KEY not set — risk assessment runs on rules only")

    # 4. Alerts
    alert_dispatcher = AlertDispatcher(
        store=_store,
        messenger=_messenger,
        fallback_phone=settings.doctor_phone_number,
        max_attempts=settings.alert_max_attempts,
        backoff_seconds=settings.alert_backoff_seconds,
    )

    # 5. Gateway
    _gateway = Gateway(
        store=_store,
        resolver=PatientResolver(_store),
        conversation=ConversationManager(
            classifier=classifier,
            timeout_hours=settings.conversation_timeout_hours,
        ),
        reply_dispatcher=ReplyDispatcher(_messenger),
        alert_dispatcher=alert_dispatcher,
    )

    # 6. Webhook front door
    _ingest = WhatsAppIngest(business_phone_number_id=settings.phone_number_id)
    _rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    # 7. Queue manager (uses gateway.process_message as the processor)
    _queue_manager = PatientQueueManager(processor=_gateway.process_message)
    await _queue_manager.start()

    # 8. Alert outbox (retries parked alerts, recovers un-alerted ones)
    _alert_outbox = AlertOutbox(
        dispatcher=alert_dispatcher,
        store=_store,
        check_interval=settings.alert_outbox_interval_seconds,
    )
    await _alert_outbox.start()

    logger.info(
        "Gateway initialized: channel=%s, classifier=%s",
        _messenger.channel_name,
        "enabled" if classifier is not None else "disabled",
    )
    return _gateway


async def shutdown_gateway() -> None:
    """Gracefully stop background tasks."""
    if _alert_outbox:
        await _alert_outbox.stop()
    if _queue_manager:
        await _queue_manager.stop()
        logger.info("Gateway shutdown complete")


def get_settings() -> Settings | None:
    return _settings


def get_gateway() -> Gateway | None:
    return _gateway


def get_queue_manager() -> PatientQueueManager | None:
    return _queue_manager


def get_store() -> RecordStore | None:
    return _store


def get_messenger() -> Messenger | None:
    return _messenger


def get_ingest() -> WhatsAppIngest | None:
    return _ingest


def get_rate_limiter() -> SlidingWindowRateLimiter | None:
    return _rate_limiter


def get_alert_outbox() -> AlertOutbox | None:
    return _alert_outbox
