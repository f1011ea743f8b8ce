"""
Alert Dispatcher — physician notifications for high/critical assessments.

Guarantees:
  - at most one alert per RiskAssessment (per-assessment lock, re-read,
    ``alerted`` check, compare-and-set ``mark_alerted`` after sending)
  - never silently dropped: transport failures are retried with
    exponential backoff, then parked in the outbox
  - the AlertOutbox background loop re-attempts parked alerts and, on
    startup, recovers any high/critical assessment still un-alerted
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from postop.gateway.channels import Messenger
from postop.gateway.errors import AlertDispatchFailure, RecordNotFound
from postop.gateway.records import Patient, RiskAssessment
from postop.gateway.questionnaires import QUESTIONS
from postop.gateway.store import RecordStore

logger = logging.getLogger("gateway.alerts")

# How often the outbox loop re-attempts parked alerts (in seconds)
OUTBOX_INTERVAL = 60


class AlertOutcome(str, Enum):
    SENT = "sent"
    ALREADY_ALERTED = "already_alerted"
    NOT_REQUIRED = "not_required"
    QUEUED = "queued"


def format_alert(assessment: RiskAssessment, patient: Patient | None) -> str:
    name = patient.name if patient else assessment.patient_id
    lines = [f"🚨 ALERTA PÓS-OPERATÓRIO - Paciente: {name}"]
    if patient:
        lines.append(f"Telefone: {patient.phone}")
    lines.append("")
    if assessment.day_number is not None:
        lines.append(f"Dia: D+{assessment.day_number}")
    lines.append(f"Nível de risco: {assessment.final_level.value.upper()}")
    lines.append("")
    lines.append("Red flags detectados:")
    for flag in assessment.flags:
        lines.append(f"• {flag.message or flag.tag}")
    if assessment.answers:
        lines.append("")
        lines.append("Respostas do paciente:")
        for question_id, answer in assessment.answers.items():
            label = QUESTIONS[question_id].label if question_id in QUESTIONS else question_id
            lines.append(f"• {label}: {answer}")
    if assessment.escalation_advice:
        lines.append("")
        lines.append(f"Orientação dada ao paciente: {assessment.escalation_advice}")
    return "\n".join(lines)


class AlertDispatcher:
    """
    Sends the physician alert for one assessment, idempotently.

    Usage:
        outcome = await dispatcher.dispatch(assessment.id)
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        messenger: Messenger,
        fallback_phone: str = "",
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._fallback_phone = fallback_phone
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._pending: set[str] = set()
        self._metrics: dict[str, int] = {
            "alerts_sent": 0,
            "alerts_skipped_duplicate": 0,
            "alerts_queued": 0,
            "alert_send_failures": 0,
        }

    # ── Public API ──

    @property
    def pending(self) -> list[str]:
        """Assessment ids parked in the outbox."""
        return sorted(self._pending)

    @property
    def lock_count(self) -> int:
        """Per-assessment locks currently held or awaited."""
        return len(self._locks)

    def get_metrics(self) -> dict[str, Any]:
        return {**self._metrics, "alerts_pending": len(self._pending)}

    async def dispatch(self, assessment_id: str) -> AlertOutcome:
        lock = self._locks.setdefault(assessment_id, asyncio.Lock())
        self._lock_users[assessment_id] = self._lock_users.get(assessment_id, 0) + 1
        try:
            async with lock:
                outcome = await self._dispatch_locked(assessment_id)
        finally:
            # Last user out drops the lock
            remaining = self._lock_users[assessment_id] - 1
            if remaining:
                self._lock_users[assessment_id] = remaining
            else:
                del self._lock_users[assessment_id]
                del self._locks[assessment_id]
        if outcome != AlertOutcome.QUEUED:
            self._pending.discard(assessment_id)
        return outcome

    # ── Internal ──

    async def _dispatch_locked(self, assessment_id: str) -> AlertOutcome:
        assessment = await asyncio.to_thread(self._store.get_assessment, assessment_id)
        if assessment is None:
            raise RecordNotFound(f"Assessment {assessment_id} not found")

        if not assessment.final_level.requires_alert:
            return AlertOutcome.NOT_REQUIRED
        if assessment.alerted:
            logger.info("Assessment %s already alerted — skipping", assessment_id)
            self._metrics["alerts_skipped_duplicate"] += 1
            return AlertOutcome.ALREADY_ALERTED

        patient = await asyncio.to_thread(
            self._store.get_patient, assessment.patient_id, assessment.physician_id
        )
        physician = await asyncio.to_thread(
            self._store.get_physician, assessment.physician_id
        )
        phone = (physician.alert_phone if physician else "") or self._fallback_phone
        if not phone:
            logger.error(
                "No alert phone for physician %s (assessment %s) — parking in outbox",
                assessment.physician_id, assessment_id,
            )
            return self._park(assessment_id)

        text = format_alert(assessment, patient)
        for attempt in range(self._max_attempts):
            try:
                await self._send_once(phone, text)
            except AlertDispatchFailure as exc:
                self._metrics["alert_send_failures"] += 1
                logger.warning(
                    "Alert delivery failed for %s (attempt %d/%d): %s",
                    assessment_id, attempt + 1, self._max_attempts, exc,
                )
                if attempt < self._max_attempts - 1:
                    await asyncio.sleep(self._backoff * (2 ** attempt))
            else:
                marked = await asyncio.to_thread(
                    self._store.mark_alerted, assessment_id, datetime.now(timezone.utc)
                )
                if not marked:
                    logger.warning(
                        "Assessment %s was marked alerted concurrently", assessment_id,
                    )
                    return AlertOutcome.ALREADY_ALERTED
                self._metrics["alerts_sent"] += 1
                logger.info(
                    "Alert sent for assessment %s (patient %s, level %s)",
                    assessment_id, assessment.patient_id, assessment.final_level.value,
                )
                return AlertOutcome.SENT

        logger.error(
            "Alert for assessment %s failed after %d attempts — parking in outbox",
            assessment_id, self._max_attempts,
        )
        return self._park(assessment_id)

    async def _send_once(self, phone: str, text: str) -> None:
        try:
            result = await self._messenger.send(phone, text)
        except Exception as exc:
            raise AlertDispatchFailure(str(exc)) from exc
        if not result.success:
            raise AlertDispatchFailure(result.error or "delivery failed")

    def _park(self, assessment_id: str) -> AlertOutcome:
        if assessment_id not in self._pending:
            self._metrics["alerts_queued"] += 1
        self._pending.add(assessment_id)
        return AlertOutcome.QUEUED


class AlertOutbox:
    """
    Background loop that re-attempts parked alerts.

    Usage:
        outbox = AlertOutbox(dispatcher=alert_dispatcher, store=store)
        await outbox.start()
        ...
        await outbox.stop()
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        store: RecordStore,
        check_interval: float = OUTBOX_INTERVAL,
    ) -> None:
        self._dispatcher = dispatcher
        self._store = store
        self._check_interval = check_interval
        self._task: asyncio.Task | None = None
        self._recovery_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the retry loop and recover un-alerted assessments."""
        if self._running:
            logger.warning("AlertOutbox already running")
            return
        self._running = True
        self._recovery_task = asyncio.create_task(self._recover_on_startup())
        self._task = asyncio.create_task(self._outbox_loop())
        logger.info("AlertOutbox started (interval=%ss)", self._check_interval)

    async def stop(self) -> None:
        self._running = False
        for task in (self._task, self._recovery_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("AlertOutbox stopped")

    async def flush(self) -> dict[str, AlertOutcome]:
        """Re-attempt every parked alert once."""
        outcomes: dict[str, AlertOutcome] = {}
        for assessment_id in self._dispatcher.pending:
            try:
                outcomes[assessment_id] = await self._dispatcher.dispatch(assessment_id)
            except Exception as exc:
                logger.error("Outbox retry failed for %s: %s", assessment_id, exc)
        return outcomes

    # ── Internal ──

    async def _recover_on_startup(self) -> None:
        """Dispatch high/critical assessments left un-alerted by a crash."""
        try:
            pending = await asyncio.to_thread(self._store.list_pending_alerts)
            for assessment in pending:
                try:
                    await self._dispatcher.dispatch(assessment.id)
                except Exception as exc:
                    logger.warning(
                        "Failed to recover alert for %s: %s", assessment.id, exc
                    )
            logger.info("Recovered %d un-alerted assessments on startup", len(pending))
        except Exception as exc:
            logger.error("Alert recovery failed: %s", exc)

    async def _outbox_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._check_interval)
                if not self._running:
                    break
                if self._dispatcher.pending:
                    await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Outbox loop error: %s", exc, exc_info=True)
