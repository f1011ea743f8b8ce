"""
Gateway — the inbound message pipeline.

For each InboundMessage the Gateway:
  1. Skips it if the processing log already has its message id
     (re-dispatching any alert a crash left un-sent)
  2. Resolves the sender phone to a patient (and so a physician tenant)
  3. Loads the conversation state and the active follow-up
  4. Runs the ConversationManager transition
  5. Commits state, follow-up, assessment and processing-log entry
     atomically, retrying with a fresh read on generation conflicts
  6. Sends the replies, then the physician alert when one is required

Callers must serialise messages per sender (see PatientQueueManager).
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from postop.gateway.alerts import AlertDispatcher, AlertOutcome
from postop.gateway.channels import OutboundMessage, ReplyDispatcher
from postop.gateway.conversation import MESSAGES, ConversationManager, TransitionResult
from postop.gateway.errors import PersistenceConflict
from postop.gateway.events import InboundMessage
from postop.gateway.handlers.patient_resolver import PatientNotFound, PatientResolver
from postop.gateway.records import Patient, RiskLevel
from postop.gateway.store import CommitBatch, ProcessedMessage, RecordStore

logger = logging.getLogger("gateway.core")

# Waits between commit attempts after a generation conflict
COMMIT_BACKOFFS = [0.1, 0.3, 0.9]

DUPLICATE = "duplicate"
PATIENT_NOT_FOUND = "patient_not_found"


@dataclass
class ProcessingResult:
    """What happened to one inbound message."""

    message_id: str
    outcome: str
    patient_id: Optional[str] = None
    physician_id: Optional[str] = None
    assessment_id: Optional[str] = None
    final_level: Optional[RiskLevel] = None
    alert_outcome: Optional[AlertOutcome] = None
    replies: list[str] = field(default_factory=list)
    replies_failed: int = 0

    @property
    def duplicate(self) -> bool:
        return self.outcome == DUPLICATE


class Gateway:
    """
    Deterministic pipeline around the conversation state machine.

    The only non-deterministic step (the risk classifier) lives inside
    the ConversationManager and degrades to rule-only on failure.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        resolver: PatientResolver,
        conversation: ConversationManager,
        reply_dispatcher: ReplyDispatcher,
        alert_dispatcher: AlertDispatcher,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._conversation = conversation
        self._replies = reply_dispatcher
        self._alerts = alert_dispatcher
        self._event_log: list[dict[str, Any]] = []
        self._dead_letter_queue: list[dict[str, Any]] = []
        self._processing_times: list[float] = []
        self._metrics: dict[str, Any] = {
            "messages_processed": 0,
            "messages_failed": 0,
            "duplicates_skipped": 0,
            "patients_not_found": 0,
            "assessments_created": 0,
            "commit_conflicts": 0,
            "replies_sent": 0,
            "replies_failed": 0,
            "classifier_degraded": 0,
        }

    # ── Main Entry Point ──

    async def process_message(self, message: InboundMessage) -> ProcessingResult:
        """
        Process one inbound message end to end.

        Raises on internal failure after recording the message in the DLQ,
        so the webhook answers non-2xx and the provider retries.  Nothing
        was committed in that case, so the retry starts clean.
        """
        t0 = time.monotonic()
        logger.info(
            "process_message entered: %s from phone ending %s",
            message.message_id, message.sender_phone[-4:],
        )

        existing = await asyncio.to_thread(self._store.get_processed, message.message_id)
        if existing is not None:
            return await self._handle_duplicate(message, existing)

        resolved = await asyncio.to_thread(self._resolver.resolve, message.sender_phone)
        if isinstance(resolved, PatientNotFound):
            return await self._handle_unregistered(message)

        patient = resolved.patient
        try:
            result = await self._run_transition(message, patient)
        except Exception as exc:
            await self._handle_failure(message, patient, exc)
            raise

        if result.duplicate:
            return result

        self._metrics["messages_processed"] += 1
        self._processing_times.append(time.monotonic() - t0)
        if len(self._processing_times) > 1000:
            self._processing_times = self._processing_times[-500:]

        await self._replies.mark_read(message.message_id)
        self._log_event(message, result.outcome, patient.id, result.assessment_id)
        logger.info(
            "Message %s processed for patient %s: %s (%.2fs)",
            message.message_id, patient.id, result.outcome, time.monotonic() - t0,
        )
        return result

    # ── Pipeline Steps ──

    async def _run_transition(
        self, message: InboundMessage, patient: Patient
    ) -> ProcessingResult:
        attempt = 0
        while True:
            try:
                transition = await self._transition_and_commit(message, patient)
            except PersistenceConflict as exc:
                self._metrics["commit_conflicts"] += 1
                existing = await asyncio.to_thread(
                    self._store.get_processed, message.message_id
                )
                if existing is not None:
                    # Another delivery of the same message won the race
                    return await self._handle_duplicate(message, existing)
                if attempt >= len(COMMIT_BACKOFFS):
                    logger.error(
                        "Commit failed for patient %s after %d attempts",
                        patient.id, attempt + 1,
                    )
                    raise
                logger.warning(
                    "Commit conflict for patient %s (attempt %d/%d): %s — retrying in %.1fs",
                    patient.id, attempt + 1, len(COMMIT_BACKOFFS) + 1,
                    exc, COMMIT_BACKOFFS[attempt],
                )
                await asyncio.sleep(COMMIT_BACKOFFS[attempt])
                attempt += 1
                continue
            return await self._after_commit(message, patient, transition)

    async def _transition_and_commit(
        self, message: InboundMessage, patient: Patient
    ) -> TransitionResult:
        """Compute the transition from a fresh read and commit it atomically."""
        state, generation = await asyncio.to_thread(
            self._store.load_conversation, patient.id
        )
        follow_up = await asyncio.to_thread(
            self._store.get_active_follow_up, patient.id, patient.physician_id
        )
        transition = await self._conversation.handle(
            message=message,
            patient=patient,
            state=state,
            active_follow_up=follow_up,
        )
        batch = CommitBatch(
            message_id=message.message_id,
            patient_id=patient.id,
            physician_id=patient.physician_id,
            outcome=transition.outcome.value,
            state=transition.state,
            expected_generation=generation,
            follow_up=transition.follow_up,
            assessment=transition.assessment,
        )
        await asyncio.to_thread(self._store.commit, batch)
        return transition

    async def _after_commit(
        self, message: InboundMessage, patient: Patient, transition: TransitionResult
    ) -> ProcessingResult:
        assessment = transition.assessment
        result = ProcessingResult(
            message_id=message.message_id,
            outcome=transition.outcome.value,
            patient_id=patient.id,
            physician_id=patient.physician_id,
            assessment_id=assessment.id if assessment else None,
            final_level=assessment.final_level if assessment else None,
            replies=list(transition.replies),
        )
        if assessment is not None:
            self._metrics["assessments_created"] += 1
            if assessment.classifier_degraded:
                self._metrics["classifier_degraded"] += 1

        # Committed: from here on failures are logged, never re-raised
        result.replies_failed = await self._send_replies(
            message.sender_phone, patient.id, transition.replies
        )
        if assessment is not None and assessment.final_level.requires_alert:
            result.alert_outcome = await self._dispatch_alert(assessment.id)
        return result

    async def _send_replies(
        self, phone: str, patient_id: str | None, replies: list[str]
    ) -> int:
        messages = [
            OutboundMessage(phone=phone, text=text, patient_id=patient_id)
            for text in replies
        ]
        results = await self._replies.dispatch_all(messages)
        failed = sum(1 for r in results if not r.success)
        self._metrics["replies_sent"] += len(results) - failed
        self._metrics["replies_failed"] += failed
        if failed:
            logger.error(
                "%d/%d replies to patient %s were not delivered",
                failed, len(results), patient_id,
            )
        return failed

    async def _dispatch_alert(self, assessment_id: str) -> AlertOutcome | None:
        try:
            return await self._alerts.dispatch(assessment_id)
        except Exception as exc:
            logger.error(
                "Alert dispatch error for assessment %s: %s",
                assessment_id, exc, exc_info=True,
            )
            return None

    async def _handle_duplicate(
        self, message: InboundMessage, existing: ProcessedMessage
    ) -> ProcessingResult:
        logger.info(
            "Duplicate message %s (patient %s) — skipping",
            message.message_id, existing.patient_id,
        )
        self._metrics["duplicates_skipped"] += 1
        self._log_event(message, DUPLICATE, existing.patient_id, None)

        # A crash between commit and alert leaves the alert un-sent; finish it
        alert_outcome = None
        for assessment_id in existing.assessment_ids:
            assessment = await asyncio.to_thread(self._store.get_assessment, assessment_id)
            if assessment is not None and assessment.needs_alert:
                alert_outcome = await self._dispatch_alert(assessment_id)

        return ProcessingResult(
            message_id=message.message_id,
            outcome=DUPLICATE,
            patient_id=existing.patient_id,
            physician_id=existing.physician_id,
            assessment_id=existing.assessment_ids[-1] if existing.assessment_ids else None,
            alert_outcome=alert_outcome,
        )

    async def _handle_unregistered(self, message: InboundMessage) -> ProcessingResult:
        self._metrics["patients_not_found"] += 1
        recorded = await asyncio.to_thread(
            self._store.record_processed,
            ProcessedMessage(message_id=message.message_id, outcome=PATIENT_NOT_FOUND),
        )
        if not recorded:
            existing = await asyncio.to_thread(self._store.get_processed, message.message_id)
            if existing is not None:
                return await self._handle_duplicate(message, existing)

        reply = MESSAGES["unregistered"]
        failed = await self._send_replies(message.sender_phone, None, [reply])
        self._log_event(message, PATIENT_NOT_FOUND, None, None)
        return ProcessingResult(
            message_id=message.message_id,
            outcome=PATIENT_NOT_FOUND,
            replies=[reply],
            replies_failed=failed,
        )

    async def _handle_failure(
        self, message: InboundMessage, patient: Patient, error: Exception
    ) -> None:
        logger.error(
            "Processing failed for message %s (patient %s): %s",
            message.message_id, patient.id, error, exc_info=True,
        )
        self._metrics["messages_failed"] += 1
        self._add_to_dlq(message, patient.id, error)
        self._log_event(message, "FAILED", patient.id, None)
        try:
            await self._send_replies(message.sender_phone, patient.id, [MESSAGES["apology"]])
        except Exception as exc:
            logger.error("Failed to send apology to patient %s: %s", patient.id, exc)

    # ── Event Log ──

    def _log_event(
        self,
        message: InboundMessage,
        status: str,
        patient_id: str | None,
        assessment_id: str | None,
    ) -> None:
        """Append to the in-memory event log for debugging."""
        self._event_log.append(
            {
                "message_id": message.message_id,
                "kind": message.kind.value,
                "patient_id": patient_id,
                "status": status,
                "assessment_id": assessment_id,
                "received_at": message.received_at.isoformat(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        if len(self._event_log) > 1000:
            self._event_log = self._event_log[-500:]

    def get_event_log(
        self, patient_id: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        if patient_id:
            entries = [e for e in self._event_log if e["patient_id"] == patient_id]
        else:
            entries = list(self._event_log)
        return entries[-limit:]

    # ── Dead Letter Queue ──

    def _add_to_dlq(
        self, message: InboundMessage, patient_id: str | None, error: Exception
    ) -> None:
        """Add a failed message to the dead letter queue for ops review."""
        entry = {
            "message_id": message.message_id,
            "patient_id": patient_id,
            "kind": message.kind.value,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._dead_letter_queue.append(entry)
        if len(self._dead_letter_queue) > 500:
            self._dead_letter_queue = self._dead_letter_queue[-250:]
        logger.info(
            "Message %s added to DLQ (error=%s)", message.message_id, type(error).__name__,
        )

    def get_dlq(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._dead_letter_queue[-limit:]

    # ── Observability ──

    def get_metrics(self) -> dict[str, Any]:
        """Current pipeline and alert metrics."""
        metrics = dict(self._metrics)
        times = self._processing_times
        if times:
            metrics["processing_summary"] = {
                "count": len(times),
                "avg_ms": round(sum(times) / len(times) * 1000, 1),
                "max_ms": round(max(times) * 1000, 1),
                "min_ms": round(min(times) * 1000, 1),
            }
        metrics.update(self._alerts.get_metrics())
        metrics["dlq_size"] = len(self._dead_letter_queue)
        return metrics

    def health_check(self) -> dict[str, Any]:
        checks: dict[str, Any] = {
            "store_available": self._store is not None,
            "channel": self._replies.channel_name,
            "classifier_enabled": self._conversation.classifier_enabled,
            "messages_processed": self._metrics["messages_processed"],
            "messages_failed": self._metrics["messages_failed"],
            "alerts_pending": len(self._alerts.pending),
            "dlq_size": len(self._dead_letter_queue),
        }
        checks["healthy"] = checks["store_available"] and bool(checks["channel"])
        return checks
