"""
Record Store — persistence boundary for the follow-up pipeline.

Patients, physicians and follow-ups are created elsewhere (registration
and scheduling); the pipeline reads them, mutates ConversationState and
FollowUp status, and appends RiskAssessments.

Writes go through ``commit()``, which applies one inbound message's
effects atomically: the new conversation state (guarded by a generation
number for optimistic locking), the follow-up status, any assessment,
and the processing-log entry keyed by the provider message id.  Nothing
is written if the generation check fails.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from postop.gateway.errors import PersistenceConflict, RecordNotFound
from postop.gateway.records import (
    ConversationState,
    FollowUp,
    Patient,
    Physician,
    RiskAssessment,
)

logger = logging.getLogger("gateway.store")


class ProcessedMessage(BaseModel):
    """Processing-log entry.  Its presence means the message is done."""

    message_id: str
    patient_id: Optional[str] = None
    physician_id: Optional[str] = None
    outcome: str = ""
    assessment_ids: list[str] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CommitBatch(BaseModel):
    """Everything one inbound message changes, applied as a unit."""

    message_id: str
    patient_id: str
    physician_id: str
    outcome: str = ""
    state: ConversationState
    expected_generation: int
    follow_up: Optional[FollowUp] = None
    assessment: Optional[RiskAssessment] = None


class RecordStore(ABC):
    """Abstract persistence — swap the in-memory store for a database."""

    # ── Identity / scheduling (read-only for the pipeline) ──

    @abstractmethod
    def get_physician(self, physician_id: str) -> Physician | None:
        ...

    @abstractmethod
    def get_patient(self, patient_id: str, physician_id: str | None = None) -> Patient | None:
        ...

    @abstractmethod
    def list_active_patients(self, physician_id: str | None = None) -> list[Patient]:
        ...

    @abstractmethod
    def get_follow_up(self, follow_up_id: str) -> FollowUp | None:
        ...

    @abstractmethod
    def get_active_follow_up(self, patient_id: str, physician_id: str) -> FollowUp | None:
        ...

    # ── Conversation state ──

    @abstractmethod
    def load_conversation(self, patient_id: str) -> tuple[ConversationState, int]:
        ...

    # ── Processing log ──

    @abstractmethod
    def get_processed(self, message_id: str) -> ProcessedMessage | None:
        ...

    @abstractmethod
    def record_processed(self, entry: ProcessedMessage) -> bool:
        """Log a message that changed no conversation state."""

    @abstractmethod
    def commit(self, batch: CommitBatch) -> int:
        """Apply a batch atomically.  Returns the new state generation."""

    # ── Assessments ──

    @abstractmethod
    def get_assessment(self, assessment_id: str) -> RiskAssessment | None:
        ...

    @abstractmethod
    def list_assessments(self, patient_id: str | None = None) -> list[RiskAssessment]:
        ...

    @abstractmethod
    def mark_alerted(self, assessment_id: str, alerted_at: datetime) -> bool:
        """Set alerted=True once.  Returns False if it was already set."""

    def list_pending_alerts(self) -> list[RiskAssessment]:
        """High/critical assessments whose physician alert never went out."""
        return [a for a in self.list_assessments() if a.needs_alert]


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-memory store.

    Records are copied on the way in and out so callers can mutate what
    they read without touching stored state until ``commit()``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._physicians: dict[str, Physician] = {}
        self._patients: dict[str, Patient] = {}
        self._follow_ups: dict[str, FollowUp] = {}
        self._conversations: dict[str, tuple[ConversationState, int]] = {}
        self._assessments: dict[str, RiskAssessment] = {}
        self._processed: dict[str, ProcessedMessage] = {}

    # ── Seeding (registration / scheduling collaborators) ──

    def add_physician(self, physician: Physician) -> None:
        with self._lock:
            self._physicians[physician.id] = physician.model_copy(deep=True)

    def add_patient(self, patient: Patient) -> None:
        with self._lock:
            self._patients[patient.id] = patient.model_copy(deep=True)

    def add_follow_up(self, follow_up: FollowUp) -> None:
        with self._lock:
            self._follow_ups[follow_up.id] = follow_up.model_copy(deep=True)

    # ── Identity / scheduling ──

    def get_physician(self, physician_id: str) -> Physician | None:
        with self._lock:
            physician = self._physicians.get(physician_id)
            return physician.model_copy(deep=True) if physician else None

    def get_patient(self, patient_id: str, physician_id: str | None = None) -> Patient | None:
        with self._lock:
            patient = self._patients.get(patient_id)
            if patient is None:
                return None
            if physician_id is not None and patient.physician_id != physician_id:
                return None
            return patient.model_copy(deep=True)

    def list_active_patients(self, physician_id: str | None = None) -> list[Patient]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._patients.values()
                if p.active and (physician_id is None or p.physician_id == physician_id)
            ]

    def get_follow_up(self, follow_up_id: str) -> FollowUp | None:
        with self._lock:
            follow_up = self._follow_ups.get(follow_up_id)
            return follow_up.model_copy(deep=True) if follow_up else None

    def get_active_follow_up(self, patient_id: str, physician_id: str) -> FollowUp | None:
        with self._lock:
            patient = self._patients.get(patient_id)
            if patient is None or patient.physician_id != physician_id:
                return None
            candidates = [
                f for f in self._follow_ups.values()
                if f.patient_id == patient_id and f.is_active
            ]
            if not candidates:
                return None
            candidates.sort(key=lambda f: f.scheduled_at, reverse=True)
            return candidates[0].model_copy(deep=True)

    # ── Conversation state ──

    def load_conversation(self, patient_id: str) -> tuple[ConversationState, int]:
        with self._lock:
            stored = self._conversations.get(patient_id)
            if stored is None:
                return ConversationState.create_new(patient_id), 0
            state, generation = stored
            return state.model_copy(deep=True), generation

    # ── Processing log ──

    def get_processed(self, message_id: str) -> ProcessedMessage | None:
        with self._lock:
            entry = self._processed.get(message_id)
            return entry.model_copy(deep=True) if entry else None

    def record_processed(self, entry: ProcessedMessage) -> bool:
        with self._lock:
            if entry.message_id in self._processed:
                return False
            self._processed[entry.message_id] = entry.model_copy(deep=True)
            return True

    def commit(self, batch: CommitBatch) -> int:
        with self._lock:
            if batch.message_id in self._processed:
                raise PersistenceConflict(
                    f"Message {batch.message_id} was already committed"
                )

            _, current_generation = self._conversations.get(
                batch.patient_id, (None, 0)
            )
            if current_generation != batch.expected_generation:
                raise PersistenceConflict(
                    f"Conversation for {batch.patient_id} is at generation "
                    f"{current_generation}, expected {batch.expected_generation}"
                )

            if batch.follow_up is not None:
                stored = self._follow_ups.get(batch.follow_up.id)
                if stored is None:
                    raise RecordNotFound(f"Follow-up {batch.follow_up.id} not found")
                # Validates monotonic status on a scratch copy before any write
                stored.model_copy(deep=True).advance_to(batch.follow_up.status)

            if batch.assessment is not None and batch.assessment.id in self._assessments:
                raise PersistenceConflict(
                    f"Assessment {batch.assessment.id} already exists"
                )

            new_generation = current_generation + 1
            self._conversations[batch.patient_id] = (
                batch.state.model_copy(deep=True),
                new_generation,
            )
            if batch.follow_up is not None:
                self._follow_ups[batch.follow_up.id] = batch.follow_up.model_copy(deep=True)
            assessment_ids: list[str] = []
            if batch.assessment is not None:
                self._assessments[batch.assessment.id] = batch.assessment.model_copy(deep=True)
                assessment_ids.append(batch.assessment.id)
            self._processed[batch.message_id] = ProcessedMessage(
                message_id=batch.message_id,
                patient_id=batch.patient_id,
                physician_id=batch.physician_id,
                outcome=batch.outcome,
                assessment_ids=assessment_ids,
            )
            logger.debug(
                "Committed message %s for patient %s (generation %d)",
                batch.message_id, batch.patient_id, new_generation,
            )
            return new_generation

    # ── Assessments ──

    def get_assessment(self, assessment_id: str) -> RiskAssessment | None:
        with self._lock:
            assessment = self._assessments.get(assessment_id)
            return assessment.model_copy(deep=True) if assessment else None

    def list_assessments(self, patient_id: str | None = None) -> list[RiskAssessment]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._assessments.values()
                if patient_id is None or a.patient_id == patient_id
            ]

    def mark_alerted(self, assessment_id: str, alerted_at: datetime) -> bool:
        with self._lock:
            assessment = self._assessments.get(assessment_id)
            if assessment is None:
                raise RecordNotFound(f"Assessment {assessment_id} not found")
            if assessment.alerted:
                return False
            assessment.alerted = True
            assessment.alerted_at = alerted_at
            return True

