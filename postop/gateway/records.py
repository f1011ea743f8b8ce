"""
Domain records — patients, follow-ups, conversation state, assessments.

Every record is a pydantic model so the store can hand out deep copies
and the API can serialise them without extra mapping code.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from postop.gateway.errors import InvalidTransition


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, *levels: Optional["RiskLevel"]) -> "RiskLevel":
        present = [lvl for lvl in levels if lvl is not None]
        if not present:
            return cls.LOW
        return max(present, key=lambda lvl: lvl.rank)

    @property
    def requires_alert(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class SurgeryType(str, Enum):
    HEMORROIDECTOMIA = "hemorroidectomia"
    FISTULA = "fistula"
    FISSURA = "fissura"
    PILONIDAL = "pilonidal"


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RESPONDED = "responded"


_STATUS_ORDER = {
    FollowUpStatus.PENDING: 0,
    FollowUpStatus.SENT: 1,
    FollowUpStatus.RESPONDED: 2,
}


class ConversationPhase(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COLLECTING_ANSWERS = "collecting_answers"
    COMPLETED = "completed"


class BleedingSeverity(str, Enum):
    NONE = "none"
    LIGHT = "light"
    MODERATE = "moderate"
    SEVERE = "severe"


class DischargeKind(str, Enum):
    NONE = "none"
    SEROUS = "serous"
    PURULENT = "purulent"
    ABUNDANT = "abundant"


class FlagSource(str, Enum):
    RULES = "rules"
    CLASSIFIER = "classifier"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Identity records (owned by the registration flow)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class Physician(BaseModel):
    id: str
    name: str
    alert_phone: str = ""


class Patient(BaseModel):
    id: str
    name: str
    phone: str
    physician_id: str
    active: bool = True

    @property
    def first_name(self) -> str:
        return self.name.split()[0] if self.name.strip() else ""


class FollowUp(BaseModel):
    id: str
    patient_id: str
    surgery_id: str = ""
    surgery_type: SurgeryType
    day_number: int
    status: FollowUpStatus = FollowUpStatus.PENDING
    scheduled_at: datetime = Field(default_factory=_now)
    responded_at: Optional[datetime] = None

    ACTIVE_STATUSES: ClassVar[tuple[FollowUpStatus, ...]] = (
        FollowUpStatus.SENT,
        FollowUpStatus.PENDING,
    )

    @property
    def is_active(self) -> bool:
        return self.status in self.ACTIVE_STATUSES

    def advance_to(self, status: FollowUpStatus) -> bool:
        """Move the status forward.  Returns False when already there.

        Raises InvalidTransition for a backwards move.
        """
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise InvalidTransition(
                f"Follow-up {self.id} cannot go from {self.status.value} "
                f"back to {status.value}"
            )
        if status == self.status:
            return False
        self.status = status
        if status == FollowUpStatus.RESPONDED:
            self.responded_at = _now()
        return True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Conversation state
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConversationState(BaseModel):
    patient_id: str
    phase: ConversationPhase = ConversationPhase.IDLE
    follow_up_id: Optional[str] = None
    question_ids: list[str] = Field(default_factory=list)
    pointer: int = 0
    answers: dict[str, str] = Field(default_factory=dict)
    last_activity: datetime = Field(default_factory=_now)

    @property
    def current_question_id(self) -> str | None:
        if 0 <= self.pointer < len(self.question_ids):
            return self.question_ids[self.pointer]
        return None

    @property
    def has_more_questions(self) -> bool:
        return self.pointer + 1 < len(self.question_ids)

    def reset(self) -> None:
        """Go dormant.  The record itself is never deleted."""
        self.phase = ConversationPhase.IDLE
        self.follow_up_id = None
        self.question_ids = []
        self.pointer = 0
        self.answers = {}

    @classmethod
    def create_new(cls, patient_id: str) -> ConversationState:
        return cls(patient_id=patient_id)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Answers, flags, assessments
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class QuestionnaireAnswer(BaseModel):
    """Typed extraction of one or more patient replies."""

    pain_at_rest: Optional[int] = None
    pain_during_evacuation: Optional[int] = None
    bowel_movement: Optional[bool] = None
    bleeding: Optional[BleedingSeverity] = None
    urinary_retention: Optional[bool] = None
    urinary_retention_hours: Optional[float] = None
    fever: Optional[bool] = None
    temperature: Optional[float] = None
    discharge: Optional[DischargeKind] = None
    wound_signs: list[str] = Field(default_factory=list)
    taking_medication: Optional[bool] = None
    additional_symptoms: list[str] = Field(default_factory=list)
    concerns: str = ""

    def max_pain(self) -> int | None:
        scores = [p for p in (self.pain_at_rest, self.pain_during_evacuation) if p is not None]
        return max(scores) if scores else None


class RedFlag(BaseModel):
    tag: str
    message: str
    source: FlagSource = FlagSource.RULES


class RiskAssessment(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("RA"))
    patient_id: str
    physician_id: str
    follow_up_id: Optional[str] = None
    message_id: str
    day_number: Optional[int] = None
    rule_level: RiskLevel
    ai_level: Optional[RiskLevel] = None
    final_level: RiskLevel
    flags: list[RedFlag] = Field(default_factory=list)
    answers: dict[str, str] = Field(default_factory=dict)
    response_text: str = ""
    escalation_advice: Optional[str] = None
    classifier_degraded: bool = False
    alerted: bool = False
    alerted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)

    @property
    def flag_tags(self) -> set[str]:
        return {f.tag for f in self.flags}

    @property
    def needs_alert(self) -> bool:
        return self.final_level.requires_alert and not self.alerted

