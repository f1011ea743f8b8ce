"""
Conversation Manager — per-patient questionnaire state machine.

    Idle ──(message, active follow-up)──────────▶ AwaitingConfirmation
    AwaitingConfirmation ──(affirmative)───────▶ CollectingAnswers[0]
    AwaitingConfirmation ──(anything else)─────▶ (free-text triage, unchanged)
    CollectingAnswers[k] ──(reply, more left)──▶ CollectingAnswers[k+1]
    CollectingAnswers[last] ──(reply)──────────▶ Completed (+ assessment)
    Completed ──(next message)─────────────────▶ treated as Idle

``handle()`` never touches storage.  It works on a copy of the state and
returns the new state, any follow-up / assessment changes and the replies
to send; the Gateway commits all of it atomically.  If anything raises,
nothing is persisted and the provider retry replays the message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from postop.gateway.agents.risk_classifier import (
    SURGERY_LABELS,
    ClassifierRequest,
    ClassifierResult,
    RiskClassifier,
)
from postop.gateway.errors import TransientClassifierFailure
from postop.gateway.events import InboundMessage, MessageKind
from postop.gateway.extraction import extract_answers, extract_free_text
from postop.gateway.fusion import classifier_flags, fuse
from postop.gateway.questionnaires import question_ids_for, question_text
from postop.gateway.records import (
    ConversationPhase,
    ConversationState,
    FollowUp,
    FollowUpStatus,
    Patient,
    QuestionnaireAnswer,
    RedFlag,
    RiskAssessment,
    RiskLevel,
)
from postop.gateway.rules.red_flags import evaluate

logger = logging.getLogger("gateway.conversation")

AFFIRMATIVE_TOKENS = {
    "sim", "s", "sim!", "sim.", "ok", "pode", "claro", "vamos", "bora", "1", "yes",
}

FREE_TEXT_KEY = "mensagem"

MESSAGES = {
    "unregistered": (
        "Olá! Não encontrei seu cadastro em nosso sistema. Por favor, entre em "
        "contato com o consultório do seu médico para verificar seus dados."
    ),
    "no_pending": (
        "Olá {first}! Recebi sua mensagem. No momento não há questionário "
        "pendente. Se tiver alguma urgência, entre em contato com o consultório "
        "ou procure o pronto-socorro mais próximo."
    ),
    "confirmation": (
        "Olá {first}! Aqui é o acompanhamento pós-operatório da sua {surgery}. "
        "Hoje é o seu D+{day} e temos algumas perguntas rápidas sobre a sua "
        "recuperação. Podemos começar agora? Responda \"sim\" para iniciar."
    ),
    "start": "Ótimo! São {count} perguntas rápidas.",
    "question": "({number}/{count}) {text}",
    "reminder": (
        "Você ainda tem um questionário pendente (D+{day}). Quando puder "
        "respondê-lo, envie \"sim\"."
    ),
    "unsupported": (
        "Desculpe, ainda não consigo entender áudios, imagens ou outros "
        "arquivos. Por favor, responda por mensagem de texto."
    ),
    "apology": (
        "Desculpe, tivemos um problema técnico ao processar sua mensagem. "
        "Vamos tentar novamente em instantes. Se for urgente, procure "
        "atendimento médico."
    ),
}

FALLBACK_RESPONSES = {
    RiskLevel.CRITICAL: (
        "Obrigado por responder, {first}. Algumas das suas respostas precisam "
        "de atenção imediata e o seu médico já está sendo avisado."
    ),
    RiskLevel.HIGH: (
        "Obrigado por responder, {first}. Algumas das suas respostas precisam "
        "de atenção e o seu médico está sendo avisado."
    ),
    RiskLevel.MEDIUM: (
        "Obrigado por responder, {first}. Anotamos suas respostas. Continue "
        "seguindo as orientações médicas e nos avise se algo mudar."
    ),
    RiskLevel.LOW: (
        "Obrigado por responder, {first}! Sua recuperação parece estar dentro "
        "do esperado. Continue seguindo as orientações médicas."
    ),
}

URGENT_CARE_ADVICE = (
    "Se houver sangramento intenso, febre alta, dificuldade para respirar ou "
    "piora importante da dor, procure o pronto-socorro mais próximo imediatamente."
)
WATCH_ADVICE = "Se algum sintoma piorar, entre em contato com o consultório."


class TransitionOutcome(str, Enum):
    NO_ACTIVE_FOLLOW_UP = "no_active_follow_up"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    QUESTIONNAIRE_STARTED = "questionnaire_started"
    ANSWER_RECORDED = "answer_recorded"
    QUESTIONNAIRE_COMPLETED = "questionnaire_completed"
    FREE_TEXT_TRIAGED = "free_text_triaged"
    UNSUPPORTED_MESSAGE = "unsupported_message"


@dataclass
class TransitionResult:
    """What one inbound message changes.  Nothing here is persisted yet."""

    outcome: TransitionOutcome
    state: ConversationState
    replies: list[str] = field(default_factory=list)
    follow_up: Optional[FollowUp] = None
    assessment: Optional[RiskAssessment] = None


def is_affirmative(text: str) -> bool:
    return text.strip().lower() in AFFIRMATIVE_TOKENS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationManager:
    """
    Decides what an inbound message means for the patient's conversation.

    The caller (Gateway) must serialise calls per patient; this class keeps
    no per-patient state of its own.
    """

    def __init__(
        self,
        classifier: RiskClassifier | None = None,
        timeout_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._classifier = classifier
        self._timeout = timedelta(hours=timeout_hours)
        self._clock = clock

    @property
    def classifier_enabled(self) -> bool:
        return self._classifier is not None

    # ── Main Entry Point ──

    async def handle(
        self,
        *,
        message: InboundMessage,
        patient: Patient,
        state: ConversationState,
        active_follow_up: FollowUp | None,
    ) -> TransitionResult:
        state = state.model_copy(deep=True)
        follow_up = active_follow_up.model_copy(deep=True) if active_follow_up else None
        self._expire_if_stale(state, follow_up)

        if not message.is_processable:
            return TransitionResult(
                outcome=TransitionOutcome.UNSUPPORTED_MESSAGE,
                state=state,
                replies=[MESSAGES["unsupported"]],
            )

        if state.phase in (ConversationPhase.IDLE, ConversationPhase.COMPLETED):
            return self._handle_idle(patient, state, follow_up)

        if state.phase == ConversationPhase.AWAITING_CONFIRMATION:
            if is_affirmative(message.text):
                return self._start_questionnaire(state, follow_up)
            return await self._handle_free_text(message, patient, state, follow_up)

        return await self._handle_answer(message, patient, state, follow_up)

    # ── Transitions ──

    def _expire_if_stale(self, state: ConversationState, follow_up: FollowUp | None) -> None:
        if state.phase == ConversationPhase.COMPLETED:
            logger.debug("Patient %s starting a new cycle after completion", state.patient_id)
            state.reset()
            return
        if state.phase not in (
            ConversationPhase.AWAITING_CONFIRMATION,
            ConversationPhase.COLLECTING_ANSWERS,
        ):
            return

        if self._clock() - state.last_activity > self._timeout:
            logger.info(
                "Conversation for patient %s timed out in %s — going dormant",
                state.patient_id, state.phase.value,
            )
            state.reset()
            return

        if follow_up is None or follow_up.id != state.follow_up_id:
            logger.info(
                "Follow-up %s is no longer active for patient %s — resetting",
                state.follow_up_id, state.patient_id,
            )
            state.reset()

    def _handle_idle(
        self,
        patient: Patient,
        state: ConversationState,
        follow_up: FollowUp | None,
    ) -> TransitionResult:
        if follow_up is None:
            return TransitionResult(
                outcome=TransitionOutcome.NO_ACTIVE_FOLLOW_UP,
                state=state,
                replies=[MESSAGES["no_pending"].format(first=patient.first_name)],
            )

        state.phase = ConversationPhase.AWAITING_CONFIRMATION
        state.follow_up_id = follow_up.id
        state.question_ids = []
        state.pointer = 0
        state.answers = {}
        state.last_activity = self._clock()
        changed = follow_up.advance_to(FollowUpStatus.SENT)

        prompt = MESSAGES["confirmation"].format(
            first=patient.first_name,
            surgery=SURGERY_LABELS.get(follow_up.surgery_type, follow_up.surgery_type.value),
            day=follow_up.day_number,
        )
        return TransitionResult(
            outcome=TransitionOutcome.CONFIRMATION_REQUESTED,
            state=state,
            replies=[prompt],
            follow_up=follow_up if changed else None,
        )

    def _start_questionnaire(
        self, state: ConversationState, follow_up: FollowUp
    ) -> TransitionResult:
        question_ids = question_ids_for(follow_up.surgery_type, follow_up.day_number)
        state.phase = ConversationPhase.COLLECTING_ANSWERS
        state.question_ids = question_ids
        state.pointer = 0
        state.answers = {}
        state.last_activity = self._clock()

        count = len(question_ids)
        reply = "\n\n".join([
            MESSAGES["start"].format(count=count),
            self._question_message(state),
        ])
        logger.info(
            "Questionnaire started for patient %s (follow-up %s, %d questions)",
            state.patient_id, follow_up.id, count,
        )
        return TransitionResult(
            outcome=TransitionOutcome.QUESTIONNAIRE_STARTED,
            state=state,
            replies=[reply],
        )

    async def _handle_answer(
        self,
        message: InboundMessage,
        patient: Patient,
        state: ConversationState,
        follow_up: FollowUp,
    ) -> TransitionResult:
        question_id = state.current_question_id
        if question_id is None:
            # Pointer out of range: the question list was lost; start over
            logger.warning("Patient %s has no current question — restarting", patient.id)
            return self._start_questionnaire(state, follow_up)

        state.answers[question_id] = message.text.strip()
        state.last_activity = self._clock()

        if state.has_more_questions:
            state.pointer += 1
            return TransitionResult(
                outcome=TransitionOutcome.ANSWER_RECORDED,
                state=state,
                replies=[self._question_message(state)],
            )

        extracted = extract_answers(state.answers)
        assessment = await self._assess(
            message_id=message.message_id,
            patient=patient,
            follow_up=follow_up,
            raw_answers=dict(state.answers),
            extracted=extracted,
            free_text=False,
        )
        follow_up.advance_to(FollowUpStatus.RESPONDED)
        state.phase = ConversationPhase.COMPLETED
        logger.info(
            "Questionnaire completed for patient %s (follow-up %s): %s",
            patient.id, follow_up.id, assessment.final_level.value,
        )
        return TransitionResult(
            outcome=TransitionOutcome.QUESTIONNAIRE_COMPLETED,
            state=state,
            replies=[self._patient_reply(assessment)],
            follow_up=follow_up,
            assessment=assessment,
        )

    async def _handle_free_text(
        self,
        message: InboundMessage,
        patient: Patient,
        state: ConversationState,
        follow_up: FollowUp,
    ) -> TransitionResult:
        extracted = extract_free_text(message.text)
        assessment = await self._assess(
            message_id=message.message_id,
            patient=patient,
            follow_up=follow_up,
            raw_answers={FREE_TEXT_KEY: message.text.strip()},
            extracted=extracted,
            free_text=True,
        )
        replies = [
            self._patient_reply(assessment),
            MESSAGES["reminder"].format(day=follow_up.day_number),
        ]
        return TransitionResult(
            outcome=TransitionOutcome.FREE_TEXT_TRIAGED,
            state=state,
            replies=replies,
            assessment=assessment,
        )

    # ── Assessment ──

    async def _assess(
        self,
        *,
        message_id: str,
        patient: Patient,
        follow_up: FollowUp,
        raw_answers: dict[str, str],
        extracted: QuestionnaireAnswer,
        free_text: bool,
    ) -> RiskAssessment:
        rules = evaluate(follow_up.surgery_type, follow_up.day_number, extracted)
        result = await self._classify(
            ClassifierRequest(
                patient_id=patient.id,
                physician_id=patient.physician_id,
                patient_first_name=patient.first_name,
                surgery_type=follow_up.surgery_type,
                day_number=follow_up.day_number,
                raw_answers=raw_answers,
                extracted=extracted,
                rule_level=rules.level,
                rule_flags=rules.tags,
                free_text=free_text,
            )
        )

        ai_level = result.ai_level if result else None
        extra = classifier_flags(result.additional_flags) if result else []
        fused = fuse(rules.level, ai_level, rules.flags, extra)

        if result is not None:
            response_text = result.empathetic_response
            advice = result.escalation_advice
        else:
            response_text = FALLBACK_RESPONSES[fused.final_level].format(
                first=patient.first_name
            )
            advice = self._fallback_advice(fused.final_level, fused.flags)

        return RiskAssessment(
            patient_id=patient.id,
            physician_id=patient.physician_id,
            follow_up_id=follow_up.id,
            message_id=message_id,
            day_number=follow_up.day_number,
            rule_level=rules.level,
            ai_level=ai_level,
            final_level=fused.final_level,
            flags=fused.flags,
            answers=raw_answers,
            response_text=response_text,
            escalation_advice=advice,
            classifier_degraded=result is None,
        )

    async def _classify(self, request: ClassifierRequest) -> ClassifierResult | None:
        if self._classifier is None:
            logger.info("Classifier disabled — rule-only assessment for %s", request.patient_id)
            return None
        try:
            return await self._classifier.classify(request)
        except TransientClassifierFailure as exc:
            logger.warning(
                "Classifier unavailable for patient %s — using rules only: %s",
                request.patient_id, exc,
            )
        except Exception as exc:
            logger.error(
                "Classifier error for patient %s — using rules only: %s",
                request.patient_id, exc, exc_info=True,
            )
        return None

    # ── Helpers ──

    @staticmethod
    def _fallback_advice(level: RiskLevel, flags: list[RedFlag]) -> str | None:
        if level.requires_alert:
            return URGENT_CARE_ADVICE
        if flags:
            return WATCH_ADVICE
        return None

    @staticmethod
    def _patient_reply(assessment: RiskAssessment) -> str:
        if assessment.escalation_advice:
            return f"{assessment.response_text}\n\n{assessment.escalation_advice}"
        return assessment.response_text

    @staticmethod
    def _question_message(state: ConversationState) -> str:
        question_id = state.current_question_id or ""
        return MESSAGES["question"].format(
            number=state.pointer + 1,
            count=len(state.question_ids),
            text=question_text(question_id),
        )
