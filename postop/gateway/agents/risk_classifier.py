"""
Risk Classifier Gateway — Gemini-backed second opinion on a response.

The classifier sees the same answers as the rule engine plus the flags
the rules already raised, and returns:
  - an AI risk level
  - additional free-form red flags
  - the empathetic reply sent to the patient
  - optional advice on seeking care

It is treated as unreliable: every failure mode (no client, timeout,
exhausted retries, malformed JSON) surfaces as TransientClassifierFailure
and the caller falls back to rule-only fusion.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

from google.genai import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from postop.gateway.agents.llm_utils import llm_generate, strip_code_fences
from postop.gateway.errors import TransientClassifierFailure
from postop.gateway.records import QuestionnaireAnswer, RiskLevel, SurgeryType

logger = logging.getLogger("gateway.agents.risk_classifier")

SURGERY_LABELS = {
    SurgeryType.HEMORROIDECTOMIA: "hemorroidectomia",
    SurgeryType.FISTULA: "fistulotomia / tratamento de fístula anal",
    SurgeryType.FISSURA: "tratamento de fissura anal",
    SurgeryType.PILONIDAL: "exérese de cisto pilonidal",
}

SYSTEM_INSTRUCTION = """\
Você é um assistente de acompanhamento pós-operatório de cirurgia \
coloproctológica. Analise as respostas do paciente e devolva APENAS um JSON:
{
  "riskLevel": "low" | "medium" | "high" | "critical",
  "additionalRedFlags": ["sinais de alerta não cobertos pelas regras"],
  "empatheticResponse": "mensagem curta, acolhedora, em português do Brasil",
  "seekCareAdvice": "orientação de procurar atendimento ou null",
  "reasoning": "justificativa breve"
}
Nunca minimize sinais de alerta já detectados. Não faça diagnósticos. \
A mensagem ao paciente deve ter no máximo 4 frases."""


class ClassifierRequest(BaseModel):
    """Everything the classifier needs, scoped to one patient and tenant."""

    patient_id: str
    physician_id: str
    patient_first_name: str = ""
    surgery_type: SurgeryType
    day_number: int
    raw_answers: dict[str, str] = Field(default_factory=dict)
    extracted: QuestionnaireAnswer = Field(default_factory=QuestionnaireAnswer)
    rule_level: RiskLevel = RiskLevel.LOW
    rule_flags: list[str] = Field(default_factory=list)
    free_text: bool = False


class ClassifierResult(BaseModel):
    """Validated classifier output.  Field aliases match the JSON contract."""

    model_config = ConfigDict(populate_by_name=True)

    ai_level: RiskLevel = Field(alias="riskLevel")
    additional_flags: list[str] = Field(default_factory=list, alias="additionalRedFlags")
    empathetic_response: str = Field(alias="empatheticResponse", min_length=1)
    escalation_advice: Optional[str] = Field(default=None, alias="seekCareAdvice")
    reasoning: str = ""


class RiskClassifier(ABC):
    """Abstract classifier.  Implementations raise TransientClassifierFailure."""

    @abstractmethod
    async def classify(self, request: ClassifierRequest) -> ClassifierResult:
        ...


def build_prompt(request: ClassifierRequest) -> str:
    surgery = SURGERY_LABELS.get(request.surgery_type, request.surgery_type.value)
    context = "mensagem livre do paciente" if request.free_text else "questionário respondido"
    lines = [
        f"Cirurgia: {surgery}",
        f"Dia pós-operatório: D+{request.day_number}",
        f"Paciente: {request.patient_first_name or 'paciente'}",
        f"Tipo de entrada: {context}",
        "",
        "Respostas (texto original):",
    ]
    for question_id, answer in request.raw_answers.items():
        lines.append(f"- {question_id}: {answer}")
    lines += [
        "",
        "Dados extraídos:",
        json.dumps(
            request.extracted.model_dump(mode="json", exclude_defaults=True),
            ensure_ascii=False,
        ),
        "",
        f"Nível pelas regras determinísticas: {request.rule_level.value}",
        f"Sinais de alerta já detectados: {', '.join(request.rule_flags) or 'nenhum'}",
    ]
    return "\n".join(lines)


def parse_result(text: str) -> ClassifierResult:
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise TransientClassifierFailure(f"Classifier returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TransientClassifierFailure("Classifier returned a non-object JSON value")

    level = data.get("riskLevel")
    if isinstance(level, str):
        data["riskLevel"] = level.strip().lower()
    if data.get("seekCareAdvice") in ("", "null"):
        data["seekCareAdvice"] = None
    try:
        return ClassifierResult.model_validate(data)
    except ValidationError as exc:
        raise TransientClassifierFailure(f"Classifier output failed validation: {exc}") from exc


class GeminiRiskClassifier(RiskClassifier):
    """Calls Gemini through google-genai with retries and an overall timeout."""

    def __init__(
        self,
        llm_client: Any = None,
        model: str | None = None,
        timeout_seconds: float = 20.0,
        max_retries: int = 2,
    ) -> None:
        self._client = llm_client
        self._model_name = model or os.getenv("CLASSIFIER_MODEL", "gemini-2.5-flash")
        self._timeout = timeout_seconds
        self._max_retries = max_retries

    @property
    def client(self):
        if self._client is None:
            try:
                from google import genai
                self._client = genai.Client(api_key=os.getenv("GOOGLE_API_KEY"))
            except Exception as exc:
                logger.error("Failed to create Gemini client: %s", exc)
        return self._client

    async def classify(self, request: ClassifierRequest) -> ClassifierResult:
        client = self.client
        if client is None:
            raise TransientClassifierFailure("Gemini client unavailable")

        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            system_instruction=SYSTEM_INSTRUCTION,
            temperature=0.3,
        )
        try:
            text = await asyncio.wait_for(
                llm_generate(
                    client,
                    self._model_name,
                    build_prompt(request),
                    config=config,
                    max_retries=self._max_retries,
                    critical=True,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientClassifierFailure(
                f"Classifier timed out after {self._timeout}s"
            ) from exc

        if text is None:
            raise TransientClassifierFailure("Classifier exhausted retries")
        return parse_result(text)
