"""
Follow-up questionnaires — ordered question lists per surgery type and day.

Every day plan starts from a common core (pain, bleeding, fever, ...) and
surgery-specific questions are inserted before the closing "concerns"
question.  Question ids double as keys into the extraction parsers.
"""

from __future__ import annotations

from dataclasses import dataclass

from postop.gateway.records import SurgeryType


@dataclass(frozen=True)
class Question:
    id: str
    label: str
    text: str


QUESTIONS: dict[str, Question] = {
    q.id: q
    for q in [
        Question(
            "pain_at_rest",
            "Dor em repouso",
            "Em uma escala de 0 a 10, qual o nível da sua dor em repouso? "
            "(0 = sem dor, 10 = pior dor imaginável)",
        ),
        Question(
            "urination",
            "Micção",
            "Você está conseguindo urinar normalmente? "
            "Se não, há quantas horas está sem urinar?",
        ),
        Question(
            "bowel_movement",
            "Evacuação",
            "Você já conseguiu evacuar desde a cirurgia (ou desde a última mensagem)? "
            "Responda sim ou não.",
        ),
        Question(
            "pain_during_evacuation",
            "Dor ao evacuar",
            "De 0 a 10, qual foi a dor durante a evacuação? "
            "Se ainda não evacuou, responda \"não evacuei\".",
        ),
        Question(
            "bleeding",
            "Sangramento",
            "Está tendo sangramento? Responda: nenhum, leve, moderado ou intenso.",
        ),
        Question(
            "fever",
            "Febre",
            "Teve febre nas últimas 24 horas? Se mediu, qual foi a temperatura?",
        ),
        Question(
            "discharge",
            "Secreção",
            "Está saindo alguma secreção pela ferida? "
            "Responda: nenhuma, clara, com pus ou em grande quantidade.",
        ),
        Question(
            "wound_status",
            "Ferida",
            "Como está a ferida? Notou vermelhidão, inchaço ou calor no local?",
        ),
        Question(
            "medication",
            "Medicação",
            "Está tomando os medicamentos conforme a prescrição? Responda sim ou não.",
        ),
        Question(
            "concerns",
            "Preocupações",
            "Há algo mais que te preocupa ou que gostaria de relatar ao médico?",
        ),
    ]
}

_CORE_BY_PHASE: list[tuple[int, list[str]]] = [
    # (first day the plan applies, question ids)
    (1, ["pain_at_rest", "urination", "bleeding", "fever", "medication"]),
    (2, ["pain_at_rest", "bowel_movement", "bleeding", "fever", "medication"]),
    (3, ["pain_at_rest", "bowel_movement", "pain_during_evacuation", "bleeding",
         "fever", "medication"]),
    (10, ["pain_at_rest", "bowel_movement", "pain_during_evacuation", "bleeding",
          "fever"]),
]

# (surgery type, first day, last day or None, question id)
_SURGERY_EXTRAS: list[tuple[SurgeryType, int, int | None, str]] = [
    (SurgeryType.HEMORROIDECTOMIA, 1, 3, "urination"),
    (SurgeryType.FISTULA, 2, None, "discharge"),
    (SurgeryType.FISTULA, 2, None, "wound_status"),
    (SurgeryType.PILONIDAL, 2, None, "discharge"),
    (SurgeryType.PILONIDAL, 2, None, "wound_status"),
]


def question_ids_for(surgery_type: SurgeryType | str, day_number: int) -> list[str]:
    """Ordered question ids for a follow-up.  Always ends with "concerns"."""
    surgery = SurgeryType(surgery_type)
    day = max(1, day_number)

    core: list[str] = []
    for first_day, ids in _CORE_BY_PHASE:
        if day >= first_day:
            core = list(ids)

    for extra_surgery, first_day, last_day, question_id in _SURGERY_EXTRAS:
        if extra_surgery != surgery or day < first_day:
            continue
        if last_day is not None and day > last_day:
            continue
        if question_id not in core:
            core.append(question_id)

    core.append("concerns")
    return core


def question_text(question_id: str) -> str:
    return QUESTIONS[question_id].text
