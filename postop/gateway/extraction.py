"""
Answer Extraction — bounded keyword/regex parsing of patient replies.

Input is raw Portuguese text (one reply per question, or a free-form
message); output is a typed QuestionnaireAnswer.  No untyped text flows
past this module into the rule engine.  Swapping in a smarter parser only
requires keeping ``extract_answers`` / ``extract_free_text`` signatures.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Callable

from postop.gateway.records import BleedingSeverity, DischargeKind, QuestionnaireAnswer

logger = logging.getLogger("gateway.extraction")

NEGATIVE_TOKENS = {"nao", "n", "nunca", "nada", "negativo", "nenhum", "nenhuma", "no"}
POSITIVE_TOKENS = {
    "sim", "s", "yes", "ja", "consegui", "consigo", "estou", "tomando",
    "tomei", "normal", "normalmente", "claro", "tive", "evacuei",
}

_NUMBER_WORDS = {
    "zero": 0, "um": 1, "uma": 1, "dois": 2, "duas": 2, "tres": 3, "quatro": 4,
    "cinco": 5, "seis": 6, "sete": 7, "oito": 8, "nove": 9, "dez": 10,
}

_SCORE_RE = re.compile(r"\b(10|[0-9])\b")
_PAIN_IN_TEXT_RE = re.compile(r"dor\D{0,15}?\b(10|[0-9])\b")
_TEMPERATURE_RE = re.compile(r"\b(3[4-9]|4[0-2])(?:[.,](\d))?\s*(°|º|graus|c\b)?")
_HOURS_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:h\b|hs\b|hr|hora)")
_DAY_RE = re.compile(r"(\d+)\s*dia")

# symptom tag → keyword stems (accent-free, lower case)
SYMPTOM_KEYWORDS: dict[str, list[str]] = {
    "respiratory_distress": [
        "falta de ar", "dificuldade para respirar", "dificuldade de respirar",
        "sem ar", "nao consigo respirar", "respirando mal",
    ],
    "altered_consciousness": [
        "desmai", "confus", "desorientad", "apaguei", "perdi a consciencia",
        "muito sonolent",
    ],
    "nausea_vomiting": ["nausea", "enjoo", "vomit"],
}

WOUND_SIGN_KEYWORDS: dict[str, list[str]] = {
    "vermelhidão": ["vermelh"],
    "inchaço": ["inchac", "inchad", "inchou"],
    "calor local": ["quente", "calor"],
}


def normalize(text: str) -> str:
    """Lower-case and strip accents so keyword stems stay simple."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.lower().split())


def _tokens(norm: str) -> list[str]:
    return re.findall(r"[a-z0-9]+", norm)


def _negated(norm: str, start: int) -> bool:
    window = norm[max(0, start - 14):start]
    return bool(re.search(r"\b(nao|sem|nem|nenhum|nenhuma)\b", window))


def mentions(norm: str, stem: str) -> bool:
    """True if ``stem`` occurs at least once without a nearby negation."""
    idx = norm.find(stem)
    while idx != -1:
        if not _negated(norm, idx):
            return True
        idx = norm.find(stem, idx + 1)
    return False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Primitive parsers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def parse_yes_no(text: str) -> bool | None:
    tokens = _tokens(normalize(text))
    if any(t in NEGATIVE_TOKENS for t in tokens):
        return False
    if any(t in POSITIVE_TOKENS for t in tokens):
        return True
    return None


def parse_score(text: str) -> int | None:
    """First 0-10 score in the text (digits or Portuguese number words)."""
    norm = normalize(text)
    match = _SCORE_RE.search(norm)
    if match:
        return int(match.group(1))
    for token in _tokens(norm):
        if token in _NUMBER_WORDS:
            return _NUMBER_WORDS[token]
    return None


def parse_temperature(text: str, require_unit: bool = False) -> float | None:
    norm = normalize(text)
    for match in _TEMPERATURE_RE.finditer(norm):
        if require_unit and not match.group(3):
            continue
        value = float(match.group(1))
        if match.group(2):
            value += int(match.group(2)) / 10
        return value
    return None


def parse_hours(text: str) -> float | None:
    norm = normalize(text)
    match = _HOURS_RE.search(norm)
    if match:
        return float(match.group(1).replace(",", "."))
    match = _DAY_RE.search(norm)
    if match:
        return float(match.group(1)) * 24
    return None


_BLEEDING_SEVERE = ("intens", "forte", "ativo", "jorr", "hemorrag", "encharc")
_BLEEDING_MODERATE = ("moderad", "absorvente", "medio")
_BLEEDING_LIGHT = ("leve", "pouco", "mancha", "rajad")
_BLEEDING_AMOUNT_RE = re.compile(r"\b(muito|bastante)\s+sangr|\bsangr\w*\s+(muito|bastante)\b")

_DISCHARGE_PURULENT = ("pus", "purulent", "amarel", "esverdead", "verde", "mau cheiro", "fedor")
_DISCHARGE_ABUNDANT = ("abundante", "bastante", "grande quantidade")
_DISCHARGE_SEROUS = ("clara", "transparente", "serosa", "aguada", "pouca")
_DISCHARGE_AMOUNT_RE = re.compile(r"\bmuit[ao]s?\s+(secrec|pus)|\bsecrec\w*\s+muit")

_DENIAL = r"\b(?:sem|nenhum|nenhuma|nao(?:\s+(?:esta|estou|tem|tenho|teve|tive|houve|ha))?)\s+"
_BLEEDING_DENIED_RE = re.compile(_DENIAL + r"sangr")
_DISCHARGE_DENIED_RE = re.compile(_DENIAL + r"(?:secrec|pus\b)")

# A bare intensifier is a grade only when it is the whole reply
_BARE_INTENSIFIERS = {"muito", "muita", "bastante"}


def _mentions_word(norm: str, stems: tuple[str, ...]) -> bool:
    """True if any stem starts a word and is not preceded by a negation."""
    for stem in stems:
        for match in re.finditer(r"\b" + re.escape(stem), norm):
            if not _negated(norm, match.start()):
                return True
    return False


def _amount_cue(norm: str, pattern: re.Pattern) -> bool:
    if " ".join(_tokens(norm)) in _BARE_INTENSIFIERS:
        return True
    match = pattern.search(norm)
    return bool(match) and not _negated(norm, match.start())


def parse_bleeding(text: str) -> BleedingSeverity | None:
    norm = normalize(text)
    if "muito pouco" in norm or "pouquinho" in norm:
        return BleedingSeverity.LIGHT
    if _BLEEDING_DENIED_RE.search(norm):
        return BleedingSeverity.NONE
    if _mentions_word(norm, _BLEEDING_SEVERE) or _amount_cue(norm, _BLEEDING_AMOUNT_RE):
        return BleedingSeverity.SEVERE
    if _mentions_word(norm, _BLEEDING_MODERATE):
        return BleedingSeverity.MODERATE
    if _mentions_word(norm, _BLEEDING_LIGHT):
        return BleedingSeverity.LIGHT
    if parse_yes_no(norm) is False:
        return BleedingSeverity.NONE
    return None


def parse_discharge(text: str) -> DischargeKind | None:
    norm = normalize(text)
    if _DISCHARGE_DENIED_RE.search(norm):
        return DischargeKind.NONE
    if _mentions_word(norm, _DISCHARGE_PURULENT):
        return DischargeKind.PURULENT
    if _mentions_word(norm, _DISCHARGE_ABUNDANT) or _amount_cue(norm, _DISCHARGE_AMOUNT_RE):
        return DischargeKind.ABUNDANT
    if _mentions_word(norm, _DISCHARGE_SEROUS):
        return DischargeKind.SEROUS
    if parse_yes_no(norm) is False:
        return DischargeKind.NONE
    return None


def find_wound_signs(text: str) -> list[str]:
    norm = normalize(text)
    return [
        sign for sign, stems in WOUND_SIGN_KEYWORDS.items()
        if any(mentions(norm, stem) for stem in stems)
    ]


def find_symptoms(text: str) -> list[str]:
    norm = normalize(text)
    return [
        tag for tag, stems in SYMPTOM_KEYWORDS.items()
        if any(mentions(norm, stem) for stem in stems)
    ]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Per-question parsers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _apply_pain_at_rest(answer: QuestionnaireAnswer, text: str) -> None:
    answer.pain_at_rest = parse_score(text)


def _apply_pain_during_evacuation(answer: QuestionnaireAnswer, text: str) -> None:
    norm = normalize(text)
    if "nao evacu" in norm or "ainda nao" in norm:
        if answer.bowel_movement is None:
            answer.bowel_movement = False
        return
    answer.pain_during_evacuation = parse_score(text)


def _apply_urination(answer: QuestionnaireAnswer, text: str) -> None:
    norm = normalize(text)
    hours = parse_hours(norm)
    difficulty = any(k in norm for k in ("nao consigo", "dificuldade", "retenc", "sem urinar", "sem fazer xixi"))
    can_urinate = parse_yes_no(norm)
    retention = difficulty or can_urinate is False
    if can_urinate is None and not difficulty and hours is None:
        return
    answer.urinary_retention = retention
    if retention and hours is not None:
        answer.urinary_retention_hours = hours


def _apply_bowel_movement(answer: QuestionnaireAnswer, text: str) -> None:
    answer.bowel_movement = parse_yes_no(text)


def _apply_bleeding(answer: QuestionnaireAnswer, text: str) -> None:
    answer.bleeding = parse_bleeding(text)


def _apply_fever(answer: QuestionnaireAnswer, text: str) -> None:
    temperature = parse_temperature(text)
    reported = parse_yes_no(text)
    if temperature is not None:
        answer.temperature = temperature
    if reported is not None:
        answer.fever = reported
    elif temperature is not None:
        answer.fever = temperature >= 38.0


def _apply_discharge(answer: QuestionnaireAnswer, text: str) -> None:
    answer.discharge = parse_discharge(text)


def _apply_wound_status(answer: QuestionnaireAnswer, text: str) -> None:
    for sign in find_wound_signs(text):
        if sign not in answer.wound_signs:
            answer.wound_signs.append(sign)


def _apply_medication(answer: QuestionnaireAnswer, text: str) -> None:
    answer.taking_medication = parse_yes_no(text)


def _apply_concerns(answer: QuestionnaireAnswer, text: str) -> None:
    norm = normalize(text)
    if parse_yes_no(norm) is False and len(_tokens(norm)) <= 3:
        return
    answer.concerns = text.strip()


QUESTION_PARSERS: dict[str, Callable[[QuestionnaireAnswer, str], None]] = {
    "pain_at_rest": _apply_pain_at_rest,
    "urination": _apply_urination,
    "bowel_movement": _apply_bowel_movement,
    "pain_during_evacuation": _apply_pain_during_evacuation,
    "bleeding": _apply_bleeding,
    "fever": _apply_fever,
    "discharge": _apply_discharge,
    "wound_status": _apply_wound_status,
    "medication": _apply_medication,
    "concerns": _apply_concerns,
}

# Question order matters: bowel_movement must be known before
# pain_during_evacuation decides whether "não evacuei" sets it.
_PARSE_ORDER = list(QUESTION_PARSERS)


def extract_answers(answers: dict[str, str]) -> QuestionnaireAnswer:
    """Parse a completed questionnaire (question id → raw reply)."""
    result = QuestionnaireAnswer()
    for question_id in _PARSE_ORDER:
        raw = answers.get(question_id)
        if raw is None:
            continue
        QUESTION_PARSERS[question_id](result, raw)

    unknown = set(answers) - set(QUESTION_PARSERS)
    if unknown:
        logger.debug("No parser for question ids %s", sorted(unknown))

    # Symptoms and wound signs can show up in any reply
    for raw in answers.values():
        _merge_keywords(result, raw)
    return result


def extract_free_text(text: str) -> QuestionnaireAnswer:
    """Keyword scan of a free-form message outside the questionnaire."""
    result = QuestionnaireAnswer()
    norm = normalize(text)

    pain = _PAIN_IN_TEXT_RE.search(norm)
    if pain:
        result.pain_at_rest = int(pain.group(1))

    if "febre" in norm or "temperatura" in norm:
        temperature = parse_temperature(norm)
        if temperature is not None:
            result.temperature = temperature
        result.fever = mentions(norm, "febre") or (temperature is not None and temperature >= 38.0)
    else:
        temperature = parse_temperature(norm, require_unit=True)
        if temperature is not None:
            result.temperature = temperature
            result.fever = temperature >= 38.0

    if "sangr" in norm:
        result.bleeding = parse_bleeding(norm)

    if "urin" in norm or "xixi" in norm:
        _apply_urination(result, norm)

    if "evacu" in norm or "coco" in norm:
        result.bowel_movement = not bool(re.search(r"\bnao\b", norm))

    if "secrec" in norm or "pus" in norm:
        result.discharge = parse_discharge(norm)

    result.concerns = text.strip()
    _merge_keywords(result, text)
    return result


def _merge_keywords(result: QuestionnaireAnswer, text: str) -> None:
    for symptom in find_symptoms(text):
        if symptom not in result.additional_symptoms:
            result.additional_symptoms.append(symptom)
    for sign in find_wound_signs(text):
        if sign not in result.wound_signs:
            result.wound_signs.append(sign)
