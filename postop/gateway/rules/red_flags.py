"""
Red-Flag Rule Engine — deterministic post-operative risk rules.

Pure function of (surgery type, day number, typed answers).  No I/O, no
clock, no randomness: identical inputs always give identical output.
The classifier can only add to what these rules find, never remove.

Level mapping (fixed table):
  1. any critical-class flag          → critical
  2. two or more high-class flags     → high
  3. exactly one high-class flag      → high
  4. any other flag present           → medium
  5. nothing                          → low
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from postop.gateway.records import (
    BleedingSeverity,
    DischargeKind,
    FlagSource,
    QuestionnaireAnswer,
    RedFlag,
    RiskLevel,
    SurgeryType,
)

logger = logging.getLogger("gateway.rules.red_flags")


class FlagClass(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


FEVER_THRESHOLD_C = 38.0
SEVERE_PAIN_THRESHOLD = 8
URINARY_RETENTION_HOURS = 6
PERSISTENT_BLEEDING_AFTER_DAY = 3

# Day by which a first bowel movement is expected, per surgery type
BOWEL_RETENTION_DAY: dict[SurgeryType, int] = {
    SurgeryType.HEMORROIDECTOMIA: 3,
    SurgeryType.FISSURA: 4,
}

# Surgeries where wound discharge / infection signs are red flags
WOUND_SURGERIES = {SurgeryType.FISTULA, SurgeryType.PILONIDAL}


@dataclass(frozen=True)
class RuleContext:
    surgery_type: SurgeryType
    day_number: int
    answers: QuestionnaireAnswer


@dataclass(frozen=True)
class Rule:
    tag: str
    flag_class: FlagClass
    # Returns the flag message when the rule fires, else None
    check: Callable[[RuleContext], Optional[str]]


@dataclass
class RuleResult:
    """Outcome of rule evaluation."""

    level: RiskLevel
    flags: list[RedFlag] = field(default_factory=list)
    flag_classes: dict[str, FlagClass] = field(default_factory=dict)

    @property
    def tags(self) -> list[str]:
        return [f.tag for f in self.flags]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Rule checks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _active_bleeding(ctx: RuleContext) -> str | None:
    if ctx.answers.bleeding == BleedingSeverity.SEVERE:
        return "Sangramento intenso/ativo relatado"
    return None


def _respiratory_distress(ctx: RuleContext) -> str | None:
    if "respiratory_distress" in ctx.answers.additional_symptoms:
        return "Falta de ar / dificuldade respiratória relatada"
    return None


def _altered_consciousness(ctx: RuleContext) -> str | None:
    if "altered_consciousness" in ctx.answers.additional_symptoms:
        return "Desmaio ou confusão mental relatados"
    return None


def _fever(ctx: RuleContext) -> str | None:
    temp = ctx.answers.temperature
    if temp is not None:
        if temp >= FEVER_THRESHOLD_C:
            return f"Febre: {temp:.1f}°C"
        return None
    if ctx.answers.fever:
        return "Febre relatada (temperatura não informada)"
    return None


def _severe_pain(ctx: RuleContext) -> str | None:
    pain = ctx.answers.max_pain()
    if pain is not None and pain >= SEVERE_PAIN_THRESHOLD:
        return f"Dor intensa: {pain}/10"
    return None


def _urinary_retention(ctx: RuleContext) -> str | None:
    hours = ctx.answers.urinary_retention_hours
    if ctx.answers.urinary_retention and hours is not None and hours >= URINARY_RETENTION_HOURS:
        return f"Retenção urinária há {hours:g} horas"
    return None


def _persistent_bleeding(ctx: RuleContext) -> str | None:
    if ctx.answers.bleeding != BleedingSeverity.MODERATE:
        return None
    if ctx.surgery_type == SurgeryType.FISSURA or ctx.day_number > PERSISTENT_BLEEDING_AFTER_DAY:
        return f"Sangramento moderado persistente em D+{ctx.day_number}"
    return None


def _purulent_discharge(ctx: RuleContext) -> str | None:
    if ctx.surgery_type not in WOUND_SURGERIES:
        return None
    if ctx.answers.discharge == DischargeKind.PURULENT:
        return "Secreção purulenta na ferida"
    if ctx.answers.discharge == DischargeKind.ABUNDANT:
        return "Secreção abundante na ferida"
    return None


def _wound_infection(ctx: RuleContext) -> str | None:
    if ctx.surgery_type not in WOUND_SURGERIES or not ctx.answers.wound_signs:
        return None
    return "Sinais de infecção local: " + ", ".join(ctx.answers.wound_signs)


def _bowel_retention(ctx: RuleContext) -> str | None:
    threshold = BOWEL_RETENTION_DAY.get(ctx.surgery_type)
    if threshold is None or ctx.answers.bowel_movement is not False:
        return None
    if ctx.day_number >= threshold:
        return f"Sem evacuação até D+{ctx.day_number}"
    return None


RULES: list[Rule] = [
    # ── critical-class ──
    Rule("active_bleeding", FlagClass.CRITICAL, _active_bleeding),
    Rule("respiratory_distress", FlagClass.CRITICAL, _respiratory_distress),
    Rule("altered_consciousness", FlagClass.CRITICAL, _altered_consciousness),
    # ── high-class ──
    Rule("fever", FlagClass.HIGH, _fever),
    Rule("severe_pain", FlagClass.HIGH, _severe_pain),
    Rule("urinary_retention", FlagClass.HIGH, _urinary_retention),
    Rule("persistent_bleeding", FlagClass.HIGH, _persistent_bleeding),
    Rule("purulent_discharge", FlagClass.HIGH, _purulent_discharge),
    Rule("wound_infection", FlagClass.HIGH, _wound_infection),
    # ── medium-class ──
    Rule("bowel_retention", FlagClass.MEDIUM, _bowel_retention),
]

_CLASS_ORDER = {FlagClass.CRITICAL: 0, FlagClass.HIGH: 1, FlagClass.MEDIUM: 2}


def level_for(flag_classes: list[FlagClass]) -> RiskLevel:
    """Fixed flag-class → risk level table."""
    if FlagClass.CRITICAL in flag_classes:
        return RiskLevel.CRITICAL
    if FlagClass.HIGH in flag_classes:
        return RiskLevel.HIGH
    if flag_classes:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def evaluate(
    surgery_type: SurgeryType | str,
    day_number: int,
    answers: QuestionnaireAnswer,
) -> RuleResult:
    """Run every rule and map the fired flags to a rule level."""
    ctx = RuleContext(
        surgery_type=SurgeryType(surgery_type),
        day_number=day_number,
        answers=answers,
    )

    fired: list[tuple[Rule, str]] = []
    for rule in RULES:
        message = rule.check(ctx)
        if message is not None:
            fired.append((rule, message))

    fired.sort(key=lambda item: (_CLASS_ORDER[item[0].flag_class], item[0].tag))
    flags = [
        RedFlag(tag=rule.tag, message=message, source=FlagSource.RULES)
        for rule, message in fired
    ]
    classes = {rule.tag: rule.flag_class for rule, _ in fired}
    level = level_for([rule.flag_class for rule, _ in fired])

    if flags:
        logger.debug(
            "Rules fired for %s D+%d: %s → %s",
            ctx.surgery_type.value, day_number, [f.tag for f in flags], level.value,
        )
    return RuleResult(level=level, flags=flags, flag_classes=classes)
