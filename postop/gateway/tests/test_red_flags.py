"""
Tests for the red-flag rule engine.

Tests cover:
  - Every rule firing and its flag class
  - Day- and surgery-dependent thresholds
  - Fixed flag-class → level table
  - Flag ordering and determinism
"""

import pytest

from postop.gateway.records import (
    BleedingSeverity,
    DischargeKind,
    QuestionnaireAnswer,
    RiskLevel,
    SurgeryType,
)
from postop.gateway.rules.red_flags import FlagClass, evaluate, level_for

HEMO = SurgeryType.HEMORROIDECTOMIA


def _tags(surgery, day, **answers) -> list[str]:
    return evaluate(surgery, day, QuestionnaireAnswer(**answers)).tags


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Individual rules
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRules:

    def test_no_answers_no_flags(self):
        result = evaluate(HEMO, 7, QuestionnaireAnswer())
        assert result.level == RiskLevel.LOW
        assert result.flags == []

    def test_active_bleeding_is_critical(self):
        result = evaluate(HEMO, 1, QuestionnaireAnswer(bleeding=BleedingSeverity.SEVERE))
        assert result.tags == ["active_bleeding"]
        assert result.flag_classes["active_bleeding"] == FlagClass.CRITICAL
        assert result.level == RiskLevel.CRITICAL

    def test_respiratory_distress_is_critical(self):
        result = evaluate(HEMO, 2, QuestionnaireAnswer(additional_symptoms=["respiratory_distress"]))
        assert result.level == RiskLevel.CRITICAL

    def test_altered_consciousness_is_critical(self):
        result = evaluate(HEMO, 2, QuestionnaireAnswer(additional_symptoms=["altered_consciousness"]))
        assert result.tags == ["altered_consciousness"]

    @pytest.mark.parametrize("temperature,fires", [(37.9, False), (38.0, True), (39.5, True)])
    def test_fever_threshold(self, temperature, fires):
        assert ("fever" in _tags(HEMO, 2, temperature=temperature)) is fires

    def test_reported_fever_without_temperature(self):
        assert _tags(HEMO, 2, fever=True) == ["fever"]

    def test_measured_temperature_overrides_report(self):
        assert _tags(HEMO, 2, fever=True, temperature=37.0) == []

    @pytest.mark.parametrize("pain,fires", [(7, False), (8, True), (10, True)])
    def test_severe_pain_threshold(self, pain, fires):
        assert ("severe_pain" in _tags(HEMO, 2, pain_at_rest=pain)) is fires

    def test_severe_pain_uses_evacuation_pain(self):
        assert _tags(HEMO, 3, pain_at_rest=2, pain_during_evacuation=9) == ["severe_pain"]

    def test_urinary_retention_needs_six_hours(self):
        assert _tags(HEMO, 1, urinary_retention=True, urinary_retention_hours=5) == []
        assert _tags(HEMO, 1, urinary_retention=True, urinary_retention_hours=6) == ["urinary_retention"]

    def test_urinary_retention_without_hours(self):
        assert _tags(HEMO, 1, urinary_retention=True) == []

    def test_persistent_bleeding_after_day_three(self):
        assert _tags(HEMO, 3, bleeding=BleedingSeverity.MODERATE) == []
        assert _tags(HEMO, 5, bleeding=BleedingSeverity.MODERATE) == ["persistent_bleeding"]

    def test_persistent_bleeding_any_day_for_fissure(self):
        assert _tags(SurgeryType.FISSURA, 1, bleeding=BleedingSeverity.MODERATE) == ["persistent_bleeding"]

    def test_light_bleeding_no_flag(self):
        assert _tags(HEMO, 10, bleeding=BleedingSeverity.LIGHT) == []

    def test_purulent_discharge_only_for_wound_surgeries(self):
        assert _tags(SurgeryType.FISTULA, 5, discharge=DischargeKind.PURULENT) == ["purulent_discharge"]
        assert _tags(SurgeryType.PILONIDAL, 5, discharge=DischargeKind.ABUNDANT) == ["purulent_discharge"]
        assert _tags(HEMO, 5, discharge=DischargeKind.PURULENT) == []

    def test_serous_discharge_no_flag(self):
        assert _tags(SurgeryType.FISTULA, 5, discharge=DischargeKind.SEROUS) == []

    def test_wound_infection(self):
        assert _tags(SurgeryType.PILONIDAL, 5, wound_signs=["vermelhidão"]) == ["wound_infection"]
        assert _tags(HEMO, 5, wound_signs=["vermelhidão"]) == []

    def test_bowel_retention_day_thresholds(self):
        assert _tags(HEMO, 2, bowel_movement=False) == []
        assert _tags(HEMO, 3, bowel_movement=False) == ["bowel_retention"]
        assert _tags(SurgeryType.FISSURA, 3, bowel_movement=False) == []
        assert _tags(SurgeryType.FISSURA, 4, bowel_movement=False) == ["bowel_retention"]
        assert _tags(SurgeryType.FISTULA, 10, bowel_movement=False) == []

    def test_unknown_bowel_movement_no_flag(self):
        assert _tags(HEMO, 5) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Level mapping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLevels:

    def test_level_table(self):
        assert level_for([]) == RiskLevel.LOW
        assert level_for([FlagClass.MEDIUM]) == RiskLevel.MEDIUM
        assert level_for([FlagClass.HIGH]) == RiskLevel.HIGH
        assert level_for([FlagClass.HIGH, FlagClass.HIGH]) == RiskLevel.HIGH
        assert level_for([FlagClass.HIGH, FlagClass.CRITICAL]) == RiskLevel.CRITICAL

    def test_medium_only(self):
        result = evaluate(HEMO, 5, QuestionnaireAnswer(bowel_movement=False))
        assert result.level == RiskLevel.MEDIUM

    def test_critical_dominates(self):
        result = evaluate(HEMO, 7, QuestionnaireAnswer(
            pain_at_rest=9, bleeding=BleedingSeverity.SEVERE,
        ))
        assert set(result.tags) == {"active_bleeding", "severe_pain"}
        assert result.level == RiskLevel.CRITICAL

    def test_flags_sorted_by_class_then_tag(self):
        result = evaluate(HEMO, 5, QuestionnaireAnswer(
            pain_at_rest=9, temperature=39.0, bleeding=BleedingSeverity.SEVERE,
            bowel_movement=False,
        ))
        assert result.tags == ["active_bleeding", "fever", "severe_pain", "bowel_retention"]

    def test_deterministic(self):
        answers = QuestionnaireAnswer(pain_at_rest=8, temperature=38.4)
        first = evaluate(HEMO, 3, answers)
        second = evaluate(HEMO, 3, answers.model_copy(deep=True))
        assert first.level == second.level
        assert [f.model_dump() for f in first.flags] == [f.model_dump() for f in second.flags]
