"""
Risk Fusion — one final level from rule and classifier output.

final level = max(rule level, classifier level) under
low < medium < high < critical.  A missing classifier level means the
classifier was unavailable and contributes nothing.  Flags are unioned by
tag; when both sides report the same tag the rule engine's flag is kept.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Optional

from postop.gateway.records import FlagSource, RedFlag, RiskLevel

_TAG_CLEAN = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class FusionResult:
    final_level: RiskLevel
    flags: list[RedFlag] = field(default_factory=list)


def normalize_tag(raw: str) -> str:
    """Classifier flags arrive as free strings; reduce them to snake_case tags."""
    decomposed = unicodedata.normalize("NFKD", raw or "")
    ascii_only = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _TAG_CLEAN.sub("_", ascii_only.lower()).strip("_")


def classifier_flags(raw_flags: Iterable[str]) -> list[RedFlag]:
    flags: list[RedFlag] = []
    for raw in raw_flags:
        tag = normalize_tag(raw)
        if tag:
            flags.append(RedFlag(tag=tag, message=raw.strip(), source=FlagSource.CLASSIFIER))
    return flags


def fuse(
    rule_level: RiskLevel,
    ai_level: Optional[RiskLevel],
    rule_flags: Iterable[RedFlag],
    additional_flags: Iterable[RedFlag] = (),
) -> FusionResult:
    final_level = RiskLevel.highest(rule_level, ai_level)

    merged: dict[str, RedFlag] = {}
    for flag in rule_flags:
        merged.setdefault(flag.tag, flag)
    for flag in additional_flags:
        merged.setdefault(flag.tag, flag)

    return FusionResult(final_level=final_level, flags=list(merged.values()))
