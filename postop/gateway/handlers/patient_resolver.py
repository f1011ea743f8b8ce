"""
Patient Resolution — maps a raw WhatsApp phone identifier to a patient.

Phones arrive in whatever shape the provider and the registration form
produced: "+55 (83) 99866-3089", "5583998663089", "83998663089", with or
without the mobile ninth digit.  Matching works on digit-only strings:

  1. Strip every non-digit character
  2. Build candidate suffixes: last 11, last 9, last 8 digits
  3. For each candidate, in that order, scan active patients in the
     tenant scope and pick the first whose digit-only phone contains it

Fewer than 8 digits never matches.  No match is a named outcome, not an
error; the caller answers with the unregistered-sender reply.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from postop.gateway.records import Patient
from postop.gateway.store import RecordStore

logger = logging.getLogger("gateway.patient_resolver")

SUFFIX_LENGTHS = (11, 9, 8)
MIN_DIGITS = min(SUFFIX_LENGTHS)

_NON_DIGIT = re.compile(r"\D")


@dataclass
class ResolvedPatient:
    """Result of a successful resolution."""
    patient: Patient
    matched_suffix: str
    ambiguous: bool = False

    @property
    def patient_id(self) -> str:
        return self.patient.id

    @property
    def physician_id(self) -> str:
        return self.patient.physician_id


@dataclass(frozen=True)
class PatientNotFound:
    """Named outcome: the sender is not a registered, active patient."""
    phone: str


def digits_only(phone: str) -> str:
    return _NON_DIGIT.sub("", phone or "")


def candidate_suffixes(phone: str) -> list[str]:
    """Suffixes to try, most specific first.  Empty below 8 digits."""
    digits = digits_only(phone)
    if len(digits) < MIN_DIGITS:
        return []
    suffixes: list[str] = []
    for length in SUFFIX_LENGTHS:
        suffix = digits[-length:]
        if suffix not in suffixes:
            suffixes.append(suffix)
    return suffixes


def match_patient(phone: str, patients: list[Patient]) -> ResolvedPatient | None:
    """Pure matching step, separated from the store lookup for testing."""
    suffixes = candidate_suffixes(phone)
    for suffix in suffixes:
        matches = [p for p in patients if suffix in digits_only(p.phone)]
        if not matches:
            continue
        if len(matches) > 1:
            logger.warning(
                "Phone suffix %s matches %d patients (%s) — using %s",
                suffix, len(matches), [p.id for p in matches], matches[0].id,
            )
        return ResolvedPatient(
            patient=matches[0],
            matched_suffix=suffix,
            ambiguous=len(matches) > 1,
        )
    return None


class PatientResolver:
    """
    Resolves a sender phone against active patients.

    ``physician_id`` narrows the scan to one tenant.  The WhatsApp webhook
    is shared by every physician on the business number, so inbound
    resolution runs unscoped and the matched patient fixes the tenant for
    the rest of the pipeline.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def resolve(
        self, phone: str, physician_id: str | None = None
    ) -> ResolvedPatient | PatientNotFound:
        if len(digits_only(phone)) < MIN_DIGITS:
            logger.info("Phone %r too short to resolve", phone)
            return PatientNotFound(phone=phone)

        patients = self._store.list_active_patients(physician_id)
        resolved = match_patient(phone, patients)
        if resolved is None:
            logger.info("No active patient matches phone ending %s", digits_only(phone)[-4:])
            return PatientNotFound(phone=phone)

        logger.debug(
            "Resolved phone ending %s to patient %s (suffix %s)",
            digits_only(phone)[-4:], resolved.patient_id, resolved.matched_suffix,
        )
        return resolved
