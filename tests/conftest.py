"""
Shared fixtures for the post-op follow-up test suite.

Everything runs offline: the record store is in memory, outbound
WhatsApp messages are captured by RecordingMessenger and the Gemini
classifier is replaced by a scripted fake (or left out for rule-only).
"""

import pytest

from postop.gateway.alerts import AlertDispatcher
from postop.gateway.channels import ReplyDispatcher
from postop.gateway.conversation import ConversationManager
from postop.gateway.dispatchers.recording_dispatcher import RecordingMessenger
from postop.gateway.gateway import Gateway
from postop.gateway.handlers.patient_resolver import PatientResolver
from postop.gateway.records import (
    FollowUp,
    Patient,
    Physician,
    SurgeryType,
)
from postop.gateway.store import InMemoryRecordStore
from postop.settings import Settings

MARIA_PHONE = "5583998663089"
JOAO_PHONE = "5511987654321"
DOCTOR_PHONE = "5583900000001"
OTHER_DOCTOR_PHONE = "5511900000002"


def seed_records(store: InMemoryRecordStore) -> InMemoryRecordStore:
    """Two physicians (tenants), one patient each, one pending follow-up each."""
    store.add_physician(Physician(id="DR-1", name="Dra. Ana Lima", alert_phone=DOCTOR_PHONE))
    store.add_physician(Physician(id="DR-2", name="Dr. Paulo Reis", alert_phone=OTHER_DOCTOR_PHONE))
    store.add_patient(Patient(id="PT-1", name="Maria Souza", phone=MARIA_PHONE, physician_id="DR-1"))
    store.add_patient(Patient(id="PT-2", name="João Pereira", phone=JOAO_PHONE, physician_id="DR-2"))
    store.add_follow_up(FollowUp(
        id="FU-1-7", patient_id="PT-1",
        surgery_type=SurgeryType.HEMORROIDECTOMIA, day_number=7,
    ))
    store.add_follow_up(FollowUp(
        id="FU-2-3", patient_id="PT-2",
        surgery_type=SurgeryType.FISTULA, day_number=3,
    ))
    return store


# ─── Pipeline fixtures ───


@pytest.fixture
def store():
    return seed_records(InMemoryRecordStore())


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def make_gateway(store, messenger):
    """Build a Gateway over the seeded store; pass a classifier to enable it."""

    def _make(classifier=None, **alert_kwargs):
        alert_defaults = dict(max_attempts=2, backoff_seconds=0)
        alert_defaults.update(alert_kwargs)
        return Gateway(
            store=store,
            resolver=PatientResolver(store),
            conversation=ConversationManager(classifier=classifier),
            reply_dispatcher=ReplyDispatcher(messenger),
            alert_dispatcher=AlertDispatcher(store=store, messenger=messenger, **alert_defaults),
        )

    return _make


# ─── HTTP fixtures ───


@pytest.fixture
def api_settings():
    return Settings(
        verify_token="verify-me",
        app_secret="app-secret",
        rate_limit_max_requests=1000,
        rate_limit_window_seconds=60,
        alert_max_attempts=2,
        alert_backoff_seconds=0,
        alert_outbox_interval_seconds=3600,
    )


@pytest.fixture
def api_client(monkeypatch, api_settings):
    """TestClient over the real app, wired with the test settings."""
    from fastapi.testclient import TestClient

    from postop.app import app
    from postop.gateway import setup

    monkeypatch.setattr(setup, "load_settings", lambda: api_settings)
    with TestClient(app) as client:
        seed_records(setup.get_store())
        yield client
