"""
Shared pytest fixtures.

The environment is pinned before any carepulse import: config is read once
at import time, so the database, passkey and URLs below are what every
module sees for the whole run.
"""

import os
import tempfile
from datetime import date
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

_TMP = tempfile.mkdtemp(prefix="carepulse-tests-")

os.environ["CAREPULSE_DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.sqlite')}"
os.environ["ADMIN_PASSKEY"] = "123456"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["APP_URL"] = "http://app.test"
os.environ["PUBLIC_BASE_URL"] = "http://api.test"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["SMTP_HOST"] = ""
os.environ["SMTP_USER"] = ""

from carepulse import ai_service, config  # noqa: E402
from carepulse.api_main import app  # noqa: E402
from carepulse.auth_service import sign_up  # noqa: E402
from carepulse.db import Base, engine  # noqa: E402
from carepulse.services import register_doctor, register_patient, verify_doctor  # noqa: E402
from carepulse.validation import DoctorIn, PatientIn  # noqa: E402

PASSWORD = "secret123"


# ============================================================================
# DATABASE / STORAGE
# ============================================================================


@pytest.fixture(autouse=True)
def clean_state(tmp_path, monkeypatch):
    """Fresh tables and upload dir for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(config, "UPLOAD_DIR", tmp_path / "uploads")
    ai_service.get_client.cache_clear()
    yield
    ai_service.get_client.cache_clear()


# ============================================================================
# TEST DATA
# ============================================================================


def patient_data(**overrides: Any) -> dict[str, Any]:
    data = {
        "name": "Jane Doe",
        "email": "jane@mail.com",
        "phone": "+14155550100",
        "birth_date": date(1990, 5, 17),
        "gender": "Female",
        "address": "12 Main Street, Springfield",
        "occupation": "Engineer",
        "emergency_contact_name": "John Doe",
        "emergency_contact_number": "+14155550101",
        "insurance_provider": "HealthCo",
        "insurance_policy_number": "HC-12345",
        "allergies": "Penicillin",
        "treatment_consent": True,
        "disclosure_consent": True,
        "privacy_consent": True,
    }
    data.update(overrides)
    return data


def doctor_data(**overrides: Any) -> dict[str, Any]:
    data = {
        "name": "Gregory House",
        "email": "house@mail.com",
        "phone": "+14155550200",
        "specialization": "General Practitioner",
        "license_number": "LIC-0001",
        "years_of_experience": "12",
        "hospital_affiliation": "Princeton Plainsboro",
        "consultation_fee": "150",
        "available_timings_online": ["Monday 09:00"],
        "available_timings_offline": ["Tuesday 14:30"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def patient_payload() -> Callable[..., dict[str, Any]]:
    return patient_data


@pytest.fixture
def doctor_payload() -> Callable[..., dict[str, Any]]:
    return doctor_data


@pytest.fixture
def make_patient() -> Callable[..., tuple[dict, dict]]:
    """Account with a password plus a registered patient profile."""

    def _make(**overrides: Any) -> tuple[dict, dict]:
        data = patient_data(**overrides)
        user = sign_up(data["name"], data["email"], PASSWORD, phone=data["phone"])
        patient = register_patient(PatientIn(**data))
        return user, patient

    return _make


@pytest.fixture
def make_doctor() -> Callable[..., dict]:
    def _make(verified: bool = True, **overrides: Any) -> dict:
        doctor = register_doctor(DoctorIn(**doctor_data(**overrides)))
        if verified:
            verify_doctor(doctor["id"])
            doctor["is_verified"] = True
        return doctor

    return _make


# ============================================================================
# API CLIENT
# ============================================================================


@pytest.fixture
def client() -> TestClient:
    # no context manager: the startup seed stays out of the tests
    return TestClient(app)


@pytest.fixture
def login(client) -> Callable[[str, str], dict[str, str]]:
    def _login(email: str, password: str = PASSWORD) -> dict[str, str]:
        r = client.post("/api/auth/login", data={"username": email, "password": password})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['access_token']}"}

    return _login


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Passkey": "123456"}
