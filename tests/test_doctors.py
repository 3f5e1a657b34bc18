import pytest

from carepulse.auth_service import authenticate
from carepulse.errors import ConflictError, NotFoundError
from carepulse.models import Specialization
from carepulse.seed import seed_base
from carepulse.services import (
    delete_doctor,
    get_doctor,
    get_doctor_by_id,
    list_doctors,
    list_verified_doctors,
    register_doctor,
    update_doctor,
    verify_doctor,
)
from carepulse.validation import DoctorIn, DoctorUpdateIn


class TestRegisterDoctor:
    def test_new_doctor_is_unverified(self, doctor_payload):
        d = register_doctor(DoctorIn(**doctor_payload()))
        assert d["is_verified"] is False
        assert d["specialization"] == "General Practitioner"
        assert list_verified_doctors()["total_count"] == 0
        assert get_doctor(d["user_id"])["id"] == d["id"]

    def test_phone_is_initial_password(self, doctor_payload):
        register_doctor(DoctorIn(**doctor_payload()))
        u = authenticate("house@mail.com", "+14155550200")
        assert u is not None
        assert u["role"] == "doctor"

    def test_duplicate_registration(self, doctor_payload):
        register_doctor(DoctorIn(**doctor_payload()))
        with pytest.raises(ConflictError):
            register_doctor(DoctorIn(**doctor_payload()))

    def test_patient_account_cannot_become_doctor(self, doctor_payload, make_patient):
        make_patient()
        with pytest.raises(ConflictError, match="not a doctor"):
            register_doctor(DoctorIn(**doctor_payload(email="jane@mail.com")))
        assert authenticate("jane@mail.com", "secret123")["role"] == "patient"


class TestVerifiedDoctors:
    def test_verify_and_filter(self, make_doctor):
        gp = make_doctor()
        make_doctor(name="Lisa Cuddy", email="cuddy@mail.com", specialization="Cardiologist")
        make_doctor(verified=False, name="James Wilson", email="wilson@mail.com", specialization="Cardiologist")

        assert list_verified_doctors()["total_count"] == 2
        cardio = list_verified_doctors(Specialization.CARDIOLOGIST)
        assert [d["name"] for d in cardio["documents"]] == ["Lisa Cuddy"]

        counts = list_doctors()
        assert counts["total_count"] == 3
        assert counts["verified_count"] == 2
        assert counts["unverified_count"] == 1
        assert get_doctor_by_id(gp["id"])["is_verified"] is True

    def test_verify_unknown(self):
        assert verify_doctor("missing") is False

    def test_update(self, make_doctor):
        d = make_doctor()
        updated = update_doctor(d["id"], DoctorUpdateIn(consultation_fee="200", available_timings_online=["Friday 08:15"]))
        assert updated["consultation_fee"] == "200"
        assert updated["available_timings_online"] == ["Friday 08:15"]
        assert updated["hospital_affiliation"] == "Princeton Plainsboro"

    def test_delete(self, make_doctor):
        d = make_doctor()
        assert delete_doctor(d["id"]) is True
        assert get_doctor_by_id(d["id"]) is None
        with pytest.raises(NotFoundError):
            delete_doctor(d["id"])


class TestSeed:
    def test_seed_is_idempotent(self):
        seed_base()
        seed_base()
        res = list_doctors()
        assert res["total_count"] == 3
        assert res["verified_count"] == 3
        assert authenticate("admin@carepulse.com", "123456")["role"] == "admin"
