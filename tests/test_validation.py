from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from carepulse.errors import ValidationError
from carepulse.models import AppointmentType, Gender, Specialization
from carepulse.validation import (
    AppointmentIn,
    CancelAppointmentIn,
    DoctorIn,
    PatientIn,
    ScheduleAppointmentIn,
    parse_input,
)


class TestPatientIn:
    def test_valid_patient(self, patient_payload):
        p = PatientIn(**patient_payload())
        assert p.gender == Gender.FEMALE
        assert p.email == "jane@mail.com"

    @pytest.mark.parametrize(
        "field, message",
        [
            ("treatment_consent", "consent to treatment"),
            ("disclosure_consent", "consent to disclosure"),
            ("privacy_consent", "consent to privacy"),
        ],
    )
    def test_every_consent_is_required(self, patient_payload, field, message):
        with pytest.raises(PydanticValidationError) as exc_info:
            PatientIn(**patient_payload(**{field: False}))
        assert message in str(exc_info.value)

    @pytest.mark.parametrize("phone", ["4155550100", "+123", "+1415555abcd", "+1234567890123456"])
    def test_phone_must_be_international(self, patient_payload, phone):
        with pytest.raises(PydanticValidationError):
            PatientIn(**patient_payload(phone=phone))

    def test_emergency_number_is_checked_too(self, patient_payload):
        with pytest.raises(PydanticValidationError):
            PatientIn(**patient_payload(emergency_contact_number="555"))

    def test_name_length(self, patient_payload):
        with pytest.raises(PydanticValidationError):
            PatientIn(**patient_payload(name="J"))

    def test_invalid_email(self, patient_payload):
        with pytest.raises(PydanticValidationError):
            PatientIn(**patient_payload(email="not-an-email"))


class TestDoctorIn:
    def test_valid_doctor(self, doctor_payload):
        d = DoctorIn(**doctor_payload())
        assert d.specialization == Specialization.GENERAL_PRACTITIONER
        assert d.available_timings_online == ["Monday 09:00"]

    def test_timings_are_stripped(self, doctor_payload):
        d = DoctorIn(**doctor_payload(available_timings_offline=["  Friday 17:45 "]))
        assert d.available_timings_offline == ["Friday 17:45"]

    @pytest.mark.parametrize("timing", ["Funday 09:00", "Monday 24:00", "Monday 9:00", "monday 09:00"])
    def test_bad_timings_rejected(self, doctor_payload, timing):
        with pytest.raises(PydanticValidationError):
            DoctorIn(**doctor_payload(available_timings_online=[timing]))

    def test_at_least_one_timing(self, doctor_payload):
        with pytest.raises(PydanticValidationError):
            DoctorIn(**doctor_payload(available_timings_offline=[]))

    def test_unknown_identification_type(self, doctor_payload):
        with pytest.raises(PydanticValidationError):
            DoctorIn(**doctor_payload(identification_type="Library card"))

    def test_known_identification_type(self, doctor_payload):
        d = DoctorIn(**doctor_payload(identification_type="Passport", identification_number="P1234567"))
        assert d.identification_type == "Passport"

    def test_unknown_specialization(self, doctor_payload):
        with pytest.raises(PydanticValidationError):
            DoctorIn(**doctor_payload(specialization="Astrologer"))


class TestAppointmentInput:
    def test_aware_schedule_becomes_naive_utc(self):
        a = AppointmentIn(
            user_id="u",
            patient_id="p",
            doctor_id="d",
            schedule="2030-01-01T12:00:00+02:00",
            reason="Checkup",
        )
        assert a.schedule == datetime(2030, 1, 1, 10, 0)
        assert a.schedule.tzinfo is None
        assert a.appointment_type == AppointmentType.OFFLINE

    def test_naive_schedule_kept(self):
        s = ScheduleAppointmentIn(schedule="2030-01-01T10:00:00")
        assert s.schedule == datetime(2030, 1, 1, 10, 0)

    def test_reason_required(self):
        with pytest.raises(PydanticValidationError):
            AppointmentIn(user_id="u", patient_id="p", doctor_id="d", schedule=datetime(2030, 1, 1), reason="x")


class TestParseInput:
    def test_returns_model(self):
        c = parse_input(CancelAppointmentIn, {"cancellation_reason": "Feeling better"})
        assert c.cancellation_reason == "Feeling better"

    def test_raises_service_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_input(CancelAppointmentIn, {"cancellation_reason": ""})
        assert str(exc_info.value).startswith("cancellation_reason:")
