from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import AppointmentType, Gender, Specialization

ModelT = TypeVar("ModelT", bound=BaseModel)

PHONE_RE = re.compile(r"^\+\d{10,15}$")
WEEKDAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
TIMING_RE = re.compile(r"^(%s) ([01]\d|2[0-3]):[0-5]\d$" % "|".join(WEEKDAYS))
IDENTIFICATION_TYPES = ("Passport", "Driver's License", "National ID")


def _check_phone(value: str) -> str:
    value = value.strip()
    if not PHONE_RE.match(value):
        raise ValueError("Invalid phone number")
    return value


def _naive_utc(value: datetime | None) -> datetime | None:
    """Schedules are stored as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _check_timings(values: list[str]) -> list[str]:
    cleaned = [t.strip() for t in values]
    for t in cleaned:
        if not TIMING_RE.match(t):
            raise ValueError(f"Invalid timing '{t}', expected '<Weekday> HH:MM'")
    return cleaned


class UserIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str

    @field_validator("phone")
    @classmethod
    def phone_format(cls, v: str) -> str:
        return _check_phone(v)


class PatientIn(UserIn):
    birth_date: date
    gender: Gender
    address: str = Field(..., min_length=5, max_length=500)
    occupation: str = Field(..., min_length=2, max_length=500)
    emergency_contact_name: str = Field(..., min_length=2, max_length=50)
    emergency_contact_number: str
    insurance_provider: str = Field(..., min_length=2, max_length=50)
    insurance_policy_number: str = Field(..., min_length=2, max_length=50)
    allergies: str | None = None
    current_medication: str | None = None
    family_medical_history: str | None = None
    past_medical_history: str | None = None
    identification_type: str | None = None
    identification_number: str | None = None
    treatment_consent: bool = False
    disclosure_consent: bool = False
    privacy_consent: bool = False

    @field_validator("emergency_contact_number")
    @classmethod
    def emergency_phone_format(cls, v: str) -> str:
        return _check_phone(v)

    @model_validator(mode="after")
    def consents_given(self) -> "PatientIn":
        if not self.treatment_consent:
            raise ValueError("You must consent to treatment in order to proceed")
        if not self.disclosure_consent:
            raise ValueError("You must consent to disclosure in order to proceed")
        if not self.privacy_consent:
            raise ValueError("You must consent to privacy in order to proceed")
        return self


class PatientUpdateIn(BaseModel):
    address: str | None = Field(None, min_length=5, max_length=500)
    occupation: str | None = Field(None, min_length=2, max_length=500)
    emergency_contact_name: str | None = Field(None, min_length=2, max_length=50)
    emergency_contact_number: str | None = None
    insurance_provider: str | None = Field(None, min_length=2, max_length=50)
    insurance_policy_number: str | None = Field(None, min_length=2, max_length=50)
    allergies: str | None = None
    current_medication: str | None = None
    family_medical_history: str | None = None
    past_medical_history: str | None = None

    @field_validator("emergency_contact_number")
    @classmethod
    def emergency_phone_format(cls, v: str | None) -> str | None:
        return _check_phone(v) if v is not None else v


class DoctorIn(BaseModel):
    name: str = Field(..., min_length=3)
    email: EmailStr
    phone: str = Field(..., min_length=10)
    specialization: Specialization
    license_number: str = Field(..., min_length=5)
    years_of_experience: str = "0"
    hospital_affiliation: str = Field(..., min_length=3)
    identification_type: str | None = None
    identification_number: str | None = Field(None, min_length=5)
    consultation_fee: str = "0"
    available_timings_online: list[str] = Field(..., min_length=1)
    available_timings_offline: list[str] = Field(..., min_length=1)

    @field_validator("identification_type")
    @classmethod
    def known_identification(cls, v: str | None) -> str | None:
        if v is not None and v not in IDENTIFICATION_TYPES:
            raise ValueError(f"Identification type must be one of: {', '.join(IDENTIFICATION_TYPES)}")
        return v

    @field_validator("available_timings_online", "available_timings_offline")
    @classmethod
    def timings_format(cls, v: list[str]) -> list[str]:
        return _check_timings(v)


class DoctorUpdateIn(BaseModel):
    phone: str | None = Field(None, min_length=10)
    specialization: Specialization | None = None
    years_of_experience: str | None = None
    hospital_affiliation: str | None = Field(None, min_length=3)
    consultation_fee: str | None = None
    available_timings_online: list[str] | None = None
    available_timings_offline: list[str] | None = None

    @field_validator("available_timings_online", "available_timings_offline")
    @classmethod
    def timings_format(cls, v: list[str] | None) -> list[str] | None:
        return _check_timings(v) if v is not None else v


class AppointmentIn(BaseModel):
    user_id: str
    patient_id: str
    doctor_id: str = Field(..., min_length=1)
    doctor_name: str | None = None
    schedule: datetime
    reason: str = Field(..., min_length=2, max_length=500)
    note: str | None = None
    appointment_type: AppointmentType = AppointmentType.OFFLINE

    @field_validator("schedule")
    @classmethod
    def schedule_utc(cls, v: datetime) -> datetime:
        return _naive_utc(v)


class ScheduleAppointmentIn(BaseModel):
    schedule: datetime | None = None
    reason: str | None = None
    note: str | None = None
    meeting: str | None = None

    @field_validator("schedule")
    @classmethod
    def schedule_utc(cls, v: datetime | None) -> datetime | None:
        return _naive_utc(v)


class CancelAppointmentIn(BaseModel):
    cancellation_reason: str = Field(..., min_length=2, max_length=500)


def parse_input(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """Validate service-level input, reporting the first problem as a ValidationError."""
    try:
        return model(**data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid input")
        raise ValidationError(f"{where}: {message}" if where else message) from e
