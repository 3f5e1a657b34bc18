from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC, the convention of every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class Gender(enum.Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class Specialization(enum.Enum):
    GENERAL_PRACTITIONER = "General Practitioner"
    CARDIOLOGIST = "Cardiologist"
    DERMATOLOGIST = "Dermatologist"
    NEUROLOGIST = "Neurologist"
    PEDIATRICIAN = "Pediatrician"
    ORTHOPEDIC_SURGEON = "Orthopedic Surgeon"
    PSYCHIATRIST = "Psychiatrist"
    OTHER = "Other"


class Status(enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class AppointmentType(enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConsultationType(enum.Enum):
    TEXT = "text"
    VOICE = "voice"


class ConsultationStatus(enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, values_callable=_values), default=Role.PATIENT, nullable=False
    )

    reset_token: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reset_token_expiry: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    patient: Mapped["Patient | None"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False, passive_deletes=True
    )
    doctor: Mapped["Doctor | None"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False, passive_deletes=True
    )
    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    prescriptions: Mapped[list["Prescription"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    consultations: Mapped[list["AIConsultation"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"User({self.email}, {self.role.value})"


class Patient(TimestampMixin, Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)

    birth_date: Mapped[date] = mapped_column(Date, nullable=False)
    gender: Mapped[Gender] = mapped_column(Enum(Gender, values_callable=_values), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    occupation: Mapped[str] = mapped_column(String(500), nullable=False)
    emergency_contact_name: Mapped[str] = mapped_column(String(50), nullable=False)
    emergency_contact_number: Mapped[str] = mapped_column(String(30), nullable=False)
    insurance_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    insurance_policy_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_medication: Mapped[str | None] = mapped_column(Text, nullable=True)
    family_medical_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    past_medical_history: Mapped[str | None] = mapped_column(Text, nullable=True)

    identification_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    identification_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    identification_document_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    identification_document_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    privacy_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="patient")
    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="patient", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"Patient({self.user_id})"


class Doctor(TimestampMixin, Base):
    __tablename__ = "doctors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)

    name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    specialization: Mapped[Specialization] = mapped_column(
        Enum(Specialization, values_callable=_values), nullable=False
    )
    license_number: Mapped[str] = mapped_column(String(50), nullable=False)
    years_of_experience: Mapped[str] = mapped_column(String(20), nullable=False, default="0")
    hospital_affiliation: Mapped[str] = mapped_column(String(200), nullable=False)

    identification_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    identification_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    identification_document_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    identification_document_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    consultation_fee: Mapped[str] = mapped_column(String(20), nullable=False, default="0")
    # "<Weekday> HH:MM" entries
    available_timings_online: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    available_timings_offline: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="doctor")
    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="doctor", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"Doctor({self.name}, {self.specialization.value})"


class Appointment(TimestampMixin, Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False, index=True)
    doctor_name: Mapped[str] = mapped_column(String(80), nullable=False)

    schedule: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[Status] = mapped_column(
        Enum(Status, values_callable=_values), default=Status.PENDING, nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    appointment_type: Mapped[AppointmentType] = mapped_column(
        Enum(AppointmentType, values_callable=_values), default=AppointmentType.OFFLINE, nullable=False
    )
    meeting: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    has_visited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="appointments")
    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    doctor: Mapped["Doctor"] = relationship(back_populates="appointments")
    prescriptions: Mapped[list["Prescription"]] = relationship(back_populates="appointment")


class Prescription(TimestampMixin, Base):
    __tablename__ = "prescriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # prescriptions survive the appointment they were attached to
    appointment_id: Mapped[str | None] = mapped_column(
        ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )
    prescription_url: Mapped[str] = mapped_column(String(500), nullable=False)
    file_id: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="prescriptions")
    appointment: Mapped["Appointment | None"] = relationship(back_populates="prescriptions")


class AIConsultation(TimestampMixin, Base):
    __tablename__ = "ai_consultations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    prescription_urls: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    conversation_history: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    consultation_type: Mapped[ConsultationType] = mapped_column(
        Enum(ConsultationType, values_callable=_values), default=ConsultationType.TEXT, nullable=False
    )
    status: Mapped[ConsultationStatus] = mapped_column(
        Enum(ConsultationStatus, values_callable=_values), default=ConsultationStatus.IN_PROGRESS, nullable=False
    )
    extracted_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    conversation_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship(back_populates="consultations")
