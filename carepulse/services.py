from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, select
from sqlalchemy.orm import selectinload

from . import config, storage
from .auth_service import normalize_email, user_flat
from .db import Base, db_session, engine
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    Appointment,
    AppointmentType,
    Doctor,
    Patient,
    Prescription,
    Role,
    Specialization,
    Status,
    User,
    utcnow,
)
from .notifications import send_email, send_sms
from .security import hash_password
from .validation import (
    AppointmentIn,
    CancelAppointmentIn,
    DoctorIn,
    DoctorUpdateIn,
    PatientIn,
    PatientUpdateIn,
    ScheduleAppointmentIn,
    parse_input,
)

logger = logging.getLogger(__name__)

Upload = tuple[bytes, str]  # (content, filename)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Create the tables if missing."""
    Base.metadata.create_all(bind=engine)


# =========================
# Flat views
# =========================
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def patient_flat(p: Patient) -> dict[str, Any]:
    return {
        "id": p.id,
        "user_id": p.user_id,
        "name": p.user.name,
        "email": p.user.email,
        "phone": p.user.phone,
        "birth_date": p.birth_date.isoformat(),
        "gender": p.gender.value,
        "address": p.address,
        "occupation": p.occupation,
        "emergency_contact_name": p.emergency_contact_name,
        "emergency_contact_number": p.emergency_contact_number,
        "insurance_provider": p.insurance_provider,
        "insurance_policy_number": p.insurance_policy_number,
        "allergies": p.allergies,
        "current_medication": p.current_medication,
        "family_medical_history": p.family_medical_history,
        "past_medical_history": p.past_medical_history,
        "identification_type": p.identification_type,
        "identification_number": p.identification_number,
        "identification_document_url": p.identification_document_url,
        "privacy_consent": p.privacy_consent,
        "created_at": _iso(p.created_at),
    }


def doctor_flat(d: Doctor) -> dict[str, Any]:
    return {
        "id": d.id,
        "user_id": d.user_id,
        "name": d.name,
        "email": d.email,
        "phone": d.phone,
        "specialization": d.specialization.value,
        "license_number": d.license_number,
        "years_of_experience": d.years_of_experience,
        "hospital_affiliation": d.hospital_affiliation,
        "identification_type": d.identification_type,
        "identification_number": d.identification_number,
        "identification_document_url": d.identification_document_url,
        "consultation_fee": d.consultation_fee,
        "available_timings_online": list(d.available_timings_online or []),
        "available_timings_offline": list(d.available_timings_offline or []),
        "is_verified": d.is_verified,
        "created_at": _iso(d.created_at),
    }


def prescription_flat(p: Prescription) -> dict[str, Any]:
    return {
        "id": p.id,
        "user_id": p.user_id,
        "appointment_id": p.appointment_id,
        "prescription_url": p.prescription_url,
        "file_id": p.file_id,
        "uploaded_at": _iso(p.uploaded_at),
        "created_at": _iso(p.created_at),
    }


def appointment_flat(a: Appointment) -> dict[str, Any]:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "patient_id": a.patient_id,
        "patient_name": a.patient.user.name,
        "doctor_id": a.doctor_id,
        "doctor_name": a.doctor_name,
        "schedule": _iso(a.schedule),
        "status": a.status.value,
        "reason": a.reason,
        "note": a.note,
        "cancellation_reason": a.cancellation_reason,
        "appointment_type": a.appointment_type.value,
        "meeting": a.meeting,
        "has_visited": a.has_visited,
        "prescriptions": [prescription_flat(p) for p in a.prescriptions],
        "created_at": _iso(a.created_at),
    }


def _appointment_query():
    return select(Appointment).options(
        selectinload(Appointment.patient).selectinload(Patient.user),
        selectinload(Appointment.prescriptions),
    )


def _appointments_response(rows: Iterable[Appointment]) -> dict[str, Any]:
    documents = [appointment_flat(a) for a in rows]
    counts = {"scheduled_count": 0, "pending_count": 0, "cancelled_count": 0}
    for a in documents:
        counts[f"{a['status']}_count"] += 1
    return {"total_count": len(documents), **counts, "documents": documents}


def _store_identification(folder: str, document: Upload | None) -> tuple[str | None, str | None]:
    if not document:
        return None, None
    content, filename = document
    uploaded = storage.upload_file(content, folder, filename)
    return uploaded["public_id"], uploaded["url"]


# =========================
# Users / patients
# =========================
def create_user(name: str, email: str, phone: str | None = None) -> dict[str, Any]:
    """Returns the existing user when the email is already registered."""
    email = normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if u:
            return user_flat(u)
        u = User(name=name.strip(), email=email, phone=phone, role=Role.PATIENT)
        s.add(u)
        s.flush()
        logger.info("Created user %s", u.id)
        return user_flat(u)


def register_patient(data: PatientIn, identification_document: Upload | None = None) -> dict[str, Any]:
    user = create_user(data.name, data.email, data.phone)

    doc_id = None
    try:
        with db_session() as s:
            if s.execute(select(Patient.id).where(Patient.user_id == user["id"])).first():
                raise ConflictError("A patient is already registered for this user.")

            doc_id, doc_url = _store_identification("patient-documents", identification_document)
            p = Patient(
                user_id=user["id"],
                birth_date=data.birth_date,
                gender=data.gender,
                address=data.address,
                occupation=data.occupation,
                emergency_contact_name=data.emergency_contact_name,
                emergency_contact_number=data.emergency_contact_number,
                insurance_provider=data.insurance_provider,
                insurance_policy_number=data.insurance_policy_number,
                allergies=data.allergies,
                current_medication=data.current_medication,
                family_medical_history=data.family_medical_history,
                past_medical_history=data.past_medical_history,
                identification_type=data.identification_type,
                identification_number=data.identification_number,
                identification_document_id=doc_id,
                identification_document_url=doc_url,
                privacy_consent=data.privacy_consent,
            )
            s.add(p)
            s.flush()
            logger.info("Registered patient %s for user %s", p.id, user["id"])
            return patient_flat(p)
    except Exception:
        # the row was rolled back, so the stored file has no owner
        if doc_id:
            storage.delete_file(doc_id)
        raise


def get_patient(user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        p = s.execute(
            select(Patient).options(selectinload(Patient.user)).where(Patient.user_id == user_id)
        ).scalar_one_or_none()
        return patient_flat(p) if p else None


def get_patient_by_id(patient_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        p = s.execute(
            select(Patient).options(selectinload(Patient.user)).where(Patient.id == patient_id)
        ).scalar_one_or_none()
        return patient_flat(p) if p else None


def list_patients() -> dict[str, Any]:
    with db_session() as s:
        rows = s.scalars(
            select(Patient).options(selectinload(Patient.user)).order_by(Patient.created_at.desc())
        ).all()
        documents = [patient_flat(p) for p in rows]
        return {"total_count": len(documents), "documents": documents}


def update_patient(user_id: str, changes: PatientUpdateIn) -> dict[str, Any]:
    with db_session() as s:
        p = s.execute(select(Patient).where(Patient.user_id == user_id)).scalar_one_or_none()
        if not p:
            raise NotFoundError("Patient not found.")
        # explicit nulls are ignored: several of these columns are NOT NULL
        for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(p, field, value)
        s.flush()
        return patient_flat(p)


def delete_patient(user_id: str) -> bool:
    with db_session() as s:
        p = s.execute(select(Patient).where(Patient.user_id == user_id)).scalar_one_or_none()
        if not p:
            raise NotFoundError("Patient not found.")
        doc_id = p.identification_document_id
        s.delete(p)

    if doc_id:
        storage.delete_file(doc_id)
    logger.info("Deleted patient of user %s", user_id)
    return True


def attach_identification_document(kind: str, user_id: str, content: bytes, filename: str) -> dict[str, Any]:
    """Replace the identification document of a patient or doctor."""
    model = {"patient": Patient, "doctor": Doctor}.get(kind)
    if model is None:
        raise ValidationError("Unknown profile kind.")

    new_id = None
    try:
        with db_session() as s:
            obj = s.execute(select(model).where(model.user_id == user_id)).scalar_one_or_none()
            if not obj:
                raise NotFoundError(f"{kind.capitalize()} not found.")
            old_id = obj.identification_document_id
            new_id, new_url = _store_identification(f"{kind}-documents", (content, filename))
            obj.identification_document_id, obj.identification_document_url = new_id, new_url
            s.flush()
            result = patient_flat(obj) if kind == "patient" else doctor_flat(obj)
    except Exception:
        if new_id:
            storage.delete_file(new_id)
        raise

    if old_id:
        storage.delete_file(old_id)
    return result


# =========================
# Doctors
# =========================
def create_doctor_user(name: str, email: str, phone: str) -> dict[str, Any]:
    """
    Existing doctor accounts are returned as they are; an email held by a
    patient or admin account is refused.
    New doctor accounts start with their phone number as password.
    """
    email = normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if u:
            if u.role != Role.DOCTOR:
                raise ConflictError("This email belongs to an account that is not a doctor.")
            return user_flat(u)
        u = User(name=name.strip(), email=email, phone=phone, role=Role.DOCTOR, password_hash=hash_password(phone))
        s.add(u)
        s.flush()
        return user_flat(u)


def register_doctor(data: DoctorIn, identification_document: Upload | None = None) -> dict[str, Any]:
    user = create_doctor_user(data.name, data.email, data.phone)

    doc_id = None
    try:
        with db_session() as s:
            if s.execute(select(Doctor.id).where(Doctor.user_id == user["id"])).first():
                raise ConflictError("A doctor is already registered for this user.")

            doc_id, doc_url = _store_identification("doctor-documents", identification_document)
            d = Doctor(
                user_id=user["id"],
                name=data.name.strip(),
                email=normalize_email(data.email),
                phone=data.phone,
                specialization=data.specialization,
                license_number=data.license_number,
                years_of_experience=data.years_of_experience,
                hospital_affiliation=data.hospital_affiliation,
                identification_type=data.identification_type,
                identification_number=data.identification_number,
                identification_document_id=doc_id,
                identification_document_url=doc_url,
                consultation_fee=data.consultation_fee,
                available_timings_online=data.available_timings_online,
                available_timings_offline=data.available_timings_offline,
                is_verified=False,
            )
            s.add(d)
            s.flush()
            logger.info("Registered doctor %s (%s), awaiting verification", d.id, d.specialization.value)
            return doctor_flat(d)
    except Exception:
        if doc_id:
            storage.delete_file(doc_id)
        raise


def get_doctor(user_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        d = s.execute(select(Doctor).where(Doctor.user_id == user_id)).scalar_one_or_none()
        return doctor_flat(d) if d else None


def get_doctor_by_id(doctor_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        return doctor_flat(d) if d else None


def list_doctors() -> dict[str, Any]:
    with db_session() as s:
        rows = s.scalars(select(Doctor).order_by(Doctor.created_at.desc())).all()
        documents = [doctor_flat(d) for d in rows]
        verified = sum(1 for d in documents if d["is_verified"])
        return {
            "total_count": len(documents),
            "verified_count": verified,
            "unverified_count": len(documents) - verified,
            "documents": documents,
        }


def list_verified_doctors(specialization: Specialization | None = None) -> dict[str, Any]:
    with db_session() as s:
        q = select(Doctor).where(Doctor.is_verified.is_(True)).order_by(Doctor.name)
        if specialization is not None:
            q = q.where(Doctor.specialization == specialization)
        documents = [doctor_flat(d) for d in s.scalars(q)]
        return {"total_count": len(documents), "documents": documents}


def verify_doctor(doctor_id: str) -> bool:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            logger.warning("Cannot verify unknown doctor %s", doctor_id)
            return False
        d.is_verified = True
    logger.info("Doctor %s verified", doctor_id)
    return True


def update_doctor(doctor_id: str, changes: DoctorUpdateIn) -> dict[str, Any]:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Doctor not found.")
        for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(d, field, value)
        s.flush()
        return doctor_flat(d)


def delete_doctor(doctor_id: str) -> bool:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Doctor not found.")
        doc_id = d.identification_document_id
        s.delete(d)

    if doc_id:
        storage.delete_file(doc_id)
    return True


# =========================
# Appointments
# =========================
def find_schedule_conflict(s, user_id: str, doctor_id: str, patient_id: str, schedule: datetime) -> str | None:
    """
    Three sequential lookups on the exact same schedule, first hit wins:
    user, then doctor, then patient. Cancelled appointments do not count.
    Best effort: nothing locks the slot between the check and the insert.
    """
    rules = (
        (Appointment.user_id == user_id, "You already have an appointment scheduled at this time."),
        (Appointment.doctor_id == doctor_id, "The selected doctor already has an appointment at this time."),
        (Appointment.patient_id == patient_id, "This patient already has an appointment scheduled at this time."),
    )
    for clause, message in rules:
        hit = s.execute(
            select(Appointment.id)
            .where(and_(clause, Appointment.schedule == schedule, Appointment.status != Status.CANCELLED))
            .limit(1)
        ).first()
        if hit is not None:
            logger.info("Appointment conflict at %s: %s", schedule.isoformat(), message)
            return message
    return None


def create_appointment(data: AppointmentIn, status: Status = Status.PENDING) -> dict[str, Any]:
    with db_session() as s:
        patient = s.get(Patient, data.patient_id)
        if not patient:
            raise NotFoundError("Patient not found.")
        doctor = s.get(Doctor, data.doctor_id)
        if not doctor:
            raise NotFoundError("Doctor not found.")

        conflict = find_schedule_conflict(s, data.user_id, data.doctor_id, data.patient_id, data.schedule)
        if conflict:
            raise ConflictError(conflict)

        a = Appointment(
            user_id=data.user_id,
            patient_id=patient.id,
            doctor_id=doctor.id,
            doctor_name=data.doctor_name or doctor.name,
            schedule=data.schedule,
            status=status,
            reason=data.reason,
            note=data.note,
            appointment_type=data.appointment_type,
            meeting="",
        )
        s.add(a)
        s.flush()
        a = s.execute(_appointment_query().where(Appointment.id == a.id)).scalar_one()
        logger.info("Appointment %s created for %s with %s", a.id, a.schedule.isoformat(), a.doctor_name)
        return appointment_flat(a)


def get_appointment(appointment_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        return appointment_flat(a) if a else None


def get_recent_appointment_list() -> dict[str, Any]:
    with db_session() as s:
        return _appointments_response(s.scalars(_appointment_query().order_by(Appointment.created_at.desc())))


def get_appointment_list_by_user_id(user_id: str) -> dict[str, Any]:
    with db_session() as s:
        q = _appointment_query().where(Appointment.user_id == user_id).order_by(Appointment.created_at.desc())
        return _appointments_response(s.scalars(q))


def get_appointment_list_by_doctor_id(doctor_id: str) -> dict[str, Any]:
    with db_session() as s:
        q = _appointment_query().where(Appointment.doctor_id == doctor_id).order_by(Appointment.created_at.desc())
        return _appointments_response(s.scalars(q))


def format_schedule(value: datetime) -> str:
    return value.strftime("%b %d, %Y, %I:%M %p")


def meeting_link_for(appointment_id: str) -> str:
    return f"{config.APP_URL}/video?roomID=room-{appointment_id}"


def _notify_status_change(user_id: str, message: str, subject: str) -> None:
    """Best effort: delivery failures are logged by the senders."""
    with db_session() as s:
        u = s.get(User, user_id)
        if not u:
            return
        phone, email = u.phone, u.email
    send_sms(phone, message)
    send_email(email, subject, f"<p>{message}</p>", text=message)


def update_appointment(appointment_id: str, user_id: str, changes: dict[str, Any], kind: str) -> dict[str, Any]:
    """
    kind:
    - "schedule": apply changes, status -> scheduled, confirmation message
    - "cancel"  : cancellation reason required, status -> cancelled, cancellation message
    - anything else: plain update
    """
    if kind == "cancel":
        cancel = parse_input(CancelAppointmentIn, {"cancellation_reason": changes.get("cancellation_reason") or ""})
        fields: dict[str, Any] = {"cancellation_reason": cancel.cancellation_reason, "status": Status.CANCELLED}
    else:
        fields = parse_input(ScheduleAppointmentIn, changes).model_dump(exclude_unset=True, exclude_none=True)
        if kind == "schedule":
            fields["status"] = Status.SCHEDULED

    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        if not a:
            raise NotFoundError("Appointment not found.")
        for field, value in fields.items():
            setattr(a, field, value)
        if kind == "schedule" and a.appointment_type == AppointmentType.ONLINE and not a.meeting:
            a.meeting = meeting_link_for(a.id)
        s.flush()
        result = appointment_flat(a)

    when = format_schedule(datetime.fromisoformat(result["schedule"]))
    if kind == "schedule":
        _notify_status_change(
            user_id,
            f"Greetings from CarePulse. Your appointment is confirmed for {when} with Dr. {result['doctor_name']}.",
            "Appointment confirmed - CarePulse",
        )
    elif kind == "cancel":
        _notify_status_change(
            user_id,
            "Greetings from CarePulse. We regret to inform that your appointment for "
            f"{when} is cancelled. Reason: {result['cancellation_reason']}.",
            "Appointment cancelled - CarePulse",
        )
    return result


def accept_appointment(appointment_id: str) -> dict[str, Any]:
    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        if not a:
            raise NotFoundError("Appointment not found.")
        a.status = Status.SCHEDULED
        if a.appointment_type == AppointmentType.ONLINE and not a.meeting:
            a.meeting = meeting_link_for(a.id)
        s.flush()
        return appointment_flat(a)


def cancel_appointment(appointment_id: str, reason: str | None = None) -> dict[str, Any]:
    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        if not a:
            raise NotFoundError("Appointment not found.")
        a.status = Status.CANCELLED
        if reason:
            a.cancellation_reason = reason
        s.flush()
        return appointment_flat(a)


def set_meeting_link(appointment_id: str, meeting_link: str) -> dict[str, Any]:
    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        if not a:
            raise NotFoundError("Appointment not found.")
        a.meeting = meeting_link.strip()
        s.flush()
        return appointment_flat(a)


def mark_visited(appointment_id: str) -> dict[str, Any]:
    with db_session() as s:
        a = s.execute(_appointment_query().where(Appointment.id == appointment_id)).scalar_one_or_none()
        if not a:
            raise NotFoundError("Appointment not found.")
        a.has_visited = True
        s.flush()
        return appointment_flat(a)


# =========================
# Prescriptions
# =========================
def upload_prescription(
    content: bytes,
    filename: str,
    user_id: str,
    appointment_id: str | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        if not s.get(User, user_id):
            raise NotFoundError("User not found.")
        if appointment_id and not s.get(Appointment, appointment_id):
            raise NotFoundError("Appointment not found.")

    uploaded = storage.upload_file(content, "prescriptions", filename)

    with db_session() as s:
        p = Prescription(
            user_id=user_id,
            appointment_id=appointment_id or None,
            prescription_url=uploaded["url"],
            file_id=uploaded["public_id"],
            uploaded_at=utcnow(),
        )
        s.add(p)
        s.flush()
        logger.info("Prescription %s uploaded by %s", p.id, user_id)
        return prescription_flat(p)


def _prescriptions_response(rows: Iterable[Prescription]) -> dict[str, Any]:
    documents = [prescription_flat(p) for p in rows]
    return {"total_count": len(documents), "documents": documents}


def get_prescription(prescription_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        p = s.get(Prescription, prescription_id)
        return prescription_flat(p) if p else None


def list_prescriptions_by_user(user_id: str) -> dict[str, Any]:
    with db_session() as s:
        q = select(Prescription).where(Prescription.user_id == user_id).order_by(Prescription.created_at.desc())
        return _prescriptions_response(s.scalars(q))


def list_prescriptions_by_appointment(appointment_id: str) -> dict[str, Any]:
    with db_session() as s:
        q = (
            select(Prescription)
            .where(Prescription.appointment_id == appointment_id)
            .order_by(Prescription.created_at.desc())
        )
        return _prescriptions_response(s.scalars(q))


def list_all_prescriptions() -> dict[str, Any]:
    with db_session() as s:
        return _prescriptions_response(s.scalars(select(Prescription).order_by(Prescription.created_at.desc())))


def update_prescription(prescription_id: str, new_url: str) -> dict[str, Any]:
    if not new_url.strip():
        raise ValidationError("Prescription url is required.")
    with db_session() as s:
        p = s.get(Prescription, prescription_id)
        if not p:
            raise NotFoundError("Prescription not found.")
        p.prescription_url = new_url.strip()
        s.flush()
        return prescription_flat(p)


def delete_prescription(prescription_id: str) -> bool:
    with db_session() as s:
        p = s.get(Prescription, prescription_id)
        if not p:
            raise NotFoundError("Prescription not found.")
        file_id = p.file_id
        s.delete(p)

    storage.delete_file(file_id)
    return True


# =========================
# Admin dashboard
# =========================
def admin_dashboard() -> dict[str, Any]:
    appointments = get_recent_appointment_list()
    doctors = list_doctors()
    return {
        "scheduled_count": appointments["scheduled_count"],
        "pending_count": appointments["pending_count"],
        "cancelled_count": appointments["cancelled_count"],
        "doctors_total": doctors["total_count"],
        "doctors_verified": doctors["verified_count"],
        "doctors_unverified": doctors["unverified_count"],
        "appointments": appointments["documents"],
        "doctors": doctors["documents"],
    }
