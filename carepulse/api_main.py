from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field

from . import ai_service, services, storage
from .auth_service import (
    authenticate,
    get_user_by_id,
    request_password_reset,
    reset_password,
    sign_up,
    verify_reset_token,
)
from .config import configure_logging
from .errors import AuthError, CarePulseError, ConflictError, ExternalServiceError, NotFoundError, ValidationError
from .models import Specialization
from .security import check_admin_passkey, create_access_token, get_subject
from .seed import seed_base
from .validation import (
    AppointmentIn,
    DoctorIn,
    DoctorUpdateIn,
    PatientIn,
    PatientUpdateIn,
)

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

app = FastAPI(title="CarePulse API", version="1.0.0")


# Startup

@app.on_event("startup")
def startup() -> None:
    # tables + idempotent seed
    configure_logging()
    services.init_db()
    seed_base()


# Errors

_STATUS_BY_ERROR: dict[type[CarePulseError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(CarePulseError)
def carepulse_error_handler(request: Request, exc: CarePulseError) -> JSONResponse:
    if isinstance(exc, ExternalServiceError):
        code = exc.status_code
    else:
        code = next((c for cls, c in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


# Auth schemas

class RegisterIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    name: str
    email: str
    phone: str | None = None
    role: str


class ForgotPasswordIn(BaseModel):
    email: EmailStr


class ResetPasswordIn(BaseModel):
    token: str
    new_password: str = Field(..., min_length=6)


# Domain schemas

class AppointmentUpdateIn(BaseModel):
    user_id: str
    type: str = "update"
    appointment: dict[str, Any] = Field(default_factory=dict)


class CancelIn(BaseModel):
    cancellation_reason: str | None = None


class MeetingIn(BaseModel):
    meeting: str = Field(..., min_length=1)


class PrescriptionUpdateIn(BaseModel):
    prescription_url: str


class ConsultationCreateIn(BaseModel):
    user_id: str
    patient_id: str | None = None
    prescription_urls: list[str] = Field(default_factory=list)
    consultation_type: str = Field("text", pattern="^(text|voice)$")


class MessageIn(BaseModel):
    message: str = Field(..., min_length=1)


class VoiceSummaryIn(BaseModel):
    summary: str = Field(..., min_length=1)


class VoiceFinishIn(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)


class AnalyzePrescriptionsIn(BaseModel):
    prescription_urls: list[str] = Field(default_factory=list, alias="prescriptionUrls")

    model_config = {"populate_by_name": True}


# Auth dependencies

def get_current_user(token: str = Depends(oauth2_scheme)) -> dict[str, Any]:
    # strip stray spaces / quotes around the token
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    u = get_user_by_id(user_id)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return u


def require_admin(
    x_admin_passkey: str | None = Header(None),
    token: str | None = Depends(optional_oauth2_scheme),
) -> None:
    """Admin area: the passkey header, or a token of an admin user."""
    if check_admin_passkey(x_admin_passkey):
        return
    if token:
        user_id = get_subject(token.strip())
        u = get_user_by_id(user_id) if user_id else None
        if u and u["role"] == "admin":
            return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def _ensure_self(user: dict[str, Any], user_id: str) -> None:
    if user["id"] != user_id and user["role"] != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this user")


def _found(value: Any, what: str) -> Any:
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")
    return value


def _ensure_doctor(user: dict[str, Any], doctor_id: str) -> dict[str, Any]:
    doctor = _found(services.get_doctor_by_id(doctor_id), "Doctor")
    if doctor["user_id"] != user["id"] and user["role"] != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this doctor")
    return doctor


def _appointment_for(user: dict[str, Any], appointment_id: str, patient_allowed: bool = True) -> dict[str, Any]:
    """
    Admins and the appointment's doctor always get through.
    The booking user only when patient_allowed.
    """
    a = _found(services.get_appointment(appointment_id), "Appointment")
    if user["role"] == "admin" or (patient_allowed and a["user_id"] == user["id"]):
        return a
    doctor = services.get_doctor_by_id(a["doctor_id"])
    if doctor and doctor["user_id"] == user["id"]:
        return a
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this appointment")


def _consultation_for(user: dict[str, Any], consultation_id: str) -> dict[str, Any]:
    c = _found(ai_service.get_consultation(consultation_id), "Consultation")
    _ensure_self(user, c["user_id"])
    return c


def _ensure_patient_of(user: dict[str, Any], patient_id: str | None, user_id: str) -> None:
    # unknown ids fall through to the service, which answers 404
    patient = services.get_patient_by_id(patient_id) if patient_id else None
    if patient and patient["user_id"] != user_id and user["role"] != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patient belongs to another user")


# AUTH endpoints

@app.post("/api/auth/register", response_model=MeOut)
def register(payload: RegisterIn) -> dict[str, Any]:
    return sign_up(payload.name, payload.email, payload.password, phone=payload.phone)


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    # OAuth2 form field "username" carries the email
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(subject=u["id"], extra={"email": u["email"], "name": u["name"], "role": u["role"]})
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: dict = Depends(get_current_user)) -> dict[str, Any]:
    return user


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordIn) -> dict[str, Any]:
    return {"ok": True, "message": request_password_reset(payload.email)}


@app.get("/api/auth/reset-password/verify")
def verify_reset(token: str = Query(...)) -> dict[str, Any]:
    valid, result = verify_reset_token(token)
    return {"valid": True} if valid else {"valid": False, "message": result}


@app.post("/api/auth/reset-password")
def do_reset_password(payload: ResetPasswordIn) -> dict[str, Any]:
    return {"ok": True, "message": reset_password(payload.token, payload.new_password)}


# PUBLIC endpoints

@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/doctors")
def api_doctors(specialization: Specialization | None = None) -> dict[str, Any]:
    return services.list_verified_doctors(specialization)


@app.post("/api/doctors/register")
def api_register_doctor(payload: DoctorIn) -> dict[str, Any]:
    return services.register_doctor(payload)


@app.get("/api/doctors/{user_id}")
def api_get_doctor(user_id: str) -> dict[str, Any]:
    return _found(services.get_doctor(user_id), "Doctor")


@app.get("/files/{public_id:path}")
def api_file(public_id: str) -> FileResponse:
    return FileResponse(storage.open_file(public_id))


# PATIENTS (JWT)

@app.post("/api/patients/register")
def api_register_patient(payload: PatientIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    if payload.email.lower() != user["email"] and user["role"] != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Email does not match the logged in user")
    return services.register_patient(payload)


@app.get("/api/patients/{user_id}")
def api_get_patient(user_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, user_id)
    return _found(services.get_patient(user_id), "Patient")


@app.patch("/api/patients/{user_id}")
def api_update_patient(user_id: str, payload: PatientUpdateIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, user_id)
    return services.update_patient(user_id, payload)


@app.post("/api/patients/{user_id}/identification")
async def api_patient_identification(
    user_id: str, file: UploadFile = File(...), user: dict = Depends(get_current_user)
) -> dict[str, Any]:
    _ensure_self(user, user_id)
    content = await file.read()
    return services.attach_identification_document("patient", user_id, content, file.filename or "document")


@app.post("/api/doctors/{user_id}/identification")
async def api_doctor_identification(
    user_id: str, file: UploadFile = File(...), user: dict = Depends(get_current_user)
) -> dict[str, Any]:
    _ensure_self(user, user_id)
    content = await file.read()
    return services.attach_identification_document("doctor", user_id, content, file.filename or "document")


# APPOINTMENTS (JWT)

@app.post("/api/appointments")
def api_create_appointment(payload: AppointmentIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, payload.user_id)
    _ensure_patient_of(user, payload.patient_id, payload.user_id)
    return services.create_appointment(payload)


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(appointment_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    return _appointment_for(user, appointment_id)


@app.get("/api/users/{user_id}/appointments")
def api_user_appointments(user_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, user_id)
    return services.get_appointment_list_by_user_id(user_id)


@app.get("/api/doctors/{doctor_id}/appointments")
def api_doctor_appointments(doctor_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_doctor(user, doctor_id)
    return services.get_appointment_list_by_doctor_id(doctor_id)


# accept / meeting / visited belong to the doctor (or an admin)

@app.post("/api/appointments/{appointment_id}/accept")
def api_accept_appointment(appointment_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _appointment_for(user, appointment_id, patient_allowed=False)
    return services.accept_appointment(appointment_id)


@app.post("/api/appointments/{appointment_id}/cancel")
def api_cancel_appointment(appointment_id: str, payload: CancelIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _appointment_for(user, appointment_id)
    return services.cancel_appointment(appointment_id, payload.cancellation_reason)


@app.put("/api/appointments/{appointment_id}/meeting")
def api_meeting(appointment_id: str, payload: MeetingIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _appointment_for(user, appointment_id, patient_allowed=False)
    return services.set_meeting_link(appointment_id, payload.meeting)


@app.post("/api/appointments/{appointment_id}/visited")
def api_visited(appointment_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _appointment_for(user, appointment_id, patient_allowed=False)
    return services.mark_visited(appointment_id)


# PRESCRIPTIONS (JWT)

@app.post("/api/upload-prescription")
async def api_upload_prescription(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    appointment_id: str | None = Form(None),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    _ensure_self(user, user_id)
    if appointment_id:
        _appointment_for(user, appointment_id)
    content = await file.read()
    result = services.upload_prescription(content, file.filename or "prescription", user_id, appointment_id)
    return {"success": True, "result": result}


@app.get("/api/users/{user_id}/prescriptions")
def api_user_prescriptions(user_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, user_id)
    return services.list_prescriptions_by_user(user_id)


@app.get("/api/appointments/{appointment_id}/prescriptions")
def api_appointment_prescriptions(appointment_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _appointment_for(user, appointment_id)
    return services.list_prescriptions_by_appointment(appointment_id)


@app.patch("/api/prescriptions/{prescription_id}")
def api_update_prescription(
    prescription_id: str, payload: PrescriptionUpdateIn, user: dict = Depends(get_current_user)
) -> dict[str, Any]:
    p = _found(services.get_prescription(prescription_id), "Prescription")
    _ensure_self(user, p["user_id"])
    return services.update_prescription(prescription_id, payload.prescription_url)


@app.delete("/api/prescriptions/{prescription_id}")
def api_delete_prescription(prescription_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    p = _found(services.get_prescription(prescription_id), "Prescription")
    _ensure_self(user, p["user_id"])
    return {"ok": services.delete_prescription(prescription_id)}


# AI CONSULTATION (JWT)

@app.post("/api/ai/consultations")
def api_create_consultation(payload: ConsultationCreateIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _ensure_self(user, payload.user_id)
    _ensure_patient_of(user, payload.patient_id, payload.user_id)
    return ai_service.create_consultation(
        payload.user_id, payload.patient_id, payload.prescription_urls, payload.consultation_type
    )


@app.get("/api/ai/consultations/{consultation_id}")
def api_get_consultation(consultation_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    return _consultation_for(user, consultation_id)


@app.get("/api/users/{user_id}/consultations")
def api_user_consultations(user_id: str, user: dict = Depends(get_current_user)) -> list[dict[str, Any]]:
    _ensure_self(user, user_id)
    return ai_service.list_consultations(user_id)


@app.post("/api/ai/consultations/{consultation_id}/analyze")
def api_analyze_consultation(consultation_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _consultation_for(user, consultation_id)
    return {"success": True, "message": ai_service.analyze_consultation_prescriptions(consultation_id)}


@app.post("/api/ai/consultations/{consultation_id}/messages")
def api_send_message(consultation_id: str, payload: MessageIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _consultation_for(user, consultation_id)
    return {"success": True, "message": ai_service.send_message(consultation_id, payload.message)}


@app.post("/api/ai/consultations/{consultation_id}/complete")
def api_complete_consultation(consultation_id: str, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _consultation_for(user, consultation_id)
    return {"success": True, "extracted_info": ai_service.complete_consultation(consultation_id)}


@app.post("/api/ai/consultations/{consultation_id}/voice-summary")
def api_voice_summary(consultation_id: str, payload: VoiceSummaryIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _consultation_for(user, consultation_id)
    return ai_service.save_voice_summary(consultation_id, payload.summary)


@app.post("/api/ai/consultations/{consultation_id}/voice-finish")
def api_voice_finish(consultation_id: str, payload: VoiceFinishIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    _consultation_for(user, consultation_id)
    return ai_service.finish_voice_consultation(consultation_id, payload.events)


@app.post("/api/realtime/analyze-prescriptions")
def api_analyze_prescriptions(payload: AnalyzePrescriptionsIn, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    return {"analysis": ai_service.analyze_prescription_images(payload.prescription_urls)}


@app.get("/api/realtime/config")
def api_realtime_config() -> dict[str, Any]:
    return {
        "summary_request_events": ai_service.summary_request_events(),
        "summary_timeout_seconds": ai_service.SUMMARY_TIMEOUT_SECONDS,
        "session_minutes": ai_service.VOICE_SESSION_MINUTES,
        "fallback_summary": ai_service.SUMMARY_FALLBACK,
    }


@app.post("/api/realtime/session")
async def api_realtime_session(
    request: Request,
    prescription_analysis: str = Query("", alias="prescriptionAnalysis"),
    user: dict = Depends(get_current_user),
) -> Response:
    offer_sdp = (await request.body()).decode("utf-8", errors="replace")
    answer = ai_service.create_realtime_session(offer_sdp, prescription_analysis)
    return Response(content=answer, media_type="application/sdp")


# ADMIN (passkey)

@app.get("/api/admin/dashboard", dependencies=[Depends(require_admin)])
def api_admin_dashboard() -> dict[str, Any]:
    return services.admin_dashboard()


@app.get("/api/admin/patients", dependencies=[Depends(require_admin)])
def api_admin_patients() -> dict[str, Any]:
    return services.list_patients()


@app.delete("/api/admin/patients/{user_id}", dependencies=[Depends(require_admin)])
def api_admin_delete_patient(user_id: str) -> dict[str, Any]:
    return {"ok": services.delete_patient(user_id)}


@app.get("/api/admin/doctors", dependencies=[Depends(require_admin)])
def api_admin_doctors() -> dict[str, Any]:
    return services.list_doctors()


@app.post("/api/admin/doctors/{doctor_id}/verify", dependencies=[Depends(require_admin)])
def api_admin_verify_doctor(doctor_id: str) -> dict[str, Any]:
    if not services.verify_doctor(doctor_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Doctor not found")
    return {"ok": True}


@app.patch("/api/admin/doctors/{doctor_id}", dependencies=[Depends(require_admin)])
def api_admin_update_doctor(doctor_id: str, payload: DoctorUpdateIn) -> dict[str, Any]:
    return services.update_doctor(doctor_id, payload)


@app.delete("/api/admin/doctors/{doctor_id}", dependencies=[Depends(require_admin)])
def api_admin_delete_doctor(doctor_id: str) -> dict[str, Any]:
    return {"ok": services.delete_doctor(doctor_id)}


@app.patch("/api/admin/appointments/{appointment_id}", dependencies=[Depends(require_admin)])
def api_admin_update_appointment(appointment_id: str, payload: AppointmentUpdateIn) -> dict[str, Any]:
    return services.update_appointment(appointment_id, payload.user_id, payload.appointment, payload.type)


@app.get("/api/admin/prescriptions", dependencies=[Depends(require_admin)])
def api_admin_prescriptions() -> dict[str, Any]:
    return services.list_all_prescriptions()
