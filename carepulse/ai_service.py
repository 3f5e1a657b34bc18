"""
AI-assisted consultation.

Text consultations keep the whole chat history on the AIConsultation row and
replay it to the chat model on every turn. Voice consultations run in the
browser over WebRTC: this module only brokers the SDP offer/answer with the
OpenAI Realtime API and turns the data-channel events the browser collected
into a stored summary.
"""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Iterable

import requests
from openai import OpenAI, OpenAIError
from sqlalchemy import select

from . import config, storage
from .db import db_session
from .errors import ExternalServiceError, NotFoundError, ValidationError
from .models import AIConsultation, ConsultationStatus, ConsultationType, User

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = """You are a medical AI assistant helping to analyze patient prescriptions.
Your role is to:
1. Extract information from prescription images (medications, dosages, doctor notes)
2. Identify any unclear handwriting or missing information
3. Ask clarifying questions about unclear parts
4. Gather information about the patient's current symptoms

Be professional, empathetic, and thorough. If you cannot read something clearly, ask the patient to clarify."""

ANALYSIS_USER_PROMPT = """I have uploaded {count} prescription(s). Please analyze them and let me know:
1. What medications you can identify
2. Any parts that are unclear or you cannot read
3. What additional information you need from me"""

EXTRACTION_PROMPT = """Based on our conversation, please extract and summarize the following information in JSON format:
{
  "medications": ["list of medications identified"],
  "symptoms": ["current symptoms reported by patient"],
  "concerns": ["main health concerns"],
  "clarifications": ["any clarifications provided by patient"],
  "recommendations": ["your recommendations for next steps"]
}"""

EXTRACTED_KEYS = ("medications", "symptoms", "concerns", "clarifications", "recommendations")

PRESCRIPTION_ANALYSIS_PROMPT = """Please analyze these prescription images carefully. For each prescription, identify:
1. Medication names
2. Dosages and frequency
3. Instructions for use
4. Any warnings or special notes
5. Any unclear or illegible parts that need clarification

Provide a clear, structured analysis that will be used by an AI assistant to conduct a medical consultation."""

SUMMARY_REQUEST_PROMPT = (
    "Please provide a comprehensive summary of our consultation including medications discussed, "
    "symptoms reported, health concerns identified, recommendations given, and suggested next steps."
)
SUMMARY_FALLBACK = "Consultation completed. Summary not available."
# how long the browser waits for the summary after ending the call
SUMMARY_TIMEOUT_SECONDS = 3
VOICE_SESSION_MINUTES = 5


@lru_cache(maxsize=1)
def get_client() -> OpenAI:
    if not config.OPENAI_API_KEY:
        raise ExternalServiceError("OPENAI_API_KEY is not configured.", status_code=503)
    return OpenAI(api_key=config.OPENAI_API_KEY)


def _chat(messages: list[dict[str, Any]], max_tokens: int, model: str | None = None, **kwargs: Any) -> str:
    try:
        response = get_client().chat.completions.create(
            model=model or config.OPENAI_CHAT_MODEL,
            messages=messages,
            max_tokens=max_tokens,
            **kwargs,
        )
    except OpenAIError as e:
        logger.error("OpenAI chat completion failed: %s", e)
        raise ExternalServiceError("AI service unavailable.") from e
    return response.choices[0].message.content or ""


def _image_parts(urls: Iterable[str]) -> list[dict[str, Any]]:
    """Images stored by this service are inlined, the model cannot fetch them."""
    parts = []
    for url in urls:
        public_id = storage.public_id_from_url(url)
        parts.append({"type": "image_url", "image_url": {"url": storage.as_data_url(public_id) if public_id else url}})
    return parts


def consultation_flat(c: AIConsultation) -> dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "patient_id": c.patient_id,
        "prescription_urls": list(c.prescription_urls or []),
        "conversation_history": list(c.conversation_history or []),
        "consultation_type": c.consultation_type.value,
        "status": c.status.value,
        "extracted_info": c.extracted_info,
        "conversation_summary": c.conversation_summary,
        "created_at": c.created_at.isoformat(),
    }


def _load(s, consultation_id: str) -> AIConsultation:
    c = s.get(AIConsultation, consultation_id)
    if not c:
        raise NotFoundError("Consultation not found")
    return c


# =========================
# Text consultation
# =========================
def create_consultation(
    user_id: str,
    patient_id: str | None,
    prescription_urls: list[str],
    consultation_type: str = "text",
) -> dict[str, Any]:
    with db_session() as s:
        if not s.get(User, user_id):
            raise NotFoundError("User not found.")
        c = AIConsultation(
            user_id=user_id,
            patient_id=patient_id,
            prescription_urls=list(prescription_urls),
            conversation_history=[],
            status=ConsultationStatus.IN_PROGRESS,
            consultation_type=ConsultationType(consultation_type),
        )
        s.add(c)
        s.flush()
        logger.info("AI consultation %s (%s) started by %s", c.id, c.consultation_type.value, user_id)
        return consultation_flat(c)


def analyze_consultation_prescriptions(consultation_id: str) -> str:
    with db_session() as s:
        urls = list(_load(s, consultation_id).prescription_urls or [])

    user_message = ANALYSIS_USER_PROMPT.format(count=len(urls))
    answer = _chat(
        [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": [{"type": "text", "text": user_message}, *_image_parts(urls)]},
        ],
        max_tokens=1000,
    )

    # images are not replayed on later turns, only the text
    with db_session() as s:
        _load(s, consultation_id).conversation_history = [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
            {"role": "assistant", "content": answer},
        ]
    return answer


def send_message(consultation_id: str, message: str) -> str:
    if not message.strip():
        raise ValidationError("Message is empty.")

    with db_session() as s:
        c = _load(s, consultation_id)
        if c.status == ConsultationStatus.COMPLETED:
            raise ValidationError("Consultation already completed.")
        history = list(c.conversation_history or [])

    history = [*history, {"role": "user", "content": message}]
    answer = _chat(history, max_tokens=800)
    history = [*history, {"role": "assistant", "content": answer}]

    with db_session() as s:
        _load(s, consultation_id).conversation_history = history
    return answer


def complete_consultation(consultation_id: str) -> dict[str, list[str]]:
    with db_session() as s:
        history = list(_load(s, consultation_id).conversation_history or [])

    raw = _chat(
        [*history, {"role": "user", "content": EXTRACTION_PROMPT}],
        max_tokens=500,
        response_format={"type": "json_object"},
    )
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        logger.error("Consultation %s: extraction is not JSON: %r", consultation_id, raw[:200])
        raise ExternalServiceError("AI returned an invalid summary.") from e
    if not isinstance(parsed, dict):
        raise ExternalServiceError("AI returned an invalid summary.")

    extracted = {}
    for key in EXTRACTED_KEYS:
        value = parsed.get(key) or []
        extracted[key] = [str(v) for v in value] if isinstance(value, list) else [str(value)]

    with db_session() as s:
        c = _load(s, consultation_id)
        c.extracted_info = extracted
        c.status = ConsultationStatus.COMPLETED

    logger.info("AI consultation %s completed", consultation_id)
    return extracted


def get_consultation(consultation_id: str) -> dict[str, Any] | None:
    with db_session() as s:
        c = s.get(AIConsultation, consultation_id)
        return consultation_flat(c) if c else None


def list_consultations(user_id: str) -> list[dict[str, Any]]:
    with db_session() as s:
        rows = s.scalars(
            select(AIConsultation).where(AIConsultation.user_id == user_id).order_by(AIConsultation.created_at.desc())
        )
        return [consultation_flat(c) for c in rows]


# =========================
# Prescription analysis (voice session context)
# =========================
def analyze_prescription_images(prescription_urls: list[str]) -> str:
    if not prescription_urls:
        return "No prescriptions provided."

    analysis = _chat(
        [{"role": "user", "content": [{"type": "text", "text": PRESCRIPTION_ANALYSIS_PROMPT}, *_image_parts(prescription_urls)]}],
        max_tokens=1500,
        model=config.OPENAI_VISION_MODEL,
    )
    return analysis or "Unable to analyze prescriptions."


# =========================
# Realtime voice session
# =========================
def build_voice_instructions(prescription_analysis: str = "") -> str:
    analysis = prescription_analysis.strip()
    context = f"PRESCRIPTION ANALYSIS:\n{analysis}\n\n" if analysis else ""
    medications = (
        "- Discuss the medications from the prescription analysis above"
        if analysis
        else "- Ask about their medications"
    )
    return (
        "You are a professional medical AI assistant conducting a voice consultation with a patient.\n\n"
        f"{context}"
        "IMPORTANT: Start by greeting the patient ONCE at the beginning. "
        "After that, continue the conversation naturally without greeting again.\n\n"
        "Your role:\n"
        "- Listen to the patient and respond to their questions and concerns\n"
        f"{medications}\n"
        "- Ask about symptoms and how they're feeling\n"
        "- Provide empathetic, professional guidance\n"
        "- Remind them you're providing information, not replacing their doctor\n\n"
        f"This consultation is limited to {VOICE_SESSION_MINUTES} minutes. Be conversational, warm, and supportive. "
        "Continue the conversation naturally - do not restart or greet again."
    )


def realtime_session_config(prescription_analysis: str = "") -> dict[str, Any]:
    return {
        "type": "realtime",
        "model": config.OPENAI_REALTIME_MODEL,
        "audio": {"output": {"voice": config.OPENAI_REALTIME_VOICE}},
        "instructions": build_voice_instructions(prescription_analysis),
    }


def create_realtime_session(offer_sdp: str, prescription_analysis: str = "") -> str:
    """Forward the browser's SDP offer to the Realtime API and return the answer SDP."""
    if not offer_sdp or not offer_sdp.strip():
        raise ValidationError("SDP offer is required")
    if not config.OPENAI_API_KEY:
        raise ExternalServiceError("OPENAI_API_KEY is not configured.", status_code=503)

    session = realtime_session_config(prescription_analysis)
    try:
        response = requests.post(
            config.OPENAI_REALTIME_CALLS_URL,
            headers={"Authorization": f"Bearer {config.OPENAI_API_KEY}"},
            files={"sdp": (None, offer_sdp), "session": (None, json.dumps(session))},
            timeout=30,
        )
    except requests.RequestException as e:
        logger.error("Realtime session request failed: %s", e)
        raise ExternalServiceError("Failed to create session with OpenAI") from e

    if not response.ok:
        logger.error("OpenAI realtime error %s: %s", response.status_code, response.text[:500])
        raise ExternalServiceError("Failed to create session with OpenAI", status_code=response.status_code)

    logger.info("Realtime session created (model %s)", session["model"])
    return response.text


def summary_request_events() -> list[dict[str, Any]]:
    """Data-channel events the browser sends when the call ends."""
    return [
        {
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": SUMMARY_REQUEST_PROMPT}],
            },
        },
        {"type": "response.create"},
    ]


def _event_texts(event: dict[str, Any]) -> list[str]:
    kind = event.get("type", "")
    if kind in ("response.output_text.done", "response.text.done"):
        return [event.get("text") or ""]
    if kind in ("response.output_audio_transcript.done", "response.audio_transcript.done"):
        return [event.get("transcript") or ""]

    if kind == "response.done":
        items = (event.get("response") or {}).get("output") or []
    elif kind in ("conversation.item.created", "conversation.item.done"):
        items = [event.get("item") or {}]
    else:
        return []

    texts = []
    for item in items:
        if item.get("role") not in (None, "assistant"):
            continue
        content = item.get("content") or []
        for c in content if isinstance(content, list) else [content]:
            if isinstance(c, dict):
                texts.append(c.get("text") or c.get("transcript") or "")
    return texts


def extract_summary_from_events(events: Iterable[dict[str, Any]]) -> str | None:
    """Last assistant text mentioning a summary, or None."""
    summary = None
    for event in events:
        if not isinstance(event, dict):
            continue
        for text in _event_texts(event):
            if text and "summary" in text.lower():
                summary = text.strip()
    return summary


def save_voice_summary(consultation_id: str, summary: str) -> dict[str, Any]:
    if not summary or not summary.strip():
        raise ValidationError("Summary is empty.")
    with db_session() as s:
        c = _load(s, consultation_id)
        c.conversation_summary = summary.strip()
        c.status = ConsultationStatus.COMPLETED
        s.flush()
        return consultation_flat(c)


def finish_voice_consultation(consultation_id: str, events: list[dict[str, Any]]) -> dict[str, Any]:
    """Store the summary found in the collected events, or the fallback text."""
    summary = extract_summary_from_events(events)
    if summary is None:
        logger.warning("Consultation %s: no summary within %ss", consultation_id, SUMMARY_TIMEOUT_SECONDS)
    return save_voice_summary(consultation_id, summary or SUMMARY_FALLBACK)
