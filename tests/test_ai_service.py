import json
from unittest.mock import MagicMock, patch

import pytest
from openai import OpenAIError

from carepulse import ai_service, config, storage
from carepulse.errors import ExternalServiceError, NotFoundError, ValidationError


def fake_client(*answers: str) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.side_effect = [
        MagicMock(choices=[MagicMock(message=MagicMock(content=a))]) for a in answers
    ]
    return client


@pytest.fixture
def user(make_patient):
    u, _ = make_patient()
    return u


class TestOpenAIClient:
    def test_missing_key(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "")
        with pytest.raises(ExternalServiceError) as exc_info:
            ai_service.get_client()
        assert exc_info.value.status_code == 503

    def test_vendor_error_becomes_service_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = OpenAIError("boom")
        with patch.object(ai_service, "get_client", return_value=client):
            with pytest.raises(ExternalServiceError, match="AI service unavailable"):
                ai_service.analyze_prescription_images(["https://cdn.test/a.png"])


class TestTextConsultation:
    def test_full_flow(self, user):
        c = ai_service.create_consultation(user["id"], None, ["https://cdn.test/rx1.png"])
        assert c["status"] == "in_progress"
        assert c["consultation_type"] == "text"

        summary = json.dumps({"medications": ["Amoxicillin"], "symptoms": ["cough"], "concerns": "fever"})
        client = fake_client("I can see Amoxicillin 500mg.", "Take it twice a day.", summary)

        with patch.object(ai_service, "get_client", return_value=client):
            assert ai_service.analyze_consultation_prescriptions(c["id"]) == "I can see Amoxicillin 500mg."
            assert ai_service.send_message(c["id"], "How often should I take it?") == "Take it twice a day."
            extracted = ai_service.complete_consultation(c["id"])

        assert extracted == {
            "medications": ["Amoxicillin"],
            "symptoms": ["cough"],
            "concerns": ["fever"],
            "clarifications": [],
            "recommendations": [],
        }

        # the analysis turn carried the image, later turns replay text only
        first_call = client.chat.completions.create.call_args_list[0].kwargs
        assert first_call["messages"][1]["content"][1] == {
            "type": "image_url",
            "image_url": {"url": "https://cdn.test/rx1.png"},
        }
        second_call = client.chat.completions.create.call_args_list[1].kwargs
        assert [m["role"] for m in second_call["messages"]] == ["system", "user", "assistant", "user"]
        third_call = client.chat.completions.create.call_args_list[2].kwargs
        assert third_call["response_format"] == {"type": "json_object"}

        stored = ai_service.get_consultation(c["id"])
        assert stored["status"] == "completed"
        assert len(stored["conversation_history"]) == 5
        assert stored["extracted_info"]["medications"] == ["Amoxicillin"]

    def test_stored_images_are_inlined(self, user):
        uploaded = storage.upload_file(b"\x89PNG", "prescriptions", "rx.png")
        c = ai_service.create_consultation(user["id"], None, [uploaded["url"]])
        client = fake_client("ok")
        with patch.object(ai_service, "get_client", return_value=client):
            ai_service.analyze_consultation_prescriptions(c["id"])
        part = client.chat.completions.create.call_args.kwargs["messages"][1]["content"][1]
        assert part["image_url"]["url"].startswith("data:image/png;base64,")

    def test_empty_message(self, user):
        c = ai_service.create_consultation(user["id"], None, [])
        with pytest.raises(ValidationError):
            ai_service.send_message(c["id"], "   ")

    def test_completed_consultation_rejects_messages(self, user):
        c = ai_service.create_consultation(user["id"], None, [])
        ai_service.save_voice_summary(c["id"], "All good")
        with pytest.raises(ValidationError, match="already completed"):
            ai_service.send_message(c["id"], "hello")

    def test_invalid_json_summary(self, user):
        c = ai_service.create_consultation(user["id"], None, [])
        with patch.object(ai_service, "get_client", return_value=fake_client("not json")):
            with pytest.raises(ExternalServiceError, match="invalid summary"):
                ai_service.complete_consultation(c["id"])
        assert ai_service.get_consultation(c["id"])["status"] == "in_progress"

    def test_unknown_consultation(self):
        with pytest.raises(NotFoundError):
            ai_service.send_message("missing", "hello")
        assert ai_service.get_consultation("missing") is None

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            ai_service.create_consultation("missing", None, [])

    def test_list_by_user(self, user):
        ai_service.create_consultation(user["id"], None, [])
        ai_service.create_consultation(user["id"], None, [], consultation_type="voice")
        assert len(ai_service.list_consultations(user["id"])) == 2


class TestPrescriptionAnalysis:
    def test_no_prescriptions(self):
        assert ai_service.analyze_prescription_images([]) == "No prescriptions provided."

    def test_uses_vision_model(self):
        client = fake_client("Paracetamol 1g")
        with patch.object(ai_service, "get_client", return_value=client):
            assert ai_service.analyze_prescription_images(["https://cdn.test/a.png"]) == "Paracetamol 1g"
        assert client.chat.completions.create.call_args.kwargs["model"] == config.OPENAI_VISION_MODEL

    def test_empty_answer(self):
        with patch.object(ai_service, "get_client", return_value=fake_client("")):
            assert ai_service.analyze_prescription_images(["https://cdn.test/a.png"]) == "Unable to analyze prescriptions."


class TestRealtimeSession:
    def test_instructions_include_analysis(self):
        text = ai_service.build_voice_instructions("Ibuprofen 400mg")
        assert "PRESCRIPTION ANALYSIS:\nIbuprofen 400mg" in text
        assert "Discuss the medications" in text

    def test_instructions_without_analysis(self):
        text = ai_service.build_voice_instructions("")
        assert "PRESCRIPTION ANALYSIS" not in text
        assert "Ask about their medications" in text

    def test_session_posts_sdp(self):
        response = MagicMock(ok=True, status_code=201, text="v=0 answer")
        with patch.object(ai_service.requests, "post", return_value=response) as post:
            assert ai_service.create_realtime_session("v=0 offer", "Ibuprofen") == "v=0 answer"

        kwargs = post.call_args.kwargs
        assert post.call_args.args[0] == config.OPENAI_REALTIME_CALLS_URL
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert kwargs["files"]["sdp"] == (None, "v=0 offer")
        session = json.loads(kwargs["files"]["session"][1])
        assert session["model"] == config.OPENAI_REALTIME_MODEL
        assert session["audio"]["output"]["voice"] == config.OPENAI_REALTIME_VOICE

    def test_empty_offer(self):
        with pytest.raises(ValidationError, match="SDP offer is required"):
            ai_service.create_realtime_session("  ")

    def test_upstream_error_keeps_status(self):
        response = MagicMock(ok=False, status_code=401, text="bad key")
        with patch.object(ai_service.requests, "post", return_value=response):
            with pytest.raises(ExternalServiceError) as exc_info:
                ai_service.create_realtime_session("v=0 offer")
        assert exc_info.value.status_code == 401


class TestVoiceSummary:
    def test_summary_request_events(self):
        events = ai_service.summary_request_events()
        assert events[0]["item"]["content"][0]["text"] == ai_service.SUMMARY_REQUEST_PROMPT
        assert events[1] == {"type": "response.create"}

    def test_extract_last_summary(self):
        events = [
            {"type": "response.output_audio_transcript.done", "transcript": "Hello, how are you?"},
            {"type": "response.output_audio_transcript.done", "transcript": "A first summary draft."},
            {"type": "session.updated"},
            {
                "type": "response.done",
                "response": {
                    "output": [
                        {"role": "assistant", "content": [{"type": "output_audio", "transcript": "Summary: rest and fluids."}]}
                    ]
                },
            },
        ]
        assert ai_service.extract_summary_from_events(events) == "Summary: rest and fluids."

    def test_user_items_ignored(self):
        events = [
            {"type": "conversation.item.created", "item": {"role": "user", "content": [{"text": "give me a summary"}]}},
        ]
        assert ai_service.extract_summary_from_events(events) is None

    def test_finish_uses_fallback(self, user):
        c = ai_service.create_consultation(user["id"], None, [], consultation_type="voice")
        res = ai_service.finish_voice_consultation(c["id"], [{"type": "response.text.done", "text": "Goodbye"}])
        assert res["conversation_summary"] == ai_service.SUMMARY_FALLBACK
        assert res["status"] == "completed"

    def test_finish_with_summary(self, user):
        c = ai_service.create_consultation(user["id"], None, [], consultation_type="voice")
        res = ai_service.finish_voice_consultation(
            c["id"], [{"type": "response.text.done", "text": "Here is your summary: hydrate."}]
        )
        assert res["conversation_summary"] == "Here is your summary: hydrate."

    def test_empty_summary_rejected(self, user):
        c = ai_service.create_consultation(user["id"], None, [], consultation_type="voice")
        with pytest.raises(ValidationError):
            ai_service.save_voice_summary(c["id"], " ")
