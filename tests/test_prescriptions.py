from datetime import datetime
from pathlib import Path

import pytest

from carepulse import config, storage
from carepulse.errors import NotFoundError, ValidationError
from carepulse.services import (
    create_appointment,
    delete_patient,
    delete_prescription,
    get_appointment,
    list_all_prescriptions,
    list_prescriptions_by_appointment,
    list_prescriptions_by_user,
    update_prescription,
    upload_prescription,
)
from carepulse.validation import AppointmentIn


@pytest.fixture
def appointment(make_patient, make_doctor):
    user, patient = make_patient()
    doctor = make_doctor()
    a = create_appointment(
        AppointmentIn(
            user_id=user["id"],
            patient_id=patient["id"],
            doctor_id=doctor["id"],
            schedule=datetime(2030, 1, 1, 10, 0),
            reason="Follow up",
        )
    )
    return user, a


class TestStorage:
    def test_upload_and_open(self):
        res = storage.upload_file(b"hello", "prescriptions", "../../etc/passwd")
        assert res["public_id"].startswith("prescriptions/")
        assert res["public_id"].endswith("_passwd")
        assert storage.open_file(res["public_id"]).read_bytes() == b"hello"
        assert storage.public_id_from_url(res["url"]) == res["public_id"]

    def test_empty_file(self):
        with pytest.raises(ValidationError):
            storage.upload_file(b"", "prescriptions", "x.png")

    def test_path_escape_rejected(self):
        with pytest.raises(ValidationError):
            storage.open_file("../outside.txt")

    def test_missing_file(self):
        with pytest.raises(NotFoundError):
            storage.open_file("prescriptions/nope.png")
        assert storage.delete_file("prescriptions/nope.png") is False

    def test_data_url(self):
        res = storage.upload_file(b"\x89PNG", "prescriptions", "scan.png")
        assert storage.as_data_url(res["public_id"]).startswith("data:image/png;base64,")

    def test_foreign_url_has_no_public_id(self):
        assert storage.public_id_from_url("https://elsewhere.test/files/x.png") is None


class TestPrescriptions:
    def test_upload_for_user(self, make_patient):
        user, _ = make_patient()
        p = upload_prescription(b"rx", "rx.jpg", user["id"])
        assert p["appointment_id"] is None
        assert p["prescription_url"] == f"http://api.test/files/{p['file_id']}"
        assert (Path(config.UPLOAD_DIR) / p["file_id"]).read_bytes() == b"rx"

        res = list_prescriptions_by_user(user["id"])
        assert res["total_count"] == 1
        assert list_all_prescriptions()["total_count"] == 1

    def test_upload_for_appointment(self, appointment):
        user, a = appointment
        p = upload_prescription(b"rx", "rx.jpg", user["id"], appointment_id=a["id"])
        assert list_prescriptions_by_appointment(a["id"])["documents"][0]["id"] == p["id"]
        assert [x["id"] for x in get_appointment(a["id"])["prescriptions"]] == [p["id"]]

    def test_unknown_owner(self, appointment):
        user, _ = appointment
        with pytest.raises(NotFoundError):
            upload_prescription(b"rx", "rx.jpg", "missing")
        with pytest.raises(NotFoundError):
            upload_prescription(b"rx", "rx.jpg", user["id"], appointment_id="missing")

    def test_update_url(self, make_patient):
        user, _ = make_patient()
        p = upload_prescription(b"rx", "rx.jpg", user["id"])
        assert update_prescription(p["id"], "https://cdn.test/new.jpg")["prescription_url"] == "https://cdn.test/new.jpg"
        with pytest.raises(ValidationError):
            update_prescription(p["id"], "  ")

    def test_delete_removes_file(self, make_patient):
        user, _ = make_patient()
        p = upload_prescription(b"rx", "rx.jpg", user["id"])
        path = Path(config.UPLOAD_DIR) / p["file_id"]

        assert delete_prescription(p["id"]) is True
        assert not path.exists()
        assert list_prescriptions_by_user(user["id"])["total_count"] == 0
        with pytest.raises(NotFoundError):
            delete_prescription(p["id"])

    def test_prescription_outlives_appointment(self, appointment):
        user, a = appointment
        upload_prescription(b"rx", "rx.jpg", user["id"], appointment_id=a["id"])

        delete_patient(user["id"])

        assert get_appointment(a["id"]) is None
        docs = list_prescriptions_by_user(user["id"])["documents"]
        assert len(docs) == 1
        assert docs[0]["appointment_id"] is None
