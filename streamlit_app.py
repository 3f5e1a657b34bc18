from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="CarePulse", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")

SPECIALIZATIONS = [
    "General Practitioner",
    "Cardiologist",
    "Dermatologist",
    "Neurologist",
    "Pediatrician",
    "Orthopedic Surgeon",
    "Psychiatrist",
    "Other",
]



# JWT helpers (UI only, signature not verified)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    p = jwt_payload(token)
    try:
        exp_int = int(p.get("exp"))
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)


def jwt_user(token: str) -> dict:
    p = jwt_payload(token)
    return {"id": p.get("sub"), "name": p.get("name") or "user", "email": p.get("email"), "role": p.get("role")}



# HTTP client (with JWT)

def _headers(token: str | None, passkey: str | None = None) -> dict:
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if passkey:
        headers["X-Admin-Passkey"] = passkey
    return headers


def _check(r: requests.Response) -> None:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (invalid or expired token, or the backend restarted).")
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail")
        except ValueError:
            detail = r.text
        raise RuntimeError(str(detail) if detail else f"HTTP {r.status_code}")


def api_get(path: str, token: str | None = None, params: dict | None = None, passkey: str | None = None) -> dict | list:
    r = requests.get(f"{API_BASE}{path}", headers=_headers(token, passkey), params=params, timeout=10)
    _check(r)
    return r.json()


def api_post(path: str, payload: dict, token: str | None = None, passkey: str | None = None) -> dict:
    r = requests.post(f"{API_BASE}{path}", headers=_headers(token, passkey), json=payload, timeout=60)
    _check(r)
    return r.json()


def api_patch(path: str, payload: dict, token: str | None = None, passkey: str | None = None) -> dict:
    r = requests.patch(f"{API_BASE}{path}", headers=_headers(token, passkey), json=payload, timeout=10)
    _check(r)
    return r.json()


def api_upload(path: str, filename: str, content: bytes, data: dict, token: str) -> dict:
    r = requests.post(
        f"{API_BASE}{path}",
        headers=_headers(token),
        files={"file": (filename, content)},
        data=data,
        timeout=30,
    )
    _check(r)
    return r.json()


def api_login(email: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded, "username" carries the email
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": email, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str) and len(token) > 0


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.session_state.pop("consultation", None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Restricted section. Log in from the sidebar.")
        return None

    if jwt_is_expired(token):
        st.error("Session expired. Log out from the sidebar and log in again.")
        return None

    return token


def session_error(e: PermissionError) -> None:
    st.session_state["auth_error"] = str(e)
    st.error("Invalid session. Press Logout and log in again.")



# Sidebar login / sign-up

with st.sidebar:
    st.header("Access")

    token = st.session_state.get("token")

    if not is_logged_in():
        mode = st.radio("Mode", ["Login", "Sign up", "Forgot password"], horizontal=True, key="auth_mode")

        if mode == "Login":
            u = st.text_input("Email", key="login_user")
            p = st.text_input("Password", type="password", key="login_pass")

            if st.button("Login", key="login_btn"):
                try:
                    st.session_state["token"] = api_login(u.strip().lower(), p)
                    st.session_state.pop("auth_error", None)
                    st.success("Logged in.")
                    st.rerun()
                except requests.HTTPError:
                    st.error("Invalid credentials.")
                except requests.RequestException as e:
                    st.error(str(e))

        elif mode == "Sign up":
            name = st.text_input("Full name", key="su_name")
            email = st.text_input("Email", key="su_email")
            phone = st.text_input("Phone (+...)", key="su_phone")
            pw = st.text_input("Password", type="password", key="su_pass")

            if st.button("Create account", key="su_btn"):
                try:
                    api_post(
                        "/api/auth/register",
                        {"name": name.strip(), "email": email.strip(), "password": pw, "phone": phone.strip() or None},
                    )
                    st.session_state["token"] = api_login(email.strip().lower(), pw)
                    st.rerun()
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))

        else:
            email = st.text_input("Email", key="fp_email")
            if st.button("Send reset link", key="fp_btn"):
                try:
                    st.info(api_post("/api/auth/forgot-password", {"email": email.strip()})["message"])
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))

            reset_token = st.text_input("Reset token", key="rp_token")
            new_pw = st.text_input("New password", type="password", key="rp_pass")
            if st.button("Reset password", key="rp_btn"):
                try:
                    st.success(api_post("/api/auth/reset-password", {"token": reset_token, "new_password": new_pw})["message"])
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))
    else:
        # user info from the token, no /api/me round trip on every rerun
        me = jwt_user(token)
        st.write(f"User: **{me['name']}** ({me['role']})")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("CarePulse")

tab1, tab2, tab3, tab4, tab5, tab6 = st.tabs(
    ["My profile", "Book appointment", "Appointments", "Prescriptions", "AI consultation", "Admin"]
)



# Public data

@st.cache_data(ttl=10)
def load_doctors(specialization: str | None = None) -> list[dict]:
    params = {"specialization": specialization} if specialization else None
    return api_get("/api/doctors", params=params)["documents"]  # public


def load_patient(token: str, user_id: str) -> dict | None:
    try:
        return api_get(f"/api/patients/{user_id}", token=token)
    except RuntimeError:
        return None



# TAB 1 - Patient profile (PROTECTED)

with tab1:
    st.subheader("Patient profile")

    token = require_auth()
    if token:
        me = jwt_user(token)
        try:
            patient = load_patient(token, me["id"])
        except PermissionError as e:
            session_error(e)
            patient = None

        if patient:
            st.write(f"**{patient['name']}** | {patient['email']} | {patient['phone']}")
            st.write(f"Born {patient['birth_date']} | {patient['gender']} | {patient['address']}")
            st.write(f"Insurance: {patient['insurance_provider']} ({patient['insurance_policy_number']})")

            doc = st.file_uploader("Identification document", key="pat_doc")
            if doc and st.button("Upload document", key="pat_doc_btn"):
                try:
                    api_upload(f"/api/patients/{me['id']}/identification", doc.name, doc.getvalue(), {}, token)
                    st.success("Document uploaded.")
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))
        else:
            st.info("Complete your registration to book appointments.")
            c1, c2 = st.columns(2)
            phone = c1.text_input("Phone (+...)", key="reg_phone")
            birth_date = c2.date_input("Birth date", value=date(1990, 1, 1), key="reg_birth")
            gender = c1.selectbox("Gender", ["Male", "Female", "Other"], key="reg_gender")
            address = c2.text_input("Address", key="reg_address")
            occupation = c1.text_input("Occupation", key="reg_occupation")
            ec_name = c2.text_input("Emergency contact name", key="reg_ec_name")
            ec_number = c1.text_input("Emergency contact number (+...)", key="reg_ec_number")
            ins_provider = c2.text_input("Insurance provider", key="reg_ins_provider")
            ins_policy = c1.text_input("Insurance policy number", key="reg_ins_policy")
            allergies = c2.text_input("Allergies (optional)", key="reg_allergies")
            medication = st.text_area("Current medication (optional)", key="reg_medication")

            treatment = st.checkbox("I consent to receive treatment for my health condition.", key="reg_c1")
            disclosure = st.checkbox("I consent to the use and disclosure of my health information.", key="reg_c2")
            privacy = st.checkbox("I acknowledge that I have reviewed and agree to the privacy policy.", key="reg_c3")

            if st.button("Register", key="reg_btn"):
                payload = {
                    "name": me["name"],
                    "email": me["email"],
                    "phone": phone.strip(),
                    "birth_date": birth_date.isoformat(),
                    "gender": gender,
                    "address": address,
                    "occupation": occupation,
                    "emergency_contact_name": ec_name,
                    "emergency_contact_number": ec_number.strip(),
                    "insurance_provider": ins_provider,
                    "insurance_policy_number": ins_policy,
                    "allergies": allergies or None,
                    "current_medication": medication or None,
                    "treatment_consent": treatment,
                    "disclosure_consent": disclosure,
                    "privacy_consent": privacy,
                }
                try:
                    api_post("/api/patients/register", payload, token=token)
                    st.success("Registration completed.")
                    st.rerun()
                except PermissionError as e:
                    session_error(e)
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))



# TAB 2 - Booking (PROTECTED)

with tab2:
    st.subheader("Book an appointment")

    token = require_auth()
    if token:
        me = jwt_user(token)
        patient = load_patient(token, me["id"])

        if not patient:
            st.info("Register as a patient first (My profile).")
        else:
            wanted = st.selectbox("Specialization", ["All"] + SPECIALIZATIONS, key="book_spec")
            try:
                doctors = load_doctors(None if wanted == "All" else wanted)
            except (RuntimeError, requests.RequestException) as e:
                st.error(f"API unreachable or error: {e}")
                doctors = []

            colA, colB = st.columns(2)
            with colA:
                doctor = st.selectbox(
                    "Doctor",
                    options=doctors,
                    format_func=lambda d: f"Dr. {d['name']} ({d['specialization']}, fee {d['consultation_fee']})",
                    key="book_doctor",
                )
                kind = st.radio("Type", ["offline", "online"], horizontal=True, key="book_type")
                if doctor:
                    timings = doctor[f"available_timings_{kind}"]
                    st.caption("Available: " + (", ".join(timings) or "-"))

            with colB:
                day = st.date_input("Date", value=date.today(), key="book_date")
                at = st.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0), key="book_time")
                reason = st.text_area("Reason", height=80, key="book_reason")
                note = st.text_input("Note (optional)", key="book_note")

            if st.button("Submit appointment", key="book_submit", disabled=not doctor):
                payload = {
                    "user_id": me["id"],
                    "patient_id": patient["id"],
                    "doctor_id": doctor["id"],
                    "doctor_name": doctor["name"],
                    "schedule": datetime.combine(day, at).isoformat(),
                    "reason": reason,
                    "note": note or None,
                    "appointment_type": kind,
                }
                try:
                    res = api_post("/api/appointments", payload, token=token)
                    st.success(f"Appointment requested (ID: {res['id']}), waiting for confirmation.")
                except PermissionError as e:
                    session_error(e)
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))



# TAB 3 - Appointments (PROTECTED)

with tab3:
    st.subheader("My appointments")

    token = require_auth()
    if token:
        me = jwt_user(token)
        try:
            res = api_get(f"/api/users/{me['id']}/appointments", token=token)
            c1, c2, c3 = st.columns(3)
            c1.metric("Scheduled", res["scheduled_count"])
            c2.metric("Pending", res["pending_count"])
            c3.metric("Cancelled", res["cancelled_count"])

            if not res["documents"]:
                st.info("No appointments yet.")
            for a in res["documents"]:
                line = f"- **{a['schedule']}** | Dr. {a['doctor_name']} | {a['appointment_type']} | {a['status']}"
                if a["meeting"]:
                    line += f" | [join]({a['meeting']})"
                if a["cancellation_reason"]:
                    line += f" | reason: {a['cancellation_reason']}"
                st.write(line)
        except PermissionError as e:
            session_error(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Appointments error: {e}")



# TAB 4 - Prescriptions (PROTECTED)

with tab4:
    st.subheader("Prescriptions")

    token = require_auth()
    if token:
        me = jwt_user(token)
        up = st.file_uploader("Upload a prescription (image or PDF)", key="rx_file")
        if up and st.button("Upload", key="rx_btn"):
            try:
                api_upload("/api/upload-prescription", up.name, up.getvalue(), {"user_id": me["id"]}, token)
                st.success("Prescription uploaded.")
            except PermissionError as e:
                session_error(e)
            except (RuntimeError, requests.RequestException) as e:
                st.error(str(e))

        try:
            items = api_get(f"/api/users/{me['id']}/prescriptions", token=token)["documents"]
            for p in items:
                st.write(f"- [{p['file_id'].split('/')[-1]}]({p['prescription_url']}) | {p['uploaded_at']}")
            st.session_state["rx_urls"] = [p["prescription_url"] for p in items]
        except PermissionError as e:
            session_error(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Prescriptions error: {e}")



# TAB 5 - AI consultation (PROTECTED)

with tab5:
    st.subheader("AI pre-consultation")

    token = require_auth()
    if token:
        me = jwt_user(token)
        consultation = st.session_state.get("consultation")

        if not consultation:
            urls = st.session_state.get("rx_urls", [])
            chosen = st.multiselect("Prescriptions to share", urls, default=urls, key="ai_urls")
            if st.button("Start consultation", key="ai_start"):
                try:
                    patient = load_patient(token, me["id"])
                    c = api_post(
                        "/api/ai/consultations",
                        {"user_id": me["id"], "patient_id": patient["id"] if patient else None, "prescription_urls": chosen},
                        token=token,
                    )
                    if chosen:
                        api_post(f"/api/ai/consultations/{c['id']}/analyze", {}, token=token)
                    st.session_state["consultation"] = c["id"]
                    st.rerun()
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))
        else:
            try:
                c = api_get(f"/api/ai/consultations/{consultation}", token=token)
                for m in c["conversation_history"]:
                    with st.chat_message(m["role"]):
                        st.write(m["content"])

                if c["status"] == "completed":
                    st.success("Consultation completed.")
                    st.json(c["extracted_info"] or {})
                    if st.button("New consultation", key="ai_new"):
                        st.session_state.pop("consultation", None)
                        st.rerun()
                else:
                    msg = st.chat_input("Describe your symptoms")
                    if msg:
                        api_post(f"/api/ai/consultations/{consultation}/messages", {"message": msg}, token=token)
                        st.rerun()
                    if st.button("Finish and summarise", key="ai_done"):
                        api_post(f"/api/ai/consultations/{consultation}/complete", {}, token=token)
                        st.rerun()
            except PermissionError as e:
                session_error(e)
            except (RuntimeError, requests.RequestException) as e:
                st.error(str(e))



# TAB 6 - Admin (passkey)

with tab6:
    st.subheader("Admin dashboard")

    passkey = st.text_input("Admin passkey", type="password", key="admin_passkey")
    if passkey:
        try:
            dash = api_get("/api/admin/dashboard", passkey=passkey)
            c1, c2, c3, c4 = st.columns(4)
            c1.metric("Scheduled", dash["scheduled_count"])
            c2.metric("Pending", dash["pending_count"])
            c3.metric("Cancelled", dash["cancelled_count"])
            c4.metric("Doctors to verify", dash["doctors_unverified"])

            st.write("Appointments:")
            for a in dash["appointments"]:
                cols = st.columns([5, 1, 2, 1])
                cols[0].write(f"{a['schedule']} | {a['patient_name']} -> Dr. {a['doctor_name']} | {a['status']}")
                if a["status"] != "scheduled" and cols[1].button("Schedule", key=f"sch_{a['id']}"):
                    api_patch(
                        f"/api/admin/appointments/{a['id']}",
                        {"user_id": a["user_id"], "type": "schedule", "appointment": {}},
                        passkey=passkey,
                    )
                    st.rerun()
                reason = cols[2].text_input("Reason", key=f"rs_{a['id']}", label_visibility="collapsed")
                if a["status"] != "cancelled" and cols[3].button("Cancel", key=f"cn_{a['id']}"):
                    api_patch(
                        f"/api/admin/appointments/{a['id']}",
                        {"user_id": a["user_id"], "type": "cancel", "appointment": {"cancellation_reason": reason}},
                        passkey=passkey,
                    )
                    st.rerun()

            st.divider()
            st.write("Doctors:")
            for d in dash["doctors"]:
                cols = st.columns([6, 1])
                cols[0].write(f"Dr. {d['name']} | {d['specialization']} | {d['license_number']} | verified: {d['is_verified']}")
                if not d["is_verified"] and cols[1].button("Verify", key=f"vd_{d['id']}"):
                    api_post(f"/api/admin/doctors/{d['id']}/verify", {}, passkey=passkey)
                    st.rerun()
        except PermissionError as e:
            st.error(str(e))
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Admin error: {e}")
