from __future__ import annotations

import logging

from sqlalchemy import select

from . import config
from .db import db_session
from .models import Doctor, Role, Specialization, User
from .security import hash_password

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@carepulse.com"

SAMPLE_DOCTORS = [
    ("John Green", "john.green@carepulse.com", "+15550000001", Specialization.GENERAL_PRACTITIONER, "Monday 09:00"),
    ("Leila Cameron", "leila.cameron@carepulse.com", "+15550000002", Specialization.CARDIOLOGIST, "Tuesday 10:30"),
    ("David Livingston", "david.livingston@carepulse.com", "+15550000003", Specialization.DERMATOLOGIST, "Friday 14:00"),
]


def seed_base() -> None:
    """
    Minimal data (idempotent):
    - admin user, only when ADMIN_PASSKEY is set (the passkey is its password)
    - verified sample doctors, each able to log in with its phone number
    """
    with db_session() as s:
        if config.ADMIN_PASSKEY:
            if s.execute(select(User).where(User.email == ADMIN_EMAIL)).scalar_one_or_none() is None:
                s.add(
                    User(
                        name="Admin",
                        email=ADMIN_EMAIL,
                        role=Role.ADMIN,
                        password_hash=hash_password(config.ADMIN_PASSKEY),
                    )
                )
                logger.info("Seeded admin user %s", ADMIN_EMAIL)

        for name, email, phone, specialization, timing in SAMPLE_DOCTORS:
            if s.execute(select(Doctor).where(Doctor.email == email)).scalar_one_or_none() is not None:
                continue

            u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if u is None:
                u = User(name=name, email=email, phone=phone, role=Role.DOCTOR, password_hash=hash_password(phone))
                s.add(u)
                s.flush()

            s.add(
                Doctor(
                    user_id=u.id,
                    name=name,
                    email=email,
                    phone=phone,
                    specialization=specialization,
                    license_number=f"LIC-{phone[-5:]}",
                    years_of_experience="10",
                    hospital_affiliation="CarePulse Clinic",
                    consultation_fee="100",
                    available_timings_online=[timing],
                    available_timings_offline=[timing],
                    is_verified=True,
                )
            )
            logger.info("Seeded doctor %s", name)
