from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from . import config
from .db import db_session
from .errors import ConflictError, ValidationError
from .models import Role, User, utcnow
from .notifications import password_reset_email, send_email
from .security import hash_password, new_reset_token, verify_password

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists, a reset email has been sent."


def normalize_email(email: str) -> str:
    return email.strip().lower()


def user_flat(u: User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "phone": u.phone,
        "role": u.role.value,
        "created_at": u.created_at.isoformat(),
        "updated_at": u.updated_at.isoformat(),
    }


def sign_up(name: str, email: str, password: str, phone: str | None = None, role: str = "patient") -> dict:
    email = normalize_email(email)
    if not name.strip() or not email or not password:
        raise ValidationError("Name, email and password are required.")

    with db_session() as s:
        exists = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if exists:
            raise ConflictError("User with this email already exists")

        u = User(
            name=name.strip(),
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            role=Role(role),
        )
        s.add(u)
        s.flush()
        logger.info("User %s signed up as %s", u.id, u.role.value)
        return user_flat(u)


def authenticate(email: str, password: str) -> dict | None:
    email = normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u or not verify_password(password, u.password_hash):
            return None
        return user_flat(u)


def get_user_by_id(user_id: str) -> dict | None:
    with db_session() as s:
        u = s.get(User, user_id)
        return user_flat(u) if u else None


def get_user_by_email(email: str) -> dict | None:
    with db_session() as s:
        u = s.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()
        return user_flat(u) if u else None


# =========================
# Password reset
# =========================
def request_password_reset(email: str) -> str:
    """
    Issues a reset token and emails the link.
    The answer is the same whether or not the account exists.
    """
    with db_session() as s:
        u = s.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()
        if not u:
            return RESET_REQUESTED_MESSAGE

        u.reset_token = new_reset_token()
        u.reset_token_expiry = utcnow() + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES)
        name, to, token = u.name, u.email, u.reset_token

    reset_url = f"{config.APP_URL}/reset-password?token={token}"
    send_email(
        to=to,
        subject="Password Reset Request - CarePulse",
        html=password_reset_email(name, reset_url, config.RESET_TOKEN_EXPIRE_MINUTES),
    )
    return RESET_REQUESTED_MESSAGE


def verify_reset_token(token: str) -> tuple[bool, str]:
    """(True, user_id) for a usable token, (False, reason) otherwise."""
    if not token:
        return False, "Invalid or expired reset token."

    with db_session() as s:
        u = s.execute(select(User).where(User.reset_token == token)).scalar_one_or_none()
        if not u or not u.reset_token_expiry:
            return False, "Invalid or expired reset token."
        if utcnow() > u.reset_token_expiry:
            return False, "Reset token has expired."
        return True, u.id


def reset_password(token: str, new_password: str) -> str:
    if not new_password:
        raise ValidationError("Password is required.")

    valid, result = verify_reset_token(token)
    if not valid:
        raise ValidationError(result)

    with db_session() as s:
        u = s.get(User, result)
        u.password_hash = hash_password(new_password)
        u.reset_token = None
        u.reset_token_expiry = None

    logger.info("Password reset for user %s", result)
    return "Password reset successfully!"
