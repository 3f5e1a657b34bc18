from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from carepulse.auth_service import (
    RESET_REQUESTED_MESSAGE,
    authenticate,
    get_user_by_email,
    request_password_reset,
    reset_password,
    sign_up,
    verify_reset_token,
)
from carepulse.db import db_session
from carepulse.errors import ConflictError, ValidationError
from carepulse.models import User, utcnow
from carepulse.security import check_admin_passkey, create_access_token, get_subject


def _reset_token(email: str) -> str:
    with db_session() as s:
        return s.execute(select(User.reset_token).where(User.email == email)).scalar_one()


class TestSignUp:
    def test_sign_up_and_authenticate(self):
        u = sign_up("Jane Doe", "Jane@Mail.com", "secret123")
        assert u["email"] == "jane@mail.com"
        assert u["role"] == "patient"

        assert authenticate("jane@mail.com", "secret123")["id"] == u["id"]
        assert authenticate("JANE@mail.com", "secret123") is not None
        assert authenticate("jane@mail.com", "wrong") is None
        assert authenticate("nobody@mail.com", "secret123") is None

    def test_duplicate_email(self):
        sign_up("Jane Doe", "jane@mail.com", "secret123")
        with pytest.raises(ConflictError, match="already exists"):
            sign_up("Jane Again", "JANE@mail.com", "other123")

    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            sign_up("  ", "jane@mail.com", "secret123")

    def test_password_is_hashed(self):
        sign_up("Jane Doe", "jane@mail.com", "secret123")
        with db_session() as s:
            stored = s.execute(select(User.password_hash)).scalar_one()
        assert stored != "secret123"


class TestTokens:
    def test_access_token_roundtrip_subject(self):
        token = create_access_token("user-1", extra={"role": "admin"})
        assert get_subject(token) == "user-1"

    def test_garbage_token(self):
        assert get_subject("not.a.token") is None

    def test_admin_passkey(self):
        assert check_admin_passkey("123456")
        assert not check_admin_passkey("654321")
        assert not check_admin_passkey(None)
        # an unset passkey never matches
        assert not check_admin_passkey("", expected="")
        assert not check_admin_passkey("anything", expected="")


class TestPasswordReset:
    def test_unknown_email_gets_neutral_answer(self):
        with patch("carepulse.auth_service.send_email") as send:
            assert request_password_reset("nobody@mail.com") == RESET_REQUESTED_MESSAGE
        send.assert_not_called()

    def test_full_reset_flow(self):
        sign_up("Jane Doe", "jane@mail.com", "secret123")
        with patch("carepulse.auth_service.send_email") as send:
            assert request_password_reset("jane@mail.com") == RESET_REQUESTED_MESSAGE

        token = _reset_token("jane@mail.com")
        assert len(token) == 64
        send.assert_called_once()
        assert f"http://app.test/reset-password?token={token}" in send.call_args.kwargs["html"]

        valid, user_id = verify_reset_token(token)
        assert valid
        assert user_id == get_user_by_email("jane@mail.com")["id"]

        assert reset_password(token, "newpass123") == "Password reset successfully!"
        assert authenticate("jane@mail.com", "newpass123") is not None
        assert authenticate("jane@mail.com", "secret123") is None

        # single use
        assert verify_reset_token(token) == (False, "Invalid or expired reset token.")

    def test_expired_token(self):
        sign_up("Jane Doe", "jane@mail.com", "secret123")
        with patch("carepulse.auth_service.send_email"):
            request_password_reset("jane@mail.com")
        token = _reset_token("jane@mail.com")

        with db_session() as s:
            u = s.execute(select(User).where(User.email == "jane@mail.com")).scalar_one()
            u.reset_token_expiry = utcnow() - timedelta(minutes=1)

        assert verify_reset_token(token) == (False, "Reset token has expired.")
        with pytest.raises(ValidationError, match="expired"):
            reset_password(token, "newpass123")

    def test_bad_token(self):
        assert verify_reset_token("")[0] is False
        with pytest.raises(ValidationError):
            reset_password("deadbeef", "newpass123")


def test_utcnow_is_naive_utc():
    now = utcnow()
    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
