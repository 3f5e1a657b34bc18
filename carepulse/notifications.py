"""
Outgoing messages to patients and doctors.

Email goes through SMTP (STARTTLS). There is no SMS provider wired in:
SMS messages are logged so the admin can follow what would have been sent.
Neither function raises; callers treat delivery as best effort.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import config

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html: str, text: str | None = None) -> bool:
    if not config.SMTP_HOST or not config.SMTP_USER:
        logger.warning("Email notifications not configured, dropping '%s' to %s", subject, to)
        return False

    msg = MIMEMultipart("alternative")
    msg["From"] = f'"CarePulse" <{config.EMAIL_FROM or config.SMTP_USER}>'
    msg["To"] = to
    msg["Subject"] = subject
    if text:
        msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(html, "html"))

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
            server.starttls()
            server.login(config.SMTP_USER, config.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send email to %s: %s", to, e)
        return False

    logger.info("Email '%s' sent to %s", subject, to)
    return True


def send_sms(phone: str | None, message: str) -> bool:
    if not phone:
        logger.warning("No phone number, SMS not sent: %s", message)
        return False
    logger.info("Would send SMS to %s: %s", phone, message)
    return True


def password_reset_email(name: str, reset_url: str, expire_minutes: int) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #22c55e;">Password Reset Request</h2>
  <p>Hello {name},</p>
  <p>You requested to reset your password. Click the button below to reset it:</p>
  <a href="{reset_url}" style="display: inline-block; background-color: #22c55e; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px; margin: 20px 0;">Reset Password</a>
  <p>Or copy and paste this link into your browser:</p>
  <p style="color: #666; word-break: break-all;">{reset_url}</p>
  <p><strong>This link will expire in {expire_minutes} minutes.</strong></p>
  <p>If you didn't request this, please ignore this email.</p>
  <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">
  <p style="color: #999; font-size: 12px;">CarePulse - Healthcare Management System</p>
</div>
"""
