from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# SQLite file next to streamlit_app.py unless overridden
DATABASE_URL = os.getenv("CAREPULSE_DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'carepulse.sqlite'}")

# In production: set these in the environment
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
ADMIN_PASSKEY = os.getenv("ADMIN_PASSKEY", "")

RESET_TOKEN_EXPIRE_MINUTES = 15

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
OPENAI_REALTIME_MODEL = os.getenv("OPENAI_REALTIME_MODEL", "gpt-realtime-mini")
OPENAI_REALTIME_VOICE = os.getenv("OPENAI_REALTIME_VOICE", "verse")
OPENAI_REALTIME_CALLS_URL = "https://api.openai.com/v1/realtime/calls"

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", SMTP_USER)

# APP_URL: where users land (reset links, video rooms). PUBLIC_BASE_URL: this API.
APP_URL = os.getenv("APP_URL", "http://localhost:8501").rstrip("/")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(PROJECT_ROOT / "uploads")))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

REQUIRED_VARS = (
    "CAREPULSE_DATABASE_URL",
    "ADMIN_PASSKEY",
    "SMTP_HOST",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "OPENAI_API_KEY",
)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def check_environment() -> dict[str, list[str] | bool]:
    """Which of the required variables are set in the current environment."""
    present = [name for name in REQUIRED_VARS if os.getenv(name)]
    missing = [name for name in REQUIRED_VARS if not os.getenv(name)]
    return {"all_present": not missing, "present": present, "missing": missing}
