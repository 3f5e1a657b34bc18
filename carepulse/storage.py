"""
Uploaded files (identification documents, prescriptions) on local disk.

A file is addressed by its public id "<folder>/<uuid>_<name>", relative to
UPLOAD_DIR, and served back by the API under /files/<public id>.
"""
from __future__ import annotations

import base64
import logging
import mimetypes
import re
import uuid
from pathlib import Path

from . import config
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _root() -> Path:
    return Path(config.UPLOAD_DIR).resolve()


def _safe_name(name: str) -> str:
    name = _UNSAFE.sub("_", Path(name).name).strip("._")
    return name or "file"


def _resolve(public_id: str) -> Path:
    root = _root()
    path = (root / public_id).resolve()
    if root not in path.parents:
        raise ValidationError("Invalid file id.")
    return path


def upload_file(content: bytes, folder: str = "carepulse", filename: str | None = None) -> dict[str, str]:
    if not content:
        raise ValidationError("Empty file.")

    public_id = f"{_safe_name(folder)}/{uuid.uuid4().hex}_{_safe_name(filename or 'upload')}"
    path = _resolve(public_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)

    logger.info("Stored %d bytes as %s", len(content), public_id)
    return {"public_id": public_id, "url": file_url(public_id)}


def delete_file(public_id: str) -> bool:
    path = _resolve(public_id)
    if not path.exists():
        logger.warning("File %s already gone", public_id)
        return False
    path.unlink()
    logger.info("Deleted %s", public_id)
    return True


def file_url(public_id: str) -> str:
    return f"{config.PUBLIC_BASE_URL}/files/{public_id}"


def public_id_from_url(url: str) -> str | None:
    prefix = f"{config.PUBLIC_BASE_URL}/files/"
    return url[len(prefix):] if url.startswith(prefix) else None


def open_file(public_id: str) -> Path:
    path = _resolve(public_id)
    if not path.is_file():
        raise NotFoundError("File not found.")
    return path


def as_data_url(public_id: str) -> str:
    """data: URL of a stored file, for vendors that cannot reach this host."""
    path = open_file(public_id)
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"
