from __future__ import annotations

import os
import uuid
from dataclasses import dataclass

from werkzeug.datastructures import FileStorage

from app.formtrack.storage import Storage

ALLOWED_EXTENSIONS = frozenset(
    {
        ".jpg", ".jpeg", ".png", ".gif", ".webp",  # images
        ".pdf", ".doc", ".docx", ".xls", ".xlsx",  # documents
        ".txt", ".csv",  # text
    }
)
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
UPLOAD_PREFIX = "uploads"
PUBLIC_URL_PREFIX = "/uploads/"


class UploadError(ValueError):
    pass


@dataclass(frozen=True)
class StoredUpload:
    url: str
    filename: str
    storage_key: str
    size_bytes: int


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def validate_upload(filename: str, size_bytes: int, *, max_bytes: int = DEFAULT_MAX_BYTES) -> str:
    """Returns the normalised extension or raises UploadError."""
    if size_bytes > max_bytes:
        raise UploadError(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
    ext = file_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise UploadError("File type not allowed")
    return ext


def storage_key_for(stored_name: str) -> str:
    return f"{UPLOAD_PREFIX}/{stored_name}"


def is_valid_stored_name(name: str) -> bool:
    stem, ext = os.path.splitext(name or "")
    if ext.lower() not in ALLOWED_EXTENSIONS:
        return False
    try:
        uuid.UUID(stem)
    except ValueError:
        return False
    return True


def save_upload(storage: Storage, f: FileStorage | None, *, max_bytes: int = DEFAULT_MAX_BYTES) -> StoredUpload:
    """
    Validate and persist one uploaded file under a random UUID name.
    The original filename is only echoed back, never used on disk.
    """
    if f is None or not f.filename:
        raise UploadError("No file provided")
    data = f.read()
    ext = validate_upload(f.filename, len(data), max_bytes=max_bytes)
    stored_name = f"{uuid.uuid4()}{ext}"
    key = storage_key_for(stored_name)
    storage.put_bytes(key, data, content_type=(f.mimetype or "application/octet-stream"))
    return StoredUpload(
        url=f"{PUBLIC_URL_PREFIX}{stored_name}",
        filename=f.filename,
        storage_key=key,
        size_bytes=len(data),
    )
