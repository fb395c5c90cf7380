"""
Receipt files attached to expenses.

Receipts live in a private bucket under ``user_{id}/{epoch_millis}_{filename}``
and are only ever handed out as time-limited signed URLs. Removing a receipt
that is no longer referenced is best-effort: failures are logged and never
fail the request that triggered them.
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Optional

from tripledger.storage import StorageClient

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class InvalidReceiptError(ValueError):
    """Raised when an uploaded receipt is empty, too large or of the wrong type."""


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def clean_filename(filename: str) -> str:
    # Browsers on Windows may send the full client path.
    base = os.path.basename(filename.replace("\\", "/")).strip()
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "receipt"


def build_receipt_key(user_id: int, filename: str, now: Optional[float] = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"user_{user_id}/{millis}_{clean_filename(filename)}"


def belongs_to_user(user_id: int, path: str) -> bool:
    """True when ``path`` is a single object directly under the user's prefix."""
    prefix = f"user_{user_id}/"
    if not path.startswith(prefix):
        return False
    name = path[len(prefix):]
    return bool(name) and "/" not in name and name not in (".", "..")


def validate_receipt(filename: Optional[str], data: bytes, max_bytes: int) -> None:
    if not filename:
        raise InvalidReceiptError("No file uploaded")
    ext = os.path.splitext(filename)[1].lower()
    if ext not in CONTENT_TYPES:
        allowed = ", ".join(sorted(CONTENT_TYPES))
        raise InvalidReceiptError(f"Unsupported receipt type; allowed: {allowed}")
    if not data:
        raise InvalidReceiptError("Uploaded file is empty")
    if len(data) > max_bytes:
        raise InvalidReceiptError(
            f"Receipt exceeds the {max_bytes // (1024 * 1024)} MB limit"
        )


def upload_receipt(
    storage: StorageClient,
    user_id: int,
    filename: str,
    data: bytes,
    *,
    max_bytes: int,
) -> str:
    """Validate and store a receipt, returning its storage path."""
    validate_receipt(filename, data, max_bytes)
    path = build_receipt_key(user_id, filename)
    storage.upload_bytes(path, data, content_type_for(filename))
    logger.info("Uploaded receipt %s (%d bytes)", path, len(data))
    return path


def discard_receipt(storage: StorageClient, path: Optional[str]) -> bool:
    """Delete a stored receipt, logging instead of raising on failure."""
    if not path:
        return False
    try:
        storage.delete(path)
    except Exception as exc:
        logger.warning("Failed to delete receipt %s: %s", path, exc)
        return False
    logger.info("Deleted receipt %s", path)
    return True


def replace_receipt(
    storage: StorageClient,
    user_id: int,
    old_path: Optional[str],
    filename: str,
    data: bytes,
    *,
    max_bytes: int,
) -> str:
    """
    Swap an expense's receipt: drop the superseded object, then upload the new
    one. The new file is validated before anything is deleted.
    """
    validate_receipt(filename, data, max_bytes)
    discard_receipt(storage, old_path)
    return upload_receipt(storage, user_id, filename, data, max_bytes=max_bytes)


def signed_receipt_url(storage: StorageClient, path: str, expires_in: int) -> str:
    return storage.presign_get(path, expires_in=expires_in)
