"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from tripledger.config import get_settings
from tripledger.db import IN_MEMORY_SQLITE_URL, DbClient, UserRecord
from tripledger.storage import InMemoryStorageClient, S3StorageClient, StorageClient

logger = logging.getLogger(__name__)

# The signed cookie only carries this opaque id; the session itself lives in
# the database so that logout and password changes can end it.
SESSION_ID_KEY = "session_id"

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so the connection pool is shared across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory SQLite database")
        _db_client = DbClient(IN_MEMORY_SQLITE_URL)
    else:
        _db_client = DbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if (
        settings.use_in_memory_backends
        or not settings.aws_access_key_id
        or not settings.aws_secret_access_key
    ):
        logger.info("Using in-memory receipt storage")
        _storage_client = InMemoryStorageClient()
    else:
        client = S3StorageClient(
            bucket=settings.s3_bucket,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
        )
        client.ensure_bucket()
        _storage_client = client
    return _storage_client


def reset_clients() -> None:
    """Drop cached clients (used by tests and after settings change)."""
    global _db_client, _storage_client
    _db_client = None
    _storage_client = None


def get_current_user(
    request: Request, db: DbClient = Depends(get_db_client)
) -> UserRecord:
    token = request.session.get(SESSION_ID_KEY)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user_id = db.get_session_user_id(token)
    user = db.get_user(user_id) if user_id is not None else None
    if not user:
        # Session no longer valid.
        db.delete_session(token)
        request.session.clear()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user
