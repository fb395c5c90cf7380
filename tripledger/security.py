"""
Password hashing helpers.
"""

from __future__ import annotations

import bcrypt

# bcrypt only looks at the first 72 bytes of a password.
BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], salt).decode(
        "utf-8"
    )


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            password.encode("utf-8")[:BCRYPT_MAX_BYTES],
            password_hash.encode("utf-8"),
        )
    except ValueError:
        # Malformed hash in the database.
        return False
