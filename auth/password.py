"""
Password hashing and verification (bcrypt).

The work factor comes from ``config.password_hash_rounds``; hashes made
with an older factor still verify.
"""

from __future__ import annotations

import bcrypt

from config.settings import config


def hash_password(password: str) -> str:
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt(rounds=config.password_hash_rounds)
    ).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check; malformed or empty hashes never match."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except (ValueError, TypeError):
        return False
