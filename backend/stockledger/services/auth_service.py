# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every ledger movement, transaction and price change is attributed to a
user. Passwords are hashed with bcrypt; session tokens are handled in
session_service.py.
"""

import bcrypt
from flask import current_app, has_app_context

from ..extensions import db
from ..models import User
from ..errors import DuplicateError, ValidationError
from stockledger.time_utils import utcnow


MIN_PASSWORD_LENGTH = 8


def _rounds() -> int:
    if has_app_context():
        return current_app.config.get("BCRYPT_ROUNDS", 12)
    return 12


def hash_password(password: str) -> str:
    """Hash password using bcrypt (cost factor from BCRYPT_ROUNDS)."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    salt = bcrypt.gensalt(rounds=_rounds())
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt check; malformed hashes never verify."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(username: str, name: str, password: str) -> User:
    """
    Create a user with a bcrypt password hash.

    Raises DuplicateError if the username is taken.
    """
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise DuplicateError("Username already exists", details={"username": username})

    user = User(
        username=username,
        name=(name or username).strip(),
        password_hash=hash_password(password),
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the active user for valid credentials, else None."""
    user = db.session.query(User).filter(
        User.username == username,
        User.is_active.is_(True),
    ).first()
    if not user or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
