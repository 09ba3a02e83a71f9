# Overview: Service-layer operations for auth; password hashing, user creation and credential checks.

"""
Authentication Service

Every ledger row is attributed to a user, so every action needs a login.
Passwords are hashed with bcrypt; sessions live in session_service.py.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with upper, lower, digit and special character
- Admin re-confirmation (void approval) goes through verify_password
"""

import re

import bcrypt

from ..extensions import db
from ..models import User, ROLES
from ..time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when a password is too weak to hash."""


MIN_PASSWORD_LENGTH = 8

# (pattern, what is missing)
_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[!@#$%^&*(),.'\":{}|<>]"), "a special character"),
)


def validate_password_strength(password: str) -> None:
    """Raise PasswordValidationError naming the first rule the password breaks."""
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    for pattern, missing in _PASSWORD_RULES:
        if not pattern.search(password):
            raise PasswordValidationError(f"Password must contain at least {missing}")


def hash_password(password: str, *, rounds: int = 12) -> str:
    """Hash password using bcrypt after validating its strength."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. A malformed hash counts as a mismatch.
    """
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(username: str, email: str, password: str, role: str = "Staff") -> User:
    """
    Create a cashier account; the password is hashed before anything is stored.

    Raises:
        ValueError: unknown role, or username/email already taken
        PasswordValidationError: password doesn't meet requirements
    """
    if role not in ROLES:
        raise ValueError(f"Role must be one of: {', '.join(ROLES)}")

    clash = db.session.query(User.id).filter(
        db.or_(User.username == username, User.email == email)
    ).first()
    if clash is not None:
        raise ValueError("Username or email already exists")

    user = User(username=username, email=email, role=role,
                password_hash=hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(login: str, password: str) -> User | None:
    """Resolve an active user by username or email and check the password."""
    user = db.session.query(User).filter(
        db.or_(User.username == login, User.email == login),
        User.is_active.is_(True),
    ).first()
    if user is None or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
