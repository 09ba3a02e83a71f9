# Overview: Service-layer operations for session tokens; issue, validate and revoke bearer tokens.

"""
Bearer sessions for the register API.

The client only ever sees the random token; the table keeps its SHA-256
digest. A session dies at whichever comes first: 24 hours after login,
2 hours without a request, logout, or the user being deactivated.
"""

import hashlib
import secrets
from datetime import timedelta

from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
SESSION_IDLE_TIMEOUT = timedelta(hours=2)
SESSION_RETENTION = timedelta(days=30)


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Digest stored in place of the token; tokens carry enough entropy for a plain hash."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _live_session(token: str) -> SessionToken | None:
    return db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token), is_revoked=False
    ).first()


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Open a session for an active user.

    Returns (session_record, plaintext_token); the plaintext is not kept.
    Raises ValueError for unknown or inactive users.
    """
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise ValueError("User not found or inactive")

    token = generate_token()
    opened = utcnow()
    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(token),
        created_at=opened,
        last_used_at=opened,
        expires_at=opened + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def validate_session(token: str) -> User | None:
    """Return the session's user and touch last_used_at, or None when the session is dead."""
    session = _live_session(token)
    if session is None:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None
    if now - session.last_used_at > SESSION_IDLE_TIMEOUT:
        _revoke(session, "Idle timeout")
        return None
    if session.user is None or not session.user.is_active:
        _revoke(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()
    return session.user


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """True when a live session was revoked, False when there was nothing to revoke."""
    session = _live_session(token)
    if session is None:
        return False
    _revoke(session, reason)
    return True


def cleanup_expired_sessions() -> int:
    """Delete dead sessions created more than SESSION_RETENTION ago; returns how many."""
    now = utcnow()
    dead = db.or_(SessionToken.expires_at < now, SessionToken.is_revoked.is_(True))
    deleted = db.session.query(SessionToken).filter(
        dead, SessionToken.created_at < now - SESSION_RETENTION
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
