"""Auth and session service tests."""

from datetime import timedelta

import pytest

from posledger.extensions import db
from posledger.models import SessionToken
from posledger.services import auth_service, session_service
from posledger.services.auth_service import PasswordValidationError
from posledger.time_utils import utcnow


@pytest.mark.parametrize(
    "password",
    ["Sh0rt!", "alllower123!", "ALLUPPER123!", "NoDigits!!", "NoSpecial123"],
)
def test_weak_passwords_rejected(password):
    with pytest.raises(PasswordValidationError):
        auth_service.validate_password_strength(password)


def test_verify_password():
    hashed = auth_service.hash_password("Password123!", rounds=4)
    assert auth_service.verify_password("Password123!", hashed)
    assert not auth_service.verify_password("Password124!", hashed)
    assert not auth_service.verify_password("Password123!", "not-a-bcrypt-hash")
    assert not auth_service.verify_password("", hashed)


def test_authenticate_by_username_or_email(staff_user):
    assert auth_service.authenticate("staff", "Password123!").id == staff_user.id
    assert auth_service.authenticate(staff_user.email, "Password123!").id == staff_user.id
    assert auth_service.authenticate("staff", "Wrong123!") is None
    assert staff_user.last_login_at is not None


def test_inactive_user_cannot_authenticate(staff_user):
    staff_user.is_active = False
    db.session.commit()
    assert auth_service.authenticate("staff", "Password123!") is None


def test_create_user_rejects_duplicates_and_roles(staff_user):
    with pytest.raises(ValueError):
        auth_service.create_user("staff", "new@posledger.test", "Password123!")
    with pytest.raises(ValueError):
        auth_service.create_user("manager", "manager@posledger.test", "Password123!", role="Manager")


class TestSessions:

    def test_validate_and_revoke(self, staff_user):
        _, token = session_service.create_session(staff_user.id, user_agent="pytest")

        assert session_service.validate_session(token).id == staff_user.id
        assert session_service.revoke_session(token) is True
        assert session_service.validate_session(token) is None
        assert session_service.revoke_session(token) is False

    def test_idle_timeout_revokes(self, staff_user):
        session, token = session_service.create_session(staff_user.id)
        session.last_used_at = utcnow() - session_service.SESSION_IDLE_TIMEOUT - timedelta(minutes=1)
        db.session.commit()

        assert session_service.validate_session(token) is None
        assert db.session.get(SessionToken, session.id).revoked_reason == "Idle timeout"

    def test_expired_session(self, staff_user):
        session, token = session_service.create_session(staff_user.id)
        session.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        assert session_service.validate_session(token) is None

    def test_deactivated_user_session(self, staff_user):
        _, token = session_service.create_session(staff_user.id)
        staff_user.is_active = False
        db.session.commit()

        assert session_service.validate_session(token) is None

    def test_cleanup_removes_old_dead_sessions(self, staff_user):
        old, _ = session_service.create_session(staff_user.id)
        fresh, _ = session_service.create_session(staff_user.id)
        old.created_at = utcnow() - timedelta(days=40)
        old.expires_at = utcnow() - timedelta(days=39)
        db.session.commit()

        assert session_service.cleanup_expired_sessions() == 1
        assert db.session.get(SessionToken, fresh.id) is not None
