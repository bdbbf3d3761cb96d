"""
Authentication tests: bcrypt passwords and hashed bearer sessions.
"""

from datetime import timedelta

import pytest

from stockledger.errors import DuplicateError, ValidationError
from stockledger.models import SessionToken
from stockledger.services import auth_service, session_service
from stockledger.time_utils import utcnow


class TestAuthService:

    def test_password_is_hashed(self, user):
        assert user.password_hash != "Password123!"
        assert auth_service.verify_password("Password123!", user.password_hash)
        assert not auth_service.verify_password("wrong-password", user.password_hash)

    def test_short_password_rejected(self, db_session):
        with pytest.raises(ValidationError):
            auth_service.create_user("bob", "Bob", "short")

    def test_duplicate_username(self, user):
        with pytest.raises(DuplicateError):
            auth_service.create_user("clerk", "Other", "Password123!")

    def test_authenticate_records_login(self, user):
        assert auth_service.authenticate("clerk", "nope") is None
        authed = auth_service.authenticate("clerk", "Password123!")
        assert authed.id == user.id
        assert authed.last_login_at is not None


class TestSessions:

    def test_token_stored_hashed(self, db_session, user):
        session, token = session_service.create_session(user.id)
        assert session.token_hash == session_service.hash_token(token)
        assert db_session.query(SessionToken).filter_by(token_hash=token).count() == 0

    def test_expired_token_rejected(self, db_session, user):
        session, token = session_service.create_session(user.id)
        session.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_inactive_user_token_revoked(self, db_session, user):
        session, token = session_service.create_session(user.id)
        user.is_active = False
        db_session.commit()

        assert session_service.validate_session(token) is None
        db_session.refresh(session)
        assert session.is_revoked is True


class TestAuthRoutes:

    def test_login_me_logout(self, client, user):
        resp = client.post("/api/auth/login", json={"username": "clerk", "password": "Password123!"})
        assert resp.status_code == 200
        headers = {"Authorization": f"Bearer {resp.json['token']}"}

        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json["user"]["username"] == "clerk"

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_login_invalid_credentials(self, client, user):
        resp = client.post("/api/auth/login", json={"username": "clerk", "password": "bad-password"})
        assert resp.status_code == 401

    def test_login_missing_fields(self, client, db_session):
        resp = client.post("/api/auth/login", json={"username": "clerk"})
        assert resp.status_code == 400
