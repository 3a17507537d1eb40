"""Tests for password login and bearer tokens."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from edu_billing.domain.models import Role
from edu_billing.services.user_service import UserService

from .factories import JWT_SECRET


@pytest.fixture
def user_service(users):
    return UserService(users, jwt_secret=JWT_SECRET)


class TestRegistration:
    def test_register_and_authenticate(self, user_service):
        user = user_service.register("Parent@Example.com", "long-enough-pw", role=Role.PARENT)

        assert user.role is Role.PARENT
        assert user_service.authenticate("parent@example.com", "long-enough-pw").id == user.id
        assert user_service.authenticate("parent@example.com", "wrong-password") is None
        assert user_service.authenticate("nobody@example.com", "long-enough-pw") is None

    def test_duplicate_email(self, user_service):
        user_service.register("a@example.com", "long-enough-pw")

        with pytest.raises(ValueError):
            user_service.register("A@example.com", "another-password")

    @pytest.mark.parametrize("password", ["", "short", "x" * 73])
    def test_password_length(self, user_service, password):
        with pytest.raises(ValueError):
            user_service.register("a@example.com", password)


class TestTokens:
    def test_token_round_trip(self, user_service):
        user = user_service.register("a@example.com", "long-enough-pw")

        token = user_service.create_token(user)

        assert user_service.identity_from_token(token) == user.id
        assert user_service.verify_token(token)["role"] == "STUDENT"

    def test_token_signed_with_other_secret(self, user_service):
        user = user_service.register("a@example.com", "long-enough-pw")
        other = UserService(user_service.user_repository, jwt_secret="other-secret")

        assert user_service.identity_from_token(other.create_token(user)) is None

    def test_expired_token(self, user_service):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "1", "iat": past, "exp": past + timedelta(hours=1)}, JWT_SECRET, algorithm="HS256"
        )

        assert user_service.identity_from_token(token) is None

    def test_token_without_subject(self, user_service):
        token = jwt.encode(
            {"exp": datetime.now(timezone.utc) + timedelta(hours=1)}, JWT_SECRET, algorithm="HS256"
        )

        assert user_service.identity_from_token(token) is None

    def test_garbage(self, user_service):
        assert user_service.identity_from_token("not-a-token") is None
