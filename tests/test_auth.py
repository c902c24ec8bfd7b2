from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from smart_todo.auth import (
    create_access_token,
    decode_token,
    get_current_user_id,
    require_user_id,
)
from smart_todo.config import Settings
from smart_todo.errors import Unauthorized


SECRET = "unit-test-secret-that-is-at-least-32-bytes"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, auth_jwt_secret=SECRET)


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_decode_valid_token(settings: Settings) -> None:
    token = create_access_token("user-123", settings)

    payload = decode_token(token, settings)

    assert payload["sub"] == "user-123"
    assert payload["aud"] == "authenticated"


def test_decode_expired_token_raises(settings: Settings) -> None:
    token = create_access_token("user-123", settings, expires_in=timedelta(seconds=-30))

    with pytest.raises(jwt.ExpiredSignatureError):
        decode_token(token, settings)


def test_decode_token_signed_with_other_secret_raises(settings: Settings) -> None:
    other = Settings(_env_file=None, auth_jwt_secret="another-secret-that-is-32-bytes-long!")
    token = create_access_token("user-123", other)

    with pytest.raises(jwt.InvalidSignatureError):
        decode_token(token, settings)


def test_decode_token_for_other_audience_raises(settings: Settings) -> None:
    other = Settings(_env_file=None, auth_jwt_secret=SECRET, auth_jwt_audience="service_role")
    token = create_access_token("user-123", other)

    with pytest.raises(jwt.InvalidAudienceError):
        decode_token(token, settings)


def test_decode_token_without_subject_raises(settings: Settings) -> None:
    token = jwt.encode(
        {"exp": datetime.now(UTC) + timedelta(minutes=5), "aud": "authenticated"},
        SECRET,
        algorithm="HS256",
    )

    with pytest.raises(jwt.MissingRequiredClaimError):
        decode_token(token, settings)


def test_current_user_without_credentials_is_none(settings: Settings) -> None:
    assert get_current_user_id(None, settings) is None


def test_current_user_from_valid_token(settings: Settings) -> None:
    token = create_access_token("user-123", settings)
    assert get_current_user_id(_bearer(token), settings) == "user-123"


def test_current_user_from_garbage_token_is_none(settings: Settings) -> None:
    assert get_current_user_id(_bearer("not.a.jwt"), settings) is None


def test_require_user_id_rejects_anonymous() -> None:
    with pytest.raises(Unauthorized) as exc_info:
        require_user_id(None)

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "User not signed in"


def test_require_user_id_passes_through() -> None:
    assert require_user_id("user-123") == "user-123"
