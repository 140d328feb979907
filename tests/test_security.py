"""
test_security.py — Bearer token decoding, role gate and settings helpers.

Run with:
    pytest tests/test_security.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from backend.app.core.config import settings
from backend.app.core.errors import AuthenticationError, PermissionDeniedError
from backend.app.core.security import (
    OPERATOR_ROLES,
    Principal,
    create_access_token,
    decode_token,
    get_principal,
    require_roles,
)

from tests.factories import email_settings


class TestDecodeToken:

    def test_id_claim(self):
        p = decode_token(create_access_token({"id": "u-1", "role": "student", "campusId": "CS1", "name": "Asha"}))
        assert p == Principal(user_id="u-1", role="student", name="Asha", campus_id="CS1")

    def test_sub_claim_and_username(self):
        p = decode_token(create_access_token({"sub": "adm-9", "role": "admin", "username": "dean"}))
        assert p.user_id == "adm-9"
        assert p.name == "dean"
        assert p.is_operator

    def test_missing_role(self):
        with pytest.raises(AuthenticationError):
            decode_token(create_access_token({"id": "u-1"}))

    def test_expired(self):
        token = create_access_token({"id": "u-1", "role": "student"}, expires_delta=timedelta(seconds=-5))
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_wrong_secret(self):
        token = jwt.encode({"id": "u-1", "role": "admin"}, "someone-else", algorithm=settings.JWT_ALGORITHM)
        with pytest.raises(AuthenticationError):
            decode_token(token)


class TestRoleGate:

    async def test_no_credentials(self):
        with pytest.raises(AuthenticationError):
            await get_principal(None)

    async def test_operator_allowed(self):
        checker = require_roles(*OPERATOR_ROLES)
        officer = Principal(user_id="pol-1", role="police")
        assert await checker(officer) is officer

    async def test_student_denied(self):
        checker = require_roles(*OPERATOR_ROLES)
        with pytest.raises(PermissionDeniedError) as exc_info:
            await checker(Principal(user_id="u-1", role="student"))
        assert exc_info.value.status_code == 403

    async def test_credentials_decoded(self):
        creds = HTTPAuthorizationCredentials(
            scheme="Bearer", credentials=create_access_token({"id": "u-1", "role": "student"}),
        )
        assert (await get_principal(creds)).user_id == "u-1"


class TestSettings:

    def test_email_configured_needs_all_smtp_fields(self):
        assert email_settings().email_configured
        assert not email_settings(SMTP_PASSWORD=None).email_configured

    def test_admin_email_list(self):
        assert email_settings().admin_email_list == ["security@campus.test", "dean@campus.test"]
