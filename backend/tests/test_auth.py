"""Tests for resolving callers from Supabase access tokens."""

import time
import uuid

import jwt
import pytest

from artspace.auth import IdentityError, IdentitySettings, SupabaseIdentityProvider, identity_from_claims

JWT_SECRET = "super-secret-jwt-token-with-at-least-32-characters"


@pytest.fixture
def provider() -> SupabaseIdentityProvider:
    return SupabaseIdentityProvider(
        IdentitySettings(
            supabase_url="https://project.supabase.co",
            supabase_anon_key="anon",
            supabase_jwt_secret=JWT_SECRET,
        )
    )


def _claims(**overrides) -> dict:
    claims = {
        "sub": str(uuid.uuid4()),
        "email": "member@example.org",
        "role": "authenticated",
        "aud": "authenticated",
        "iss": "https://project.supabase.co/auth/v1",
        "exp": int(time.time()) + 3600,
        "user_metadata": {"full_name": "Mina Member"},
    }
    claims.update(overrides)
    return claims


class TestIdentityFromClaims:
    def test_roles_are_collected_and_lowercased(self):
        identity = identity_from_claims(_claims(role="Service_Role", app_metadata={"roles": ["Staff"]}))

        assert identity.roles == ("authenticated", "service_role", "staff")
        assert identity.is_service
        assert identity.display_name == "Mina Member"

    def test_display_name_falls_back_to_email(self):
        identity = identity_from_claims(_claims(user_metadata=None))
        assert identity.display_name == "member@example.org"

    @pytest.mark.parametrize("missing", ["sub", "exp"])
    def test_required_claims(self, missing):
        claims = _claims()
        del claims[missing]
        with pytest.raises(IdentityError):
            identity_from_claims(claims)


class TestSupabaseIdentityProvider:
    async def test_hs256_token_resolves(self, provider):
        claims = _claims()
        token = jwt.encode(claims, JWT_SECRET, algorithm="HS256")

        identity = await provider.resolve(token)

        assert identity.user_id == uuid.UUID(claims["sub"])
        assert identity.email == "member@example.org"
        assert not identity.is_expired

    async def test_expired_token_is_rejected(self, provider):
        token = jwt.encode(_claims(exp=int(time.time()) - 10), JWT_SECRET, algorithm="HS256")
        with pytest.raises(IdentityError, match="expired"):
            await provider.resolve(token)

    async def test_wrong_audience_is_rejected(self, provider):
        token = jwt.encode(_claims(aud="anon"), JWT_SECRET, algorithm="HS256")
        with pytest.raises(IdentityError):
            await provider.resolve(token)

    async def test_forged_signature_is_rejected(self, provider):
        token = jwt.encode(_claims(), "a-different-secret-that-is-also-long-enough", algorithm="HS256")
        with pytest.raises(IdentityError):
            await provider.resolve(token)

    async def test_garbage_is_malformed(self, provider):
        with pytest.raises(IdentityError, match="malformed"):
            await provider.resolve("not-a-jwt")
