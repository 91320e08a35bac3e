"""Supabase Auth integration: resolves the caller identity for each request."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional

import httpx
import jwt
from dotenv import find_dotenv, load_dotenv
from fastapi import Depends, Header, HTTPException, status
from jwt import algorithms
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_PATH = find_dotenv(filename=".env", raise_error_if_not_found=False, usecwd=True)
if _DOTENV_PATH:
    load_dotenv(_DOTENV_PATH)


logger = logging.getLogger(__name__)


class IdentitySettings(BaseSettings):
    """Configuration required to validate Supabase access tokens."""

    model_config = SettingsConfigDict(extra="ignore")

    supabase_url: str
    supabase_anon_key: str
    supabase_jwt_audience: str = "authenticated"
    supabase_jwt_issuer: Optional[str] = None
    supabase_jwks_ttl_seconds: int = 3600
    supabase_http_timeout_seconds: float = 5.0
    supabase_jwt_secret: Optional[str] = None
    supabase_jwt_algorithm: str = "HS256"

    @property
    def issuer(self) -> str:
        return self.supabase_jwt_issuer or (self.supabase_url.rstrip("/") + "/auth/v1")


class IdentityError(RuntimeError):
    """Raised when an access token cannot be validated."""


@lru_cache
def get_identity_settings() -> IdentitySettings:
    try:
        return IdentitySettings()
    except ValidationError as exc:  # pragma: no cover - configuration error
        raise RuntimeError("Supabase Auth environment variables are not configured") from exc


class _JWKSCache:
    """Caches the Supabase JWKS document between requests."""

    def __init__(self, jwks_url: str, ttl_seconds: int, timeout: float, headers: Mapping[str, str]) -> None:
        self._jwks_url = jwks_url
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout
        self._headers = dict(headers)
        self._lock = asyncio.Lock()
        self._expires_at = 0.0
        self._keys: dict[str, Mapping[str, Any]] = {}

    async def _refresh(self) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(self._jwks_url, headers=self._headers)
            response.raise_for_status()
            payload = response.json()

        self._keys = {
            key["kid"]: key
            for key in payload.get("keys", [])
            if isinstance(key, Mapping) and "kid" in key
        }
        self._expires_at = time.monotonic() + self._ttl_seconds

    async def get_key(self, kid: str) -> Mapping[str, Any]:
        async with self._lock:
            if time.monotonic() >= self._expires_at:
                await self._refresh()
            key = self._keys.get(kid)
            if key is None:
                # Keys may have rotated since the last refresh.
                await self._refresh()
                key = self._keys.get(kid)
            if key is None:
                raise KeyError(kid)
            return key


def _collect_roles(*values: Any) -> tuple[str, ...]:
    roles: set[str] = {"authenticated"}
    for value in values:
        if isinstance(value, str) and value:
            roles.add(value.lower())
        elif isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            roles.update(item.lower() for item in value if isinstance(item, str) and item)
    return tuple(sorted(roles))


@dataclass(frozen=True)
class CallerIdentity:
    """The authenticated caller behind a request."""

    user_id: uuid.UUID
    email: Optional[str]
    roles: tuple[str, ...]
    expires_at: datetime
    user_metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def is_service(self) -> bool:
        return self.has_role("service_role")

    @property
    def display_name(self) -> Optional[str]:
        for key in ("full_name", "name"):
            value = self.user_metadata.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return self.email

    def has_role(self, role: str) -> bool:
        return role.lower() in self.roles


class SupabaseIdentityProvider:
    """Validates Supabase access tokens with JWKS or the project JWT secret."""

    def __init__(self, settings: IdentitySettings) -> None:
        self._settings = settings
        self._jwks_cache = _JWKSCache(
            jwks_url=settings.supabase_url.rstrip("/") + "/auth/v1/.well-known/jwks.json",
            ttl_seconds=settings.supabase_jwks_ttl_seconds,
            timeout=settings.supabase_http_timeout_seconds,
            headers={"apikey": settings.supabase_anon_key},
        )

    async def _decode_with_jwks(self, token: str, kid: str, algorithm: str) -> Mapping[str, Any]:
        try:
            key_data = await self._jwks_cache.get_key(kid)
        except httpx.HTTPError as exc:
            raise IdentityError("Unable to download Supabase signing keys") from exc
        except KeyError as exc:
            raise IdentityError("Supabase signing key not found; try logging in again") from exc

        jwk_algorithm = algorithms.get_default_algorithms().get(algorithm)
        if jwk_algorithm is None:
            raise IdentityError(f"Unsupported access token algorithm: {algorithm}")
        try:
            key = jwk_algorithm.from_jwk(json.dumps(dict(key_data)))
        except (TypeError, ValueError) as exc:  # pragma: no cover - invalid JWKS response
            raise IdentityError("Supabase signing key is invalid") from exc
        return self._verify(token, key, algorithm)

    def _verify(self, token: str, key: Any, algorithm: str) -> Mapping[str, Any]:
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self._settings.supabase_jwt_audience,
                issuer=self._settings.issuer,
            )
        except jwt.ExpiredSignatureError as exc:
            raise IdentityError("Access token has expired") from exc
        except jwt.PyJWTError as exc:
            raise IdentityError("Access token validation failed") from exc

    async def decode(self, token: str) -> Mapping[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise IdentityError("Access token is malformed") from exc

        kid = header.get("kid")
        algorithm = header.get("alg") or self._settings.supabase_jwt_algorithm
        if kid and algorithm not in ("HS256", "HS384", "HS512"):
            return await self._decode_with_jwks(token, kid, algorithm)

        secret = self._settings.supabase_jwt_secret
        if not secret:
            raise IdentityError("Access token has no key id and no JWT secret is configured")
        if algorithm != self._settings.supabase_jwt_algorithm:
            raise IdentityError("Access token algorithm does not match the configured JWT secret")
        return self._verify(token, secret, algorithm)

    async def resolve(self, token: str) -> CallerIdentity:
        claims = await self.decode(token)
        return identity_from_claims(claims)


def identity_from_claims(claims: Mapping[str, Any]) -> CallerIdentity:
    try:
        user_id = uuid.UUID(str(claims["sub"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise IdentityError("Access token is missing a valid user id") from exc

    try:
        expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise IdentityError("Access token is missing an expiration claim") from exc

    app_metadata = claims.get("app_metadata")
    user_metadata = claims.get("user_metadata")
    return CallerIdentity(
        user_id=user_id,
        email=claims.get("email"),
        roles=_collect_roles(
            claims.get("role"),
            app_metadata.get("roles") if isinstance(app_metadata, Mapping) else None,
        ),
        expires_at=expires_at,
        user_metadata=dict(user_metadata) if isinstance(user_metadata, Mapping) else {},
    )


@lru_cache
def get_identity_provider() -> SupabaseIdentityProvider:
    return SupabaseIdentityProvider(get_identity_settings())


async def get_current_identity(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CallerIdentity:
    """FastAPI dependency that resolves the caller from a bearer token."""

    if not authorization:
        logger.warning("Auth failed: missing Authorization header for protected endpoint")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header is missing",
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        logger.warning("Auth failed: invalid Authorization header format (scheme=%s)", scheme.lower())
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must be a Bearer token",
        )

    try:
        return await get_identity_provider().resolve(token)
    except IdentityError as exc:
        logger.warning("Auth failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


async def require_authenticated_identity(
    identity: CallerIdentity = Depends(get_current_identity),
) -> CallerIdentity:
    if identity.is_expired:
        logger.warning("Auth failed: access token expired for user_id=%s", identity.user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session has expired")
    return identity
