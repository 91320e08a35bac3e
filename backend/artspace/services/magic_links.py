"""Survey magic links: issuance, validation and usage tracking."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import AppSettings
from ..models import (
    MAGIC_LINK_STATE_ORDER,
    MagicLink,
    MagicLinkEvent,
    MagicLinkState,
    Organization,
    ensure_utc,
    utcnow,
)
from ..utils import generate_magic_link_token, hash_token, looks_like_email, normalize_email
from .effects import MagicLinkEmail
from .results import ServiceResult, Success, conflict, not_found, validation_error

logger = logging.getLogger(__name__)

TRACKABLE_ACTIONS = (MagicLinkState.opened, MagicLinkState.started, MagicLinkState.completed)

_TIMESTAMP_COLUMNS = {
    MagicLinkState.opened: "opened_at",
    MagicLinkState.started: "started_at",
    MagicLinkState.completed: "completed_at",
}


@dataclass(frozen=True)
class IssuedMagicLink:
    link: MagicLink
    token: str
    url: str


@dataclass(frozen=True)
class MagicLinkValidation:
    valid: bool
    error: Optional[str] = None
    email: Optional[str] = None
    survey_id: Optional[str] = None
    org_id: Optional[uuid.UUID] = None
    usage_state: Optional[MagicLinkState] = None
    expires_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _invalid(error: str) -> MagicLinkValidation:
    return MagicLinkValidation(valid=False, error=error)


class MagicLinkService:
    def __init__(self, session: AsyncSession, settings: AppSettings) -> None:
        self._session = session
        self._settings = settings

    def build_url(self, survey_id: str, token: str) -> str:
        return (
            f"{self._settings.normalized_public_base}/survey/{quote(survey_id, safe='')}"
            f"?token={token}"
        )

    async def _get_by_token(self, token: str, *, lock: bool = False) -> Optional[MagicLink]:
        stmt = select(MagicLink).where(MagicLink.token_hash == hash_token(token))
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def generate_magic_link(
        self,
        email: str,
        survey_id: str,
        organization_id: uuid.UUID,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        send_email: bool = False,
    ) -> ServiceResult[IssuedMagicLink]:
        if not email or not looks_like_email(email):
            return validation_error("A valid email address is required")
        if not survey_id or not survey_id.strip():
            return validation_error("surveyId is required")

        now = utcnow()
        if expires_at is None:
            expires_at = now + timedelta(hours=self._settings.magic_link_ttl_hours)
        else:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                return validation_error("expiresAt must be in the future")

        organization = await self._session.get(Organization, organization_id)
        if organization is None:
            return not_found("Organization not found")

        token = generate_magic_link_token()
        link = MagicLink(
            token_hash=hash_token(token),
            email=normalize_email(email),
            survey_id=survey_id.strip(),
            org_id=organization_id,
            expires_at=expires_at,
            usage_state=MagicLinkState.issued,
            link_metadata=dict(metadata or {}),
        )
        self._session.add(link)
        await self._session.commit()

        url = self.build_url(link.survey_id, token)
        effects: tuple = ()
        if send_email:
            effects = (
                MagicLinkEmail(
                    to_email=link.email,
                    survey_id=link.survey_id,
                    url=url,
                    expires_at=link.expires_at,
                ),
            )
        logger.info("Issued magic link %s for survey %s", link.id, link.survey_id)
        return Success(IssuedMagicLink(link=link, token=token, url=url), effects)

    async def validate_magic_link(self, token: Optional[str]) -> MagicLinkValidation:
        """Check a token without consuming it."""

        if not token:
            return _invalid("Token is required")
        link = await self._get_by_token(token)
        if link is None:
            return _invalid("Invalid token")
        if utcnow() > ensure_utc(link.expires_at):
            return _invalid("Token has expired")
        if link.usage_state == MagicLinkState.completed:
            return _invalid("Survey has already been completed")
        return MagicLinkValidation(
            valid=True,
            email=link.email,
            survey_id=link.survey_id,
            org_id=link.org_id,
            usage_state=link.usage_state,
            expires_at=ensure_utc(link.expires_at),
            metadata=dict(link.link_metadata or {}),
        )

    async def track_magic_link_usage(
        self,
        token: str,
        action: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ServiceResult[MagicLink]:
        try:
            state = MagicLinkState(action)
        except ValueError:
            state = None
        if state not in TRACKABLE_ACTIONS:
            return validation_error("action must be one of: opened, started, completed")
        if not token:
            return validation_error("token is required")

        link = await self._get_by_token(token, lock=True)
        if link is None:
            return not_found("Invalid token")
        now = utcnow()
        if now > ensure_utc(link.expires_at):
            return conflict("Token has expired")
        if link.usage_state == MagicLinkState.completed:
            return conflict("Survey has already been completed")

        setattr(link, _TIMESTAMP_COLUMNS[state], now)
        if MAGIC_LINK_STATE_ORDER[state] > MAGIC_LINK_STATE_ORDER[link.usage_state]:
            link.usage_state = state
        self._session.add(
            MagicLinkEvent(
                magic_link_id=link.id,
                action=state,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        await self._session.commit()
        logger.info("Magic link %s tracked %s (state=%s)", link.id, state.value, link.usage_state.value)
        return Success(link)
