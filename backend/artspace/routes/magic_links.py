"""Survey magic link endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..auth import CallerIdentity, require_authenticated_identity
from ..config import AppSettings, get_settings
from ..database import get_session
from ..services.email import ResendEmailService, dispatch_effects, get_resend_email_service
from ..services.magic_links import MagicLinkService
from ..services.memberships import ADMIN_ROLES, require_org_membership_role
from ..services.results import unwrap

router = APIRouter(prefix="/api/magic-links", tags=["magic-links"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.post("", response_model=schemas.MagicLinkIssued, status_code=201)
async def issue_magic_link(
    payload: schemas.MagicLinkCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
    email_service: ResendEmailService = Depends(get_resend_email_service),
) -> schemas.MagicLinkIssued:
    await require_org_membership_role(
        session, payload.organization_id, identity, allowed_roles=ADMIN_ROLES
    )
    result = await MagicLinkService(session, settings).generate_magic_link(
        str(payload.email),
        payload.survey_id,
        payload.organization_id,
        expires_at=payload.expires_at,
        metadata=payload.metadata,
        send_email=payload.send_email,
    )
    success = unwrap(result)
    if success.effects:
        background_tasks.add_task(dispatch_effects, success.effects, email_service)
    issued = success.value
    return schemas.MagicLinkIssued(
        id=issued.link.id,
        token=issued.token,
        url=issued.url,
        expires_at=issued.link.expires_at,
    )


@router.get("/validate", response_model=schemas.MagicLinkValidationRead)
async def validate_magic_link(
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> schemas.MagicLinkValidationRead:
    validation = await MagicLinkService(session, settings).validate_magic_link(token)
    return schemas.MagicLinkValidationRead(
        valid=validation.valid,
        error=validation.error,
        email=validation.email,
        survey_id=validation.survey_id,
        organization_id=validation.org_id,
        usage_state=validation.usage_state,
        expires_at=validation.expires_at,
        metadata=validation.metadata,
    )


@router.post("/track", response_model=schemas.MagicLinkTrackResponse)
async def track_magic_link_usage(
    payload: schemas.MagicLinkTrack,
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> schemas.MagicLinkTrackResponse:
    result = await MagicLinkService(session, settings).track_magic_link_usage(
        payload.token,
        payload.action,
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return schemas.MagicLinkTrackResponse(usage_state=unwrap(result).value.usage_state)
