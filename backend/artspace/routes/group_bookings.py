"""Group booking endpoints: lifecycle, participants, invitations and waitlist."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models, schemas
from ..auth import CallerIdentity, require_authenticated_identity
from ..config import AppSettings, get_settings
from ..database import get_session
from ..services.email import ResendEmailService, dispatch_effects, get_resend_email_service
from ..services.group_bookings import GroupBookingService, JoinOutcome, NewGroupBooking
from ..services.memberships import (
    ADMIN_ROLES,
    BOOKING_ROLES,
    MEMBER_ROLES,
    require_org_membership_role,
)
from ..services.results import unwrap

router = APIRouter(prefix="/api", tags=["group-bookings"])


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def _booking_read(booking: models.GroupBooking) -> schemas.GroupBookingRead:
    read = schemas.GroupBookingRead.model_validate(booking)
    return read.model_copy(update={"status": booking.effective_status(models.utcnow())})


def _join_response(outcome: JoinOutcome) -> schemas.JoinResponse:
    return schemas.JoinResponse(
        status=outcome.status,
        booking=_booking_read(outcome.booking),
        participant=(
            schemas.ParticipantRead.model_validate(outcome.participant)
            if outcome.participant is not None
            else None
        ),
        waitlist_entry=(
            schemas.WaitlistEntryRead.model_validate(outcome.waitlist_entry)
            if outcome.waitlist_entry is not None
            else None
        ),
        position=outcome.position,
    )


def _service(session: AsyncSession, settings: AppSettings) -> GroupBookingService:
    return GroupBookingService(session, settings)


@router.post("/group-bookings", response_model=schemas.GroupBookingRead, status_code=201)
async def create_group_booking(
    payload: schemas.GroupBookingCreate,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.GroupBookingRead:
    await require_org_membership_role(
        session, payload.org_id, identity, allowed_roles=BOOKING_ROLES
    )
    result = await _service(session, settings).create_group_booking(
        NewGroupBooking(
            org_id=payload.org_id,
            title=payload.title,
            start_time=payload.start_time,
            end_time=payload.end_time,
            capacity=payload.capacity,
            resource_id=payload.resource_id,
            description=payload.description,
            location=payload.location,
            waitlist_enabled=payload.waitlist_enabled,
            booking_type=payload.booking_type,
        ),
        identity,
    )
    return _booking_read(unwrap(result).value)


@router.post(
    "/group-bookings/invitations/respond",
    response_model=schemas.InvitationRespondResponse,
)
async def respond_to_invitation(
    payload: schemas.InvitationRespond,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.InvitationRespondResponse:
    result = await _service(session, settings).respond_to_invitation(
        payload.token, payload.response, identity
    )
    response = unwrap(result).value
    return schemas.InvitationRespondResponse(
        invitation=schemas.GroupInvitationRead.model_validate(response.invitation),
        join=_join_response(response.join) if response.join is not None else None,
    )


@router.get("/group-bookings/{booking_id}", response_model=schemas.GroupBookingDetailRead)
async def get_group_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.GroupBookingDetailRead:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    details = unwrap(await _service(session, settings).get_group_booking_details(booking_uuid)).value
    if details.booking.organizer_id != identity.user_id:
        await require_org_membership_role(
            session, details.booking.org_id, identity, allowed_roles=MEMBER_ROLES
        )
    booking = _booking_read(details.booking).model_copy(update={"status": details.status})
    return schemas.GroupBookingDetailRead(
        **booking.model_dump(),
        participants=[schemas.ParticipantRead.model_validate(p) for p in details.participants],
        waitlist=[schemas.WaitlistEntryRead.model_validate(w) for w in details.waitlist],
        invitations=[schemas.GroupInvitationRead.model_validate(i) for i in details.invitations],
    )


@router.patch("/group-bookings/{booking_id}", response_model=schemas.GroupBookingRead)
async def update_group_booking(
    booking_id: str,
    payload: schemas.GroupBookingUpdate,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.GroupBookingRead:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    result = await _service(session, settings).update_capacity(
        booking_uuid, payload.capacity, identity
    )
    return _booking_read(unwrap(result).value)


@router.post("/group-bookings/{booking_id}/cancel", response_model=schemas.GroupBookingRead)
async def cancel_group_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.GroupBookingRead:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    result = await _service(session, settings).cancel_group_booking(booking_uuid, identity)
    return _booking_read(unwrap(result).value)


@router.post(
    "/group-bookings/{booking_id}/participants",
    response_model=schemas.JoinResponse,
    status_code=201,
)
async def join_group_booking(
    booking_id: str,
    payload: Optional[schemas.JoinRequest] = None,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.JoinResponse:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    name = payload.name if payload is not None else None
    result = await _service(session, settings).add_participant(booking_uuid, identity, name)
    return _join_response(unwrap(result).value)


@router.delete(
    "/group-bookings/{booking_id}/participants/{user_id}",
    response_model=schemas.ParticipantRemovedResponse,
)
async def remove_participant(
    booking_id: str,
    user_id: str,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ParticipantRemovedResponse:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    user_uuid = _parse_uuid(user_id, "user id")
    result = await _service(session, settings).remove_participant(booking_uuid, user_uuid, identity)
    removed = unwrap(result).value
    return schemas.ParticipantRemovedResponse(
        booking=_booking_read(removed.booking),
        waiting_count=removed.waiting_count,
    )


@router.post(
    "/group-bookings/{booking_id}/invitations",
    response_model=schemas.InvitationCreateResponse,
    status_code=201,
)
async def send_invitation(
    booking_id: str,
    payload: schemas.InvitationCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
    email_service: ResendEmailService = Depends(get_resend_email_service),
) -> schemas.InvitationCreateResponse:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    result = await _service(session, settings).send_invitation(
        booking_uuid,
        identity,
        str(payload.invited_email),
        invited_name=payload.invited_name,
        invited_user_id=payload.invited_user_id,
        message=payload.message,
    )
    success = unwrap(result)
    background_tasks.add_task(dispatch_effects, success.effects, email_service)
    return schemas.InvitationCreateResponse(
        invitation=schemas.GroupInvitationRead.model_validate(success.value.invitation)
    )


@router.post("/group-bookings/{booking_id}/waitlist", response_model=schemas.PromotionResponse)
async def promote_waitlist_participant(
    booking_id: str,
    payload: schemas.WaitlistPromote,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
    email_service: ResendEmailService = Depends(get_resend_email_service),
) -> schemas.PromotionResponse:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    service = _service(session, settings)
    booking = await session.get(models.GroupBooking, booking_uuid)
    if booking is not None and booking.organizer_id != identity.user_id:
        await require_org_membership_role(
            session, booking.org_id, identity, allowed_roles=ADMIN_ROLES
        )

    success = unwrap(await service.promote_waitlist_participant(booking_uuid, payload.waitlist_id))
    background_tasks.add_task(dispatch_effects, success.effects, email_service)
    outcome = success.value
    return schemas.PromotionResponse(
        booking=_booking_read(outcome.booking),
        participant=schemas.ParticipantRead.model_validate(outcome.participant),
        waitlist_entry=schemas.WaitlistEntryRead.model_validate(outcome.waitlist_entry),
    )


@router.delete(
    "/group-bookings/{booking_id}/waitlist/{waitlist_id}",
    response_model=schemas.WaitlistRemovedResponse,
)
async def remove_waitlist_entry(
    booking_id: str,
    waitlist_id: str,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.WaitlistRemovedResponse:
    booking_uuid = _parse_uuid(booking_id, "group booking id")
    waitlist_uuid = _parse_uuid(waitlist_id, "waitlist id")
    result = await _service(session, settings).remove_waitlist_entry(
        booking_uuid, waitlist_uuid, identity
    )
    return schemas.WaitlistRemovedResponse(
        waitlist_entry=schemas.WaitlistEntryRead.model_validate(unwrap(result).value)
    )


@router.get("/orgs/{org_id}/group-bookings", response_model=list[schemas.GroupBookingRead])
async def list_available_group_bookings(
    org_id: str,
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> list[schemas.GroupBookingRead]:
    org_uuid = _parse_uuid(org_id, "organization id")
    page_size = limit if limit is not None else settings.available_bookings_page_size
    result = await _service(session, settings).list_available_group_bookings(
        org_uuid, limit=page_size, offset=offset
    )
    return [_booking_read(booking) for booking in unwrap(result).value]


@router.post(
    "/orgs/{org_id}/group-bookings/expire-invitations",
    response_model=schemas.ExpireInvitationsResponse,
)
async def expire_stale_invitations(
    org_id: str,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ExpireInvitationsResponse:
    org_uuid = _parse_uuid(org_id, "organization id")
    await require_org_membership_role(session, org_uuid, identity, allowed_roles=ADMIN_ROLES)
    result = await _service(session, settings).expire_stale_invitations(org_uuid)
    return schemas.ExpireInvitationsResponse(expired=unwrap(result).value)
