"""Pydantic models for API requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .models import (
    ConflictSeverity,
    ConflictStatus,
    ConflictType,
    GroupBookingStatus,
    GroupBookingType,
    InvitationStatus,
    MagicLinkState,
    ParticipantRole,
    WaitlistStatus,
)


def _to_camel(string: str) -> str:
    """Convert ``snake_case`` strings to ``camelCase``."""

    parts = string.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    """Base model that renders JSON keys using ``camelCase``."""

    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# -- group bookings ------------------------------------------------------


class GroupBookingCreate(CamelModel):
    org_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    location: Optional[str] = None
    resource_id: Optional[UUID] = None
    start_time: datetime
    end_time: datetime
    capacity: int = Field(..., ge=1)
    waitlist_enabled: bool = False
    booking_type: GroupBookingType = GroupBookingType.public


class GroupBookingUpdate(CamelModel):
    capacity: int = Field(..., ge=1)


class GroupBookingRead(CamelModel):
    id: UUID
    org_id: UUID
    resource_id: Optional[UUID]
    title: str
    description: Optional[str]
    location: Optional[str]
    start_time: datetime
    end_time: datetime
    capacity: int
    participant_count: int
    available_spots: int
    waitlist_enabled: bool
    booking_type: GroupBookingType
    organizer_id: UUID
    status: GroupBookingStatus
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None


class ParticipantRead(CamelModel):
    id: UUID
    user_id: UUID
    name: Optional[str]
    email: Optional[str]
    role: ParticipantRole
    joined_at: datetime


class WaitlistEntryRead(CamelModel):
    id: UUID
    user_id: UUID
    name: Optional[str]
    email: Optional[str]
    position: int
    status: WaitlistStatus
    created_at: datetime
    promoted_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None


class GroupInvitationRead(CamelModel):
    id: UUID
    booking_id: UUID
    invited_email: str
    invited_name: Optional[str]
    invited_user_id: Optional[UUID]
    invited_by_user_id: UUID
    message: Optional[str]
    status: InvitationStatus
    sent_at: datetime
    responded_at: Optional[datetime] = None
    expires_at: datetime


class GroupBookingDetailRead(GroupBookingRead):
    participants: List[ParticipantRead]
    waitlist: List[WaitlistEntryRead]
    invitations: List[GroupInvitationRead]


class JoinRequest(CamelModel):
    name: Optional[str] = None


class JoinResponse(CamelModel):
    success: bool = True
    status: Literal["registered", "waitlisted"]
    booking: GroupBookingRead
    participant: Optional[ParticipantRead] = None
    waitlist_entry: Optional[WaitlistEntryRead] = None
    position: Optional[int] = None


class ParticipantRemovedResponse(CamelModel):
    success: bool = True
    booking: GroupBookingRead
    waiting_count: int


class InvitationCreate(CamelModel):
    invited_email: EmailStr
    invited_name: Optional[str] = None
    invited_user_id: Optional[UUID] = None
    message: Optional[str] = Field(None, max_length=2000)


class InvitationCreateResponse(CamelModel):
    success: bool = True
    invitation: GroupInvitationRead


class InvitationRespond(CamelModel):
    token: str = Field(..., min_length=1)
    response: Literal["accepted", "declined"]


class InvitationRespondResponse(CamelModel):
    success: bool = True
    invitation: GroupInvitationRead
    join: Optional[JoinResponse] = None


class WaitlistPromote(CamelModel):
    waitlist_id: UUID


class PromotionResponse(CamelModel):
    success: bool = True
    booking: GroupBookingRead
    participant: ParticipantRead
    waitlist_entry: WaitlistEntryRead


class WaitlistRemovedResponse(CamelModel):
    success: bool = True
    waitlist_entry: WaitlistEntryRead


class ExpireInvitationsResponse(CamelModel):
    success: bool = True
    expired: int


# -- conflicts -----------------------------------------------------------


class ConflictRead(CamelModel):
    id: UUID
    org_id: UUID
    resource_id: Optional[UUID]
    conflict_type: ConflictType
    severity: ConflictSeverity
    status: ConflictStatus
    booking_ids: List[UUID]
    resolution: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime


class ConflictDetectResponse(CamelModel):
    success: bool = True
    count: int
    conflicts: List[ConflictRead]


class BookingConflictRead(CamelModel):
    conflict_type: ConflictType
    severity: ConflictSeverity
    message: str
    conflicting_booking_ids: List[UUID]
    suggested_resolutions: List[str]


class ConflictCheckResponse(CamelModel):
    has_conflicts: bool
    conflicts: List[BookingConflictRead]


class ConflictResolve(CamelModel):
    resolution: str
    resolved_by: str
    resolution_notes: Optional[str] = None


class ConflictResolveResponse(CamelModel):
    success: bool = True
    conflict: ConflictRead


class ConflictStatsRead(CamelModel):
    total: int
    open: int
    resolved: int
    by_type: Dict[str, int]
    by_severity: Dict[str, int]


# -- magic links ---------------------------------------------------------


class MagicLinkCreate(CamelModel):
    email: EmailStr
    survey_id: str = Field(..., min_length=1)
    organization_id: UUID
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    send_email: bool = False


class MagicLinkIssued(CamelModel):
    success: bool = True
    id: UUID
    token: str
    url: str
    expires_at: datetime


class MagicLinkValidationRead(CamelModel):
    valid: bool
    error: Optional[str] = None
    email: Optional[str] = None
    survey_id: Optional[str] = None
    organization_id: Optional[UUID] = None
    usage_state: Optional[MagicLinkState] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MagicLinkTrack(CamelModel):
    token: str
    action: str
    user_agent: Optional[str] = None


class MagicLinkTrackResponse(CamelModel):
    success: bool = True
    usage_state: MagicLinkState


# -- webhooks ------------------------------------------------------------


class WebhookAck(BaseModel):
    received: bool = True
    event_type: Optional[str] = None
