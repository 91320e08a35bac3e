"""Group booking lifecycle: joining, invitations, waitlist and promotion.

All capacity changes go through conditional ``UPDATE`` statements on the
booking row (``participant_count < capacity``) so the count can never exceed
the capacity, even when several requests race for the last spot. Operations
that touch more than one row commit once at the end and roll back on any
failure.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..auth import CallerIdentity
from ..config import AppSettings
from ..models import (
    GroupBooking,
    GroupBookingInvitation,
    GroupBookingStatus,
    InvitationStatus,
    Participant,
    ParticipantRole,
    WaitlistEntry,
    WaitlistStatus,
    ensure_utc,
    utcnow,
)
from ..utils import generate_token, hash_token, looks_like_email, normalize_email
from .effects import GroupInvitationEmail, WaitlistPromotionEmail
from .memberships import has_org_role
from .results import (
    Failure,
    ServiceResult,
    Success,
    conflict,
    forbidden,
    not_found,
    validation_error,
)

logger = logging.getLogger(__name__)

_BOOKING_NOT_FOUND = "Group booking not found"
_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class GroupBookingDetails:
    booking: GroupBooking
    status: GroupBookingStatus
    participants: list[Participant]
    waitlist: list[WaitlistEntry]
    invitations: list[GroupBookingInvitation]


@dataclass(frozen=True)
class JoinOutcome:
    """Result of admitting someone to a booking: a seat or a waitlist spot."""

    status: str
    booking: GroupBooking
    participant: Optional[Participant] = None
    waitlist_entry: Optional[WaitlistEntry] = None

    @property
    def position(self) -> Optional[int]:
        return self.waitlist_entry.position if self.waitlist_entry is not None else None


@dataclass(frozen=True)
class InvitationCreated:
    invitation: GroupBookingInvitation
    token: str


@dataclass(frozen=True)
class InvitationResponse:
    invitation: GroupBookingInvitation
    join: Optional[JoinOutcome] = None


@dataclass(frozen=True)
class ParticipantRemoved:
    booking: GroupBooking
    waiting_count: int


@dataclass(frozen=True)
class PromotionOutcome:
    booking: GroupBooking
    participant: Participant
    waitlist_entry: WaitlistEntry


@dataclass
class NewGroupBooking:
    org_id: uuid.UUID
    title: str
    start_time: datetime
    end_time: datetime
    capacity: int
    resource_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    location: Optional[str] = None
    waitlist_enabled: bool = False
    booking_type: models.GroupBookingType = models.GroupBookingType.public


class GroupBookingService:
    """Mediates every state change of a group booking and its dependents."""

    def __init__(self, session: AsyncSession, settings: AppSettings) -> None:
        self._session = session
        self._settings = settings

    # -- loading helpers -------------------------------------------------

    async def _get_booking(self, booking_id: uuid.UUID, *, lock: bool = False) -> Optional[GroupBooking]:
        stmt = (
            select(GroupBooking)
            .where(GroupBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_participant(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Participant]:
        result = await self._session.execute(
            select(Participant).where(
                Participant.booking_id == booking_id,
                Participant.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_waiting_entry(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> Optional[WaitlistEntry]:
        result = await self._session.execute(
            select(WaitlistEntry).where(
                WaitlistEntry.booking_id == booking_id,
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.status == WaitlistStatus.waiting,
            )
        )
        return result.scalars().first()

    async def _count_waiting(self, booking_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count(WaitlistEntry.id)).where(
                WaitlistEntry.booking_id == booking_id,
                WaitlistEntry.status == WaitlistStatus.waiting,
            )
        )
        return int(result.scalar_one())

    async def _can_manage(self, booking: GroupBooking, actor: CallerIdentity) -> bool:
        if actor.user_id == booking.organizer_id:
            return True
        return await has_org_role(self._session, booking.org_id, actor)

    # -- capacity bookkeeping --------------------------------------------

    async def _ensure_mutable(self, booking: GroupBooking) -> Optional[Failure]:
        """Refuse changes to terminal bookings, persisting elapsed completion."""

        if booking.status == GroupBookingStatus.cancelled:
            return conflict("Group booking has been cancelled")
        if booking.status == GroupBookingStatus.completed:
            return conflict("Group booking has already completed")
        if booking.effective_status(utcnow()) == GroupBookingStatus.completed:
            booking.status = GroupBookingStatus.completed
            await self._session.commit()
            logger.info("Group booking %s marked completed", booking.id)
            return conflict("Group booking has already completed")
        return None

    async def _claim_spot(self, booking_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            update(GroupBooking)
            .where(
                GroupBooking.id == booking_id,
                GroupBooking.status.in_((GroupBookingStatus.open, GroupBookingStatus.full)),
                GroupBooking.participant_count < GroupBooking.capacity,
            )
            .values(participant_count=GroupBooking.participant_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _release_spot(self, booking_id: uuid.UUID) -> None:
        await self._session.execute(
            update(GroupBooking)
            .where(GroupBooking.id == booking_id, GroupBooking.participant_count > 0)
            .values(participant_count=GroupBooking.participant_count - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def _sync_capacity_status(self, booking: GroupBooking) -> None:
        await self._session.refresh(booking)
        if booking.status not in (GroupBookingStatus.open, GroupBookingStatus.full):
            return
        target = (
            GroupBookingStatus.full
            if booking.participant_count >= booking.capacity
            else GroupBookingStatus.open
        )
        if booking.status != target:
            booking.status = target
            await self._session.flush()

    async def _admit(
        self,
        booking: GroupBooking,
        user_id: uuid.UUID,
        email: Optional[str],
        name: Optional[str],
    ) -> Union[JoinOutcome, Failure]:
        """Seat ``user_id`` or put them on the waitlist. Does not commit."""

        if await self._get_participant(booking.id, user_id) is not None:
            return conflict("You have already joined this group booking")
        if await self._get_waiting_entry(booking.id, user_id) is not None:
            return conflict("You are already on the waitlist for this group booking")

        if await self._claim_spot(booking.id):
            participant = Participant(
                booking_id=booking.id,
                user_id=user_id,
                name=name,
                email=email,
                role=(
                    ParticipantRole.organizer
                    if user_id == booking.organizer_id
                    else ParticipantRole.attendee
                ),
                joined_at=utcnow(),
            )
            self._session.add(participant)
            try:
                await self._session.flush()
            except IntegrityError:
                return conflict("You have already joined this group booking")
            await self._sync_capacity_status(booking)
            return JoinOutcome(status="registered", booking=booking, participant=participant)

        if not booking.waitlist_enabled:
            return conflict("Group booking is full")

        result = await self._session.execute(
            select(func.max(WaitlistEntry.position)).where(WaitlistEntry.booking_id == booking.id)
        )
        position = (result.scalar_one_or_none() or 0) + 1
        entry = WaitlistEntry(
            booking_id=booking.id,
            user_id=user_id,
            name=name,
            email=email,
            position=position,
            status=WaitlistStatus.waiting,
            created_at=utcnow(),
        )
        self._session.add(entry)
        await self._session.flush()
        await self._sync_capacity_status(booking)
        return JoinOutcome(status="waitlisted", booking=booking, waitlist_entry=entry)

    # -- operations ------------------------------------------------------

    async def create_group_booking(
        self, new: NewGroupBooking, organizer: CallerIdentity
    ) -> ServiceResult[GroupBooking]:
        start_time = ensure_utc(new.start_time)
        end_time = ensure_utc(new.end_time)
        if end_time <= start_time:
            return validation_error("endTime must be after startTime")
        if new.capacity < 1:
            return validation_error("capacity must be at least 1")

        org = await self._session.get(models.Organization, new.org_id)
        if org is None:
            return not_found("Organization not found")

        if new.resource_id is not None:
            resource = await self._session.get(models.Resource, new.resource_id)
            if resource is None or resource.org_id != new.org_id:
                return validation_error("Resource does not belong to this organization")

        booking = GroupBooking(
            org_id=new.org_id,
            resource_id=new.resource_id,
            title=new.title,
            description=new.description,
            location=new.location,
            start_time=start_time,
            end_time=end_time,
            capacity=new.capacity,
            participant_count=0,
            waitlist_enabled=new.waitlist_enabled,
            booking_type=new.booking_type,
            organizer_id=organizer.user_id,
            status=GroupBookingStatus.open,
        )
        self._session.add(booking)
        await self._session.commit()
        logger.info("Created group booking %s for org %s", booking.id, new.org_id)
        return Success(booking)

    async def get_group_booking_details(self, booking_id: uuid.UUID) -> ServiceResult[GroupBookingDetails]:
        booking = await self._get_booking(booking_id)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)

        participants = await self._session.execute(
            select(Participant)
            .where(Participant.booking_id == booking_id)
            .order_by(Participant.joined_at.asc())
        )
        waitlist = await self._session.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.booking_id == booking_id)
            .order_by(WaitlistEntry.position.asc())
        )
        invitations = await self._session.execute(
            select(GroupBookingInvitation)
            .where(GroupBookingInvitation.booking_id == booking_id)
            .order_by(GroupBookingInvitation.sent_at.asc())
        )
        return Success(
            GroupBookingDetails(
                booking=booking,
                status=booking.effective_status(utcnow()),
                participants=list(participants.scalars()),
                waitlist=list(waitlist.scalars()),
                invitations=list(invitations.scalars()),
            )
        )

    async def list_available_group_bookings(
        self, org_id: uuid.UUID, limit: int = 20, offset: int = 0
    ) -> ServiceResult[list[GroupBooking]]:
        if limit < 1 or limit > _MAX_PAGE_SIZE:
            return validation_error(f"limit must be between 1 and {_MAX_PAGE_SIZE}")
        if offset < 0:
            return validation_error("offset must not be negative")

        result = await self._session.execute(
            select(GroupBooking)
            .where(
                GroupBooking.org_id == org_id,
                GroupBooking.booking_type == models.GroupBookingType.public,
                GroupBooking.status == GroupBookingStatus.open,
                GroupBooking.participant_count < GroupBooking.capacity,
                GroupBooking.start_time > utcnow(),
            )
            .order_by(GroupBooking.start_time.asc())
            .offset(offset)
            .limit(limit)
        )
        return Success(list(result.scalars()))

    async def add_participant(
        self,
        booking_id: uuid.UUID,
        identity: CallerIdentity,
        name: Optional[str] = None,
    ) -> ServiceResult[JoinOutcome]:
        booking = await self._get_booking(booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure

        if (
            booking.booking_type == models.GroupBookingType.invite_only
            and identity.user_id != booking.organizer_id
            and not await self._has_invitation(booking.id, identity)
        ):
            return forbidden("This group booking is invite only")

        outcome = await self._admit(
            booking, identity.user_id, identity.email, name or identity.display_name
        )
        if isinstance(outcome, Failure):
            await self._session.rollback()
            return outcome

        await self._session.commit()
        logger.info(
            "User %s %s for group booking %s", identity.user_id, outcome.status, booking_id
        )
        return Success(outcome)

    async def _has_invitation(self, booking_id: uuid.UUID, identity: CallerIdentity) -> bool:
        matches = [GroupBookingInvitation.invited_user_id == identity.user_id]
        if identity.email:
            matches.append(GroupBookingInvitation.invited_email == normalize_email(identity.email))
        result = await self._session.execute(
            select(GroupBookingInvitation.id).where(
                GroupBookingInvitation.booking_id == booking_id,
                or_(
                    GroupBookingInvitation.status == InvitationStatus.accepted,
                    and_(
                        GroupBookingInvitation.status == InvitationStatus.pending,
                        GroupBookingInvitation.expires_at >= utcnow(),
                    ),
                ),
                or_(*matches),
            )
        )
        return result.first() is not None

    async def remove_participant(
        self, booking_id: uuid.UUID, user_id: uuid.UUID, actor: CallerIdentity
    ) -> ServiceResult[ParticipantRemoved]:
        booking = await self._get_booking(booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure

        participant = await self._get_participant(booking_id, user_id)
        if participant is None:
            return not_found("Participant not found")
        if actor.user_id != user_id and not await self._can_manage(booking, actor):
            return forbidden()

        await self._session.delete(participant)
        await self._session.flush()
        await self._release_spot(booking_id)
        await self._sync_capacity_status(booking)
        waiting = await self._count_waiting(booking_id)
        await self._session.commit()
        logger.info("Removed user %s from group booking %s", user_id, booking_id)
        return Success(ParticipantRemoved(booking=booking, waiting_count=waiting))

    async def send_invitation(
        self,
        booking_id: uuid.UUID,
        inviter: CallerIdentity,
        invited_email: str,
        invited_name: Optional[str] = None,
        invited_user_id: Optional[uuid.UUID] = None,
        message: Optional[str] = None,
    ) -> ServiceResult[InvitationCreated]:
        if not invited_email or not looks_like_email(invited_email):
            return validation_error("invitedEmail must be a valid email address")

        booking = await self._get_booking(booking_id)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure
        if booking.status == GroupBookingStatus.full and not booking.waitlist_enabled:
            return conflict("Group booking is full")

        raw_token = generate_token()
        now = utcnow()
        invitation = GroupBookingInvitation(
            booking_id=booking.id,
            invited_by_user_id=inviter.user_id,
            invited_email=normalize_email(invited_email),
            invited_name=invited_name,
            invited_user_id=invited_user_id,
            message=message,
            token_hash=hash_token(raw_token),
            status=InvitationStatus.pending,
            sent_at=now,
            expires_at=now + timedelta(days=self._settings.group_invitation_ttl_days),
        )
        self._session.add(invitation)
        await self._session.commit()

        effect = GroupInvitationEmail(
            invitation_id=invitation.id,
            to_email=invitation.invited_email,
            to_name=invited_name,
            booking_title=booking.title,
            start_time=ensure_utc(booking.start_time),
            invite_token=raw_token,
            expires_at=invitation.expires_at,
            message=message,
        )
        return Success(InvitationCreated(invitation=invitation, token=raw_token), effects=(effect,))

    async def respond_to_invitation(
        self, token: str, response: str, identity: CallerIdentity
    ) -> ServiceResult[InvitationResponse]:
        if response not in ("accepted", "declined"):
            return validation_error("response must be 'accepted' or 'declined'")

        result = await self._session.execute(
            select(GroupBookingInvitation)
            .where(GroupBookingInvitation.token_hash == hash_token(token))
            .with_for_update()
        )
        invitation = result.scalar_one_or_none()
        if invitation is None:
            return not_found("Invitation not found")
        if invitation.status != InvitationStatus.pending:
            return conflict(f"Invitation has already been {invitation.status.value}")

        now = utcnow()
        if ensure_utc(invitation.expires_at) < now:
            invitation.status = InvitationStatus.expired
            await self._session.commit()
            return conflict("Invitation has expired")

        if response == "declined":
            invitation.invited_user_id = invitation.invited_user_id or identity.user_id
            invitation.status = InvitationStatus.declined
            invitation.responded_at = now
            await self._session.commit()
            return Success(InvitationResponse(invitation=invitation))

        booking = await self._get_booking(invitation.booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure

        outcome = await self._admit(
            booking,
            identity.user_id,
            identity.email or invitation.invited_email,
            invitation.invited_name or identity.display_name,
        )
        if isinstance(outcome, Failure):
            await self._session.rollback()
            return outcome

        invitation.invited_user_id = invitation.invited_user_id or identity.user_id
        invitation.status = InvitationStatus.accepted
        invitation.responded_at = now
        await self._session.commit()
        return Success(InvitationResponse(invitation=invitation, join=outcome))

    async def promote_waitlist_participant(
        self, booking_id: uuid.UUID, waitlist_id: uuid.UUID
    ) -> ServiceResult[PromotionOutcome]:
        """Move a waiting entry into a participant seat.

        Capacity is re-checked here rather than trusted from waitlist
        admission: promotion only succeeds once a spot has been freed (a
        participant left or capacity was raised).
        """

        booking = await self._get_booking(booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)

        result = await self._session.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.id == waitlist_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return not_found("Waitlist entry not found")
        if entry.booking_id != booking.id:
            return validation_error("Waitlist entry does not belong to this group booking")

        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure
        if entry.status != WaitlistStatus.waiting:
            return conflict(f"Waitlist entry has already been {entry.status.value}")
        if booking.participant_count >= booking.capacity:
            return conflict("Group booking is full; free a spot before promoting from the waitlist")

        user_id, email, name = entry.user_id, entry.email, entry.name
        now = utcnow()
        try:
            claimed = await self._session.execute(
                update(WaitlistEntry)
                .where(
                    WaitlistEntry.id == waitlist_id,
                    WaitlistEntry.status == WaitlistStatus.waiting,
                )
                .values(status=WaitlistStatus.promoted, promoted_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await self._session.rollback()
                return conflict("Waitlist entry was already promoted or removed")

            if not await self._claim_spot(booking_id):
                await self._session.rollback()
                return conflict("Group booking is full; free a spot before promoting from the waitlist")

            participant = Participant(
                booking_id=booking_id,
                user_id=user_id,
                name=name,
                email=email,
                role=(
                    ParticipantRole.organizer
                    if user_id == booking.organizer_id
                    else ParticipantRole.attendee
                ),
                joined_at=now,
            )
            self._session.add(participant)
            await self._session.flush()
            await self._sync_capacity_status(booking)
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return conflict("Waitlisted user is already a participant")
        except SQLAlchemyError:
            await self._session.rollback()
            raise

        await self._session.refresh(entry)
        logger.info("Promoted waitlist entry %s into group booking %s", waitlist_id, booking_id)

        effects = ()
        if email:
            effects = (
                WaitlistPromotionEmail(
                    booking_id=booking_id,
                    to_email=email,
                    to_name=name,
                    booking_title=booking.title,
                    start_time=ensure_utc(booking.start_time),
                ),
            )
        return Success(
            PromotionOutcome(booking=booking, participant=participant, waitlist_entry=entry),
            effects=effects,
        )

    async def remove_waitlist_entry(
        self, booking_id: uuid.UUID, waitlist_id: uuid.UUID, actor: CallerIdentity
    ) -> ServiceResult[WaitlistEntry]:
        booking = await self._get_booking(booking_id)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        entry = await self._session.get(WaitlistEntry, waitlist_id)
        if entry is None:
            return not_found("Waitlist entry not found")
        if entry.booking_id != booking.id:
            return validation_error("Waitlist entry does not belong to this group booking")
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure
        if actor.user_id != entry.user_id and not await self._can_manage(booking, actor):
            return forbidden()
        if entry.status != WaitlistStatus.waiting:
            return conflict(f"Waitlist entry has already been {entry.status.value}")

        entry.status = WaitlistStatus.removed
        entry.removed_at = utcnow()
        await self._session.commit()
        return Success(entry)

    async def update_capacity(
        self, booking_id: uuid.UUID, capacity: int, actor: CallerIdentity
    ) -> ServiceResult[GroupBooking]:
        if capacity < 1:
            return validation_error("capacity must be at least 1")

        booking = await self._get_booking(booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        if not await self._can_manage(booking, actor):
            return forbidden()
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure

        current = booking.participant_count
        result = await self._session.execute(
            update(GroupBooking)
            .where(GroupBooking.id == booking_id, GroupBooking.participant_count <= capacity)
            .values(capacity=capacity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._session.rollback()
            return validation_error(
                f"capacity cannot be lower than the current participant count ({current})"
            )
        await self._sync_capacity_status(booking)
        await self._session.commit()
        return Success(booking)

    async def cancel_group_booking(
        self, booking_id: uuid.UUID, actor: CallerIdentity
    ) -> ServiceResult[GroupBooking]:
        booking = await self._get_booking(booking_id, lock=True)
        if booking is None:
            return not_found(_BOOKING_NOT_FOUND)
        if not await self._can_manage(booking, actor):
            return forbidden()
        failure = await self._ensure_mutable(booking)
        if failure is not None:
            return failure

        now = utcnow()
        booking.status = GroupBookingStatus.cancelled
        booking.cancelled_at = now
        await self._session.execute(
            update(GroupBookingInvitation)
            .where(
                GroupBookingInvitation.booking_id == booking_id,
                GroupBookingInvitation.status == InvitationStatus.pending,
            )
            .values(status=InvitationStatus.expired)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        logger.info("Group booking %s cancelled by %s", booking_id, actor.user_id)
        return Success(booking)

    async def expire_stale_invitations(self, org_id: uuid.UUID) -> ServiceResult[int]:
        booking_ids = select(GroupBooking.id).where(GroupBooking.org_id == org_id)
        result = await self._session.execute(
            update(GroupBookingInvitation)
            .where(
                GroupBookingInvitation.booking_id.in_(booking_ids),
                GroupBookingInvitation.status == InvitationStatus.pending,
                GroupBookingInvitation.expires_at < utcnow(),
            )
            .values(status=InvitationStatus.expired)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d stale group booking invitations for org %s", expired, org_id)
        return Success(expired)
