"""SQLAlchemy ORM models for the arts-organization booking backend."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime.

    Some drivers (SQLite in tests) hand back naive datetimes even for
    ``DateTime(timezone=True)`` columns; those are stored as UTC.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, validate_strings=True, length=32)


class GroupBookingStatus(enum.Enum):
    open = "open"
    full = "full"
    cancelled = "cancelled"
    completed = "completed"


TERMINAL_BOOKING_STATUSES = frozenset(
    {GroupBookingStatus.cancelled, GroupBookingStatus.completed}
)


class GroupBookingType(enum.Enum):
    public = "public"
    private = "private"
    invite_only = "invite_only"


class ParticipantRole(enum.Enum):
    organizer = "organizer"
    attendee = "attendee"


class InvitationStatus(enum.Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class WaitlistStatus(enum.Enum):
    waiting = "waiting"
    promoted = "promoted"
    removed = "removed"


class ConflictType(enum.Enum):
    double_booking = "double_booking"
    resource_unavailable = "resource_unavailable"
    capacity_exceeded = "capacity_exceeded"


class ConflictSeverity(enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class ConflictStatus(enum.Enum):
    open = "open"
    resolved = "resolved"


class MagicLinkState(enum.Enum):
    issued = "issued"
    opened = "opened"
    started = "started"
    completed = "completed"


# Ordering used to keep ``MagicLink.usage_state`` at the furthest state reached.
MAGIC_LINK_STATE_ORDER: dict[MagicLinkState, int] = {
    MagicLinkState.issued: 0,
    MagicLinkState.opened: 1,
    MagicLinkState.started: 2,
    MagicLinkState.completed: 3,
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class Organization(Base, TimestampMixin):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    members: Mapped[list["OrgMember"]] = relationship(back_populates="org")


class OrgMember(Base, TimestampMixin):
    __tablename__ = "org_members"
    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_org_member"),
        CheckConstraint(
            "role IN ('owner','admin','member','viewer')", name="ck_org_member_role"
        ),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    org: Mapped[Organization] = relationship(back_populates="members")


class Resource(Base, TimestampMixin):
    __tablename__ = "resources"
    __table_args__ = (Index("idx_resources_org_id", "org_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    resource_type: Mapped[str] = mapped_column(String, default="studio", nullable=False)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_bookable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class GroupBooking(Base, TimestampMixin):
    __tablename__ = "group_bookings"
    __table_args__ = (
        Index("idx_group_bookings_org_id", "org_id"),
        Index("idx_group_bookings_resource_window", "resource_id", "start_time", "end_time"),
        CheckConstraint("capacity >= 1", name="ck_group_booking_capacity"),
        CheckConstraint(
            "participant_count >= 0 AND participant_count <= capacity",
            name="ck_group_booking_participant_count",
        ),
        CheckConstraint("end_time > start_time", name="ck_group_booking_window"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    resource_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("resources.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    participant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    waitlist_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    booking_type: Mapped[GroupBookingType] = mapped_column(
        _enum_column(GroupBookingType, "group_booking_type"),
        default=GroupBookingType.public,
        nullable=False,
    )
    organizer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[GroupBookingStatus] = mapped_column(
        _enum_column(GroupBookingStatus, "group_booking_status"),
        default=GroupBookingStatus.open,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", lazy="raise"
    )
    invitations: Mapped[list["GroupBookingInvitation"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", lazy="raise"
    )
    waitlist: Mapped[list["WaitlistEntry"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", lazy="raise"
    )

    @property
    def available_spots(self) -> int:
        return max(self.capacity - self.participant_count, 0)

    def effective_status(self, now: datetime) -> GroupBookingStatus:
        """Status as of ``now``; an elapsed open/full booking is completed."""

        if self.status in TERMINAL_BOOKING_STATUSES:
            return self.status
        if ensure_utc(self.end_time) <= now:
            return GroupBookingStatus.completed
        return self.status


class Participant(Base):
    __tablename__ = "group_booking_participants"
    __table_args__ = (
        UniqueConstraint("booking_id", "user_id", name="uq_group_booking_participant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("group_bookings.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[ParticipantRole] = mapped_column(
        _enum_column(ParticipantRole, "participant_role"),
        default=ParticipantRole.attendee,
        nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    booking: Mapped[GroupBooking] = relationship(back_populates="participants")


class GroupBookingInvitation(Base):
    __tablename__ = "group_booking_invitations"
    __table_args__ = (Index("idx_group_booking_invitations_booking_id", "booking_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("group_bookings.id", ondelete="CASCADE"), nullable=False
    )
    invited_by_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    invited_email: Mapped[str] = mapped_column(String, nullable=False)
    invited_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    invited_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_hash: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    status: Mapped[InvitationStatus] = mapped_column(
        _enum_column(InvitationStatus, "group_invitation_status"),
        default=InvitationStatus.pending,
        nullable=False,
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    booking: Mapped[GroupBooking] = relationship(back_populates="invitations")


class WaitlistEntry(Base):
    __tablename__ = "booking_waitlist"
    __table_args__ = (Index("idx_booking_waitlist_booking_id", "booking_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("group_bookings.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        _enum_column(WaitlistStatus, "waitlist_status"),
        default=WaitlistStatus.waiting,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    promoted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    removed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    booking: Mapped[GroupBooking] = relationship(back_populates="waitlist")


class Conflict(Base, TimestampMixin):
    __tablename__ = "booking_conflicts"
    __table_args__ = (Index("idx_booking_conflicts_org_id", "org_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    resource_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    conflict_type: Mapped[ConflictType] = mapped_column(
        _enum_column(ConflictType, "conflict_type"), nullable=False
    )
    severity: Mapped[ConflictSeverity] = mapped_column(
        _enum_column(ConflictSeverity, "conflict_severity"),
        default=ConflictSeverity.medium,
        nullable=False,
    )
    status: Mapped[ConflictStatus] = mapped_column(
        _enum_column(ConflictStatus, "conflict_status"),
        default=ConflictStatus.open,
        nullable=False,
    )
    resolution: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    bookings: Mapped[list["ConflictBooking"]] = relationship(
        back_populates="conflict", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def booking_ids(self) -> list[uuid.UUID]:
        return sorted((link.booking_id for link in self.bookings), key=str)


class ConflictBooking(Base):
    __tablename__ = "booking_conflict_bookings"

    conflict_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("booking_conflicts.id", ondelete="CASCADE"), primary_key=True
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("group_bookings.id", ondelete="RESTRICT"), primary_key=True
    )

    conflict: Mapped[Conflict] = relationship(back_populates="bookings")


class MagicLink(Base, TimestampMixin):
    __tablename__ = "magic_links"
    __table_args__ = (Index("idx_magic_links_survey", "org_id", "survey_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token_hash: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False)
    survey_id: Mapped[str] = mapped_column(String, nullable=False)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_state: Mapped[MagicLinkState] = mapped_column(
        _enum_column(MagicLinkState, "magic_link_state"),
        default=MagicLinkState.issued,
        nullable=False,
    )
    # ``metadata`` is reserved on declarative classes.
    link_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )
    opened_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    events: Mapped[list["MagicLinkEvent"]] = relationship(
        back_populates="magic_link", cascade="all, delete-orphan", lazy="raise"
    )


class MagicLinkEvent(Base, TimestampMixin):
    __tablename__ = "magic_link_events"
    __table_args__ = (Index("idx_magic_link_events_link_id", "magic_link_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    magic_link_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("magic_links.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[MagicLinkState] = mapped_column(
        _enum_column(MagicLinkState, "magic_link_action"), nullable=False
    )
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    magic_link: Mapped[MagicLink] = relationship(back_populates="events")


class EmailEvent(Base):
    __tablename__ = "email_events"
    __table_args__ = (Index("idx_email_events_provider_id", "provider_message_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
