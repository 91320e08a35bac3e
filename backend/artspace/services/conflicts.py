"""Booking conflict detection and resolution."""

from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    Conflict,
    ConflictBooking,
    ConflictSeverity,
    ConflictStatus,
    ConflictType,
    GroupBooking,
    GroupBookingStatus,
    Resource,
    ensure_utc,
    utcnow,
)
from .results import ServiceResult, Success, conflict, not_found, validation_error

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (GroupBookingStatus.open, GroupBookingStatus.full)


@dataclass(frozen=True)
class BookingConflict:
    """A problem found while checking a prospective booking window."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    message: str
    conflicting_booking_ids: list[uuid.UUID] = field(default_factory=list)
    suggested_resolutions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConflictStats:
    total: int
    open: int
    resolved: int
    by_type: dict[str, int]
    by_severity: dict[str, int]


class ConflictDetectionService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _open_pairs(self, org_id: uuid.UUID) -> set[frozenset[uuid.UUID]]:
        """Booking pairs already covered by an open conflict, order-insensitive."""

        result = await self._session.execute(
            select(ConflictBooking.conflict_id, ConflictBooking.booking_id)
            .join(Conflict, Conflict.id == ConflictBooking.conflict_id)
            .where(Conflict.org_id == org_id, Conflict.status == ConflictStatus.open)
        )
        members: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for conflict_id, booking_id in result.all():
            members[conflict_id].append(booking_id)
        pairs: set[frozenset[uuid.UUID]] = set()
        for booking_ids in members.values():
            pairs.update(frozenset(pair) for pair in combinations(booking_ids, 2))
        return pairs

    async def _overlapping_bookings(
        self,
        org_id: uuid.UUID,
        resource_id: uuid.UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[uuid.UUID] = None,
    ) -> list[GroupBooking]:
        stmt = select(GroupBooking).where(
            GroupBooking.org_id == org_id,
            GroupBooking.resource_id == resource_id,
            GroupBooking.status.in_(_ACTIVE_STATUSES),
            GroupBooking.start_time < end_time,
            GroupBooking.end_time > start_time,
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(GroupBooking.id != exclude_booking_id)
        result = await self._session.execute(stmt.order_by(GroupBooking.start_time.asc()))
        return list(result.scalars())

    async def detect_conflicts(self, org_id: uuid.UUID) -> ServiceResult[list[Conflict]]:
        """Flag every unflagged pair of overlapping bookings on a shared resource."""

        result = await self._session.execute(
            select(GroupBooking)
            .where(
                GroupBooking.org_id == org_id,
                GroupBooking.resource_id.is_not(None),
                GroupBooking.status.in_(_ACTIVE_STATUSES),
                GroupBooking.end_time > utcnow(),
            )
            .order_by(GroupBooking.resource_id, GroupBooking.start_time.asc())
        )
        by_resource: dict[uuid.UUID, list[GroupBooking]] = defaultdict(list)
        for booking in result.scalars():
            by_resource[booking.resource_id].append(booking)

        flagged = await self._open_pairs(org_id)
        created: list[Conflict] = []
        for resource_id, bookings in by_resource.items():
            for index, first in enumerate(bookings):
                first_end = ensure_utc(first.end_time)
                for second in bookings[index + 1:]:
                    # Sorted by start time: nothing later can overlap ``first``.
                    if ensure_utc(second.start_time) >= first_end:
                        break
                    pair = frozenset((first.id, second.id))
                    if pair in flagged:
                        continue
                    record = Conflict(
                        org_id=org_id,
                        resource_id=resource_id,
                        conflict_type=ConflictType.double_booking,
                        severity=ConflictSeverity.high,
                        status=ConflictStatus.open,
                        bookings=[
                            ConflictBooking(booking_id=first.id),
                            ConflictBooking(booking_id=second.id),
                        ],
                    )
                    self._session.add(record)
                    flagged.add(pair)
                    created.append(record)

        await self._session.commit()
        if created:
            logger.info("Detected %d new booking conflicts for org %s", len(created), org_id)
        return Success(created)

    async def check_booking_conflicts(
        self,
        org_id: uuid.UUID,
        resource_id: uuid.UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[uuid.UUID] = None,
    ) -> ServiceResult[list[BookingConflict]]:
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        if end_time <= start_time:
            return validation_error("end must be after start")

        resource = await self._session.get(Resource, resource_id)
        if resource is None or resource.org_id != org_id:
            return Success(
                [
                    BookingConflict(
                        conflict_type=ConflictType.resource_unavailable,
                        severity=ConflictSeverity.critical,
                        message="Resource not found",
                        suggested_resolutions=[
                            "Select a different resource",
                            "Contact support if this resource should be available",
                        ],
                    )
                ]
            )

        found: list[BookingConflict] = []
        overlapping = await self._overlapping_bookings(
            org_id, resource_id, start_time, end_time, exclude_booking_id
        )
        if overlapping:
            found.append(
                BookingConflict(
                    conflict_type=ConflictType.double_booking,
                    severity=ConflictSeverity.high,
                    message="Resource is already booked during this time period",
                    conflicting_booking_ids=[booking.id for booking in overlapping],
                    suggested_resolutions=[
                        "Choose a different time slot",
                        "Select a different resource",
                        "Contact the existing booking holder to coordinate",
                    ],
                )
            )

        if not resource.is_active:
            found.append(
                BookingConflict(
                    conflict_type=ConflictType.resource_unavailable,
                    severity=ConflictSeverity.high,
                    message="Resource is currently inactive",
                    suggested_resolutions=["Select a different resource"],
                )
            )
        elif not resource.is_bookable:
            found.append(
                BookingConflict(
                    conflict_type=ConflictType.resource_unavailable,
                    severity=ConflictSeverity.medium,
                    message="Resource is not available for booking",
                    suggested_resolutions=[
                        "Select a different resource",
                        "Contact an administrator for special booking arrangements",
                    ],
                )
            )

        if resource.capacity:
            occupied = sum(booking.participant_count for booking in overlapping)
            if occupied >= resource.capacity:
                found.append(
                    BookingConflict(
                        conflict_type=ConflictType.capacity_exceeded,
                        severity=ConflictSeverity.medium,
                        message=f"Resource capacity exceeded ({occupied}/{resource.capacity})",
                        conflicting_booking_ids=[booking.id for booking in overlapping],
                        suggested_resolutions=[
                            "Choose a different time slot",
                            "Select a different resource with higher capacity",
                            "Reduce the number of participants",
                        ],
                    )
                )

        return Success(found)

    async def resolve_conflict(
        self,
        conflict_id: uuid.UUID,
        resolution: Optional[str],
        resolved_by: Optional[str],
        resolution_notes: Optional[str] = None,
    ) -> ServiceResult[Conflict]:
        """Close an open conflict. Resolving twice is reported as a conflict."""

        if not resolution or not resolution.strip():
            return validation_error("resolution is required")
        if not resolved_by or not resolved_by.strip():
            return validation_error("resolvedBy is required")

        result = await self._session.execute(
            select(Conflict)
            .where(Conflict.id == conflict_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return not_found("Conflict not found")
        if record.status == ConflictStatus.resolved:
            return conflict("Conflict has already been resolved")

        now = utcnow()
        record.status = ConflictStatus.resolved
        record.resolution = resolution.strip()
        record.resolved_by = resolved_by.strip()
        record.resolution_notes = resolution_notes
        record.resolved_at = now
        record.updated_at = now
        await self._session.commit()
        logger.info("Conflict %s resolved by %s", conflict_id, record.resolved_by)
        return Success(record)

    async def list_conflicts(
        self,
        org_id: uuid.UUID,
        status: Optional[ConflictStatus] = None,
        severity: Optional[ConflictSeverity] = None,
    ) -> ServiceResult[list[Conflict]]:
        stmt = select(Conflict).where(Conflict.org_id == org_id)
        if status is not None:
            stmt = stmt.where(Conflict.status == status)
        if severity is not None:
            stmt = stmt.where(Conflict.severity == severity)
        result = await self._session.execute(stmt.order_by(Conflict.created_at.desc()))
        return Success(list(result.scalars()))

    async def get_conflict_stats(self, org_id: uuid.UUID) -> ServiceResult[ConflictStats]:
        result = await self._session.execute(
            select(Conflict.status, Conflict.conflict_type, Conflict.severity).where(
                Conflict.org_id == org_id
            )
        )
        rows = result.all()
        statuses = Counter(row.status for row in rows)
        return Success(
            ConflictStats(
                total=len(rows),
                open=statuses[ConflictStatus.open],
                resolved=statuses[ConflictStatus.resolved],
                by_type=dict(Counter(row.conflict_type.value for row in rows)),
                by_severity=dict(Counter(row.severity.value for row in rows)),
            )
        )
