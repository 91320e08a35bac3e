"""Tests for booking conflict detection, availability checks and resolution."""

import uuid
from datetime import timedelta

import pytest

from artspace.models import (
    Conflict,
    ConflictSeverity,
    ConflictStatus,
    ConflictType,
    GroupBookingStatus,
    Resource,
    utcnow,
)
from artspace.services.conflicts import ConflictDetectionService
from artspace.services.results import ErrorKind, Success


@pytest.fixture
def detector(session) -> ConflictDetectionService:
    return ConflictDetectionService(session)


@pytest.fixture
def tomorrow():
    return (utcnow() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)


class TestDetectConflicts:
    async def test_overlapping_bookings_on_same_resource_are_flagged(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        first = await booking_factory(resource_id=studio.id, start_time=tomorrow)
        second = await booking_factory(resource_id=studio.id, start_time=tomorrow + timedelta(hours=1))

        result = await detector.detect_conflicts(org.id)

        assert isinstance(result, Success)
        (conflict,) = result.value
        assert conflict.conflict_type == ConflictType.double_booking
        assert conflict.severity == ConflictSeverity.high
        assert conflict.status == ConflictStatus.open
        assert set(conflict.booking_ids) == {first.id, second.id}

    async def test_back_to_back_bookings_do_not_conflict(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow + timedelta(hours=2))

        result = await detector.detect_conflicts(org.id)

        assert result.value == []

    async def test_different_resources_do_not_conflict(
        self, detector, session, org, studio, booking_factory, tomorrow
    ):
        hall = Resource(org_id=org.id, name="Recital Hall")
        session.add(hall)
        await session.commit()
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=hall.id, start_time=tomorrow)

        result = await detector.detect_conflicts(org.id)

        assert result.value == []

    async def test_cancelled_bookings_are_ignored(self, detector, org, studio, booking_factory, tomorrow):
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(
            resource_id=studio.id, start_time=tomorrow, status=GroupBookingStatus.cancelled
        )

        result = await detector.detect_conflicts(org.id)

        assert result.value == []

    async def test_running_detection_twice_does_not_duplicate(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow + timedelta(minutes=30))

        first = await detector.detect_conflicts(org.id)
        second = await detector.detect_conflicts(org.id)

        assert len(first.value) == 1
        assert second.value == []

    async def test_three_way_overlap_flags_every_pair(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        for offset in (0, 30, 60):
            await booking_factory(resource_id=studio.id, start_time=tomorrow + timedelta(minutes=offset))

        result = await detector.detect_conflicts(org.id)

        assert len(result.value) == 3

    async def test_resolved_pairs_are_flagged_again(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        org_id = org.id
        (conflict,) = (await detector.detect_conflicts(org_id)).value
        await detector.resolve_conflict(conflict.id, "moved", "admin@example.org")

        result = await detector.detect_conflicts(org_id)

        assert len(result.value) == 1


class TestCheckBookingConflicts:
    async def test_free_slot_has_no_conflicts(self, detector, org, studio, tomorrow):
        result = await detector.check_booking_conflicts(
            org.id, studio.id, tomorrow, tomorrow + timedelta(hours=1)
        )
        assert result.value == []

    async def test_overlap_is_reported_with_suggestions(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        existing = await booking_factory(resource_id=studio.id, start_time=tomorrow)

        result = await detector.check_booking_conflicts(
            org.id, studio.id, tomorrow + timedelta(minutes=30), tomorrow + timedelta(hours=3)
        )

        (found,) = result.value
        assert found.conflict_type == ConflictType.double_booking
        assert found.conflicting_booking_ids == [existing.id]
        assert found.suggested_resolutions

    async def test_excluded_booking_is_not_its_own_conflict(
        self, detector, org, studio, booking_factory, tomorrow
    ):
        existing = await booking_factory(resource_id=studio.id, start_time=tomorrow)

        result = await detector.check_booking_conflicts(
            org.id,
            studio.id,
            tomorrow,
            tomorrow + timedelta(hours=2),
            exclude_booking_id=existing.id,
        )

        assert result.value == []

    async def test_missing_resource_is_critical(self, detector, org, tomorrow):
        result = await detector.check_booking_conflicts(
            org.id, uuid.uuid4(), tomorrow, tomorrow + timedelta(hours=1)
        )

        (found,) = result.value
        assert found.conflict_type == ConflictType.resource_unavailable
        assert found.severity == ConflictSeverity.critical

    async def test_inactive_resource_is_unavailable(self, detector, session, org, tomorrow):
        closed = Resource(org_id=org.id, name="Closed Gallery", is_active=False)
        session.add(closed)
        await session.commit()

        result = await detector.check_booking_conflicts(
            org.id, closed.id, tomorrow, tomorrow + timedelta(hours=1)
        )

        (found,) = result.value
        assert found.conflict_type == ConflictType.resource_unavailable
        assert found.severity == ConflictSeverity.high

    async def test_resource_capacity_exceeded(self, detector, session, org, booking_factory, tomorrow):
        booth = Resource(org_id=org.id, name="Recording Booth", capacity=2)
        session.add(booth)
        await session.commit()
        await booking_factory(
            resource_id=booth.id, start_time=tomorrow, capacity=2, participant_count=2,
            status=GroupBookingStatus.full,
        )

        result = await detector.check_booking_conflicts(
            org.id, booth.id, tomorrow, tomorrow + timedelta(hours=1)
        )

        kinds = {found.conflict_type for found in result.value}
        assert kinds == {ConflictType.double_booking, ConflictType.capacity_exceeded}

    async def test_inverted_window_is_invalid(self, detector, org, studio, tomorrow):
        result = await detector.check_booking_conflicts(
            org.id, studio.id, tomorrow, tomorrow - timedelta(hours=1)
        )
        assert result.kind == ErrorKind.validation


class TestResolveConflict:
    @pytest.fixture
    async def open_conflict(self, detector, org, studio, booking_factory, tomorrow) -> Conflict:
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        (conflict,) = (await detector.detect_conflicts(org.id)).value
        return conflict

    async def test_resolution_is_recorded(self, detector, open_conflict):
        result = await detector.resolve_conflict(
            open_conflict.id, "rescheduled", "admin@example.org", "Moved the second class to Studio B"
        )

        resolved = result.value
        assert resolved.status == ConflictStatus.resolved
        assert resolved.resolution == "rescheduled"
        assert resolved.resolved_by == "admin@example.org"
        assert resolved.resolution_notes == "Moved the second class to Studio B"
        assert resolved.resolved_at is not None

    async def test_resolving_twice_is_a_conflict(self, detector, open_conflict):
        await detector.resolve_conflict(open_conflict.id, "rescheduled", "admin@example.org")

        second = await detector.resolve_conflict(open_conflict.id, "cancelled", "someone-else")

        assert second.kind == ErrorKind.conflict
        assert open_conflict.resolution == "rescheduled"

    @pytest.mark.parametrize("resolution, resolved_by", [("", "admin"), ("moved", "  "), (None, "admin")])
    async def test_blank_fields_are_rejected(self, detector, open_conflict, resolution, resolved_by):
        result = await detector.resolve_conflict(open_conflict.id, resolution, resolved_by)
        assert result.kind == ErrorKind.validation

    async def test_unknown_conflict_is_not_found(self, detector):
        result = await detector.resolve_conflict(uuid.uuid4(), "moved", "admin")
        assert result.kind == ErrorKind.not_found


class TestListingAndStats:
    async def test_filters_and_stats(self, detector, org, studio, booking_factory, tomorrow):
        org_id = org.id
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow + timedelta(minutes=30))
        created = (await detector.detect_conflicts(org_id)).value
        await detector.resolve_conflict(created[0].id, "moved", "admin")

        open_only = (await detector.list_conflicts(org_id, status=ConflictStatus.open)).value
        everything = (await detector.list_conflicts(org_id)).value
        stats = (await detector.get_conflict_stats(org_id)).value

        assert len(open_only) == 2
        assert len(everything) == 3
        assert stats.total == 3
        assert stats.open == 2
        assert stats.resolved == 1
        assert stats.by_type == {"double_booking": 3}
        assert stats.by_severity == {"high": 3}

    async def test_severity_filter(self, detector, org, studio, booking_factory, tomorrow):
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await booking_factory(resource_id=studio.id, start_time=tomorrow)
        await detector.detect_conflicts(org.id)

        low = await detector.list_conflicts(org.id, severity=ConflictSeverity.low)

        assert low.value == []
