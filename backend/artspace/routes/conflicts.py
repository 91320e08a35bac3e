"""Booking conflict detection, availability checks and resolution."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models, schemas
from ..auth import CallerIdentity, require_authenticated_identity
from ..database import get_session
from ..services.conflicts import ConflictDetectionService
from ..services.memberships import ADMIN_ROLES, MEMBER_ROLES, require_org_membership_role
from ..services.results import unwrap

router = APIRouter(prefix="/api", tags=["conflicts"])


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def _conflict_read(conflict: models.Conflict) -> schemas.ConflictRead:
    return schemas.ConflictRead.model_validate(conflict)


@router.post("/orgs/{org_id}/conflicts/detect", response_model=schemas.ConflictDetectResponse)
async def detect_conflicts(
    org_id: str,
    session: AsyncSession = Depends(get_session),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ConflictDetectResponse:
    org_uuid = _parse_uuid(org_id, "organization id")
    await require_org_membership_role(session, org_uuid, identity, allowed_roles=ADMIN_ROLES)
    created = unwrap(await ConflictDetectionService(session).detect_conflicts(org_uuid)).value
    return schemas.ConflictDetectResponse(
        count=len(created),
        conflicts=[_conflict_read(conflict) for conflict in created],
    )


@router.get("/orgs/{org_id}/conflicts", response_model=list[schemas.ConflictRead])
async def list_conflicts(
    org_id: str,
    status: Optional[models.ConflictStatus] = Query(None),
    severity: Optional[models.ConflictSeverity] = Query(None),
    session: AsyncSession = Depends(get_session),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> list[schemas.ConflictRead]:
    org_uuid = _parse_uuid(org_id, "organization id")
    await require_org_membership_role(session, org_uuid, identity, allowed_roles=MEMBER_ROLES)
    result = await ConflictDetectionService(session).list_conflicts(
        org_uuid, status=status, severity=severity
    )
    return [_conflict_read(conflict) for conflict in unwrap(result).value]


@router.get("/orgs/{org_id}/conflicts/stats", response_model=schemas.ConflictStatsRead)
async def get_conflict_stats(
    org_id: str,
    session: AsyncSession = Depends(get_session),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ConflictStatsRead:
    org_uuid = _parse_uuid(org_id, "organization id")
    await require_org_membership_role(session, org_uuid, identity, allowed_roles=MEMBER_ROLES)
    stats = unwrap(await ConflictDetectionService(session).get_conflict_stats(org_uuid)).value
    return schemas.ConflictStatsRead(
        total=stats.total,
        open=stats.open,
        resolved=stats.resolved,
        by_type=stats.by_type,
        by_severity=stats.by_severity,
    )


@router.get("/orgs/{org_id}/conflicts/check", response_model=schemas.ConflictCheckResponse)
async def check_booking_conflicts(
    org_id: str,
    resource_id: uuid.UUID = Query(..., alias="resourceId"),
    start_time: datetime = Query(..., alias="startTime"),
    end_time: datetime = Query(..., alias="endTime"),
    exclude_booking_id: Optional[uuid.UUID] = Query(None, alias="excludeBookingId"),
    session: AsyncSession = Depends(get_session),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ConflictCheckResponse:
    org_uuid = _parse_uuid(org_id, "organization id")
    await require_org_membership_role(session, org_uuid, identity, allowed_roles=MEMBER_ROLES)
    result = await ConflictDetectionService(session).check_booking_conflicts(
        org_uuid, resource_id, start_time, end_time, exclude_booking_id
    )
    found = unwrap(result).value
    return schemas.ConflictCheckResponse(
        has_conflicts=bool(found),
        conflicts=[
            schemas.BookingConflictRead(
                conflict_type=item.conflict_type,
                severity=item.severity,
                message=item.message,
                conflicting_booking_ids=item.conflicting_booking_ids,
                suggested_resolutions=item.suggested_resolutions,
            )
            for item in found
        ],
    )


@router.post("/conflicts/{conflict_id}/resolve", response_model=schemas.ConflictResolveResponse)
async def resolve_conflict(
    conflict_id: str,
    payload: schemas.ConflictResolve,
    session: AsyncSession = Depends(get_session),
    identity: CallerIdentity = Depends(require_authenticated_identity),
) -> schemas.ConflictResolveResponse:
    conflict_uuid = _parse_uuid(conflict_id, "conflict id")
    existing = await session.get(models.Conflict, conflict_uuid)
    if existing is None:
        raise HTTPException(status_code=404, detail="Conflict not found")
    await require_org_membership_role(
        session, existing.org_id, identity, allowed_roles=ADMIN_ROLES
    )
    result = await ConflictDetectionService(session).resolve_conflict(
        conflict_uuid,
        payload.resolution,
        payload.resolved_by,
        payload.resolution_notes,
    )
    return schemas.ConflictResolveResponse(conflict=_conflict_read(unwrap(result).value))
