"""Resend delivery webhooks."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models, schemas
from ..config import AppSettings, get_settings
from ..database import get_session
from ..webhook_security import WebhookSignatureError, verify_svix_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _first_recipient(data: dict[str, Any]) -> Optional[str]:
    to = data.get("to")
    if isinstance(to, list) and to:
        return str(to[0])
    if isinstance(to, str) and to:
        return to
    return None


@router.post("/resend", response_model=schemas.WebhookAck)
async def receive_resend_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> schemas.WebhookAck:
    secret = settings.resend_webhook_secret
    if not secret:
        logger.error("Resend webhook received but RESEND_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=503, detail="Webhook verification is not configured")

    raw_body = await request.body()
    try:
        verify_svix_webhook(
            request.headers,
            raw_body,
            secret,
            max_age=settings.webhook_max_age_seconds,
        )
    except WebhookSignatureError as exc:
        logger.warning("Rejected Resend webhook: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    try:
        event = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body must be JSON") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise HTTPException(status_code=400, detail="Webhook event type is missing")

    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    record = models.EmailEvent(
        provider_message_id=data.get("email_id"),
        event_type=event["type"],
        recipient=_first_recipient(data),
        payload=event,
    )
    session.add(record)
    await session.commit()
    logger.info(
        "Stored Resend %s event for message %s", record.event_type, record.provider_message_id
    )
    return schemas.WebhookAck(event_type=record.event_type)
