"""Outbound side effects produced by domain operations.

Domain services describe the notifications they want sent instead of sending
them inline. Routes hand the effects to ``email.dispatch_effects`` once the
database transaction has committed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True, slots=True)
class GroupInvitationEmail:
    invitation_id: uuid.UUID
    to_email: str
    to_name: Optional[str]
    booking_title: str
    start_time: datetime
    invite_token: str
    expires_at: datetime
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class WaitlistPromotionEmail:
    booking_id: uuid.UUID
    to_email: str
    to_name: Optional[str]
    booking_title: str
    start_time: datetime


@dataclass(frozen=True, slots=True)
class MagicLinkEmail:
    to_email: str
    survey_id: str
    url: str
    expires_at: datetime


Effect = Union[GroupInvitationEmail, WaitlistPromotionEmail, MagicLinkEmail]
