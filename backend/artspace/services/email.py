"""Email sending helpers backed by Resend."""

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterable, Mapping, Optional, Sequence

import httpx
from dotenv import find_dotenv, load_dotenv

from .effects import Effect, GroupInvitationEmail, MagicLinkEmail, WaitlistPromotionEmail

logger = logging.getLogger(__name__)

_DOTENV_PATH = find_dotenv(filename=".env", raise_error_if_not_found=False, usecwd=True)
if _DOTENV_PATH:
    load_dotenv(_DOTENV_PATH)


@dataclass(frozen=True, slots=True)
class ResendSettings:
    """Configuration required to send transactional email via Resend."""

    api_key: str
    from_email: str
    public_app_url: str
    from_name: Optional[str] = None
    reply_to_email: Optional[str] = None
    api_base_url: str = "https://api.resend.com"
    request_timeout_seconds: float = 10.0

    @property
    def normalized_public_base(self) -> str:
        return self.public_app_url.rstrip("/")


_REQUIRED_ENVIRONMENT_KEYS: Mapping[str, Sequence[str]] = {
    "api_key": ("RESEND_API_KEY",),
    "from_email": ("RESEND_FROM_EMAIL",),
    "public_app_url": ("PUBLIC_APP_URL", "NEXT_PUBLIC_APP_URL"),
}

_OPTIONAL_ENVIRONMENT_KEYS: Mapping[str, Sequence[str]] = {
    "from_name": ("RESEND_FROM_NAME",),
    "reply_to_email": ("RESEND_REPLY_TO_EMAIL",),
    "api_base_url": ("RESEND_API_BASE_URL",),
    "request_timeout_seconds": ("RESEND_HTTP_TIMEOUT_SECONDS",),
}


def _read_first_env(names: Sequence[str]) -> Optional[str]:
    for env_name in names:
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            return value
    return None


@lru_cache
def get_resend_settings() -> ResendSettings:
    values: dict[str, str] = {}
    missing: list[str] = []

    for field_name, env_names in _REQUIRED_ENVIRONMENT_KEYS.items():
        value = _read_first_env(env_names)
        if value is None:
            missing.append(" or ".join(env_names))
            continue
        values[field_name] = value

    if missing:
        raise RuntimeError(
            f"Resend environment variables are not configured: missing {', '.join(missing)}"
        )

    for field_name, env_names in _OPTIONAL_ENVIRONMENT_KEYS.items():
        value = _read_first_env(env_names)
        if value is not None:
            values[field_name] = value

    request_timeout = 10.0
    timeout_value = values.get("request_timeout_seconds")
    if timeout_value is not None:
        try:
            request_timeout = float(timeout_value)
        except ValueError as exc:  # pragma: no cover - configuration error
            raise RuntimeError(
                "Resend environment variables are not configured:"
                " RESEND_HTTP_TIMEOUT_SECONDS must be a number"
            ) from exc

    return ResendSettings(
        api_key=values["api_key"],
        from_email=values["from_email"],
        public_app_url=values["public_app_url"],
        from_name=values.get("from_name"),
        reply_to_email=values.get("reply_to_email"),
        api_base_url=values.get("api_base_url", "https://api.resend.com"),
        request_timeout_seconds=request_timeout,
    )


class EmailServiceError(RuntimeError):
    """Raised when an email could not be delivered."""


def _format_when(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M %Z")


def _render(template: str, context: Mapping[str, str]) -> str:
    rendered = template
    for key, value in context.items():
        rendered = rendered.replace(f"{{{{{key}}}}}", value)
    return rendered


_INVITATION_SUBJECT = "You're invited to {{booking_title}}"
_INVITATION_BODY = (
    "Hi {{recipient_name}},\n\n"
    "You've been invited to join {{booking_title}} on {{start_time}}.\n"
    "{{personal_message}}\n"
    "Respond to your invitation here: {{invitation_link}}\n\n"
    "This invitation expires on {{expires_at}}."
)

_PROMOTION_SUBJECT = "A spot opened up in {{booking_title}}"
_PROMOTION_BODY = (
    "Hi {{recipient_name}},\n\n"
    "Good news! You've been moved off the waitlist for {{booking_title}} "
    "on {{start_time}}. See you there.\n\n"
    "{{booking_link}}"
)

_MAGIC_LINK_SUBJECT = "Your survey link"
_MAGIC_LINK_BODY = (
    "Hello,\n\n"
    "Use the link below to open your survey. It can only be used until "
    "{{expires_at}}.\n\n"
    "{{survey_link}}"
)


class ResendEmailService:
    """Send booking and survey notifications through Resend."""

    def __init__(self, settings: ResendSettings) -> None:
        self._settings = settings

    def _build_from_header(self) -> str:
        if self._settings.from_name:
            return f"{self._settings.from_name} <{self._settings.from_email}>"
        return self._settings.from_email

    def build_invitation_link(self, token: str) -> str:
        return f"{self._settings.normalized_public_base}/group-bookings/invitations/{token}"

    def build_booking_link(self, booking_id: object) -> str:
        return f"{self._settings.normalized_public_base}/bookings/{booking_id}"

    def _build_content(self, effect: Effect) -> tuple[str, str, str]:
        if isinstance(effect, GroupInvitationEmail):
            context = {
                "recipient_name": effect.to_name or effect.to_email,
                "booking_title": effect.booking_title,
                "start_time": _format_when(effect.start_time),
                "expires_at": _format_when(effect.expires_at),
                "personal_message": effect.message or "",
                "invitation_link": self.build_invitation_link(effect.invite_token),
            }
            subject, body = _INVITATION_SUBJECT, _INVITATION_BODY
        elif isinstance(effect, WaitlistPromotionEmail):
            context = {
                "recipient_name": effect.to_name or effect.to_email,
                "booking_title": effect.booking_title,
                "start_time": _format_when(effect.start_time),
                "booking_link": self.build_booking_link(effect.booking_id),
            }
            subject, body = _PROMOTION_SUBJECT, _PROMOTION_BODY
        elif isinstance(effect, MagicLinkEmail):
            context = {
                "expires_at": _format_when(effect.expires_at),
                "survey_link": effect.url,
            }
            subject, body = _MAGIC_LINK_SUBJECT, _MAGIC_LINK_BODY
        else:
            raise ValueError(f"Unsupported email effect: {type(effect).__name__}")

        text_body = _render(body, context).strip()
        html_body = "<br>".join(html.escape(part) for part in text_body.split("\n"))
        return _render(subject, context).strip(), text_body, html_body

    async def _send_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: str,
        *,
        context_label: str,
    ) -> dict:
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        json_payload: dict[str, object] = {
            "from": self._build_from_header(),
            "to": [to_email],
            "subject": subject,
            "text": text_body,
            "html": html_body,
        }
        if self._settings.reply_to_email:
            json_payload["reply_to"] = [self._settings.reply_to_email]

        try:
            async with httpx.AsyncClient(
                base_url=self._settings.api_base_url,
                timeout=self._settings.request_timeout_seconds,
            ) as client:
                response = await client.post("/emails", json=json_payload, headers=headers)
        except httpx.HTTPError as exc:
            raise EmailServiceError(f"Could not reach Resend while sending {context_label} email") from exc

        if response.status_code >= 400:
            detail = response.text
            logger.error("Resend failed to send %s email: %s", context_label, detail)
            raise EmailServiceError(
                f"Resend returned {response.status_code} while sending {context_label} email: {detail}"
            )

        return response.json()

    async def send_effect(self, effect: Effect) -> Optional[str]:
        """Deliver ``effect`` and return the Resend message id, if any."""

        subject, text_body, html_body = self._build_content(effect)
        data = await self._send_email(
            effect.to_email,
            subject,
            text_body,
            html_body,
            context_label=type(effect).__name__,
        )
        provider_id = str(data.get("id")) if data.get("id") is not None else None
        logger.info("Sent %s to %s (provider_id=%s)", type(effect).__name__, effect.to_email, provider_id)
        return provider_id


async def dispatch_effects(effects: Iterable[Effect], email_service: ResendEmailService) -> None:
    """Send each effect; delivery failures are logged, never raised."""

    for effect in effects:
        try:
            await email_service.send_effect(effect)
        except EmailServiceError as exc:
            logger.warning(
                "Failed to deliver %s to %s: %s",
                type(effect).__name__,
                effect.to_email,
                exc,
            )


@lru_cache
def get_resend_email_service() -> ResendEmailService:
    return ResendEmailService(get_resend_settings())
