"""Tests for notification rendering and effect dispatch."""

import uuid
from datetime import datetime, timezone

from artspace.services.effects import GroupInvitationEmail, MagicLinkEmail, WaitlistPromotionEmail
from artspace.services.email import (
    EmailServiceError,
    ResendEmailService,
    ResendSettings,
    dispatch_effects,
)

START = datetime(2026, 11, 2, 18, 30, tzinfo=timezone.utc)


def _service(**overrides) -> ResendEmailService:
    values = dict(
        api_key="re_test",
        from_email="bookings@arts.example.org",
        public_app_url="https://arts.example.org/",
    )
    values.update(overrides)
    return ResendEmailService(ResendSettings(**values))


class TestBuildContent:
    def test_invitation(self):
        effect = GroupInvitationEmail(
            invitation_id=uuid.uuid4(),
            to_email="guest@example.org",
            to_name="Grace",
            booking_title="Pottery Night",
            start_time=START,
            invite_token="tok123",
            expires_at=START,
            message="Bring an apron <3",
        )

        subject, text, html_body = _service()._build_content(effect)

        assert subject == "You're invited to Pottery Night"
        assert text.startswith("Hi Grace,")
        assert "2026-11-02 18:30 UTC" in text
        assert "https://arts.example.org/group-bookings/invitations/tok123" in text
        assert "Bring an apron &lt;3" in html_body

    def test_promotion_falls_back_to_email_for_name(self):
        booking_id = uuid.uuid4()
        effect = WaitlistPromotionEmail(
            booking_id=booking_id,
            to_email="wait@example.org",
            to_name=None,
            booking_title="Pottery Night",
            start_time=START,
        )

        subject, text, _ = _service()._build_content(effect)

        assert subject == "A spot opened up in Pottery Night"
        assert text.startswith("Hi wait@example.org,")
        assert f"https://arts.example.org/bookings/{booking_id}" in text

    def test_magic_link(self):
        effect = MagicLinkEmail(
            to_email="a@x.com",
            survey_id="s1",
            url="https://arts.example.org/survey/s1?token=abc",
            expires_at=START,
        )

        subject, text, _ = _service()._build_content(effect)

        assert subject == "Your survey link"
        assert text.endswith("https://arts.example.org/survey/s1?token=abc")

    def test_from_header_includes_name(self):
        assert _service(from_name="Riverside Arts")._build_from_header() == (
            "Riverside Arts <bookings@arts.example.org>"
        )


class FlakyEmailService:
    def __init__(self):
        self.attempts = []

    async def send_effect(self, effect):
        self.attempts.append(effect.to_email)
        if effect.to_email.startswith("broken"):
            raise EmailServiceError("Resend returned 500")
        return "msg_1"


async def test_dispatch_continues_after_delivery_failure():
    effects = [
        MagicLinkEmail(to_email="broken@x.com", survey_id="s1", url="u1", expires_at=START),
        MagicLinkEmail(to_email="fine@x.com", survey_id="s1", url="u2", expires_at=START),
    ]
    service = FlakyEmailService()

    await dispatch_effects(effects, service)

    assert service.attempts == ["broken@x.com", "fine@x.com"]
