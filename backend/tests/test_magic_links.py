"""Tests for survey magic links."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from artspace.models import MagicLink, MagicLinkEvent, MagicLinkState, utcnow
from artspace.services.effects import MagicLinkEmail
from artspace.services.magic_links import MagicLinkService
from artspace.services.results import ErrorKind, Success
from artspace.utils import hash_token


@pytest.fixture
def links(session, settings) -> MagicLinkService:
    return MagicLinkService(session, settings)


@pytest.fixture
async def issued(links, org):
    result = await links.generate_magic_link("A@X.com", "s1", org.id, metadata={"cohort": "spring"})
    assert isinstance(result, Success)
    return result.value


async def _event_count(session, link_id) -> int:
    result = await session.execute(
        select(func.count(MagicLinkEvent.id)).where(MagicLinkEvent.magic_link_id == link_id)
    )
    return result.scalar_one()


class TestGenerateMagicLink:
    async def test_token_is_hex_and_only_its_hash_is_stored(self, issued):
        assert len(issued.token) == 64
        int(issued.token, 16)
        assert issued.link.token_hash == hash_token(issued.token)
        assert issued.token not in issued.link.token_hash

    async def test_url_points_at_the_survey(self, issued):
        assert issued.url == f"https://arts.example.org/survey/s1?token={issued.token}"

    async def test_defaults(self, issued):
        link = issued.link
        assert link.email == "a@x.com"
        assert link.usage_state == MagicLinkState.issued
        assert link.link_metadata == {"cohort": "spring"}
        lifetime = link.expires_at - utcnow()
        assert timedelta(hours=23, minutes=59) < lifetime <= timedelta(hours=24)

    async def test_repeated_calls_issue_independent_tokens(self, links, org):
        first = await links.generate_magic_link("a@x.com", "s1", org.id)
        second = await links.generate_magic_link("a@x.com", "s1", org.id)

        assert first.value.token != second.value.token
        assert first.value.link.id != second.value.link.id

    async def test_past_expiry_is_rejected(self, links, org):
        result = await links.generate_magic_link(
            "a@x.com", "s1", org.id, expires_at=utcnow() - timedelta(minutes=1)
        )
        assert result.kind == ErrorKind.validation

    async def test_invalid_email_is_rejected(self, links, org):
        result = await links.generate_magic_link("nobody", "s1", org.id)
        assert result.kind == ErrorKind.validation

    @pytest.mark.parametrize("address", ["a@b.c-", "a@@x.com", "a b@x.com"])
    async def test_malformed_addresses_are_rejected(self, links, org, address):
        result = await links.generate_magic_link(address, "s1", org.id)
        assert result.kind == ErrorKind.validation

    async def test_unknown_org_is_not_found(self, links):
        result = await links.generate_magic_link("a@x.com", "s1", uuid.uuid4())
        assert result.kind == ErrorKind.not_found

    async def test_send_email_emits_effect(self, links, org):
        result = await links.generate_magic_link("a@x.com", "s1", org.id, send_email=True)

        (effect,) = result.effects
        assert isinstance(effect, MagicLinkEmail)
        assert effect.to_email == "a@x.com"
        assert effect.url == result.value.url

    async def test_no_effect_without_send_email(self, issued, links, org):
        result = await links.generate_magic_link("a@x.com", "s1", org.id)
        assert result.effects == ()


class TestValidateMagicLink:
    async def test_fresh_token_is_valid(self, links, issued, org):
        validation = await links.validate_magic_link(issued.token)

        assert validation.valid is True
        assert validation.email == "a@x.com"
        assert validation.survey_id == "s1"
        assert validation.org_id == org.id
        assert validation.usage_state == MagicLinkState.issued
        assert validation.metadata == {"cohort": "spring"}

    async def test_validation_does_not_consume_the_token(self, links, issued):
        await links.validate_magic_link(issued.token)
        again = await links.validate_magic_link(issued.token)
        assert again.valid is True
        assert again.usage_state == MagicLinkState.issued

    async def test_unknown_token_is_invalid(self, links):
        validation = await links.validate_magic_link("f" * 64)
        assert validation.valid is False
        assert validation.error

    async def test_expired_unused_token_is_invalid(self, links, session, issued):
        issued.link.expires_at = utcnow() - timedelta(seconds=1)
        await session.commit()

        validation = await links.validate_magic_link(issued.token)

        assert validation.valid is False
        assert validation.error == "Token has expired"

    async def test_missing_token_is_invalid(self, links):
        validation = await links.validate_magic_link(None)
        assert validation.valid is False


class TestTrackMagicLinkUsage:
    async def test_full_survey_journey(self, links, issued):
        assert (await links.validate_magic_link(issued.token)).valid

        opened = await links.track_magic_link_usage(issued.token, "opened", user_agent="Firefox")
        assert opened.value.usage_state == MagicLinkState.opened
        assert opened.value.opened_at is not None

        completed = await links.track_magic_link_usage(issued.token, "completed")
        assert completed.value.usage_state == MagicLinkState.completed
        assert completed.value.completed_at is not None

        after = await links.validate_magic_link(issued.token)
        assert after.valid is False
        assert after.error == "Survey has already been completed"

    async def test_unknown_action_is_rejected_without_mutation(self, links, session, issued):
        link_id = issued.link.id

        result = await links.track_magic_link_usage(issued.token, "finished")

        assert result.kind == ErrorKind.validation
        link = await session.get(MagicLink, link_id, populate_existing=True)
        assert link.usage_state == MagicLinkState.issued
        assert link.opened_at is None
        assert link.started_at is None
        assert link.completed_at is None
        assert await _event_count(session, link_id) == 0

    async def test_issued_is_not_a_trackable_action(self, links, issued):
        result = await links.track_magic_link_usage(issued.token, "issued")
        assert result.kind == ErrorKind.validation

    async def test_state_never_moves_backwards(self, links, session, issued):
        link_id = issued.link.id
        await links.track_magic_link_usage(issued.token, "started")

        result = await links.track_magic_link_usage(issued.token, "opened")

        assert result.value.usage_state == MagicLinkState.started
        assert result.value.opened_at is not None
        assert await _event_count(session, link_id) == 2

    async def test_every_action_is_recorded(self, links, session, issued):
        await links.track_magic_link_usage(issued.token, "opened", user_agent="Safari", ip_address="203.0.113.9")

        event = (
            await session.execute(
                select(MagicLinkEvent).where(MagicLinkEvent.magic_link_id == issued.link.id)
            )
        ).scalar_one()
        assert event.action == MagicLinkState.opened
        assert event.user_agent == "Safari"
        assert event.ip_address == "203.0.113.9"

    async def test_completed_token_refuses_further_tracking(self, links, issued):
        await links.track_magic_link_usage(issued.token, "completed")

        result = await links.track_magic_link_usage(issued.token, "opened")

        assert result.kind == ErrorKind.conflict

    async def test_expired_token_refuses_tracking(self, links, session, issued):
        issued.link.expires_at = utcnow() - timedelta(minutes=1)
        await session.commit()

        result = await links.track_magic_link_usage(issued.token, "opened")

        assert result.kind == ErrorKind.conflict

    async def test_unknown_token_is_not_found(self, links):
        result = await links.track_magic_link_usage("0" * 64, "opened")
        assert result.kind == ErrorKind.not_found
