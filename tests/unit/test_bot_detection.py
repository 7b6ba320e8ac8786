import pytest

from app.features.contact_sync.domain import PlatformIdentity, ValidationRejection
from app.features.contact_sync.domain.metadata import SlackIdentityMetadata
from app.features.contact_sync.services.bot_detection import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    BotDetector,
)


def _identity(name="Alice Smith", email=None, handle=None, metadata=None):
    return PlatformIdentity(
        platform="slack", platform_id="U1", display_name=name, email=email, handle=handle, metadata=metadata
    )


def test_platform_bot_flag_is_rejected():
    detector = BotDetector()
    identity = _identity(name="Deploys", metadata=SlackIdentityMetadata(is_bot=True))

    with pytest.raises(ValidationRejection) as exc_info:
        detector.ensure_not_bot(identity)

    assert exc_info.value.confidence == CONFIDENCE_HIGH
    assert "Platform marked as bot" in exc_info.value.reasons


def test_deleted_account_is_rejected():
    verdict = BotDetector().evaluate(_identity(metadata=SlackIdentityMetadata(deleted=True)))

    assert verdict.should_reject is True


@pytest.mark.parametrize("email", ["noreply@acme.com", "do-not-reply@acme.com", "hello@zapier.com"])
def test_automated_addresses_are_rejected(email):
    verdict = BotDetector().evaluate(_identity(email=email))

    assert verdict.is_bot is True
    assert verdict.confidence == CONFIDENCE_HIGH
    assert verdict.should_reject is True


def test_bot_like_name_is_flagged_but_kept():
    detector = BotDetector()
    verdict = detector.ensure_not_bot(_identity(name="Standup Bot", email="standup@acme.com"))

    assert verdict.is_bot is True
    assert verdict.confidence == CONFIDENCE_MEDIUM
    assert verdict.should_reject is False


def test_person_is_not_a_bot():
    verdict = BotDetector().evaluate(_identity(email="alice@acme.com", handle="alice"))

    assert verdict.is_bot is False
    assert verdict.reasons == []


def test_generic_name_alone_is_not_a_bot():
    verdict = BotDetector().evaluate(_identity(name="Unknown User"))

    assert verdict.is_bot is False
    assert verdict.confidence == CONFIDENCE_LOW
    assert verdict.reasons == ["Missing or generic name"]
