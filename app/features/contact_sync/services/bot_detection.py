"""
Bot and automated-account detection.

Evaluated once per incoming identity, before identity resolution. Only
high-confidence verdicts are rejected; name-based hints alone are too
noisy to drop a real person.
"""

import re
from dataclasses import dataclass, field

from app.features.contact_sync.domain import PlatformIdentity, ValidationRejection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CONFIDENCE_LOW = "low"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_HIGH = "high"

AUTOMATED_EMAIL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(no-?reply|noreply)@",
        r"^(do-?not-?reply|donotreply)@",
        r"^(admin|administrator|system|root|postmaster)@",
        r"^(support|help|info|contact)@",
        r"^(notifications?|alerts?)@",
        r"^(automated?|auto)@",
        r"^(service|services)@",
        r"^(mailer|daemon|bounce)@",
        r"^(marketing|newsletter|news)@",
        r"^(campaign|promo|promotion)@",
        r"^(updates?|announcements?)@",
        r"^(security|abuse|spam)@",
        r"^(phishing|fraud|safety)@",
        r"^(api|webhook|integration)@",
        r"^(slack|teams|discord|zoom)@",
        r"^(github|gitlab|jira|trello)@",
        r"^(test|testing|demo)@",
        r"^(null|void|dummy)@",
    )
]

BOT_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot",
        r"automat(ion|ed)",
        r"^(slack|teams|discord|zoom)",
        r"^(github|gitlab|jira|trello)",
        r"^(google|microsoft|apple)",
        r"^(calendar|reminder|notification)",
        r"^(system|admin|root)",
        r"^(service|daemon|process)",
        r"(integration|webhook)$",
        r"^(assistant|ai|gpt)\b",
    )
]

BOT_DOMAINS = frozenset(
    {
        "notifications.service.slack.com",
        "noreply.github.com",
        "no-reply.accounts.google.com",
        "noreply.medium.com",
        "notifications.google.com",
        "mail-noreply.google.com",
        "zapier.com",
        "ifttt.com",
        "automate.io",
        "noreply.com",
        "donotreply.com",
        "no-reply.com",
    }
)

GENERIC_NAMES = frozenset({"", "unknown user", "unknown sender", "unknown"})


@dataclass(slots=True)
class BotVerdict:
    is_bot: bool
    confidence: str
    reasons: list[str] = field(default_factory=list)

    @property
    def should_reject(self) -> bool:
        return self.is_bot and self.confidence == CONFIDENCE_HIGH


class BotDetector:
    """Rule evaluation producing a structured verdict for one identity."""

    def evaluate(self, identity: PlatformIdentity) -> BotVerdict:
        reasons: list[str] = []
        confidence = CONFIDENCE_LOW

        metadata = identity.metadata
        if metadata is not None and getattr(metadata, "is_bot", False):
            reasons.append("Platform marked as bot")
            confidence = CONFIDENCE_HIGH
        if metadata is not None and getattr(metadata, "is_app_user", False):
            reasons.append("Platform marked as app user")
            confidence = CONFIDENCE_HIGH
        if metadata is not None and getattr(metadata, "deleted", False):
            reasons.append("Account is deleted/deactivated")
            confidence = CONFIDENCE_HIGH

        if identity.email:
            email = identity.email.strip().lower()
            if any(pattern.search(email) for pattern in AUTOMATED_EMAIL_PATTERNS):
                reasons.append(f"Automated email pattern: {email}")
                confidence = CONFIDENCE_HIGH

            domain = email.rpartition("@")[2]
            if domain in BOT_DOMAINS:
                reasons.append(f"Known bot domain: {domain}")
                confidence = CONFIDENCE_HIGH

        name = (identity.display_name or "").strip()
        if name and any(pattern.search(name) for pattern in BOT_NAME_PATTERNS):
            reasons.append(f"Bot name pattern: {name}")
            if confidence == CONFIDENCE_LOW:
                confidence = CONFIDENCE_MEDIUM

        if identity.handle and any(pattern.search(identity.handle) for pattern in BOT_NAME_PATTERNS):
            reasons.append(f"Bot handle pattern: {identity.handle}")
            if confidence == CONFIDENCE_LOW:
                confidence = CONFIDENCE_MEDIUM

        if name.lower() in GENERIC_NAMES:
            # alone this is not enough to call it a bot
            reasons.append("Missing or generic name")

        is_bot = bool(reasons) and confidence in (CONFIDENCE_HIGH, CONFIDENCE_MEDIUM)
        return BotVerdict(is_bot=is_bot, confidence=confidence, reasons=reasons)

    def ensure_not_bot(self, identity: PlatformIdentity) -> BotVerdict:
        """Raise ValidationRejection for high-confidence bots; return the verdict otherwise."""
        verdict = self.evaluate(identity)
        if verdict.should_reject:
            logger.info(
                "Rejected automated identity",
                platform=identity.platform,
                platform_id=identity.platform_id,
                reasons=verdict.reasons,
            )
            raise ValidationRejection(
                f"{identity.platform} identity {identity.platform_id} looks automated",
                reasons=verdict.reasons,
                confidence=verdict.confidence,
                platform=identity.platform,
            )
        return verdict
