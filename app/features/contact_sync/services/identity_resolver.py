"""
Identity resolution: score a newly seen platform identity against a user's
existing unified contacts.

Scoring is pure; the merge/create/review decision is a separate policy so
callers can tune thresholds without touching the strategies.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from app.features.contact_sync.domain import (
    ContactStatus,
    MatchDecision,
    PlatformIdentity,
    ScoredMatch,
    UnifiedContact,
)

SCORE_DEFINITIVE = 101.0
SCORE_EMAIL_EXACT = 100.0
SCORE_NAME_DOMAIN = 75.0
SCORE_HANDLE = 60.0
SCORE_FUZZY_NAME = 40.0

FUZZY_NAME_THRESHOLD = 0.70
MAX_MATCHES = 5

REASON_DEFINITIVE = "definitive_link"
REASON_EMAIL = "email_exact_match"
REASON_NAME_SIMILARITY = "name_similarity"
REASON_DOMAIN = "email_domain_match"
REASON_HANDLE = "handle_match"
REASON_FUZZY = "name_fuzzy_match"


def _tokens(name: str) -> list[str]:
    return [part for part in name.lower().split() if len(part) > 1]


def _email_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    return email.rpartition("@")[2].strip().lower() or None


def _tokens_overlap(a: str, b: str) -> bool:
    return a in b or b in a


def name_similarity(first: str, second: str) -> float:
    """1.0 equal, 0.8 containment, else word overlap over the larger token count."""
    s1 = first.lower().strip()
    s2 = second.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    words1 = _tokens(s1)
    words2 = _tokens(s2)
    if not words1 or not words2:
        return 0.0
    common = [w for w in words1 if any(_tokens_overlap(w, other) for other in words2)]
    return len(common) / max(len(words1), len(words2))


@dataclass(slots=True)
class _Accumulator:
    score: float
    reasons: list[str]
    definitive: bool = False

    def add(self, score: float, reasons: Iterable[str], definitive: bool = False) -> None:
        self.score = max(self.score, score)
        for reason in reasons:
            if reason not in self.reasons:
                self.reasons.append(reason)
        self.definitive = self.definitive or definitive


class IdentityResolver:
    """Runs every matching strategy and merges results by max score per contact."""

    def __init__(self, max_matches: int = MAX_MATCHES, fuzzy_threshold: float = FUZZY_NAME_THRESHOLD):
        self.max_matches = max_matches
        self.fuzzy_threshold = fuzzy_threshold

    def resolve(self, identity: PlatformIdentity, contacts: Iterable[UnifiedContact]) -> list[ScoredMatch]:
        found: dict[str, _Accumulator] = {}

        def record(contact: UnifiedContact, score: float, reasons: list[str], definitive: bool = False):
            acc = found.get(contact.id)
            if acc is None:
                found[contact.id] = _Accumulator(score, list(reasons), definitive)
            else:
                acc.add(score, reasons, definitive)

        email = (identity.email or "").strip().lower()
        domain = _email_domain(email)
        name = (identity.display_name or "").strip()
        name_tokens = _tokens(name)
        handle = (identity.handle or "").strip().lower()

        for contact in contacts:
            if contact.status == ContactStatus.ARCHIVED_AS_DUPLICATE:
                continue

            if contact.has_identity(identity.platform, identity.platform_id):
                record(contact, SCORE_DEFINITIVE, [REASON_DEFINITIVE], definitive=True)

            contact_email = (contact.email or "").strip().lower()
            if email and contact_email == email:
                record(contact, SCORE_EMAIL_EXACT, [REASON_EMAIL])

            if domain and name_tokens and _email_domain(contact_email) == domain:
                if self._name_tokens_match(name_tokens, contact.display_name):
                    record(contact, SCORE_NAME_DOMAIN, [REASON_NAME_SIMILARITY, REASON_DOMAIN])

            if handle and (handle in contact_email or handle in contact.display_name.lower()):
                record(contact, SCORE_HANDLE, [REASON_HANDLE])

            if name and name_similarity(name, contact.display_name) >= self.fuzzy_threshold:
                record(contact, SCORE_FUZZY_NAME, [REASON_FUZZY])

        matches = [
            ScoredMatch(contact_id=contact_id, score=acc.score, reasons=acc.reasons, definitive=acc.definitive)
            for contact_id, acc in found.items()
        ]
        # contact id breaks ties so equal scores always come back in the same order
        matches.sort(key=lambda m: (-m.score, m.contact_id))
        return matches[: self.max_matches]

    @staticmethod
    def _name_tokens_match(name_tokens: list[str], contact_name: str) -> bool:
        contact_tokens = contact_name.lower().split()
        matching = [
            part for part in name_tokens if any(_tokens_overlap(part, other) for other in contact_tokens)
        ]
        return len(matching) >= min(2, len(name_tokens))


def decide(
    matches: list[ScoredMatch],
    auto_merge_threshold: float = 90.0,
    auto_create_threshold: float = 40.0,
) -> tuple[MatchDecision, ScoredMatch | None]:
    """Map a ranked match list onto merge / create / review."""
    if not matches:
        return MatchDecision.CREATE, None

    best = matches[0]
    if best.definitive or best.score >= auto_merge_threshold:
        return MatchDecision.MERGE, best
    if best.score < auto_create_threshold:
        return MatchDecision.CREATE, None
    return MatchDecision.REVIEW, best
