"""
Message deduplication.

Two checks: a compound key (thread, contact, day) and a content
similarity pass against a bounded window of recently admitted messages.
"""

from collections import OrderedDict
from collections.abc import Iterable
from datetime import UTC

from app.features.contact_sync.domain import Message


def levenshtein_distance(first: str, second: str) -> int:
    if len(first) < len(second):
        first, second = second, first
    if not second:
        return len(first)

    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def message_key(message: Message) -> str:
    """thread (or subject fallback) + contact + UTC day."""
    thread_key = message.thread_id or f"subject-{(message.subject or 'no-subject').strip()}"
    timestamp = message.timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(UTC)
    return f"{thread_key}|{message.contact_id}|{timestamp.date().isoformat()}"


class DeduplicationFilter:
    """Stateful filter for one sync batch; create a fresh instance per run."""

    def __init__(
        self,
        window_size: int = 50,
        similarity_threshold: float = 0.8,
        snippet_length: int = 200,
    ):
        self.window_size = window_size
        self.similarity_threshold = similarity_threshold
        self.snippet_length = snippet_length
        self._seen_keys: set[str] = set()
        self._window: OrderedDict[str, Message] = OrderedDict()

    def _snippet(self, content: str) -> str:
        return (content or "")[: self.snippet_length].lower().strip()

    def similarity(self, first: str, second: str) -> float:
        a = self._snippet(first)
        b = self._snippet(second)
        if a == b:
            return 1.0
        longest = max(len(a), len(b))
        return (longest - levenshtein_distance(a, b)) / longest

    def is_similar(self, first: str, second: str) -> bool:
        # empty bodies carry no signal; the key check still applies to them
        if not self._snippet(first) or not self._snippet(second):
            return False
        return self.similarity(first, second) >= self.similarity_threshold

    def is_duplicate(self, candidate: Message, recent_window: Iterable[Message]) -> bool:
        key = message_key(candidate)
        for recent in recent_window:
            if message_key(recent) == key or self.is_similar(candidate.content, recent.content):
                return True
        return False

    def admit(self, message: Message) -> bool:
        """Record the message and return True if it is not a duplicate of anything seen."""
        key = message_key(message)
        if key in self._seen_keys:
            return False
        if self.is_duplicate(message, self._window.values()):
            return False

        self._seen_keys.add(key)
        self._window[key] = message
        while len(self._window) > self.window_size:
            self._window.popitem(last=False)
        return True

    def dedupe(self, messages: Iterable[Message]) -> list[Message]:
        return [message for message in messages if self.admit(message)]
