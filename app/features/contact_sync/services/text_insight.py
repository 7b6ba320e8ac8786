"""
Boundary to the optional text-insight collaborator.

The provider may clean message content and add summary / urgency /
category metadata. It is never required: a missing provider, an error, or
an empty result all fall back to the original content.
"""

from dataclasses import dataclass
from typing import Any, Protocol

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class MessageInsight:
    content: str
    summary: str | None = None
    urgency: str | None = None
    category: str | None = None

    def as_metadata(self) -> dict[str, Any]:
        insight = {"summary": self.summary, "urgency": self.urgency, "category": self.category}
        return {"insight": {k: v for k, v in insight.items() if v is not None}} if any(insight.values()) else {}


class TextInsightProvider(Protocol):
    async def analyze(self, content: str) -> MessageInsight: ...


async def enrich_content(provider: TextInsightProvider | None, content: str) -> MessageInsight:
    if provider is None or not content:
        return MessageInsight(content=content)
    try:
        insight = await provider.analyze(content)
    except Exception as e:
        logger.warning("Text insight failed, keeping original content", error=str(e))
        return MessageInsight(content=content)

    if insight is None or not (insight.content or "").strip():
        return MessageInsight(content=content)
    return insight
