"""
Categorization and tag generation. Chat model OR static fallback.
Controlled by FF_USE_LLM_CATEGORIZER flag.

The engine treats these as best-effort enrichment: it validates whatever
comes back and substitutes defaults on failure.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..core.config import get_settings
from ..core.flags import get_flags
from .llm import chat_json

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    "Personal Info",
    "Work & Career",
    "Food & Recipes",
    "Entertainment",
    "Travel & Places",
    "Health & Fitness",
    "Learning & Education",
    "Hobbies & Interests",
    "Relationships",
    "Finance & Money",
    "Technology",
    "Home & Lifestyle",
    "Goals & Planning",
    "General",
]

MAX_TAGS = 5
MAX_TAG_LENGTH = 30

CATEGORIZE_PROMPT = """You categorize short personal memories.

Pick the single MOST SPECIFIC category for the memory below from this list.
Use "General" only if nothing else fits. Never invent a category.

Available categories:
{categories}

Memory: "{content}"

Respond with JSON only, in exactly this shape:
{{"category": "<exact name from the list>", "confidence": 0.0-1.0, "reasoning": "<one sentence>"}}"""

TAGS_PROMPT = """Generate 3-5 short search tags for this memory:

"{content}"

Tags should be single words or short phrases, specific rather than generic.

Respond with JSON only, in exactly this shape:
{{"tags": ["tag1", "tag2", "tag3"]}}"""


@dataclass
class CategoryResult:
    category: str
    confidence: float = 0.0
    reasoning: str = ""


def clean_tags(raw) -> list[str]:
    """Lower-case, trim, drop empties and overlong tags, keep at most five."""
    if not isinstance(raw, list):
        return []
    tags = []
    for tag in raw:
        if not isinstance(tag, str):
            continue
        tag = tag.strip().lower()
        if 0 < len(tag) <= MAX_TAG_LENGTH:
            tags.append(tag)
    return tags[:MAX_TAGS]


class Categorizer(ABC):
    @abstractmethod
    async def categorize(self, text: str, vocabulary: list[str]) -> CategoryResult:
        ...

    @abstractmethod
    async def generate_tags(self, text: str) -> list[str]:
        ...


class LLMCategorizer(Categorizer):
    async def categorize(self, text: str, vocabulary: list[str]) -> CategoryResult:
        prompt = CATEGORIZE_PROMPT.format(
            categories="\n".join(f"- {c}" for c in vocabulary),
            content=text,
        )
        parsed = await chat_json(prompt, temperature=0.0, max_tokens=150)
        confidence = parsed.get("confidence")
        return CategoryResult(
            category=str(parsed.get("category") or ""),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.5,
            reasoning=str(parsed.get("reasoning") or ""),
        )

    async def generate_tags(self, text: str) -> list[str]:
        parsed = await chat_json(TAGS_PROMPT.format(content=text), temperature=0.3, max_tokens=100)
        return clean_tags(parsed.get("tags"))


class StaticCategorizer(Categorizer):
    """Everything goes to the fallback label; no tags."""

    def __init__(self, fallback: Optional[str] = None):
        self.fallback = fallback or get_settings().fallback_category

    async def categorize(self, text: str, vocabulary: list[str]) -> CategoryResult:
        return CategoryResult(category=self.fallback, confidence=0.0, reasoning="categorizer disabled")

    async def generate_tags(self, text: str) -> list[str]:
        return []


def get_categorizer() -> Categorizer:
    """Return the active categorizer based on feature flags."""
    flags = get_flags()
    if flags.use_llm_categorizer:
        return LLMCategorizer()
    return StaticCategorizer()
