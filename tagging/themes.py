"""Deterministic theme tagging for memory text.

Scores each taxonomy theme by phrase and keyword hits and never raises:
any fault degrades to the ``general_memory`` fallback flagged for review.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache

from memories.config import settings
from taxonomy.themes import FALLBACK_TAG, TAXONOMY_VERSION, THEME_TAXONOMY

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5
PHRASE_WEIGHT = 2
KEYWORD_WEIGHT = 1


@dataclass(frozen=True)
class ThemeCategory:
    """One theme with its keyword and phrase triggers."""
    id: str
    keywords: tuple[str, ...] = ()
    phrases: tuple[str, ...] = ()


@dataclass
class TaggingResult:
    """Outcome of classifying one text."""
    tags: list[str]
    top_tag: str
    scores: dict[str, int]
    confidence: float
    needs_review: bool
    token_count: int = 0
    min_score: int = 1  # length-based threshold, informational only
    matches: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tags": list(self.tags),
            "topTag": self.top_tag,
            "scores": dict(self.scores),
            "confidence": self.confidence,
            "needsReview": self.needs_review,
            "minScore": self.min_score,
        }


def fallback_result(token_count: int = 0) -> TaggingResult:
    """Result used when nothing matched or classification failed."""
    return TaggingResult(
        tags=[FALLBACK_TAG],
        top_tag=FALLBACK_TAG,
        scores={FALLBACK_TAG: MIN_SCORE},
        confidence=0.0,
        needs_review=True,
        token_count=token_count,
        min_score=dynamic_min_score(token_count),
    )


def dynamic_min_score(token_count: int) -> int:
    """Length-scaled score threshold (shorter text, lower bar)."""
    if token_count < 20:
        return 1
    if token_count < 40:
        return 2
    return 3


class ThemeTagger:
    """Keyword/phrase scorer over a fixed theme taxonomy.

    The taxonomy is converted once into frozen categories; ``classify`` keeps
    no state between calls, so the same text always yields the same result.
    """

    def __init__(
        self,
        taxonomy: list[ThemeCategory] | None = None,
        *,
        review_confidence: float | None = None,
    ) -> None:
        """Initialize the tagger.

        Args:
            taxonomy: Theme categories in tie-breaking order. Loads the default
                taxonomy if None.
            review_confidence: Confidence below which results are flagged for
                review (uses config default if None).
        """
        self.taxonomy: tuple[ThemeCategory, ...] = tuple(taxonomy or self._load_default_taxonomy())
        self.review_confidence = (
            review_confidence if review_confidence is not None else settings.tagging.review_confidence
        )
        logger.info(f"Loaded {len(self.taxonomy)} themes for tagging ({TAXONOMY_VERSION})")

    @staticmethod
    def _load_default_taxonomy() -> list[ThemeCategory]:
        return [
            ThemeCategory(
                id=entry["id"],
                keywords=tuple(entry.get("keywords", ())),
                phrases=tuple(entry.get("phrases", ())),
            )
            for entry in THEME_TAXONOMY
        ]

    def classify(self, text: str | None) -> TaggingResult:
        """Classify free text into weighted theme tags.

        Args:
            text: Memory text; None and empty strings are accepted

        Returns:
            TaggingResult; never raises
        """
        try:
            return self._classify(text)
        except Exception as e:
            logger.error(f"Tagging crashed, using fallback: {e}", exc_info=True)
            return fallback_result()

    def _classify(self, text: str | None) -> TaggingResult:
        normalized = (text or "").lower().strip()
        tokens = normalized.split()
        token_count = len(tokens)
        token_set = set(tokens)
        min_score = dynamic_min_score(token_count)

        tags: list[str] = []
        scores: dict[str, int] = {}
        matches: dict[str, dict[str, int]] = {}

        for category in self.taxonomy:
            phrase_matches = sum(1 for phrase in category.phrases if phrase in normalized)
            keyword_matches = sum(
                1 for keyword in category.keywords
                if keyword in token_set or keyword in normalized
            )
            raw_score = PHRASE_WEIGHT * phrase_matches + KEYWORD_WEIGHT * keyword_matches

            if raw_score > 0:
                tags.append(category.id)
                scores[category.id] = min(MAX_SCORE, max(MIN_SCORE, raw_score + 1))
                matches[category.id] = {"phrases": phrase_matches, "keywords": keyword_matches}

        if not tags:
            logger.debug("No theme detected, using fallback tag")
            return fallback_result(token_count)

        # Strict comparison keeps the first theme on ties
        top_tag = tags[0]
        for tag in tags[1:]:
            if scores[tag] > scores[top_tag]:
                top_tag = tag

        confidence = scores[top_tag] / (token_count + 3)
        needs_review = confidence < self.review_confidence

        logger.debug(
            f"Tagged text ({token_count} tokens): top={top_tag} tags={tags} "
            f"confidence={confidence:.3f} min_score={min_score}"
        )

        return TaggingResult(
            tags=tags,
            top_tag=top_tag,
            scores=scores,
            confidence=confidence,
            needs_review=needs_review,
            token_count=token_count,
            min_score=min_score,
            matches=matches,
        )


@lru_cache(maxsize=1)
def get_tagger() -> ThemeTagger:
    """Process-wide tagger built from the default taxonomy."""
    return ThemeTagger()


def classify(text: str | None) -> TaggingResult:
    """Convenience function to classify with the default tagger."""
    return get_tagger().classify(text)
