"""Category matching (core domain)."""

from __future__ import annotations

import logging
from typing import Sequence

from whatsroute.core.config import MatcherConfig
from whatsroute.core.models import Category, CategoryStatus, ClassificationResult, MatchResult, Message
from whatsroute.core.text import keyword_hits, normalize_text, tokenize

LOGGER = logging.getLogger(__name__)


class CategoryMatcher:
    """Score a classified message against a snapshot of approved categories.

    Matching logic:
    - keyword affinity: share of ``keyword_saturation`` keywords found in the text
    - entity affinity: share of extracted entities that belong to the category
    - intent affinity: 1 when the intent is one the category expects
    The weighted sum must strictly exceed the category's own threshold; the
    best such category wins and ties go to the lower id.
    """

    def __init__(self, config: MatcherConfig) -> None:
        total = config.keyword_weight + config.entity_weight + config.intent_weight
        if total <= 0:
            raise ValueError("matcher weights must sum to a positive value")
        self._config = config
        self._weights = (
            config.keyword_weight / total,
            config.entity_weight / total,
            config.intent_weight / total,
        )

    def score(self, category: Category, normalized: str, tokens: frozenset[str], classification: ClassificationResult) -> float:
        keyword_w, entity_w, intent_w = self._weights
        saturation = max(self._config.keyword_saturation, 1)
        hits = keyword_hits(normalized, tokens, category.keywords)
        keyword_score = min(1.0, len(hits) / saturation)

        entity_score = 0.0
        if classification.entities:
            related = [
                entity
                for entity in classification.entities
                if entity.category in category.entity_types
                or normalize_text(entity.text) in category.keywords
            ]
            entity_score = len(related) / len(classification.entities)

        intent_score = 1.0 if classification.intent in category.intents else 0.0
        return keyword_w * keyword_score + entity_w * entity_score + intent_w * intent_score

    def match(
        self,
        message: Message,
        classification: ClassificationResult,
        categories: Sequence[Category],
    ) -> MatchResult:
        """Return the winning category, or an unmatched result with the best score."""

        # Without classifier confidence the category alone is not enough to route.
        if classification.confidence <= self._config.min_classification_confidence:
            return MatchResult(category=None, score=0.0)

        normalized = normalize_text(message.text)
        tokens = tokenize(message.text)

        best_score = 0.0
        winner = None
        winner_score = 0.0
        for category in sorted(categories, key=lambda c: c.id):
            if category.status is not CategoryStatus.APPROVED:
                continue
            score = self.score(category, normalized, tokens, classification)
            best_score = max(best_score, score)
            if score <= category.min_confidence:
                continue
            # Strict comparison keeps the lower id on ties since we iterate by id.
            if winner is None or score > winner_score:
                winner = category
                winner_score = score

        if winner is None:
            LOGGER.debug("No category cleared its threshold for %s (best %.2f)", message.id, best_score)
            return MatchResult(category=None, score=best_score)
        return MatchResult(category=winner, score=winner_score)
