"""Intent classifier: rank context units against a user utterance.

score = w.tag * exact tag matches
      + w.overlap * (matched query tokens / query tokens)
      + w.recency * 1 / (1 + age_days / half_life_days)

Ordering is fully deterministic: score descending, then tag matches
descending, then unit id ascending.
"""

from collections.abc import Iterable
from datetime import UTC, datetime

from .config import ClassifierConfig
from .errors import NotFound
from .indexer import Index, Indexer
from .logging_config import get_logger
from .models import RankedCandidate
from .registry import ContextRegistry
from .text import unique_tokens

logger = get_logger("classifier")

SCORE_PRECISION = 6
SECONDS_PER_DAY = 86400.0


def rank_key(candidate: RankedCandidate) -> tuple:
    return (-candidate.score, -candidate.tag_matches, candidate.unit_id)


class IntentClassifier:
    """Scores every indexed unit that shares a token or tag with the utterance."""

    def __init__(
        self,
        registry: ContextRegistry,
        indexer: Indexer,
        config: ClassifierConfig | None = None,
    ):
        self.registry = registry
        self.indexer = indexer
        self.config = config or ClassifierConfig()

    def classify(self, utterance: str, now: datetime | None = None) -> list[RankedCandidate]:
        """Return ranked candidates, or an empty list when nothing is relevant."""
        query = unique_tokens(utterance or "")
        if not query:
            return []

        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        index = self.indexer.index
        ranked = [
            candidate
            for candidate in self._score_all(index, query, now)
            if candidate.score > self.config.min_score
        ]
        ranked.sort(key=rank_key)
        ranked = ranked[: self.config.max_candidates]

        logger.debug(
            f"Classified {len(query)} query token(s) -> {len(ranked)} candidate(s): "
            + ", ".join(f"{c.unit_id}={c.score:.3f}" for c in ranked[:5])
        )
        return ranked

    def _score_all(self, index: Index, query: list[str], now: datetime) -> Iterable[RankedCandidate]:
        weights = self.config.weights
        candidate_ids: set[str] = set()
        for token in query:
            candidate_ids.update(index.tokens.get(token, {}))
            candidate_ids.update(index.tags.get(token, {}))

        for unit_id in sorted(candidate_ids):
            try:
                unit = self.registry.get(unit_id)
            except NotFound:
                # Index snapshot can briefly trail a registry removal
                continue

            tag_hits = {token for token in query if unit_id in index.tags.get(token, {})}
            text_hits = {token for token in query if unit_id in index.tokens.get(token, {})}
            matched = tag_hits | text_hits
            overlap = len(matched) / len(query)

            score = (
                weights.tag * len(tag_hits)
                + weights.overlap * overlap
                + weights.recency * self._recency(unit.last_modified, now)
            )
            yield RankedCandidate(
                unit_id=unit_id,
                score=round(score, SCORE_PRECISION),
                matched_terms=frozenset(matched),
                kind=unit.kind,
                size_bytes=unit.size_bytes,
                tag_matches=len(tag_hits),
                overlap=round(overlap, SCORE_PRECISION),
            )

    def _recency(self, last_modified: datetime, now: datetime) -> float:
        if last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=UTC)
        age_days = max(0.0, (now - last_modified).total_seconds() / SECONDS_PER_DAY)
        return 1.0 / (1.0 + age_days / self.config.weights.recency_half_life_days)
