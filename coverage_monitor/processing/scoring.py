"""
Heuristic relevance scoring for coverage candidates.

The score is deterministic and additive:
- a base that depends on where the candidate came from
- a bonus when the bound game is named in the title
- a bonus when the search engine's own relevance is high
Matched whitelist terms are reported in the reasoning but do not add points.
The total is clamped to an integer in [0, 100].
"""

from dataclasses import dataclass, field

from ..config import Settings, get_settings
from ..logging import get_logger
from ..records import Candidate, Game, SourceType
from .text_utils import contains_term

logger = get_logger(__name__)

SEARCH_SOURCE_TYPES = {SourceType.TAVILY}


@dataclass
class ScoringWeights:
    """Configurable weights for the scoring factors."""
    search_base: int = 60
    feed_base: int = 50
    game_title: int = 25
    engine: int = 10
    engine_threshold: float = 0.7

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringWeights":
        return cls(
            search_base=settings.search_base_score,
            feed_base=settings.feed_base_score,
            game_title=settings.game_title_bonus,
            engine=settings.engine_score_bonus,
            engine_threshold=settings.engine_score_threshold,
        )


@dataclass
class RelevanceScore:
    """Score plus the parts that produced it."""
    score: int
    reasoning: str
    factors: dict[str, int] = field(default_factory=dict)


def clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


class RelevanceScorer:
    """Score candidates by origin, game binding and engine relevance."""

    def __init__(self, settings: Settings | None = None, weights: ScoringWeights | None = None):
        self.weights = weights or ScoringWeights.from_settings(settings or get_settings())

    def score(
        self,
        candidate: Candidate,
        source_type: SourceType,
        game: Game | None = None,
        whitelist_terms: list[str] | None = None,
    ) -> RelevanceScore:
        w = self.weights
        factors: dict[str, int] = {}

        if source_type in SEARCH_SOURCE_TYPES:
            factors["base"] = w.search_base
        else:
            factors["base"] = w.feed_base

        if game is not None and contains_term(candidate.title, game.name):
            factors["game_in_title"] = w.game_title

        if candidate.engine_score is not None and candidate.engine_score > w.engine_threshold:
            factors["engine_score"] = w.engine

        total = clamp_score(sum(factors.values()))
        return RelevanceScore(
            score=total,
            reasoning=self._reasoning(candidate, source_type, game, whitelist_terms or []),
            factors=factors,
        )

    def _reasoning(
        self,
        candidate: Candidate,
        source_type: SourceType,
        game: Game | None,
        whitelist_terms: list[str],
    ) -> str:
        if source_type in SEARCH_SOURCE_TYPES:
            parts = [f'Tavily search: "{candidate.query}"']
        elif source_type == SourceType.RSS:
            feed_title = candidate.metadata.get("feed_title")
            parts = [f"Feed entry: {feed_title}" if feed_title else "Feed entry"]
        else:
            parts = [f'{source_type.value.capitalize()} search: "{candidate.query}"']

        if game is not None and contains_term(candidate.title, game.name):
            parts.append(f"title names {game.name}")
        if candidate.engine_score is not None:
            parts.append(f"engine score {candidate.engine_score:.2f}")
        if whitelist_terms:
            parts.append(f"matched keywords: {', '.join(whitelist_terms)}")
        return "; ".join(parts)
