"""Content processing module."""

from .dedupe import ClusteringResult, ExistingUrlIndex, SyndicationClusterer
from .keywords import ClientMatch, KeywordFilter
from .outlets import OutletResolver
from .scoring import RelevanceScore, RelevanceScorer, ScoringWeights
from .text_utils import normalize_title, title_similarity
from .traffic import TrafficResult, TrafficTierClassifier, parse_traffic_from_html, suggest_tier

__all__ = [
    'ExistingUrlIndex',
    'SyndicationClusterer',
    'ClusteringResult',
    'KeywordFilter',
    'ClientMatch',
    'OutletResolver',
    'RelevanceScorer',
    'RelevanceScore',
    'ScoringWeights',
    'TrafficTierClassifier',
    'TrafficResult',
    'parse_traffic_from_html',
    'suggest_tier',
    'normalize_title',
    'title_similarity',
]
