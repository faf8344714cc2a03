"""Source connectors."""

from .connectors import (
    Candidate,
    FeedConnector,
    SocialActorConnector,
    SourceConnector,
    WebSearchConnector,
    create_connector,
)

__all__ = [
    'Candidate',
    'SourceConnector',
    'FeedConnector',
    'WebSearchConnector',
    'SocialActorConnector',
    'create_connector',
]
