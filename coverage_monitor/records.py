"""Record types shared by the store, the pipeline and the API."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SourceType(str, Enum):
    RSS = "rss"
    TAVILY = "tavily"
    YOUTUBE = "youtube"
    TWITCH = "twitch"
    REDDIT = "reddit"
    TWITTER = "twitter"
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"


class ScanFrequency(str, Enum):
    HOURLY = "hourly"
    EVERY_6H = "every_6h"
    DAILY = "daily"
    WEEKLY = "weekly"


class RunStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    AUTO_APPROVED = "auto_approved"
    MANUALLY_APPROVED = "manually_approved"
    REJECTED = "rejected"


class Tier(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class KeywordType(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


class Client(BaseModel):
    id: str
    name: str


class Game(BaseModel):
    id: str
    name: str
    client_id: str


class CoverageKeyword(BaseModel):
    id: str
    client_id: str
    game_id: str | None = None
    keyword: str
    keyword_type: KeywordType


class Outlet(BaseModel):
    id: str
    name: str
    domain: str | None = None
    monthly_unique_visitors: int | None = None
    tier: Tier | None = None
    country: str | None = None
    metacritic_status: str | None = None
    traffic_last_updated: datetime | None = None


class CoverageSource(BaseModel):
    """A configured, schedulable connector instance."""
    id: str
    source_type: SourceType
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    outlet_id: str | None = None
    game_id: str | None = None
    scan_frequency: ScanFrequency = ScanFrequency.DAILY
    is_active: bool = True
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    last_run_message: str | None = None
    items_found_last_run: int = 0
    total_items_found: int = 0
    consecutive_failures: int = 0
    last_error_at: datetime | None = None


class CoverageItem(BaseModel):
    """One discovered mention."""
    id: str
    url: str
    title: str
    publish_date: datetime | None = None
    coverage_type: str | None = None
    territory: str | None = None
    sentiment: str | None = None
    relevance_score: int | None = None
    relevance_reasoning: str | None = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING_REVIEW
    approved_at: datetime | None = None
    source_type: SourceType | None = None
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    outlet_id: str | None = None
    game_id: str | None = None
    client_id: str | None = None
    monthly_unique_visitors: int | None = None
    duplicate_group_id: str | None = None
    is_original: bool = True
    syndication_count: int = 1
    discovered_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Candidate:
    """Raw, unvalidated mention produced by a connector."""
    url: str
    title: str
    snippet: str = ""
    published_at: datetime | None = None
    engine_score: float | None = None
    query: str | None = None
    coverage_type: str = "news"
    territory: str | None = None
    outlet_domain: str | None = None
    audience: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return f"{self.title} {self.snippet}"
