"""Configuration management for the coverage monitor."""

import re
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Service names used to look up credentials.
KNOWN_SERVICES = ("tavily", "apify", "youtube", "twitch", "reddit")

SOCIAL_PLATFORMS = ("youtube", "twitch", "reddit", "twitter", "tiktok", "instagram")


def clean_domain(value: str) -> str:
    """Strip scheme, leading www. and any path from a domain-ish string."""
    value = value.strip().lower()
    value = re.sub(r"^(https?://)?(www\.)?", "", value)
    return re.sub(r"/.*$", "", value)


# ── Source configuration (tagged by connector kind) ────────────────────────


class FeedSourceConfig(BaseModel):
    """RSS/Atom feed source."""
    kind: Literal["feed"] = "feed"
    url: HttpUrl


class WebSearchSourceConfig(BaseModel):
    """Web-search source scoped to a domain and/or keyword list."""
    kind: Literal["web_search"] = "web_search"
    domain: str | None = None
    keywords: list[str] = Field(default_factory=list)

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return clean_domain(v) or None

    @field_validator("keywords")
    @classmethod
    def drop_blank_keywords(cls, v: list[str]) -> list[str]:
        return [kw.strip() for kw in v if kw and kw.strip()]


class SocialActorSourceConfig(BaseModel):
    """Social platform scrape job parameters."""
    kind: Literal["social_actor"] = "social_actor"
    platform: Literal["youtube", "twitch", "reddit", "twitter", "tiktok", "instagram"]
    keywords: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)
    handles: list[str] = Field(default_factory=list)
    subreddits: list[str] = Field(default_factory=list)
    min_followers: int = Field(0, ge=0)
    max_items: int = Field(20, ge=1, le=200)
    actor_id: str | None = None

    @field_validator("keywords", "hashtags", "handles", "subreddits")
    @classmethod
    def drop_blank_terms(cls, v: list[str]) -> list[str]:
        return [term.strip() for term in v if term and term.strip()]


SourceConfig = Annotated[
    Union[FeedSourceConfig, WebSearchSourceConfig, SocialActorSourceConfig],
    Field(discriminator="kind"),
]

_source_config_adapter: TypeAdapter[SourceConfig] = TypeAdapter(SourceConfig)


def parse_source_config(source_type: str, raw: dict[str, Any] | None) -> SourceConfig:
    """Validate a stored config blob against the variant for ``source_type``.

    Raises:
        pydantic.ValidationError: if the blob does not fit the variant
        ValueError: if the source type is unknown
    """
    data = dict(raw or {})
    if source_type == "rss":
        data["kind"] = "feed"
    elif source_type == "tavily":
        data["kind"] = "web_search"
    elif source_type in SOCIAL_PLATFORMS:
        data["kind"] = "social_actor"
        data["platform"] = source_type
    else:
        raise ValueError(f"Unknown source type: {source_type}")
    return _source_config_adapter.validate_python(data)


class CredentialSnapshot(BaseModel):
    """Read-only view of per-service API keys, resolved once per run."""

    model_config = ConfigDict(frozen=True)

    keys: dict[str, str] = Field(default_factory=dict)

    def get(self, service: str) -> str | None:
        return self.keys.get(service) or None

    def has(self, service: str) -> bool:
        return self.get(service) is not None

    @classmethod
    def resolve(
        cls,
        stored: dict[str, str] | None = None,
        settings: "Settings | None" = None,
    ) -> "CredentialSnapshot":
        """Merge stored keys over the environment fallbacks."""
        keys: dict[str, str] = {}
        if settings is not None:
            for service in KNOWN_SERVICES:
                value = getattr(settings, f"{service}_api_key", None)
                if value:
                    keys[service] = value
        for service, value in (stored or {}).items():
            if value:
                keys[service] = value
        return cls(keys=keys)


class Settings(BaseSettings):
    """Main application settings."""

    # ── Storage ────────────────────────────────────────────────────────────
    database_path: Path = Field(Path("./data/coverage.db"), description="SQLite database file")

    # ── Scan Orchestration ─────────────────────────────────────────────────
    scan_budget_seconds: float = Field(50.0, description="Wall-clock budget per scan invocation")
    scan_concurrency: int = Field(1, description="Sources scanned in parallel (1 = sequential)")
    existing_url_window: int = Field(10000, description="Recent items loaded into the dedup index")
    max_queries_per_source: int = Field(3, description="Search queries built per web-search source")
    search_max_results: int = Field(10, description="Result cap per search query")
    search_depth: str = Field("basic", description="Tavily search depth (basic, advanced)")
    search_query_cost: float = Field(0.01, description="Estimated cost per search query in USD")
    actor_run_cost: float = Field(0.0, description="Estimated cost per social actor run in USD")

    # ── API Keys (fallbacks for the credentials table) ─────────────────────
    tavily_api_key: str | None = Field(None, description="Tavily search API key")
    apify_api_key: str | None = Field(None, description="Apify API token")
    youtube_api_key: str | None = Field(None, description="YouTube Data API key")
    twitch_api_key: str | None = Field(None, description="Twitch API key")
    reddit_api_key: str | None = Field(None, description="Reddit API key")

    # ── Scoring ────────────────────────────────────────────────────────────
    search_base_score: int = Field(60, description="Base score for search-origin items")
    feed_base_score: int = Field(50, description="Base score for feed and social items")
    game_title_bonus: int = Field(25, description="Bonus when the bound game is named in the title")
    engine_score_bonus: int = Field(10, description="Bonus when engine relevance exceeds the threshold")
    engine_score_threshold: float = Field(0.7, description="Engine relevance threshold")

    # ── Approval ───────────────────────────────────────────────────────────
    auto_approve_threshold: int = Field(80, description="Score at or above which items auto-approve")
    review_threshold: int = Field(50, description="Score at or above which items await review")

    # ── Syndication Clustering ─────────────────────────────────────────────
    syndication_title_threshold: float = Field(0.85, description="Title similarity for syndication")
    syndication_window_days: int = Field(3, description="Max publish-date gap within a group")
    syndication_batch_size: int = Field(200, description="Ungrouped items examined per run")
    syndication_group_window: int = Field(2000, description="Max items near the batch loaded for matching")

    # ── Source Health ──────────────────────────────────────────────────────
    backoff_base_minutes: float = Field(30.0, description="Backoff after the first failure")
    backoff_max_hours: float = Field(24.0, description="Backoff ceiling")
    unhealthy_threshold: int = Field(3, description="Failure streak at which a source is unhealthy")

    # ── Traffic Refresh ────────────────────────────────────────────────────
    traffic_timeout_seconds: float = Field(10.0, description="Timeout for traffic profile fetch")
    traffic_stale_days: int = Field(30, description="Age after which outlet traffic is refreshed")
    traffic_refresh_limit: int = Field(20, description="Outlets refreshed per stale run")

    # ── HTTP ───────────────────────────────────────────────────────────────
    http_timeout_seconds: float = Field(30.0, description="Default HTTP timeout")
    fetch_retries: int = Field(1, description="Retries for page and feed fetches")
    user_agent: str = Field(
        "CoverageMonitor/0.1 (+game coverage monitoring)",
        description="User agent for web requests"
    )

    # ── API Settings ───────────────────────────────────────────────────────
    api_port: int = Field(8000, description="HTTP API port")
    api_host: str = Field("127.0.0.1", description="API host binding")
    max_request_size_mb: int = Field(1, description="Maximum request body size in MB")
    trigger_secret: str | None = Field(
        None, description="Bearer token required on trigger endpoints when set"
    )

    # ── Logging ────────────────────────────────────────────────────────────
    log_level: str = Field("INFO", description="Log level")
    json_logging: bool = Field(True, description="Enable JSON logging")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("syndication_title_threshold", "engine_score_threshold")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("Threshold must be between 0 and 1")
        return v

    @field_validator("auto_approve_threshold", "review_threshold")
    @classmethod
    def validate_score(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("Score threshold must be between 0 and 100")
        return v

    @field_validator("scan_concurrency", "max_queries_per_source", "search_max_results")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v


# ── Catalog (YAML seed data) ───────────────────────────────────────────────


class CatalogClient(BaseModel):
    name: str


class CatalogGame(BaseModel):
    name: str
    client: str


class CatalogOutlet(BaseModel):
    name: str
    domain: str
    monthly_unique_visitors: int | None = None
    country: str | None = None


class CatalogKeyword(BaseModel):
    keyword: str
    keyword_type: Literal["whitelist", "blacklist"] = "whitelist"
    client: str
    game: str | None = None


class CatalogSource(BaseModel):
    name: str
    source_type: str
    config: dict[str, Any] = Field(default_factory=dict)
    scan_frequency: Literal["hourly", "every_6h", "daily", "weekly"] = "daily"
    outlet: str | None = None
    game: str | None = None
    is_active: bool = True


class CatalogConfig:
    """Catalog loader for seeding reference data from YAML."""

    def __init__(self, config_path: str | Path = "config/catalog.yaml"):
        self.config_path = Path(config_path)
        self._config: dict[str, Any] = {}
        self.load_config()

    def load_config(self) -> None:
        """Load catalog from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Catalog file not found: {self.config_path}")

        with open(self.config_path, encoding="utf-8") as f:
            self._config = yaml.safe_load(f) or {}

    def get_clients(self) -> list[CatalogClient]:
        return [CatalogClient(**c) for c in self._config.get("clients", [])]

    def get_games(self) -> list[CatalogGame]:
        return [CatalogGame(**g) for g in self._config.get("games", [])]

    def get_outlets(self) -> list[CatalogOutlet]:
        return [CatalogOutlet(**o) for o in self._config.get("outlets", [])]

    def get_keywords(self) -> list[CatalogKeyword]:
        return [CatalogKeyword(**k) for k in self._config.get("keywords", [])]

    def get_sources(self) -> list[CatalogSource]:
        """Get sources, validating each config against its connector variant."""
        sources = [CatalogSource(**s) for s in self._config.get("sources", [])]
        for source in sources:
            parse_source_config(source.source_type, source.config)
        return sources

    def get_credentials(self) -> dict[str, str]:
        return {str(k): str(v) for k, v in (self._config.get("credentials") or {}).items()}


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get application settings."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def validate_config(settings: Settings) -> list[str]:
    """Return a list of configuration problems (empty when valid)."""
    problems = []
    if settings.review_threshold >= settings.auto_approve_threshold:
        problems.append(
            f"REVIEW_THRESHOLD ({settings.review_threshold}) must be below "
            f"AUTO_APPROVE_THRESHOLD ({settings.auto_approve_threshold})"
        )
    if settings.scan_budget_seconds <= 0:
        problems.append("SCAN_BUDGET_SECONDS must be positive")
    if settings.backoff_base_minutes / 60 > settings.backoff_max_hours:
        problems.append("BACKOFF_BASE_MINUTES exceeds BACKOFF_MAX_HOURS")
    return problems
