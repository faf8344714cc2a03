"""Source connectors: feed polling, web search and social scraper actors."""

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import aiohttp
import feedparser
import httpx
from pydantic import ValidationError
from tavily import AsyncTavilyClient

from ..config import (
    CredentialSnapshot,
    FeedSourceConfig,
    Settings,
    SocialActorSourceConfig,
    SourceConfig,
    WebSearchSourceConfig,
    get_settings,
    parse_source_config,
)
from ..errors import ConnectorError
from ..logging import get_logger
from ..records import Candidate, CoverageSource, Game
from ..utils import clean_text, parse_date_string, parse_timestamp, retry_async, truncate_text

logger = get_logger(__name__)

APIFY_BASE_URL = "https://api.apify.com/v2"
YOUTUBE_SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
YOUTUBE_CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, application/atom+xml"


class SourceConnector(ABC):
    """Abstract base class for source connectors.

    A connector plans its queries up front and then runs them one at a time,
    so the caller can check its time budget between queries. Use it as an
    async context manager so the HTTP session is opened and closed.
    """

    credential_service: str | None = None

    def __init__(
        self,
        source: CoverageSource,
        config: SourceConfig,
        credentials: CredentialSnapshot,
        settings: Settings | None = None,
        game: Game | None = None,
    ):
        self.source = source
        self.config = config
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.game = game
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)
        connector = aiohttp.TCPConnector(limit=10, limit_per_host=5)

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers={'User-Agent': self.settings.user_agent}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    @property
    def api_key(self) -> str | None:
        if self.credential_service is None:
            return None
        return self.credentials.get(self.credential_service)

    @property
    def missing_credential(self) -> bool:
        return self.credential_service is not None and self.api_key is None

    @property
    def cost_per_query(self) -> float:
        return 0.0

    @abstractmethod
    def plan_queries(self) -> list[str]:
        """Queries this source will run, in order."""

    @abstractmethod
    async def run_query(self, query: str) -> list[Candidate]:
        """Run one query and return raw candidates.

        Raises:
            ConnectorError: the query failed
        """

    async def _fetch_url(self, url: str, headers: dict[str, str] | None = None) -> str:
        """Fetch URL content with retry.

        Raises:
            aiohttp.ClientError: If request fails after all retries
        """
        if not self.session:
            raise RuntimeError("Session not initialized. Use async context manager.")

        logger.debug("Fetching URL", url=url, source=self.source.name)

        async def fetch_with_session():
            async with self.session.get(url, headers=headers) as response:
                response.raise_for_status()
                content = await response.text()

                logger.debug(
                    "URL fetched successfully",
                    url=url,
                    status=response.status,
                    content_length=len(content)
                )

                return content

        return await retry_async(
            fetch_with_session,
            max_retries=self.settings.fetch_retries,
            backoff_factor=2.0,
            exceptions=(aiohttp.ClientError, asyncio.TimeoutError)
        )


# ── Feed polling ───────────────────────────────────────────────────────────


_BARE_AMPERSAND = re.compile(r"&(?!(?:#[0-9]+|#x[0-9a-fA-F]+|amp|lt|gt|quot|apos);)")
_TAG_WITH_ATTRS = re.compile(r"<([a-zA-Z][a-zA-Z0-9:]*)\s+([^>]*?)>")
_UNQUOTED_ATTR = re.compile(r"([\w:-]+)\s*=\s*([^\"'\s>][^\s>]*)")


def sanitize_xml(xml: str) -> str:
    """Repair the usual breakage in hand-rolled feeds: bare ampersands and unquoted attributes."""
    sanitized = _BARE_AMPERSAND.sub("&amp;", xml)

    def _quote_attrs(match: re.Match) -> str:
        attrs = _UNQUOTED_ATTR.sub(r'\1="\2"', match.group(2))
        return f"<{match.group(1)} {attrs}>"

    return _TAG_WITH_ATTRS.sub(_quote_attrs, sanitized)


def _struct_time_to_datetime(value: Any) -> datetime | None:
    """Convert a feedparser *_parsed value (UTC struct_time) to datetime."""
    if not value:
        return None
    try:
        return datetime(*tuple(value)[:6], tzinfo=UTC)
    except (TypeError, ValueError):
        return None


class FeedConnector(SourceConnector):
    """RSS/Atom feed: a single query, the feed URL."""

    config: FeedSourceConfig

    def plan_queries(self) -> list[str]:
        return [str(self.config.url)]

    async def run_query(self, query: str) -> list[Candidate]:
        try:
            content = await self._fetch_url(query, headers={"Accept": FEED_ACCEPT})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectorError(f"Feed fetch failed: {e}", source=self.source.name) from e

        feed = feedparser.parse(content)
        if feed.bozo and not feed.entries:
            logger.info("Feed malformed, retrying sanitized", source=self.source.name)
            feed = feedparser.parse(sanitize_xml(content))
            if not feed.entries and feed.bozo:
                raise ConnectorError(
                    f"Malformed feed: {feed.get('bozo_exception')}", source=self.source.name
                )

        feed_title = feed.feed.get("title") or self.source.name
        candidates = []
        for entry in feed.entries:
            link = (entry.get("link") or "").strip()
            title = clean_text(entry.get("title") or "")
            if not link or not title:
                continue

            published = _struct_time_to_datetime(
                entry.get("published_parsed") or entry.get("updated_parsed")
            )
            candidates.append(Candidate(
                url=link,
                title=title,
                snippet=truncate_text(clean_text(entry.get("summary") or ""), 1000),
                published_at=published,
                query=query,
                coverage_type="news",
                metadata={
                    "feed_url": query,
                    "feed_title": feed_title,
                    "guid": entry.get("id"),
                    "author": entry.get("author"),
                    "categories": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
                },
            ))

        logger.debug(
            "Feed parsed",
            source=self.source.name,
            entries=len(feed.entries),
            candidates=len(candidates),
        )
        return candidates


# ── Web search ─────────────────────────────────────────────────────────────


class WebSearchConnector(SourceConnector):
    """Tavily search over a bound domain and/or keyword list."""

    credential_service = "tavily"
    config: WebSearchSourceConfig

    def __init__(self, *args, tavily_client: AsyncTavilyClient | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tavily = tavily_client

    @property
    def cost_per_query(self) -> float:
        return self.settings.search_query_cost

    @property
    def tavily(self) -> AsyncTavilyClient:
        if self._tavily is None:
            self._tavily = AsyncTavilyClient(api_key=self.api_key)
        return self._tavily

    def plan_queries(self) -> list[str]:
        keywords = self.config.keywords
        queries: list[str] = []
        if self.game is not None:
            if keywords:
                queries = [f"{self.game.name} {kw}" for kw in keywords]
            else:
                queries = [self.game.name]
        elif keywords:
            queries = list(keywords)
        elif self.config.domain:
            queries = [f"site:{self.config.domain} gaming news"]

        return list(dict.fromkeys(queries))[:self.settings.max_queries_per_source]

    async def run_query(self, query: str) -> list[Candidate]:
        params: dict[str, Any] = {
            "query": query,
            "max_results": self.settings.search_max_results,
            "search_depth": self.settings.search_depth,
            "include_answer": False,
        }
        if self.config.domain:
            params["include_domains"] = [self.config.domain]

        try:
            response = await self.tavily.search(**params)
        except Exception as e:
            raise ConnectorError(f"Search failed for {query!r}: {e}", source=self.source.name) from e

        candidates = []
        for result in response.get("results", []):
            url = result.get("url")
            title = clean_text(result.get("title") or "")
            if not url or not title:
                continue
            content = result.get("content") or ""
            score = result.get("score")
            candidates.append(Candidate(
                url=url,
                title=title,
                snippet=content,
                published_at=parse_date_string(result.get("published_date")),
                engine_score=float(score) if score is not None else None,
                query=query,
                coverage_type="news",
                metadata={
                    "search_query": query,
                    "tavily_score": score,
                    "content_snippet": content[:300],
                },
            ))
        return candidates


# ── Social actors ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ActorSpec:
    """How one platform's scraper is invoked and how its items map to candidates."""
    actor_id: str
    build_input: Callable[[str, SocialActorSourceConfig], dict[str, Any]]
    map_item: Callable[[dict[str, Any]], Candidate | None]
    min_followers: int = 0


DEFAULT_SUBREDDITS = [
    "gaming", "pcgaming", "Steam", "NintendoSwitch", "PS5", "XboxSeriesX", "indiegaming", "Games",
]


def _reddit_input(query: str, config: SocialActorSourceConfig) -> dict[str, Any]:
    subreddits = config.subreddits or DEFAULT_SUBREDDITS
    return {
        "startUrls": [
            {"url": f"https://www.reddit.com/r/{sub}/search.json?q={quote(query)}"
                    "&sort=new&restrict_sr=on&t=week&limit=10"}
            for sub in subreddits
        ],
        "maxItems": config.max_items,
        "sort": "new",
    }


def _reddit_item(post: dict[str, Any]) -> Candidate | None:
    permalink = post.get("permalink") or post.get("url")
    if not permalink:
        return None
    url = permalink if permalink.startswith("http") else f"https://www.reddit.com{permalink}"
    subreddit = post.get("subreddit") or post.get("communityName") or "unknown"
    subreddit = subreddit.removeprefix("r/")
    return Candidate(
        url=url,
        title=clean_text(post.get("title") or "Untitled Post"),
        snippet=clean_text(post.get("body") or post.get("text") or ""),
        published_at=parse_timestamp(post.get("createdAt") or post.get("created_utc")),
        coverage_type="mention",
        outlet_domain=f"reddit.com/r/{subreddit}",
        metadata={
            "subreddit": subreddit,
            "author": post.get("author") or post.get("username"),
            "score": post.get("score") or post.get("upVotes"),
            "num_comments": post.get("numberOfComments") or post.get("numComments"),
        },
    )


def _twitter_input(query: str, config: SocialActorSourceConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {"maxItems": config.max_items, "sort": "Latest"}
    if query.startswith("@"):
        payload["twitterHandles"] = [query[1:]]
    else:
        payload["searchTerms"] = [query]
    return payload


def _twitter_item(tweet: dict[str, Any]) -> Candidate | None:
    url = tweet.get("url") or tweet.get("twitterUrl")
    text = clean_text(tweet.get("text") or "")
    if not url or not text:
        return None
    # Low-engagement replies are noise
    if tweet.get("isReply") and (tweet.get("likeCount") or 0) < 10:
        return None
    author = tweet.get("author") or {}
    username = author.get("userName") or ""
    return Candidate(
        url=url,
        title=truncate_text(text, 200),
        snippet=text,
        published_at=parse_date_string(tweet.get("createdAt")),
        coverage_type="mention",
        territory=tweet.get("lang"),
        outlet_domain=f"x.com/{username}" if username else None,
        audience=author.get("followers"),
        metadata={
            "author": username,
            "followers": author.get("followers"),
            "likes": tweet.get("likeCount"),
            "retweets": tweet.get("retweetCount"),
        },
    )


def _tiktok_input(query: str, config: SocialActorSourceConfig) -> dict[str, Any]:
    return {"searchQueries": [query], "maxItems": config.max_items}


def _tiktok_item(video: dict[str, Any]) -> Candidate | None:
    url = video.get("webVideoUrl")
    if not url:
        return None
    author = video.get("authorMeta") or {}
    text = clean_text(video.get("text") or "")
    name = author.get("name") or ""
    return Candidate(
        url=url,
        title=truncate_text(text, 200) if text else "TikTok video",
        snippet=text,
        published_at=parse_timestamp(video.get("createTime") or video.get("createTimeISO")),
        coverage_type="video",
        outlet_domain=f"tiktok.com/@{name}" if name else None,
        audience=author.get("fans"),
        metadata={
            "author": name,
            "followers": author.get("fans"),
            "plays": video.get("playCount"),
            "likes": video.get("diggCount"),
        },
    )


def _instagram_input(query: str, config: SocialActorSourceConfig) -> dict[str, Any]:
    return {"hashtags": [query], "resultsLimit": config.max_items}


def _instagram_item(post: dict[str, Any]) -> Candidate | None:
    url = post.get("url")
    if not url:
        return None
    caption = clean_text(post.get("caption") or "")
    owner = post.get("ownerUsername") or ""
    is_video = post.get("type") == "Video"
    return Candidate(
        url=url,
        title=truncate_text(caption, 200) if caption else "Instagram post",
        snippet=caption,
        published_at=parse_date_string(post.get("timestamp")),
        coverage_type="video" if is_video else "mention",
        outlet_domain=f"instagram.com/{owner}" if owner else None,
        metadata={
            "owner": owner,
            "likes": post.get("likesCount"),
            "comments": post.get("commentsCount"),
        },
    )


def _twitch_input(query: str, config: SocialActorSourceConfig) -> dict[str, Any]:
    return {"searchTerms": [query], "maxItems": config.max_items, "type": "videos"}


def _twitch_item(vod: dict[str, Any]) -> Candidate | None:
    url = vod.get("url") or (f"https://www.twitch.tv/videos/{vod['id']}" if vod.get("id") else None)
    if not url:
        return None
    streamer = vod.get("userName") or vod.get("channelName") or vod.get("user_name") or "Unknown"
    login = vod.get("userLogin") or vod.get("user_login") or streamer.lower()
    followers = vod.get("followers") or vod.get("followerCount")
    return Candidate(
        url=url,
        title=clean_text(vod.get("title") or "Untitled Stream"),
        published_at=parse_timestamp(vod.get("createdAt") or vod.get("created_at")),
        coverage_type="stream",
        territory=vod.get("language"),
        outlet_domain=f"twitch.tv/{login}",
        audience=int(followers) if followers else None,
        metadata={
            "video_id": vod.get("id"),
            "user_name": streamer,
            "view_count": vod.get("viewCount") or vod.get("views"),
            "duration": vod.get("duration"),
            "followers": followers,
        },
    )


ACTOR_SPECS: dict[str, ActorSpec] = {
    "reddit": ActorSpec("trudax~reddit-scraper-lite", _reddit_input, _reddit_item),
    "twitter": ActorSpec(
        "kaitoeasyapi~twitter-x-data-tweet-scraper-pay-per-result-cheapest",
        _twitter_input,
        _twitter_item,
    ),
    "tiktok": ActorSpec("clockworks~tiktok-scraper", _tiktok_input, _tiktok_item, min_followers=1000),
    "instagram": ActorSpec("apify~instagram-hashtag-scraper", _instagram_input, _instagram_item),
    "twitch": ActorSpec("epctex~twitch-scraper", _twitch_input, _twitch_item),
}


class SocialActorConnector(SourceConnector):
    """Social platform scrape: Apify actors, or the YouTube Data API for youtube."""

    config: SocialActorSourceConfig

    def __init__(self, *args, transport: httpx.AsyncBaseTransport | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._transport = transport
        self.http: httpx.AsyncClient | None = None

    @property
    def credential_service(self) -> str:
        return "youtube" if self.config.platform == "youtube" else "apify"

    @property
    def cost_per_query(self) -> float:
        return 0.0 if self.config.platform == "youtube" else self.settings.actor_run_cost

    @property
    def min_followers(self) -> int:
        spec = ACTOR_SPECS.get(self.config.platform)
        return self.config.min_followers or (spec.min_followers if spec else 0)

    async def __aenter__(self):
        await super().__aenter__()
        self.http = httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.http_timeout_seconds * 4,
            headers={"User-Agent": self.settings.user_agent},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        await super().__aexit__(exc_type, exc_val, exc_tb)

    def plan_queries(self) -> list[str]:
        config = self.config
        if config.platform == "instagram":
            terms = [h.lstrip("#") for h in config.hashtags]
            if not terms:
                source_terms = config.keywords or ([self.game.name] if self.game else [])
                terms = [t.replace(" ", "").lower() for t in source_terms]
        else:
            terms = list(config.keywords)
            if config.platform == "twitter":
                terms += [f"@{h.lstrip('@')}" for h in config.handles]
            if not terms and self.game is not None:
                terms = [self.game.name]

        return list(dict.fromkeys(t for t in terms if t))[:self.settings.max_queries_per_source]

    async def run_query(self, query: str) -> list[Candidate]:
        if self.http is None:
            raise RuntimeError("Client not initialized. Use async context manager.")

        try:
            if self.config.platform == "youtube":
                candidates = await self._search_youtube(query)
            else:
                candidates = await self._run_actor(query)
        except httpx.HTTPError as e:
            raise ConnectorError(
                f"{self.config.platform} request failed for {query!r}: {e}", source=self.source.name
            ) from e

        threshold = self.min_followers
        kept = []
        for candidate in candidates:
            if threshold and candidate.audience is not None and candidate.audience < threshold:
                continue
            candidate.query = query
            candidate.metadata["platform"] = self.config.platform
            kept.append(candidate)

        if len(kept) < len(candidates):
            logger.debug(
                "Dropped low-audience posts",
                source=self.source.name,
                dropped=len(candidates) - len(kept),
                min_followers=threshold,
            )
        return kept

    async def _run_actor(self, query: str) -> list[Candidate]:
        spec = ACTOR_SPECS[self.config.platform]
        actor_id = self.config.actor_id or spec.actor_id
        response = await self.http.post(
            f"{APIFY_BASE_URL}/acts/{actor_id}/run-sync-get-dataset-items",
            params={"token": self.api_key},
            json=spec.build_input(query, self.config),
        )
        response.raise_for_status()
        items = response.json()
        if not isinstance(items, list):
            raise ConnectorError(f"Unexpected actor response from {actor_id}", source=self.source.name)

        candidates = []
        for item in items:
            if not isinstance(item, dict):
                continue
            candidate = spec.map_item(item)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    async def _search_youtube(self, query: str) -> list[Candidate]:
        published_after = datetime.now(UTC) - timedelta(days=7)
        response = await self.http.get(
            YOUTUBE_SEARCH_URL,
            params={
                "part": "snippet",
                "q": query,
                "type": "video",
                "order": "date",
                "maxResults": min(self.config.max_items, 50),
                "publishedAfter": published_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "key": self.api_key,
            },
        )
        response.raise_for_status()
        videos = response.json().get("items", [])

        channel_ids = {v["snippet"]["channelId"] for v in videos if v.get("snippet", {}).get("channelId")}
        subscribers = await self._youtube_subscribers(channel_ids) if channel_ids else {}

        candidates = []
        for video in videos:
            video_id = (video.get("id") or {}).get("videoId")
            snippet = video.get("snippet") or {}
            if not video_id:
                continue
            channel_id = snippet.get("channelId")
            candidates.append(Candidate(
                url=f"https://www.youtube.com/watch?v={video_id}",
                title=clean_text(snippet.get("title") or "Untitled Video"),
                snippet=clean_text(snippet.get("description") or ""),
                published_at=parse_date_string(snippet.get("publishedAt")),
                coverage_type="video",
                territory=snippet.get("defaultAudioLanguage"),
                outlet_domain=f"youtube.com/channel/{channel_id}" if channel_id else None,
                audience=subscribers.get(channel_id),
                metadata={
                    "video_id": video_id,
                    "channel_id": channel_id,
                    "channel_name": snippet.get("channelTitle"),
                    "subscribers": subscribers.get(channel_id),
                },
            ))
        return candidates

    async def _youtube_subscribers(self, channel_ids: set[str]) -> dict[str, int]:
        response = await self.http.get(
            YOUTUBE_CHANNELS_URL,
            params={"part": "statistics", "id": ",".join(sorted(channel_ids)), "key": self.api_key},
        )
        if response.status_code != 200:
            logger.debug("Channel lookup failed", status=response.status_code)
            return {}
        return {
            ch["id"]: int(ch.get("statistics", {}).get("subscriberCount") or 0)
            for ch in response.json().get("items", [])
        }


CONNECTOR_TYPES: dict[str, type[SourceConnector]] = {
    "feed": FeedConnector,
    "web_search": WebSearchConnector,
    "social_actor": SocialActorConnector,
}


def create_connector(
    source: CoverageSource,
    credentials: CredentialSnapshot,
    settings: Settings | None = None,
    game: Game | None = None,
    **kwargs: Any,
) -> SourceConnector:
    """Create the connector for a source from its typed config.

    Raises:
        ConnectorError: the stored config does not fit the source type
    """
    try:
        config = parse_source_config(source.source_type.value, source.config)
    except (ValidationError, ValueError) as e:
        raise ConnectorError(f"Invalid source config: {e}", source=source.name) from e

    connector_cls = CONNECTOR_TYPES[config.kind]
    return connector_cls(source, config, credentials, settings=settings, game=game, **kwargs)
