"""
Outlet traffic lookup and tier classification.

Monthly visitor estimates come from the outlet's Hypestat profile, tried in
order until one stage yields a positive number:
1. hypestat_html  - fetch the profile page directly
2. tavily_extract - ask Tavily to extract the same page
3. tavily_search  - search Tavily for the profile and parse result snippets
"""

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any

import aiohttp
from tavily import AsyncTavilyClient

from ..config import CredentialSnapshot, Settings, clean_domain, get_settings
from ..errors import InvalidRequestError, NotFoundError
from ..logging import get_logger
from ..records import Tier
from ..store import CoverageStore
from ..utils import utc_now

logger = get_logger(__name__)

HYPESTAT_PROFILE_URL = "https://hypestat.com/info/{domain}"
NO_DATA_ERROR = "Could not extract traffic data from any source"

# Browser-like UA; the profile pages reject obvious bots.
PROFILE_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


def suggest_tier(monthly_visitors: int | None) -> Tier | None:
    """Tier from monthly unique visitors: A >= 10M, B >= 1M, C >= 100K, else D."""
    if monthly_visitors is None:
        return None
    if monthly_visitors >= 10_000_000:
        return Tier.A
    if monthly_visitors >= 1_000_000:
        return Tier.B
    if monthly_visitors >= 100_000:
        return Tier.C
    return Tier.D


def _parse_count(raw: str) -> int | None:
    try:
        value = int(raw.replace(",", ""))
    except ValueError:
        return None
    return value if value > 0 else None


def _monthly(match: re.Match) -> int | None:
    return _parse_count(match.group(1))


def _daily_to_monthly(match: re.Match) -> int | None:
    daily = _parse_count(match.group(1))
    return daily * 30 if daily else None


@dataclass(frozen=True)
class TrafficPattern:
    name: str
    regex: re.Pattern
    extract: Callable[[re.Match], int | None]


TRAFFIC_PATTERNS: list[TrafficPattern] = [
    TrafficPattern(
        "hypestat_monthly_dd",
        re.compile(r"Monthly Visits:</dt><dd>([\d,]+)</dd>", re.I),
        _monthly,
    ),
    TrafficPattern(
        "hypestat_daily_dd",
        re.compile(r"Daily Unique Visitors:</dt><dd>([\d,]+)</dd>", re.I),
        _daily_to_monthly,
    ),
    TrafficPattern("monthly_visits", re.compile(r"Monthly\s+Visits?\s*[:\-]\s*([\d,]+)", re.I), _monthly),
    TrafficPattern(
        "monthly_unique_visitors",
        re.compile(r"monthly\s+unique\s+visitors?\s*[:\-]\s*([\d,]+)", re.I),
        _monthly,
    ),
    TrafficPattern(
        "estimated_monthly_visits",
        re.compile(r"Estimated\s+Monthly\s+Visits?\s*[:\-]\s*([\d,]+)", re.I),
        _monthly,
    ),
    TrafficPattern(
        "table_cell",
        re.compile(r"<td[^>]*>Monthly\s+Visits?</td>\s*<td[^>]*>([\d,]+)", re.I),
        _monthly,
    ),
    TrafficPattern("data_attribute", re.compile(r'data-monthly-visits="([\d,]+)"', re.I), _monthly),
    TrafficPattern(
        "visitors_per_month",
        re.compile(r"visitors?\s+per\s+month\s*[:\-]\s*([\d,]+)", re.I),
        _monthly,
    ),
    TrafficPattern("json_key", re.compile(r"monthly_visits['\":\s]+([\d,]+)", re.I), _monthly),
    TrafficPattern("number_before_label", re.compile(r"([\d,]{4,})\s+monthly\s+visits?", re.I), _monthly),
    TrafficPattern(
        "number_unique_per_month",
        re.compile(r"([\d,]{4,})\s+unique\s+visitors?\s+per\s+month", re.I),
        _monthly,
    ),
]

_VISIT_SECTION = re.compile(r"visit[^<]{0,200}", re.I)
_LARGE_NUMBER = re.compile(r"([\d,]{4,})")


def parse_traffic_from_html(html: str, patterns: list[TrafficPattern] | None = None) -> int | None:
    """Extract a monthly visitor count from a page or snippet.

    Patterns are tried in order and the first positive match wins. As a last
    resort any text following the word "visit" is scanned for a 4+ digit
    number greater than 100.
    """
    if not html:
        return None

    for pattern in patterns if patterns is not None else TRAFFIC_PATTERNS:
        match = pattern.regex.search(html)
        if match:
            value = pattern.extract(match)
            if value:
                return value

    for section in _VISIT_SECTION.findall(html):
        number = _LARGE_NUMBER.search(section)
        if number:
            value = _parse_count(number.group(1))
            if value and value > 100:
                return value

    return None


@dataclass
class TrafficResult:
    domain: str
    monthly_unique_visitors: int | None = None
    suggested_tier: str | None = None
    method: str = "none"
    error: str | None = None
    updated_outlet: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["error"] is None:
            data.pop("error")
        return data


class TrafficTierClassifier:
    """Look up outlet traffic through the fallback chain and persist the tier."""

    def __init__(
        self,
        store: CoverageStore,
        credentials: CredentialSnapshot,
        settings: Settings | None = None,
        tavily_client: AsyncTavilyClient | None = None,
    ):
        self.store = store
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.session: aiohttp.ClientSession | None = None
        self._tavily = tavily_client

    async def __aenter__(self) -> "TrafficTierClassifier":
        timeout = aiohttp.ClientTimeout(total=self.settings.traffic_timeout_seconds)
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            headers={
                "User-Agent": PROFILE_USER_AGENT,
                "Accept": "text/html,application/xhtml+xml",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    @property
    def tavily(self) -> AsyncTavilyClient | None:
        if self._tavily is None and self.credentials.has("tavily"):
            self._tavily = AsyncTavilyClient(api_key=self.credentials.get("tavily"))
        return self._tavily

    async def _fetch_profile_html(self, url: str) -> str | None:
        if not self.session:
            raise RuntimeError("Session not initialized. Use async context manager.")
        async with self.session.get(url) as response:
            if response.status != 200:
                logger.debug("Profile fetch returned non-200", url=url, status=response.status)
                return None
            return await response.text()

    async def _from_html(self, url: str) -> int | None:
        html = await self._fetch_profile_html(url)
        return parse_traffic_from_html(html) if html else None

    async def _from_extract(self, url: str) -> int | None:
        if self.tavily is None:
            return None
        response = await self.tavily.extract(urls=[url])
        for result in response.get("results", []):
            value = parse_traffic_from_html(result.get("raw_content") or "")
            if value:
                return value
        return None

    async def _from_search(self, domain: str) -> int | None:
        if self.tavily is None:
            return None
        response = await self.tavily.search(
            query=f"{domain} monthly visitors traffic hypestat",
            max_results=3,
            search_depth="basic",
            include_domains=["hypestat.com"],
        )
        for result in response.get("results", []):
            text = f"{result.get('title', '')} {result.get('content', '')}"
            value = parse_traffic_from_html(text)
            if value:
                return value
        return None

    async def lookup(self, domain: str) -> TrafficResult:
        """Run the fallback chain for a clean domain without persisting anything."""
        url = HYPESTAT_PROFILE_URL.format(domain=domain)
        stages = [
            ("hypestat_html", lambda: self._from_html(url)),
            ("tavily_extract", lambda: self._from_extract(url)),
            ("tavily_search", lambda: self._from_search(domain)),
        ]

        for method, stage in stages:
            try:
                visitors = await stage()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Traffic stage request failed", domain=domain, method=method, error=str(e))
                continue
            except Exception as e:
                # Tavily SDK raises its own error types
                logger.warning("Traffic stage failed", domain=domain, method=method, error=str(e))
                continue
            if visitors:
                tier = suggest_tier(visitors)
                logger.info(
                    "Traffic found",
                    domain=domain,
                    method=method,
                    visitors=visitors,
                    tier=tier.value if tier else None,
                )
                return TrafficResult(
                    domain=domain,
                    monthly_unique_visitors=visitors,
                    suggested_tier=tier.value if tier else None,
                    method=method,
                )

        logger.info("No traffic data found", domain=domain)
        return TrafficResult(domain=domain, error=NO_DATA_ERROR)

    async def refresh(self, outlet_id: str | None = None, domain: str | None = None) -> TrafficResult:
        """Refresh traffic for an outlet and/or a bare domain.

        Raises:
            InvalidRequestError: neither outlet_id nor domain given
            NotFoundError: the outlet does not exist or has no domain
        """
        if not outlet_id and not domain:
            raise InvalidRequestError("Provide outlet_id or domain")

        target = domain
        if outlet_id:
            outlet = await self.store.get_outlet(outlet_id)
            if outlet is None or not (domain or outlet.domain):
                raise NotFoundError("Outlet not found or has no domain")
            target = domain or outlet.domain

        cleaned = clean_domain(target or "")
        if not cleaned:
            raise InvalidRequestError("Domain is empty")

        result = await self.lookup(cleaned)
        if outlet_id and result.monthly_unique_visitors:
            await self.store.update_outlet_traffic(
                outlet_id, result.monthly_unique_visitors, Tier(result.suggested_tier), utc_now()
            )
            result.updated_outlet = True
        return result

    async def refresh_stale(self, budget_seconds: float | None = None) -> list[TrafficResult]:
        """Refresh outlets whose traffic data is missing or older than the stale window.

        Outlets where nothing was found are still stamped so they are not
        retried on every run.
        """
        budget = budget_seconds if budget_seconds is not None else self.settings.scan_budget_seconds
        started = time.monotonic()
        cutoff = utc_now() - timedelta(days=self.settings.traffic_stale_days)
        outlets = await self.store.list_stale_outlets(cutoff, self.settings.traffic_refresh_limit)

        results = []
        for outlet in outlets:
            if time.monotonic() - started > budget:
                logger.warning("Traffic refresh budget exhausted", remaining=len(outlets) - len(results))
                break
            result = await self.lookup(clean_domain(outlet.domain or ""))
            now = utc_now()
            if result.monthly_unique_visitors:
                await self.store.update_outlet_traffic(
                    outlet.id, result.monthly_unique_visitors, Tier(result.suggested_tier), now
                )
                result.updated_outlet = True
            else:
                await self.store.touch_outlet_traffic(outlet.id, now)
            results.append(result)

        logger.info(
            "Stale traffic refresh complete",
            checked=len(results),
            updated=sum(1 for r in results if r.updated_outlet),
        )
        return results
