"""Utility functions for the coverage monitor."""

import asyncio
import html
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlsplit

from .logging import get_logger

logger = get_logger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def normalize_url(url: str) -> str:
    """Normalize URL into the key used for duplicate detection.

    Strips ``utm_*`` query parameters, trailing slashes on non-root paths and
    fragments. Remaining query parameters keep their order and encoding.
    Never raises: input that cannot be parsed comes back trimmed.

    Args:
        url: Raw URL string

    Returns:
        Normalized URL
    """
    raw = (url or "").strip()
    try:
        parsed = urlsplit(raw)
        if not parsed.scheme or not parsed.hostname:
            return raw

        scheme = parsed.scheme.lower()
        host = parsed.hostname
        if ":" in host:
            host = f"[{host}]"
        origin = f"{scheme}://{host}"
        port = parsed.port
        if port is not None and port != _DEFAULT_PORTS.get(scheme):
            origin += f":{port}"

        path = parsed.path or "/"
        if path != "/":
            path = path.rstrip("/") or "/"

        params = [
            segment for segment in parsed.query.split("&")
            if segment and not segment.split("=", 1)[0].startswith("utm_")
        ]

        normalized = origin + path
        if params:
            normalized += "?" + "&".join(params)
        return normalized
    except ValueError:
        return raw


def extract_domain(url: str) -> str:
    """Extract hostname from URL with a leading ``www.`` removed.

    Args:
        url: URL string

    Returns:
        Domain name, or an empty string when the URL has no host
    """
    try:
        host = urlsplit((url or "").strip()).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_date_string(date_str: str | None) -> datetime | None:
    """Parse various date string formats.

    Args:
        date_str: Date string to parse

    Returns:
        Parsed timezone-aware datetime or None if parsing fails
    """
    if not date_str:
        return None

    date_str = date_str.strip()

    # RFC 2822 (common in RSS feeds), e.g. "Thu, 17 Jul 2025 23:17:14 GMT"
    try:
        parsed = parsedate_to_datetime(date_str)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except (ValueError, TypeError, IndexError):
        pass

    try:
        parsed = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except ValueError:
        pass

    formats = [
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%d/%m/%Y",
        "%B %d, %Y",
        "%b %d, %Y",
        "%d %B %Y",
        "%d %b %Y",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(date_str, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue

    logger.debug("Failed to parse date string", date_string=date_str)
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse epoch seconds/milliseconds or a date string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_date_string(str(value))


def format_datetime_iso(dt: datetime) -> str:
    """Format datetime as ISO string (UTC assumed when naive)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def clean_text(text: str) -> str:
    """Clean and normalize text content.

    Args:
        text: Raw text

    Returns:
        Cleaned text
    """
    if not text:
        return ""

    # Feed titles and summaries arrive with markup and numeric entities (&#8217;)
    text = html.unescape(_TAG.sub(" ", text))

    return _WHITESPACE.sub(" ", text).strip()


def truncate_text(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix


async def retry_async(
    func,
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
) -> Any:
    """Retry async function with exponential backoff.

    Args:
        func: Async function to retry
        max_retries: Maximum number of retries
        backoff_factor: Backoff multiplier
        exceptions: Exceptions to catch and retry

    Returns:
        Function result

    Raises:
        Last exception if all retries fail
    """
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except exceptions as e:
            if attempt >= max_retries:
                logger.warning(
                    "All retry attempts failed",
                    max_retries=max_retries,
                    error=str(e)
                )
                raise
            delay = backoff_factor ** attempt
            logger.warning(
                "Retry attempt failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=delay,
                error=str(e)
            )
            await asyncio.sleep(delay)
