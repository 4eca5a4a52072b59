#!/usr/bin/env python3
"""
Utility classes and functions for the thread notifier.

This module contains shared utilities used by the fetcher, storage and mailer,
including the retry combinator, thread URL normalization, timestamp parsing and
HTML sanitization for notification emails.
"""

from asyncio import sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from random import uniform
from typing import Awaitable, Callable, Optional, Tuple, TypeVar
from urllib.parse import urljoin, urlparse
import re

from bs4 import BeautifulSoup

from config import config, get_logger
from errors import is_retryable

# Module-specific logger
logger = get_logger("utils")

T = TypeVar("T")

THREAD_PATH_RE = re.compile(r"/threads/([^/]+)\.(\d+)(?:/|$)")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")

# Go's zero time, as written by older subscription documents
ZERO_TIME_PREFIX = "0001-01-01"
# XenForo renders offsets without a colon, e.g. +0100
COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


class RetryHelper:
    """Retry combinator with linear backoff, random jitter and a capped delay.

    One instance is shared per call site family (fetch, storage, email); the
    operation and the "is this retryable" predicate are supplied per call.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 120.0, max_jitter: float = 10.0):
        """Initialize the retry helper.

        Args:
            max_attempts: Total number of attempts, including the first one
            base_delay: Delay in seconds added per failed attempt (linear growth)
            max_delay: Maximum delay in seconds between attempts
            max_jitter: Upper bound of the random jitter added to each delay
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_jitter = max_jitter

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            Delay in seconds (linear plus jitter, never above max_delay)
        """
        delay = self.base_delay * attempt
        if self.max_jitter > 0:
            delay += uniform(0, self.max_jitter)
        return max(0.0, min(delay, self.max_delay))

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_if: Callable[[BaseException], bool] = is_retryable,
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds, a non-retryable error occurs or attempts run out.

        The last exception is re-raised unchanged so callers can still branch on it.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_attempts or not retry_if(e):
                    raise
                logger.info(
                    "Retrying %s after error (attempt %d/%d): %s",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                )
                await self.sleep_for_attempt(attempt)
                attempt += 1


def is_valid_email(email: str) -> bool:
    """Check an email address is plausible enough to subscribe."""
    if not email or not isinstance(email, str):
        return False
    if len(email) < 3 or len(email) > 254:
        return False
    return bool(EMAIL_RE.match(email))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_thread_url(url: str, forum_base_url: Optional[str] = None) -> Tuple[str, str]:
    """Reduce any thread URL (page suffix, anchors, www.) to its canonical form.

    Args:
        url: A thread URL as pasted by a user or stored in a subscription
        forum_base_url: Forum root, e.g. "https://advrider.com/f" (defaults to config)

    Returns:
        Tuple of (canonical_url, thread_id)

    Raises:
        ValueError: If the URL is not a thread URL on the configured forum
    """
    base = (forum_base_url or config.FORUM_BASE_URL).rstrip("/")
    if not url or not isinstance(url, str):
        raise ValueError("empty thread URL")

    parsed = urlparse(url.strip())
    base_parsed = urlparse(base)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"not an http(s) URL: {url}")

    host = (parsed.hostname or "").lower()
    base_host = (base_parsed.hostname or "").lower()
    if host.removeprefix("www.") != base_host.removeprefix("www."):
        raise ValueError(f"not a thread on {base_host}: {url}")

    match = THREAD_PATH_RE.search(parsed.path)
    if not match:
        raise ValueError(f"could not extract thread slug and id from {url}")

    slug, thread_id = match.group(1), match.group(2)
    return f"{base}/threads/{slug}.{thread_id}/", thread_id


def build_page_url(thread_url: str, page: int) -> str:
    """Return the URL of a given page of a thread (page 1 is the thread URL itself)."""
    if page <= 1:
        return thread_url
    return f"{thread_url.rstrip('/')}/page-{page}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a post or document timestamp into an aware UTC datetime.

    Accepts ISO 8601 / RFC 3339 (with or without "Z") and RFC 2822 dates.
    Go's zero time and unparseable values yield None.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.startswith(ZERO_TIME_PREFIX):
        return None
    dt: Optional[datetime] = None
    try:
        dt = datetime.fromisoformat(COMPACT_OFFSET_RE.sub(r"\1:\2", value.replace("Z", "+00:00")))
    except ValueError:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unable to parse timestamp '{value}'")
            return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Format an aware datetime as RFC 3339 in UTC ("Z" suffix), None stays None."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


ALLOWED_TAGS = {"p", "br", "b", "i", "em", "strong", "blockquote", "img", "a"}
ALLOWED_ATTRS = {"img": {"src", "alt"}, "a": {"href"}}
PLACEHOLDER_TAGS = {"video", "embed", "object"}
DROPPED_TAGS = {"script", "style", "form", "noscript", "frame", "frameset", "applet", "meta", "base", "link"}
UNSAFE_SCHEMES = ("javascript:", "data:", "vbscript:", "file:", "about:")


def is_safe_url(value: str) -> bool:
    """Only http(s) and scheme-less relative URLs are allowed in emails."""
    value = (value or "").strip().lower()
    if not value or value.startswith(UNSAFE_SCHEMES):
        return False
    if value.startswith(("http://", "https://", "/", "./", "../")):
        return True
    return ":" not in value


def sanitize_html(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize untrusted forum post HTML for inclusion in notification emails.

    Behavior:
    - Keeps only a small set of formatting tags (p, br, b, i, em, strong, blockquote, img, a)
    - Keeps only src/alt on images and href on links, and only for safe URLs
    - Replaces iframes with a link to their source and video/embed/object with a placeholder
    - Drops script/style/form-like elements entirely and unwraps anything else
    - Resolves relative URLs against ``base_url`` when provided
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")

    for tag in soup.find_all(list(DROPPED_TAGS)):
        tag.decompose()

    for tag in soup.find_all("iframe"):
        src = str(tag.get("src") or "")
        if src and is_safe_url(src):
            link = soup.new_tag("a", href=_resolve(src, base_url))
            link.string = src
            tag.replace_with("[iframe: ", link, "]")
        else:
            tag.replace_with("[replaced iframe]")

    for tag in soup.find_all(list(PLACEHOLDER_TAGS)):
        tag.replace_with(f"[replaced {tag.name}]")

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        allowed = ALLOWED_ATTRS.get(tag.name, set())
        for attr in list(tag.attrs):
            if attr not in allowed:
                del tag[attr]
        for attr in ("href", "src"):
            if tag.has_attr(attr):
                value = str(tag[attr])
                if is_safe_url(value):
                    tag[attr] = _resolve(value, base_url)
                else:
                    del tag[attr]
        if tag.name == "img" and not tag.has_attr("src"):
            tag.decompose()

    return str(soup)


def _resolve(value: str, base_url: Optional[str]) -> str:
    if base_url and not value.startswith(("http://", "https://")):
        return urljoin(base_url, value)
    return value
