#!/usr/bin/env python3
"""
Forum thread fetcher and page parser.

This module fetches XenForo thread pages, parses posts and pagination out of
them, and implements the smart fetch strategy: however long a thread is, new
posts are located with at most three page requests (first page, last page and,
when needed, the second-to-last page).
"""

from asyncio import TimeoutError
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple, Union

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import ErrorKind, FetchError
from models import FetchResult, Page, Post
from telemetry import trace_span
from utils import RetryHelper, build_page_url, format_timestamp, truncate_string

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_GONE = 410

# Chrome-like headers; the forum blocks obvious bots
BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Ch-Ua": '"Google Chrome";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"macOS"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}


def _format_client_error(error: BaseException) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _page_number(text: str) -> Optional[int]:
    try:
        return int(text.strip())
    except (TypeError, ValueError):
        return None


def _post_timestamp(message) -> Optional[str]:
    time_tag = message.find("time", attrs={"datetime": True})
    if time_tag is not None:
        return str(time_tag["datetime"]).strip() or None
    # Older XenForo themes carry a unix timestamp in data-time
    legacy = message.find(attrs={"data-time": True})
    if legacy is not None:
        try:
            return format_timestamp(datetime.fromtimestamp(int(legacy["data-time"]), tz=timezone.utc))
        except (TypeError, ValueError, OverflowError):
            return None
    return None


def parse_page(html: str, thread_url: str) -> Page:
    """Parse a thread page into posts, title and pagination.

    Posts are ``li.message`` / ``article.message`` elements whose id is
    ``post-<id>``; posts without an id or without any text are ignored.

    Args:
        html: Raw page HTML
        thread_url: Canonical thread URL, used to build post permalinks

    Returns:
        Page (possibly with no posts; callers decide whether that is an error)
    """
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    heading = soup.select_one("h1.p-title-value")
    if heading is not None:
        title = heading.get_text(" ", strip=True)
    if not title and soup.title is not None:
        raw_title = soup.title.get_text(strip=True)
        # Drop the " | Forum name" suffix
        idx = raw_title.find(" | ")
        title = raw_title[:idx].strip() if idx > 0 else raw_title
    if not title:
        title = config.DEFAULT_THREAD_TITLE

    last_page = 0
    for nav in soup.select(".pageNav-page"):
        number = _page_number(nav.get_text())
        if number and number > last_page:
            last_page = number
    current_page = 0
    current = soup.select_one(".pageNav-page--current")
    if current is not None:
        current_page = _page_number(current.get_text()) or 0
    legacy_nav = soup.select_one(".PageNav[data-last]")
    if legacy_nav is not None and not last_page:
        last_page = _page_number(str(legacy_nav.get("data-last", ""))) or 0
        current_page = current_page or _page_number(str(legacy_nav.get("data-page", ""))) or 0
    if not current_page:
        current_page = 1

    posts: List[Post] = []
    permalink_base = thread_url.split("#", 1)[0]
    for message in soup.select("li.message, article.message"):
        element_id = str(message.get("id") or "")
        if not element_id.startswith("post-"):
            continue
        post_id = element_id[len("post-"):]
        body = message.select_one("blockquote.messageText, .message-body .bbWrapper, .bbWrapper")
        if not post_id or body is None:
            continue
        content = body.get_text(" ", strip=True)
        if not content:
            continue
        author_tag = message.select_one("a.username")
        author = author_tag.get_text(strip=True) if author_tag is not None else str(message.get("data-author") or "")
        posts.append(Post(
            id=post_id,
            author=author,
            content=content,
            url=f"{permalink_base}#post-{post_id}",
            html_content=body.decode_contents().strip(),
            timestamp=_post_timestamp(message),
        ))

    return Page(posts=posts, title=title, current_page=current_page, last_page=last_page)


def _contains(posts: List[Post], post_id: str) -> bool:
    return any(post.id == post_id for post in posts)


def _markers(last_seen: Union[str, Iterable[str]]) -> Set[str]:
    if last_seen is None or isinstance(last_seen, str):
        return {last_seen or ""}
    return {marker or "" for marker in last_seen} or {""}


class ThreadFetcher:
    """Fetches thread pages over a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None, retry_helper: Optional[RetryHelper] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.retry_helper = retry_helper or RetryHelper(
            max_attempts=config.FETCH_MAX_ATTEMPTS,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_MAX_DELAY,
            max_jitter=config.RETRY_MAX_JITTER,
        )

    async def __aenter__(self) -> "ThreadFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_page(self, url: str, thread_url: Optional[str] = None) -> Page:
        """Fetch and parse one page, retrying transient failures.

        Every non-2xx response except 403 is retried. A 404/410 that persists
        through all attempts is reported as PERMANENT.

        Raises:
            FetchError: With kind FORBIDDEN, CONTENT, PERMANENT (thread gone) or
                (after all attempts) TRANSIENT
        """
        try:
            return await self.retry_helper.run(
                lambda: self._fetch_once(url, thread_url or url),
                description=f"fetch {url}",
            )
        except FetchError as e:
            if e.kind is ErrorKind.TRANSIENT and e.status in (HTTP_NOT_FOUND, HTTP_GONE):
                raise FetchError(ErrorKind.PERMANENT, url, f"HTTP {e.status}: {url}", status=e.status) from e
            raise

    async def _fetch_once(self, url: str, thread_url: str) -> Page:
        session = self._get_session()
        logger.debug(f"GET {url}")
        try:
            async with session.get(
                url,
                headers={"User-Agent": config.USER_AGENT, **BROWSER_HEADERS},
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                status = response.status
                if status == HTTP_FORBIDDEN:
                    logger.warning(f"HTTP 403 for {url}: thread requires login")
                    raise FetchError(ErrorKind.FORBIDDEN, url, f"HTTP 403 Forbidden: {url}", status=status)
                if status in (HTTP_NOT_FOUND, HTTP_GONE):
                    logger.warning(f"HTTP {status} for {url}: thread may be gone")
                    raise FetchError(ErrorKind.TRANSIENT, url, f"HTTP {status}: {url}", status=status)
                if status != HTTP_OK:
                    logger.warning(f"HTTP {status} for {url}")
                    raise FetchError(ErrorKind.TRANSIENT, url, f"HTTP {status}: {url}", status=status)
                html = await response.text(errors="replace")
        except TimeoutError as e:
            logger.warning(f"Timeout fetching {url} (timeout={config.HTTP_TIMEOUT}s)")
            raise FetchError(ErrorKind.TRANSIENT, url, f"timed out fetching {url}") from e
        except ClientError as e:
            detail = _format_client_error(e)
            logger.warning(f"Network error fetching {url}: {detail}")
            raise FetchError(ErrorKind.TRANSIENT, url, f"network error fetching {url}: {detail}") from e

        page = parse_page(html, thread_url)
        if not page.posts:
            raise FetchError(ErrorKind.CONTENT, url, f"no posts found on {url}")
        logger.info(
            f"Parsed {url}: page {page.current_page}/{page.last_page or 1}, "
            f"{len(page.posts)} posts ({page.posts[0].id}..{page.posts[-1].id})"
        )
        return page

    @trace_span(
        "smart_fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, thread_url, last_seen="", **_: {
            "thread.url": thread_url,
            "thread.markers": len(_markers(last_seen)),
        },
    )
    async def smart_fetch(self, thread_url: str, last_seen: Union[str, Iterable[str]] = "") -> FetchResult:
        """Fetch just enough of a thread to see every post after the last seen marker(s).

        ``last_seen`` is one post id or the ids of every subscriber sharing the
        fetch; an empty id stands for a subscriber without a baseline yet.

        1. Page 1 (enough for single-page threads).
        2. The last page; done if every marker is on it.
        3. The second-to-last page, prepended to the last page. Page 1 is reused
           when it is the second-to-last page.

        Callers treat every returned post as new for a marker that is still missing.

        Raises:
            FetchError: If page 1 or the last page cannot be fetched
        """
        markers = _markers(last_seen)
        logger.info(f"Smart fetch of {thread_url} (last seen posts: {', '.join(sorted(m or 'none' for m in markers))})")
        first = await self.fetch_page(thread_url, thread_url)

        if first.last_page <= 1 or first.current_page == first.last_page:
            return FetchResult(posts=list(first.posts), title=first.title, pages_fetched=1)

        last = await self.fetch_page(build_page_url(thread_url, first.last_page), thread_url)
        if all(marker and _contains(last.posts, marker) for marker in markers):
            return FetchResult(posts=list(last.posts), title=first.title, pages_fetched=2)

        posts = list(last.posts)
        pages_fetched = 2
        previous_number = first.last_page - 1
        if previous_number <= 1:
            posts = list(first.posts) + posts
        else:
            logger.info(
                f"Last seen post not on page {first.last_page} of {thread_url}, fetching page {previous_number}"
            )
            try:
                previous = await self.fetch_page(build_page_url(thread_url, previous_number), thread_url)
                posts = list(previous.posts) + posts
                pages_fetched = 3
            except FetchError as e:
                logger.warning(f"Could not fetch page {previous_number} of {thread_url}, using last page only: {e}")

        missing = sorted(marker for marker in markers if marker and not _contains(posts, marker))
        if missing:
            logger.warning(
                f"Last seen post(s) {', '.join(missing)} not found in the last two pages of {thread_url}; "
                f"all {len(posts)} fetched posts will be treated as new for them"
            )
        return FetchResult(posts=posts, title=first.title, pages_fetched=pages_fetched)

    async def latest_post(self, thread_url: str) -> Tuple[Post, str]:
        """Return the newest post of a thread and the thread title."""
        result = await self.smart_fetch(thread_url, "")
        if result.latest is None:
            raise FetchError(ErrorKind.CONTENT, thread_url, f"no posts found in {thread_url}")
        logger.debug(f"Latest post in {thread_url}: {result.latest.id} by {result.latest.author}: "
                     f"{truncate_string(result.latest.content, 80)}")
        return result.latest, result.title
