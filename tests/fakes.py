"""In-memory stand-ins for the fetcher, store and mailer used by the tests."""

from copy import deepcopy
from hashlib import sha256
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from errors import EmailError, ErrorKind, FetchError, NotFoundError, StorageError
from fetcher import ThreadFetcher
from models import FetchResult, Page, Post, Subscription, Thread
from utils import RetryHelper, format_timestamp

THREAD_URL = "https://advrider.com/f/threads/ride-report.123456/"
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_post(post_id, thread_url: str = THREAD_URL, posted_at: Optional[datetime] = None) -> Post:
    return Post(
        id=str(post_id),
        author=f"rider{post_id}",
        content=f"Post number {post_id}",
        url=f"{thread_url}#post-{post_id}",
        timestamp=format_timestamp(posted_at or NOW - timedelta(minutes=10)),
    )


def make_thread(
    thread_url: str = THREAD_URL,
    last_post_id: str = "",
    last_polled_at: Optional[datetime] = None,
    last_post_time: Optional[datetime] = None,
    title: str = "Ride Report",
) -> Thread:
    thread_id = thread_url.rstrip("/").rsplit(".", 1)[-1]
    return Thread(
        thread_url=thread_url,
        thread_id=thread_id,
        thread_title=title,
        last_post_id=last_post_id,
        last_post_time=last_post_time,
        last_polled_at=last_polled_at,
        created_at=NOW - timedelta(days=1),
    )


def make_subscription(email: str, *threads: Thread) -> Subscription:
    token = sha256(email.encode("utf-8")).hexdigest()
    return Subscription(email=email, token=token, threads={t.thread_id: t for t in threads})


class FakeStore:
    def __init__(self, *subs: Subscription):
        self.subs: Dict[str, Subscription] = {sub.email: sub for sub in subs}
        self.saved: List[dict] = []
        self.deleted: List[str] = []
        self.fail_saves_for: set = set()
        self.list_error: Optional[Exception] = None

    def token_from_email(self, email: str) -> str:
        return "a" * 64

    async def list(self) -> List[Subscription]:
        if self.list_error:
            raise self.list_error
        return list(self.subs.values())

    async def save(self, sub: Subscription) -> None:
        if sub.email in self.fail_saves_for:
            raise StorageError("simulated write failure")
        self.subs[sub.email] = sub
        self.saved.append(deepcopy(sub.to_dict()))

    async def load_by_email(self, email: str) -> Subscription:
        if email not in self.subs:
            raise NotFoundError(email)
        return self.subs[email]

    async def load_by_token(self, token: str) -> Subscription:
        for sub in self.subs.values():
            if sub.token == token:
                return sub
        raise NotFoundError(token)

    async def delete(self, email: str) -> None:
        self.subs.pop(email, None)
        self.deleted.append(email)


class FakeMailer:
    """Records every email. ``fail`` may be True or the exception to raise."""

    def __init__(self, fail=False):
        self.fail = fail
        self.notifications: List[tuple] = []
        self.welcomes: List[tuple] = []

    async def send_notification(self, sub, thread, posts) -> None:
        self.notifications.append((sub.email, thread.thread_id, [post.id for post in posts]))
        self._maybe_fail()

    async def send_welcome(self, sub, thread) -> None:
        self.welcomes.append((sub.email, thread.thread_id))
        self._maybe_fail()

    def _maybe_fail(self) -> None:
        if isinstance(self.fail, BaseException):
            raise self.fail
        if self.fail:
            raise EmailError("simulated provider outage", status=503)


class FakeFetcher:
    """Returns canned smart fetch results and records every call."""

    def __init__(self, results: Optional[Dict[str, FetchResult]] = None, errors: Optional[Dict[str, Exception]] = None):
        self.results = results or {}
        self.errors = errors or {}
        self.calls: List[tuple] = []

    async def smart_fetch(self, thread_url: str, last_seen="") -> FetchResult:
        self.calls.append((thread_url, last_seen))
        if thread_url in self.errors:
            raise self.errors[thread_url]
        return self.results[thread_url]

    async def latest_post(self, thread_url: str):
        result = await self.smart_fetch(thread_url, "")
        return result.posts[-1], result.title


class PagedFetcher(ThreadFetcher):
    """ThreadFetcher whose page primitive serves synthetic pages of a long thread."""

    def __init__(self, total_pages: int, posts_per_page: int = 20, failing_pages=(), last_page_posts: Optional[int] = None):
        super().__init__(retry_helper=RetryHelper(max_attempts=1, base_delay=0, max_jitter=0))
        self.total_pages = total_pages
        self.posts_per_page = posts_per_page
        self.failing_pages = set(failing_pages)
        self.last_page_posts = last_page_posts
        self.requested: List[int] = []

    def posts_on(self, page: int) -> List[Post]:
        first = (page - 1) * self.posts_per_page + 1
        count = self.posts_per_page
        if page == self.total_pages and self.last_page_posts is not None:
            count = self.last_page_posts
        return [make_post(i) for i in range(first, first + count)]

    async def fetch_page(self, url: str, thread_url: Optional[str] = None) -> Page:
        page = 1
        if "/page-" in url:
            page = int(url.rsplit("/page-", 1)[1])
        self.requested.append(page)
        if page in self.failing_pages:
            raise FetchError(ErrorKind.TRANSIENT, url, "simulated timeout")
        return Page(
            posts=self.posts_on(page),
            title="Ride Report",
            current_page=page,
            last_page=self.total_pages if self.total_pages > 1 else 0,
        )
