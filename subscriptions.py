#!/usr/bin/env python3
"""
Subscription management: subscribe, unsubscribe and list.

Subscribing verifies the thread by fetching its newest post, which becomes the
subscriber's starting marker; the thread is left unpolled so the next poll
cycle checks it straight away.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from config import config, get_logger
from errors import ErrorKind, FetchError, EmailError, NotFoundError, SubscriptionError
from models import Subscription, Thread
from utils import is_valid_email, normalize_email, normalize_thread_url, parse_timestamp

# Module-specific logger
logger = get_logger("subscriptions")


@dataclass
class SubscribeResult:
    subscription: Subscription
    thread: Thread
    created: bool          # False when the address already followed the thread


class SubscriptionManager:
    """Subscribe/unsubscribe operations on top of the store, fetcher and mailer."""

    def __init__(self, store, fetcher, mailer=None, max_threads_per_user: Optional[int] = None):
        self.store = store
        self.fetcher = fetcher
        self.mailer = mailer
        self.max_threads_per_user = max_threads_per_user or config.MAX_THREADS_PER_USER

    async def _load_or_new(self, email: str) -> Subscription:
        try:
            return await self.store.load_by_email(email)
        except NotFoundError:
            return Subscription(email=email, token=self.store.token_from_email(email))

    async def subscribe(self, email: str, thread_url: str, now: Optional[datetime] = None) -> SubscribeResult:
        """Subscribe ``email`` to a thread.

        Raises:
            SubscriptionError: For invalid input, unreachable or login-walled
                threads, and when the per-user thread limit is reached
            StorageError: If the subscription cannot be loaded or saved
        """
        email = normalize_email(email)
        if not is_valid_email(email):
            raise SubscriptionError(f"Invalid email address: {email or '(empty)'}")
        try:
            canonical_url, thread_id = normalize_thread_url(thread_url)
        except ValueError as e:
            raise SubscriptionError(
                f"Invalid thread URL, expected something like {config.FORUM_BASE_URL}/threads/example.123456/ ({e})"
            ) from e

        sub = await self._load_or_new(email)
        if thread_id in sub.threads:
            logger.info(f"{email} is already subscribed to thread {thread_id}")
            return SubscribeResult(sub, sub.threads[thread_id], created=False)

        if len(sub.threads) >= self.max_threads_per_user:
            logger.warning(f"Thread limit reached for {email} ({len(sub.threads)} threads)")
            raise SubscriptionError(f"Maximum thread limit reached ({self.max_threads_per_user} threads per user)")

        try:
            post, title = await self.fetcher.latest_post(canonical_url)
        except FetchError as e:
            logger.warning(f"Failed to verify thread {canonical_url}: {e}")
            if e.kind is ErrorKind.FORBIDDEN:
                raise SubscriptionError(
                    "This thread is in a login-required forum and cannot be monitored"
                ) from e
            raise SubscriptionError(f"Could not verify thread URL {canonical_url}: {e}") from e

        last_post_time = parse_timestamp(post.timestamp)
        if last_post_time is None:
            logger.error(f"Latest post {post.id} in {canonical_url} has no usable timestamp ({post.timestamp!r})")
            raise SubscriptionError("Could not determine the latest post time; the page structure may have changed")

        now = now or datetime.now(timezone.utc)
        # No last_polled_at: the poller treats the thread as new and checks it on the next cycle
        thread = Thread(
            thread_url=canonical_url,
            thread_id=thread_id,
            thread_title=title,
            last_post_id=post.id,
            last_post_time=last_post_time,
            last_polled_at=None,
            created_at=now,
        )
        sub.threads[thread_id] = thread
        await self.store.save(sub)
        logger.info(f"➕ {email} subscribed to '{title}' ({canonical_url}) starting after post {post.id}")

        if self.mailer is not None:
            try:
                await self.mailer.send_welcome(sub, thread)
            except EmailError as e:
                # The subscription stands without the welcome mail
                logger.warning(f"Failed to send welcome email to {email}: {e}")

        return SubscribeResult(sub, thread, created=True)

    async def unsubscribe(self, email: str, thread: Optional[str] = None) -> int:
        """Remove one thread (by URL or id) or, with no thread, every thread.

        The subscriber's document is deleted once no threads remain.

        Returns:
            Number of threads removed
        """
        email = normalize_email(email)
        try:
            sub = await self.store.load_by_email(email)
        except NotFoundError:
            logger.info(f"No subscription found for {email}")
            return 0
        return await self._remove_threads(sub, thread)

    async def unsubscribe_by_token(self, token: str, thread: Optional[str] = None) -> int:
        """Same as ``unsubscribe`` but authenticated by the token from a manage link."""
        try:
            sub = await self.store.load_by_token(token)
        except NotFoundError:
            logger.info("No subscription found for the given token")
            return 0
        return await self._remove_threads(sub, thread)

    async def _remove_threads(self, sub: Subscription, thread: Optional[str]) -> int:
        if thread is None:
            removed = len(sub.threads)
            sub.threads.clear()
        else:
            thread_id = self._resolve_thread_id(thread)
            removed = 1 if sub.threads.pop(thread_id, None) is not None else 0
            if not removed:
                logger.info(f"{sub.email} is not subscribed to thread {thread_id}")
                return 0

        if sub.threads:
            await self.store.save(sub)
        else:
            await self.store.delete(sub.email)
        logger.info(f"➖ Removed {removed} thread(s) for {sub.email}, {len(sub.threads)} remaining")
        return removed

    @staticmethod
    def _resolve_thread_id(thread: str) -> str:
        thread = thread.strip()
        if thread.isdigit():
            return thread
        try:
            _, thread_id = normalize_thread_url(thread)
        except ValueError as e:
            raise SubscriptionError(f"Not a thread id or thread URL: {thread}") from e
        return thread_id

    async def list_subscriptions(self, email: Optional[str] = None) -> List[Subscription]:
        """All subscriptions, or just one subscriber's (empty list if unknown)."""
        if email:
            try:
                return [await self.store.load_by_email(normalize_email(email))]
            except NotFoundError:
                return []
        return await self.store.list()
