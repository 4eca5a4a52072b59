#!/usr/bin/env python3
"""
Per-subscriber reconciliation of fetched posts.

For one (subscription, thread) pair this decides which fetched posts are new to
the subscriber, sends them, and persists the subscriber's progress. State is
saved only after a successful send, so a crash or a failed save can cause a
duplicate notification but never a silently skipped post.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from config import config, get_logger
from errors import ErrorKind, FetchError, StorageError
from models import FetchResult, Post, Subscription, Thread
from telemetry import trace_span
from utils import parse_timestamp

# Module-specific logger
logger = get_logger("reconciler")


class ReconcileOutcome(str, Enum):
    BASELINE = "baseline"                  # first check, marker recorded, nothing sent
    NO_CHANGE = "no_change"                # no new posts
    NOTIFIED = "notified"                  # sent and saved
    NOTIFIED_UNSAVED = "notified_unsaved"  # sent but the new marker could not be saved
    SEND_FAILED = "send_failed"            # marker kept, polling metadata saved when possible
    SAVE_FAILED = "save_failed"            # nothing sent and the save failed


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    new_posts: List[Post] = field(default_factory=list)
    error: Optional[Exception] = None


def find_new_posts(posts: List[Post], last_post_id: str) -> Tuple[List[Post], bool]:
    """Return the posts strictly after ``last_post_id`` and whether the marker was found.

    When the marker is missing every post is returned: over-notifying beats
    losing posts after a long absence or a deleted post.
    """
    for index, post in enumerate(posts):
        if post.id == last_post_id:
            return list(posts[index + 1:]), True
    return list(posts), False


class Reconciler:
    """Turns a shared fetch result into per-subscriber notifications and saved state."""

    def __init__(self, store, mailer, max_posts_per_email: Optional[int] = None):
        self.store = store
        self.mailer = mailer
        self.max_posts_per_email = max_posts_per_email or config.MAX_POSTS_PER_EMAIL

    def _update_polling_metadata(self, thread: Thread, result: FetchResult, now: datetime) -> Post:
        if thread.last_polled_at is None or now > thread.last_polled_at:
            thread.last_polled_at = now
        latest = result.posts[-1]
        posted_at = parse_timestamp(latest.timestamp)
        if posted_at is not None:
            thread.last_post_time = posted_at
        if not thread.thread_title and result.title:
            thread.thread_title = result.title
            logger.info(f"Thread {thread.thread_id} title captured: {result.title}")
        return latest

    async def _save(self, sub: Subscription) -> Optional[StorageError]:
        try:
            await self.store.save(sub)
        except StorageError as e:
            return e
        return None

    @trace_span(
        "reconcile",
        tracer_name="reconciler",
        attr_from_args=lambda self, sub, thread, result, now=None, **_: {
            "thread.id": thread.thread_id,
            "thread.posts_fetched": len(result.posts),
        },
    )
    async def reconcile(
        self,
        sub: Subscription,
        thread: Thread,
        result: FetchResult,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Reconcile one subscriber's thread against the fetched posts.

        ``thread`` must be the subscriber's own entry in ``sub.threads``; it is
        updated in place and the whole subscription is saved.

        Raises:
            FetchError: CONTENT if the fetch result holds no posts (nothing is saved)
        """
        if not result.posts:
            raise FetchError(ErrorKind.CONTENT, thread.thread_url, f"no posts to reconcile for {thread.thread_url}")

        now = now or datetime.now(timezone.utc)
        latest = self._update_polling_metadata(thread, result, now)

        if not thread.last_post_id:
            thread.last_post_id = latest.id
            error = await self._save(sub)
            if error:
                logger.error(f"Failed to save initial marker for {sub.email} / thread {thread.thread_id}: {error}")
                return ReconcileResult(ReconcileOutcome.SAVE_FAILED, error=error)
            logger.info(f"📌 Initial post {latest.id} recorded for {sub.email} / thread {thread.thread_id}")
            return ReconcileResult(ReconcileOutcome.BASELINE)

        new_posts, found = find_new_posts(result.posts, thread.last_post_id)
        if not found:
            logger.warning(
                f"Last seen post {thread.last_post_id} not in fetched posts for {sub.email} / thread "
                f"{thread.thread_id} ({result.posts[0].id}..{latest.id}); treating all {len(new_posts)} as new"
            )

        if not new_posts:
            error = await self._save(sub)
            if error:
                logger.error(f"Failed to save polling state for {sub.email} / thread {thread.thread_id}: {error}")
                return ReconcileResult(ReconcileOutcome.SAVE_FAILED, error=error)
            logger.debug(f"No new posts for {sub.email} / thread {thread.thread_id}")
            return ReconcileResult(ReconcileOutcome.NO_CHANGE)

        if len(new_posts) > self.max_posts_per_email:
            logger.warning(
                f"{len(new_posts)} new posts for {sub.email} / thread {thread.thread_id}, "
                f"sending the most recent {self.max_posts_per_email}"
            )
            new_posts = new_posts[-self.max_posts_per_email:]

        try:
            await self.mailer.send_notification(sub, thread, new_posts)
        except Exception as e:
            # Keep the marker on any send failure, not just EmailError
            logger.error(f"Failed to notify {sub.email} about thread {thread.thread_id}: {e}")
            save_error = await self._save(sub)
            if save_error:
                logger.error(f"Failed to save polling state for {sub.email} / thread {thread.thread_id}: {save_error}")
            return ReconcileResult(ReconcileOutcome.SEND_FAILED, new_posts=new_posts, error=e)

        thread.last_post_id = latest.id
        error = await self._save(sub)
        if error:
            logger.critical(
                f"Notified {sub.email} about thread {thread.thread_id} up to post {latest.id} but could not "
                f"save the marker; the same posts may be sent again: {error}"
            )
            return ReconcileResult(ReconcileOutcome.NOTIFIED_UNSAVED, new_posts=new_posts, error=error)

        logger.info(f"📧 Notified {sub.email} of {len(new_posts)} new post(s) in thread {thread.thread_id}")
        return ReconcileResult(ReconcileOutcome.NOTIFIED, new_posts=new_posts)
