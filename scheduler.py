#!/usr/bin/env python3
"""
Adaptive Thread Poll Scheduler

This module implements the poll cycle that keeps subscribers up to date:

- Recheck intervals back off exponentially with thread inactivity (5 min to 4 h)
- Thread entries from all subscriptions are grouped by canonical URL so each
  thread is fetched at most once per cycle, however many people follow it
- New subscriptions are always checked on the next cycle
- One cycle at a time: overlapping invocations are skipped, not queued
- Failures are contained to one thread group or one subscriber
- Cooperative cancellation between thread groups
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import CycleCancelledError, ErrorKind, FetchError
from models import FetchResult, Subscription, Thread
from reconciler import ReconcileOutcome, Reconciler
from telemetry import trace_span
from utils import format_duration, normalize_thread_url

# Module-specific logger
logger = get_logger("scheduler")

# Interval doubles every this many hours without a new post
BACKOFF_DOUBLING_HOURS = 3.0


def calculate_interval(
    last_post_time: Optional[datetime],
    last_polled_at: Optional[datetime],
    now: Optional[datetime] = None,
    min_interval: Optional[timedelta] = None,
    max_interval: Optional[timedelta] = None,
) -> Tuple[timedelta, str]:
    """Work out how long to wait between checks of a thread.

    The interval is ``min × 2^(hours since last post / 3)`` clamped to
    [min, max], so busy threads are checked every few minutes and threads that
    have been quiet for about a day every few hours.

    Args:
        last_post_time: Time of the newest known post (None if unknown)
        last_polled_at: Time of the last check (None if never checked)
        now: Reference time (default: now, UTC)
        min_interval: Lower bound (default: MIN_INTERVAL_MINUTES)
        max_interval: Upper bound (default: MAX_INTERVAL_MINUTES)

    Returns:
        Tuple of (interval, human-readable reason)
    """
    minimum = min_interval or timedelta(minutes=config.MIN_INTERVAL_MINUTES)
    maximum = max_interval or timedelta(minutes=config.MAX_INTERVAL_MINUTES)
    if maximum < minimum:
        maximum = minimum

    if last_polled_at is None:
        return minimum, "never polled"

    if last_post_time is None:
        logger.warning("Thread has been polled but has no last post time; backing off to the maximum interval")
        return maximum, "no last post time recorded after polling"

    now = now or datetime.now(timezone.utc)
    hours_since_post = (now - last_post_time).total_seconds() / 3600
    if not math.isfinite(hours_since_post) or hours_since_post < 0:
        # Clock skew: a post "in the future" counts as brand new
        hours_since_post = 0.0

    try:
        seconds = minimum.total_seconds() * 2 ** (hours_since_post / BACKOFF_DOUBLING_HOURS)
    except OverflowError:
        seconds = math.inf

    if not math.isfinite(seconds) or seconds >= maximum.total_seconds():
        interval = maximum
    elif seconds <= minimum.total_seconds():
        interval = minimum
    else:
        interval = timedelta(seconds=seconds)
    return interval, f"last post {hours_since_post:.1f}h ago"


@dataclass
class ThreadCheckGroup:
    """All subscribers of one canonical thread URL within a cycle."""
    thread_url: str
    representative: Thread
    subscribers: Dict[str, Tuple[Subscription, Thread]] = field(default_factory=dict)

    def add(self, sub: Subscription, thread: Thread) -> None:
        self.subscribers[sub.email] = (sub, thread)
        # A brand-new subscription forces a check for the whole group
        if thread.last_polled_at is None and self.representative.last_polled_at is not None:
            self.representative = thread


def canonical_key(thread: Thread) -> str:
    try:
        canonical, _ = normalize_thread_url(thread.thread_url)
        return canonical
    except ValueError:
        return thread.thread_url


def group_threads(subs: List[Subscription]) -> Dict[str, ThreadCheckGroup]:
    """Group every subscriber's thread entries by canonical URL.

    Processing order of the returned groups carries no meaning.
    """
    groups: Dict[str, ThreadCheckGroup] = {}
    for sub in subs:
        for thread in sub.threads.values():
            key = canonical_key(thread)
            group = groups.get(key)
            if group is None:
                group = groups[key] = ThreadCheckGroup(thread_url=key, representative=thread)
            group.add(sub, thread)
    return groups


def check_due(thread: Thread, now: datetime) -> Tuple[bool, timedelta, str]:
    """Decide whether a thread should be checked now; new subscriptions always are."""
    interval, reason = calculate_interval(thread.last_post_time, thread.last_polled_at, now)
    if thread.last_polled_at is None:
        return True, interval, reason
    return now - thread.last_polled_at >= interval, interval, reason


@dataclass
class CycleStats:
    """Summary of one poll cycle."""
    cycle: int
    started_at: datetime
    subscriptions: int = 0
    groups: int = 0
    due: int = 0
    skipped: int = 0
    fetched: int = 0
    fetch_failures: int = 0
    baselines: int = 0
    notified: int = 0
    unchanged: int = 0
    send_failures: int = 0
    save_failures: int = 0
    errors: int = 0
    duration: float = 0.0

    def record(self, outcome: ReconcileOutcome) -> None:
        if outcome is ReconcileOutcome.BASELINE:
            self.baselines += 1
        elif outcome in (ReconcileOutcome.NOTIFIED, ReconcileOutcome.NOTIFIED_UNSAVED):
            self.notified += 1
            if outcome is ReconcileOutcome.NOTIFIED_UNSAVED:
                self.save_failures += 1
        elif outcome is ReconcileOutcome.NO_CHANGE:
            self.unchanged += 1
        elif outcome is ReconcileOutcome.SEND_FAILED:
            self.send_failures += 1
        elif outcome is ReconcileOutcome.SAVE_FAILED:
            self.save_failures += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "started_at": self.started_at.isoformat(),
            "subscriptions": self.subscriptions,
            "groups": self.groups,
            "due": self.due,
            "skipped": self.skipped,
            "fetched": self.fetched,
            "fetch_failures": self.fetch_failures,
            "baselines": self.baselines,
            "notified": self.notified,
            "unchanged": self.unchanged,
            "send_failures": self.send_failures,
            "save_failures": self.save_failures,
            "errors": self.errors,
            "duration": round(self.duration, 3),
        }


class PollScheduler:
    """Runs poll cycles over all subscriptions, one at a time."""

    def __init__(self, fetcher, store, mailer, reconciler: Optional[Reconciler] = None):
        self.fetcher = fetcher
        self.store = store
        self.mailer = mailer
        self.reconciler = reconciler or Reconciler(store, mailer)
        self.cycle_count = 0
        self.last_stats: Optional[CycleStats] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None, now: Optional[datetime] = None) -> Optional[CycleStats]:
        """Run one poll cycle.

        Returns:
            CycleStats, or None if another cycle was already running

        Raises:
            StorageError: If subscriptions cannot be listed
            CycleCancelledError: If ``stop_event`` was set between thread groups
        """
        if self._lock.locked():
            logger.warning("⏭️ Poll cycle already in progress, skipping this invocation")
            return None
        async with self._lock:
            self.cycle_count += 1
            stats = await self._run_cycle(self.cycle_count, stop_event, now or datetime.now(timezone.utc))
            self.last_stats = stats
            return stats

    @trace_span(
        "scheduler.poll_cycle",
        tracer_name="scheduler",
        attr_from_args=lambda self, cycle, stop_event, now: {"cycle.number": cycle},
    )
    async def _run_cycle(self, cycle: int, stop_event: Optional[asyncio.Event], now: datetime) -> CycleStats:
        stats = CycleStats(cycle=cycle, started_at=now)
        loop = asyncio.get_running_loop()
        started = loop.time()

        subs = await self.store.list()
        groups = group_threads(subs)
        stats.subscriptions = len(subs)
        stats.groups = len(groups)
        logger.info(f"🔄 Poll cycle #{cycle}: {len(subs)} subscription(s), {len(groups)} unique thread(s)")

        # One fetch per canonical URL for the whole cycle
        cache: Dict[str, FetchResult] = {}
        for url, group in groups.items():
            if stop_event is not None and stop_event.is_set():
                logger.info(f"🛑 Poll cycle #{cycle} cancelled, {stats.due} thread(s) processed so far")
                raise CycleCancelledError(f"poll cycle #{cycle} cancelled")
            await self._process_group(group, cache, now, stats)

        stats.duration = loop.time() - started
        logger.info(
            f"✅ Poll cycle #{cycle} completed in {format_duration(stats.duration)}: "
            f"{stats.due} due, {stats.skipped} skipped, {stats.fetched} fetched, "
            f"{stats.fetch_failures} fetch failure(s), {stats.notified} notified, {stats.errors} error(s)"
        )
        return stats

    async def _process_group(self, group: ThreadCheckGroup, cache: Dict[str, FetchResult], now: datetime, stats: CycleStats) -> None:
        representative = group.representative
        due, interval, reason = check_due(representative, now)
        if not due:
            stats.skipped += 1
            next_check = representative.last_polled_at + interval
            logger.debug(
                f"Skipping {group.thread_url}: next check {next_check.isoformat()} "
                f"(interval {format_duration(interval.total_seconds())}, {reason})"
            )
            return

        stats.due += 1
        result = cache.get(group.thread_url)
        if result is None:
            # Plan from every subscriber's marker, not just the representative's
            markers = sorted({thread.last_post_id for _, thread in group.subscribers.values()})
            try:
                result = await self.fetcher.smart_fetch(group.thread_url, markers)
            except FetchError as e:
                stats.fetch_failures += 1
                self._log_fetch_failure(group, e)
                return
            except Exception as e:
                stats.fetch_failures += 1
                logger.error(f"💥 Unexpected error fetching {group.thread_url}: {e}")
                return
            cache[group.thread_url] = result
            stats.fetched += 1

        for email, (sub, thread) in group.subscribers.items():
            try:
                outcome = await self.reconciler.reconcile(sub, thread, result, now)
            except FetchError as e:
                stats.errors += 1
                logger.warning(f"Thread check failed for {email} / {group.thread_url}: {e}")
                continue
            except Exception as e:
                stats.errors += 1
                logger.error(f"Unexpected error reconciling {group.thread_url} for {email}: {e}")
                continue
            stats.record(outcome.outcome)

    def _log_fetch_failure(self, group: ThreadCheckGroup, error: FetchError) -> None:
        subscribers = len(group.subscribers)
        if error.kind is ErrorKind.FORBIDDEN:
            logger.warning(f"🔒 {group.thread_url} requires login; skipping {subscribers} subscriber(s) this cycle")
        elif error.kind is ErrorKind.CONTENT:
            logger.warning(f"📭 No posts parsed from {group.thread_url}; will retry at the next check")
        elif error.kind is ErrorKind.PERMANENT:
            logger.error(f"❌ {group.thread_url} is gone ({error}); {subscribers} subscriber(s) affected")
        else:
            logger.error(f"⚠️ Failed to fetch {group.thread_url} after retries: {error}")

    async def run_forever(self, stop_event: asyncio.Event, interval_seconds: Optional[int] = None) -> None:
        """Run poll cycles until ``stop_event`` is set, sleeping between cycles."""
        interval = interval_seconds or config.POLL_INTERVAL_SECONDS
        logger.info(f"🚀 Starting poller: checking subscriptions every {format_duration(interval)}")
        while not stop_event.is_set():
            try:
                await self.run_cycle(stop_event)
            except CycleCancelledError:
                break
            except Exception as e:
                # Continue running despite errors
                logger.error(f"💥 Error in poll cycle: {e}")

            if stop_event.is_set():
                break
            logger.info(f"😴 Sleeping {format_duration(interval)} until the next poll cycle")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("📶 Poller stopped")


def describe_schedule(subs: List[Subscription], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Report when each unique thread is next due, for the status command."""
    now = now or datetime.now(timezone.utc)
    rows = []
    for url, group in group_threads(subs).items():
        thread = group.representative
        due, interval, reason = check_due(thread, now)
        next_check = now if thread.last_polled_at is None else thread.last_polled_at + interval
        rows.append({
            "thread_url": url,
            "title": thread.thread_title or config.DEFAULT_THREAD_TITLE,
            "subscribers": len(group.subscribers),
            "interval_minutes": round(interval.total_seconds() / 60, 1),
            "reason": reason,
            "due": due,
            "next_check": next_check.isoformat(),
        })
    rows.sort(key=lambda row: row["next_check"])
    return rows
