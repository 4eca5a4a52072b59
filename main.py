#!/usr/bin/env python3
"""
Thread Notifier Orchestrator

Command line entry point for the forum thread notifier:

- poll:        run a single poll cycle over every subscription
- scheduled:   run poll cycles every POLL_INTERVAL_SECONDS until stopped
- subscribe:   subscribe an email address to a thread
- unsubscribe: remove one thread (or all threads) from a subscription
- list:        show subscriptions
- status:      show configuration and when each thread is next due
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional
import argparse

from config import config, get_logger
from errors import StorageError, SubscriptionError
from fetcher import ThreadFetcher
from mailer import create_mailer
from scheduler import PollScheduler, describe_schedule
from storage import AzureSubscriptionStore, create_store
from subscriptions import SubscriptionManager
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")


class NotifierOrchestrator:
    """Wires the store, fetcher and mailer together for each CLI mode."""

    def __init__(self) -> None:
        self.store = None
        self.fetcher: Optional[ThreadFetcher] = None
        self.mailer = None

    async def start(self) -> None:
        self.store = create_store()
        if isinstance(self.store, AzureSubscriptionStore):
            await self.store.ensure_container()
        self.fetcher = ThreadFetcher()
        self.mailer = create_mailer()

    async def close(self) -> None:
        for component in (self.fetcher, self.mailer, self.store):
            if component is None:
                continue
            try:
                await component.close()
            except Exception as e:
                logger.warning(f"Error while closing {component.__class__.__name__}: {e}")

    @trace_span("run_poll", tracer_name="orchestrator")
    async def run_poll(self) -> bool:
        """Run one poll cycle."""
        logger.info("📡 Running a single poll cycle")
        scheduler = PollScheduler(self.fetcher, self.store, self.mailer)
        try:
            stats = await scheduler.run_cycle()
        except StorageError as e:
            logger.error(f"❌ Could not list subscriptions: {e}")
            return False
        return stats is not None

    async def run_scheduled(self) -> None:
        """Poll until SIGINT/SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still works
                pass
        scheduler = PollScheduler(self.fetcher, self.store, self.mailer)
        await scheduler.run_forever(stop_event)

    async def subscribe(self, email: str, thread_url: str) -> bool:
        manager = SubscriptionManager(self.store, self.fetcher, self.mailer)
        try:
            result = await manager.subscribe(email, thread_url)
        except SubscriptionError as e:
            print(f"❌ {e}")
            return False
        thread = result.thread
        if result.created:
            print(f"✅ Subscribed {result.subscription.email} to '{thread.thread_title}'")
            print(f"   {thread.thread_url} (first check within {config.POLL_INTERVAL_SECONDS // 60} minutes)")
        else:
            print(f"ℹ️ {result.subscription.email} already follows '{thread.thread_title}'")
        return True

    async def unsubscribe(self, email: Optional[str], thread: Optional[str], token: Optional[str]) -> bool:
        manager = SubscriptionManager(self.store, self.fetcher, self.mailer)
        try:
            if token:
                removed = await manager.unsubscribe_by_token(token, thread)
            else:
                removed = await manager.unsubscribe(email, thread)
        except SubscriptionError as e:
            print(f"❌ {e}")
            return False
        print(f"✅ Removed {removed} thread subscription(s)")
        return removed > 0

    async def list_subscriptions(self, email: Optional[str]) -> None:
        manager = SubscriptionManager(self.store, self.fetcher, self.mailer)
        subs = await manager.list_subscriptions(email)
        if not subs:
            print("No subscriptions found")
            return
        for sub in sorted(subs, key=lambda s: s.email):
            print(f"\n📧 {sub.email} ({len(sub.threads)} thread(s))")
            print(f"   🔑 Manage: {config.BASE_URL}/manage?token={sub.token}")
            for thread in sub.threads.values():
                polled = thread.last_polled_at.isoformat() if thread.last_polled_at else "never"
                print(f"   🧵 {thread.thread_title or config.DEFAULT_THREAD_TITLE} [{thread.thread_id}]")
                print(f"      last post {thread.last_post_id or '-'}, last polled {polled}")

    async def check_status(self) -> dict:
        """Collect configuration and per-thread schedule information."""
        logger.info("📊 Checking system status")
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
        }
        try:
            subs = await self.store.list()
            status['storage'] = {'status': 'ok', 'subscriptions': len(subs)}
            status['threads'] = describe_schedule(subs)
        except StorageError as e:
            status['storage'] = {'status': 'error', 'message': str(e)}
            status['threads'] = []
        status['overall_status'] = 'healthy' if status['storage']['status'] == 'ok' else 'issues_detected'
        return status

    def print_status(self, status: dict):
        """Print formatted status information."""
        print(f"\n📊 Thread Notifier Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        cfg = status['config']
        print(f"\n⚙️ Configuration:")
        print(f"   💾 Storage: {cfg['storage']}")
        print(f"   ✉️ Email: {'mock' if cfg['mock_email'] else 'brevo'}")
        print(f"   🔁 Poll every {cfg['poll_interval_seconds']}s, thread intervals "
              f"{cfg['min_interval_minutes']}-{cfg['max_interval_minutes']} min")

        storage = status['storage']
        if storage['status'] != 'ok':
            print(f"\n💾 Storage: ERROR - {storage.get('message', 'Unknown error')}")
            return
        print(f"\n💾 Subscriptions: {storage['subscriptions']}")
        for row in status['threads']:
            marker = "🔔 due" if row['due'] else f"next {row['next_check']}"
            print(f"   🧵 {row['title']} ({row['subscribers']} subscriber(s))")
            print(f"      every {row['interval_minutes']} min ({row['reason']}), {marker}")


async def run_mode(args) -> int:
    orchestrator = NotifierOrchestrator()
    await orchestrator.start()
    try:
        if args.mode == 'poll':
            return 0 if await orchestrator.run_poll() else 1
        if args.mode == 'scheduled':
            await orchestrator.run_scheduled()
            return 0
        if args.mode == 'subscribe':
            return 0 if await orchestrator.subscribe(args.email, args.thread) else 1
        if args.mode == 'unsubscribe':
            return 0 if await orchestrator.unsubscribe(args.email, args.thread, args.token) else 1
        if args.mode == 'list':
            await orchestrator.list_subscriptions(args.email)
            return 0
        if args.mode == 'status':
            orchestrator.print_status(await orchestrator.check_status())
            return 0
        return 2
    finally:
        await orchestrator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Forum Thread Notifier')
    parser.add_argument('mode', choices=['poll', 'scheduled', 'subscribe', 'unsubscribe', 'list', 'status'],
                       help='Operation mode')
    parser.add_argument('--email', type=str,
                       help='Subscriber email address (subscribe, unsubscribe, list)')
    parser.add_argument('--thread', type=str,
                       help='Thread URL (subscribe) or thread URL/id (unsubscribe; omit to remove all)')
    parser.add_argument('--token', type=str,
                       help='Subscription token from a manage link (unsubscribe without --email)')
    return parser


def main():
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.mode == 'subscribe' and not (args.email and args.thread):
        parser.error("subscribe requires --email and --thread")
    if args.mode == 'unsubscribe' and not (args.email or args.token):
        parser.error("unsubscribe requires --email or --token")

    init_telemetry("thread-notifier")

    try:
        sys.exit(asyncio.run(run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Notifier shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
