#!/usr/bin/env python3
"""
Data models for the thread notifier.

Subscriptions are stored as one JSON document per subscriber; threads are
embedded in their owning subscription. Posts and pages only live for the
duration of a poll cycle and are never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from json import dumps, loads
from typing import Any, Dict, List, Optional

from utils import format_timestamp, parse_timestamp


@dataclass(frozen=True)
class Post:
    """A single post as fetched from a thread page."""
    id: str
    author: str
    content: str                        # plain text, used when no HTML is available
    url: str                            # permalink (<thread url>#post-<id>)
    html_content: str = ""
    timestamp: Optional[str] = None     # as published by the forum (ISO 8601)

    @property
    def published_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)


@dataclass
class Page:
    """One parsed thread page."""
    posts: List[Post]
    title: str
    current_page: int = 1
    last_page: int = 0                  # 0 when the thread has no pagination


@dataclass
class FetchResult:
    """Posts needed to detect new content in a thread, oldest first."""
    posts: List[Post]
    title: str
    pages_fetched: int = 0

    @property
    def latest(self) -> Optional[Post]:
        return self.posts[-1] if self.posts else None


@dataclass
class Thread:
    """A monitored thread and one subscriber's progress through it."""
    thread_url: str
    thread_id: str
    thread_title: str = ""
    last_post_id: str = ""
    last_post_time: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_new(self) -> bool:
        """A thread that has never been polled (fresh subscription)."""
        return self.last_polled_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_url": self.thread_url,
            "thread_id": self.thread_id,
            "thread_title": self.thread_title,
            "last_post_id": self.last_post_id,
            "last_post_time": format_timestamp(self.last_post_time),
            "last_polled_at": format_timestamp(self.last_polled_at),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thread":
        return cls(
            thread_url=data.get("thread_url") or "",
            thread_id=str(data.get("thread_id") or ""),
            thread_title=data.get("thread_title") or "",
            last_post_id=str(data.get("last_post_id") or ""),
            last_post_time=parse_timestamp(data.get("last_post_time")),
            last_polled_at=parse_timestamp(data.get("last_polled_at")),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class Subscription:
    """All threads one email address is subscribed to."""
    email: str
    token: str
    threads: Dict[str, Thread] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "token": self.token,
            "threads": {thread_id: thread.to_dict() for thread_id, thread in self.threads.items()},
        }

    def to_json(self) -> str:
        return dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        threads = {}
        for thread_id, raw in (data.get("threads") or {}).items():
            if isinstance(raw, dict):
                threads[str(thread_id)] = Thread.from_dict(raw)
        return cls(email=data.get("email") or "", token=data.get("token") or "", threads=threads)

    @classmethod
    def from_json(cls, text: str) -> "Subscription":
        data = loads(text)
        if not isinstance(data, dict):
            raise ValueError("subscription document must be a JSON object")
        return cls.from_dict(data)
