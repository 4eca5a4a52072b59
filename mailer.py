#!/usr/bin/env python3
"""
Notification emails.

Renders notification and welcome emails with Jinja2 and hands them to a
provider: Brevo's transactional email API in production, or a mock provider
that only logs (local development and tests). Forum post HTML is untrusted and
is sanitized before it is placed in a message.
"""

from asyncio import TimeoutError
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout
from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

from config import config, get_logger
from errors import EmailError
from models import Post, Subscription, Thread
from telemetry import trace_span
from utils import RetryHelper, parse_timestamp, sanitize_html

# Module-specific logger
logger = get_logger("mailer")


def format_post_time(value: Optional[str]) -> str:
    """Render a post timestamp as e.g. "Jan 2, 2006 at 3:04 PM UTC" (empty if unparseable)."""
    dt: Optional[datetime] = parse_timestamp(value)
    if dt is None:
        return ""
    hour = dt.hour % 12 or 12
    return f"{dt:%b} {dt.day}, {dt.year} at {hour}:{dt:%M} {dt:%p} UTC"


class EmailProvider:
    """Delivers one rendered HTML message."""

    name = "base"

    async def send(self, to: str, subject: str, html_body: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MockProvider(EmailProvider):
    """Logs messages instead of sending them and keeps them for inspection."""

    name = "mock"

    def __init__(self) -> None:
        self.sent: List[dict] = []

    async def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info(f"MOCK EMAIL to {to}: '{subject}' ({len(html_body)} bytes)")
        self.sent.append({"to": to, "subject": subject, "html": html_body})


class BrevoProvider(EmailProvider):
    """Sends through the Brevo (formerly Sendinblue) transactional email API."""

    name = "brevo"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str = "",
        session: Optional[ClientSession] = None,
        api_url: Optional[str] = None,
        retry_helper: Optional[RetryHelper] = None,
    ) -> None:
        if not api_key:
            raise ValueError("Brevo API key is required")
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.api_url = api_url or config.BREVO_API_URL
        self._session = session
        self._owns_session = session is None
        self.retry_helper = retry_helper or RetryHelper(
            max_attempts=config.EMAIL_MAX_ATTEMPTS,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_MAX_DELAY,
            max_jitter=config.RETRY_MAX_JITTER,
        )

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    def build_payload(self, to: str, subject: str, html_body: str) -> dict:
        sender = {"email": self.from_address}
        if self.from_name:
            sender["name"] = self.from_name
        return {
            "sender": sender,
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html_body,
        }

    async def send(self, to: str, subject: str, html_body: str) -> None:
        payload = self.build_payload(to, subject, html_body)
        headers = {"api-key": self.api_key, "Content-Type": "application/json", "Accept": "application/json"}

        async def attempt() -> None:
            session = self._get_session()
            try:
                async with session.post(self.api_url, json=payload, headers=headers) as response:
                    if response.status < 200 or response.status >= 300:
                        body = await response.text()
                        raise EmailError(f"Brevo API returned HTTP {response.status}: {body[:200]}", status=response.status)
            except TimeoutError as e:
                raise EmailError(f"Brevo API request timed out after {config.HTTP_TIMEOUT}s") from e
            except ClientError as e:
                raise EmailError(f"Brevo API request failed: {e}") from e

        await self.retry_helper.run(attempt, description=f"email to {to}")
        logger.info(f"Email sent to {to}: '{subject}'")

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class Mailer:
    """Renders notification emails and delivers them through a provider."""

    def __init__(self, provider: EmailProvider, base_url: Optional[str] = None, templates_path: Optional[str] = None):
        self.provider = provider
        self.base_url = (base_url or config.BASE_URL).rstrip("/")
        self.env = Environment(
            loader=FileSystemLoader(templates_path or config.TEMPLATES_PATH),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["post_time"] = format_post_time

    def manage_url(self, token: str) -> str:
        return f"{self.base_url}/manage?token={quote(token, safe='')}"

    @staticmethod
    def subject_for(thread: Thread) -> str:
        # Same subject for every mail about a thread so clients group them
        return thread.thread_title or config.DEFAULT_THREAD_TITLE

    def render_notification(self, sub: Subscription, thread: Thread, posts: List[Post]) -> str:
        rendered_posts = []
        for post in posts:
            if post.html_content:
                body = Markup(sanitize_html(post.html_content, base_url=post.url or thread.thread_url))
            else:
                body = post.content
            rendered_posts.append({"post": post, "body": body})
        # Link to the newest post so the reader lands on the right page
        thread_link = posts[-1].url if posts and posts[-1].url else thread.thread_url
        template = self.env.get_template("notification.html")
        return template.render(
            thread=thread,
            title=self.subject_for(thread),
            posts=rendered_posts,
            thread_link=thread_link,
            manage_url=self.manage_url(sub.token),
        )

    def render_welcome(self, sub: Subscription, thread: Thread) -> str:
        template = self.env.get_template("welcome.html")
        return template.render(
            thread=thread,
            title=self.subject_for(thread),
            manage_url=self.manage_url(sub.token),
            thread_count=len(sub.threads),
        )

    @trace_span(
        "send_notification",
        tracer_name="mailer",
        attr_from_args=lambda self, sub, thread, posts, **_: {
            "thread.id": thread.thread_id,
            "notification.posts": len(posts),
        },
    )
    async def send_notification(self, sub: Subscription, thread: Thread, posts: List[Post]) -> None:
        """Email the subscriber about new posts; nothing is sent for an empty list.

        Raises:
            EmailError: If the provider could not deliver the message
        """
        if not posts:
            return
        html_body = self.render_notification(sub, thread, posts)
        await self.provider.send(sub.email, self.subject_for(thread), html_body)

    async def send_welcome(self, sub: Subscription, thread: Thread) -> None:
        """Confirm a new subscription to the subscriber."""
        html_body = self.render_welcome(sub, thread)
        await self.provider.send(sub.email, self.subject_for(thread), html_body)

    async def close(self) -> None:
        await self.provider.close()


def create_mailer(session: Optional[ClientSession] = None) -> Mailer:
    """Build a mailer using the provider selected by configuration."""
    if config.MOCK_EMAIL:
        logger.info("Email delivery disabled: using mock provider")
        provider: EmailProvider = MockProvider()
    else:
        provider = BrevoProvider(
            config.BREVO_API_KEY,
            config.EMAIL_FROM_ADDRESS,
            config.EMAIL_FROM_NAME,
            session=session,
        )
    return Mailer(provider)
