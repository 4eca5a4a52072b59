from datetime import datetime, timezone

import pytest

from errors import EmailError, ErrorKind, FetchError, NotFoundError, is_retryable
from utils import (
    RetryHelper,
    build_page_url,
    format_duration,
    format_timestamp,
    is_safe_url,
    is_valid_email,
    normalize_thread_url,
    parse_timestamp,
    sanitize_html,
)

BASE = "https://advrider.com/f"


@pytest.mark.parametrize("url", [
    "https://advrider.com/f/threads/ride-report.123456/",
    "https://advrider.com/f/threads/ride-report.123456",
    "https://advrider.com/f/threads/ride-report.123456/page-12",
    "https://www.advrider.com/f/threads/ride-report.123456/#post-42",
    "http://advrider.com/f/threads/ride-report.123456/unread",
])
def test_thread_urls_normalize_to_canonical_form(url):
    canonical, thread_id = normalize_thread_url(url, BASE)

    assert canonical == "https://advrider.com/f/threads/ride-report.123456/"
    assert thread_id == "123456"


@pytest.mark.parametrize("url", [
    "",
    "ftp://advrider.com/f/threads/ride-report.123456/",
    "https://example.com/f/threads/ride-report.123456/",
    "https://advrider.com/f/forums/ride-reports.7/",
])
def test_invalid_thread_urls_are_rejected(url):
    with pytest.raises(ValueError):
        normalize_thread_url(url, BASE)


def test_page_urls():
    thread = "https://advrider.com/f/threads/ride-report.123456/"
    assert build_page_url(thread, 1) == thread
    assert build_page_url(thread, 7) == "https://advrider.com/f/threads/ride-report.123456/page-7"


def test_timestamps():
    moment = datetime(2025, 6, 1, 12, 30, tzinfo=timezone.utc)

    assert format_timestamp(moment) == "2025-06-01T12:30:00Z"
    assert parse_timestamp("2025-06-01T12:30:00Z") == moment
    assert parse_timestamp("2025-06-01T14:30:00+0200") == moment
    assert parse_timestamp("Sun, 01 Jun 2025 12:30:00 +0000") == moment
    assert parse_timestamp("0001-01-01T00:00:00Z") is None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_email_validation():
    assert is_valid_email("rider@example.com")
    assert not is_valid_email("rider@")
    assert not is_valid_email("not an email")
    assert not is_valid_email("a" * 250 + "@example.com")


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(300) == "5m"
    assert format_duration(3725) == "1h 2m 5s"


def test_sanitize_keeps_formatting_and_drops_scripts():
    html = (
        '<div class="bbWrapper" onclick="x()"><b>Bold</b> <span style="color:red">text</span>'
        '<script>alert(1)</script><a href="javascript:alert(1)">bad</a>'
        '<a href="/f/members/rider.1/" class="username">rider</a></div>'
    )

    cleaned = sanitize_html(html, "https://advrider.com/f/threads/ride-report.123456/")

    assert "<b>Bold</b>" in cleaned
    assert "text" in cleaned
    assert "<span" not in cleaned and "<div" not in cleaned
    assert "script" not in cleaned and "alert" not in cleaned
    assert "onclick" not in cleaned and "class=" not in cleaned
    assert '<a href="https://advrider.com/f/members/rider.1/">rider</a>' in cleaned
    assert "<a>bad</a>" in cleaned


def test_sanitize_replaces_embeds():
    html = (
        '<iframe src="https://www.youtube.com/embed/abc"></iframe>'
        '<video src="clip.mp4"></video><img src="data:image/png;base64,AAAA">'
        '<img src="https://example.com/photo.jpg" alt="view" width="800">'
    )

    cleaned = sanitize_html(html)

    assert '[iframe: <a href="https://www.youtube.com/embed/abc">' in cleaned
    assert "[replaced video]" in cleaned
    assert "data:" not in cleaned
    assert '<img src="https://example.com/photo.jpg" alt="view"/>' in cleaned


@pytest.mark.parametrize("value,safe", [
    ("https://example.com", True),
    ("/relative/path", True),
    ("photo.jpg", True),
    ("javascript:alert(1)", False),
    ("DATA:text/html,x", False),
    ("mailto:a@example.com", False),
    ("", False),
])
def test_is_safe_url(value, safe):
    assert is_safe_url(value) is safe


@pytest.mark.asyncio
async def test_retry_helper_retries_until_success():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise FetchError(ErrorKind.TRANSIENT, "https://example.com", "boom")
        return "ok"

    result = await RetryHelper(max_attempts=3, base_delay=0, max_jitter=0).run(flaky)

    assert result == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    FetchError(ErrorKind.FORBIDDEN, "https://example.com"),
    FetchError(ErrorKind.CONTENT, "https://example.com"),
    NotFoundError("gone"),
    EmailError("invalid sender", status=400),
])
async def test_retry_helper_does_not_retry_permanent_errors(error):
    attempts = []

    async def failing():
        attempts.append(1)
        raise error

    with pytest.raises(type(error)):
        await RetryHelper(max_attempts=5, base_delay=0, max_jitter=0).run(failing)

    assert len(attempts) == 1


def test_retry_delay_is_capped():
    helper = RetryHelper(max_attempts=10, base_delay=30, max_delay=60, max_jitter=5)

    assert helper.calculate_delay(1) <= 35
    assert helper.calculate_delay(9) == 60


@pytest.mark.parametrize("error,expected", [
    (EmailError("bad request", status=400), False),
    (EmailError("unauthorized", status=401), False),
    (EmailError("too many requests", status=429), True),
    (EmailError("unavailable", status=503), True),
    (EmailError("timed out"), True),
    (FetchError(ErrorKind.TRANSIENT, "https://example.com", status=404), True),
    (FetchError(ErrorKind.PERMANENT, "https://example.com", status=404), False),
])
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected
