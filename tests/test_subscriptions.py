from dataclasses import replace

import pytest

from errors import ErrorKind, FetchError, SubscriptionError
from models import FetchResult
from scheduler import check_due
from subscriptions import SubscriptionManager
from fakes import NOW, THREAD_URL, FakeFetcher, FakeMailer, FakeStore, make_post, make_subscription, make_thread


def manager(store=None, fetcher=None, mailer=None, **kwargs):
    fetcher = fetcher or FakeFetcher({THREAD_URL: FetchResult([make_post(1), make_post(2)], "Ride Report")})
    return SubscriptionManager(store or FakeStore(), fetcher, mailer or FakeMailer(), **kwargs)


@pytest.mark.asyncio
async def test_subscribe_records_latest_post_and_welcomes():
    store, mailer = FakeStore(), FakeMailer()
    subs = manager(store, mailer=mailer)

    result = await subs.subscribe(" Rider@Example.com ", THREAD_URL + "page-3#post-1", now=NOW)

    assert result.created
    assert result.subscription.email == "rider@example.com"
    thread = result.thread
    assert thread.thread_url == THREAD_URL
    assert thread.thread_id == "123456"
    assert thread.last_post_id == "2"
    assert thread.thread_title == "Ride Report"
    assert thread.last_polled_at is None
    assert thread.created_at == NOW
    assert store.saved[-1]["threads"]["123456"]["last_post_id"] == "2"
    assert mailer.welcomes == [("rider@example.com", "123456")]
    # Picked up on the very next cycle
    assert check_due(thread, NOW)[0]


@pytest.mark.asyncio
async def test_subscribing_twice_is_not_an_error():
    existing = make_thread(last_post_id="1", last_polled_at=NOW)
    store = FakeStore(make_subscription("rider@example.com", existing))
    fetcher = FakeFetcher()

    result = await manager(store, fetcher).subscribe("rider@example.com", THREAD_URL)

    assert not result.created
    assert result.thread is existing
    assert fetcher.calls == []
    assert store.saved == []


@pytest.mark.asyncio
async def test_thread_limit_is_enforced():
    threads = [make_thread(f"https://advrider.com/f/threads/t.{i}/") for i in range(2)]
    store = FakeStore(make_subscription("rider@example.com", *threads))

    with pytest.raises(SubscriptionError, match="limit"):
        await manager(store, max_threads_per_user=2).subscribe("rider@example.com", THREAD_URL)


@pytest.mark.asyncio
@pytest.mark.parametrize("email,url", [
    ("not-an-email", THREAD_URL),
    ("rider@example.com", "https://example.com/threads/ride-report.123456/"),
    ("rider@example.com", "https://advrider.com/f/forums/ride-reports.7/"),
])
async def test_invalid_input_is_rejected(email, url):
    store = FakeStore()

    with pytest.raises(SubscriptionError):
        await manager(store).subscribe(email, url)

    assert store.saved == []


@pytest.mark.asyncio
async def test_login_walled_thread_is_rejected():
    fetcher = FakeFetcher(errors={THREAD_URL: FetchError(ErrorKind.FORBIDDEN, THREAD_URL, "HTTP 403", status=403)})

    with pytest.raises(SubscriptionError, match="login"):
        await manager(fetcher=fetcher).subscribe("rider@example.com", THREAD_URL)


@pytest.mark.asyncio
async def test_latest_post_without_timestamp_is_rejected():
    undated = replace(make_post(3), timestamp=None)
    fetcher = FakeFetcher({THREAD_URL: FetchResult([undated], "Ride Report")})

    with pytest.raises(SubscriptionError):
        await manager(fetcher=fetcher).subscribe("rider@example.com", THREAD_URL)


@pytest.mark.asyncio
async def test_welcome_failure_keeps_subscription():
    store = FakeStore()

    result = await manager(store, mailer=FakeMailer(fail=True)).subscribe("rider@example.com", THREAD_URL)

    assert result.created
    assert len(store.saved) == 1


@pytest.mark.asyncio
async def test_unsubscribe_one_thread_keeps_the_rest():
    other = make_thread("https://advrider.com/f/threads/another-trip.654321/")
    store = FakeStore(make_subscription("rider@example.com", make_thread(), other))

    removed = await manager(store).unsubscribe("rider@example.com", THREAD_URL)

    assert removed == 1
    assert list(store.saved[-1]["threads"]) == ["654321"]
    assert store.deleted == []


@pytest.mark.asyncio
async def test_removing_last_thread_deletes_document():
    store = FakeStore(make_subscription("rider@example.com", make_thread()))

    removed = await manager(store).unsubscribe("rider@example.com", "123456")

    assert removed == 1
    assert store.deleted == ["rider@example.com"]


@pytest.mark.asyncio
async def test_unsubscribe_by_token_removes_everything():
    sub = make_subscription("rider@example.com", make_thread(), make_thread("https://advrider.com/f/threads/x.9/"))
    store = FakeStore(sub)

    removed = await manager(store).unsubscribe_by_token(sub.token)

    assert removed == 2
    assert store.deleted == ["rider@example.com"]


@pytest.mark.asyncio
async def test_unsubscribe_unknown_is_a_no_op():
    store = FakeStore()

    assert await manager(store).unsubscribe("nobody@example.com") == 0
    assert await manager(store).unsubscribe_by_token("f" * 64) == 0
    assert store.deleted == []


@pytest.mark.asyncio
async def test_list_subscriptions():
    store = FakeStore(make_subscription("a@example.com", make_thread()), make_subscription("b@example.com", make_thread()))
    subs = manager(store)

    assert len(await subs.list_subscriptions()) == 2
    assert [s.email for s in await subs.list_subscriptions("A@example.com")] == ["a@example.com"]
    assert await subs.list_subscriptions("c@example.com") == []
