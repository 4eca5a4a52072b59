import json
import os
import stat

import pytest

from errors import NotFoundError, StorageError
from models import Subscription
from storage import AzureSubscriptionStore, LocalSubscriptionStore, subscription_key
from utils import RetryHelper
from fakes import NOW, make_thread

SALT = "test-salt"


def new_subscription(store, email="rider@example.com", *threads):
    return Subscription(
        email=email,
        token=store.token_from_email(email),
        threads={t.thread_id: t for t in threads or (make_thread(last_post_id="42", last_polled_at=NOW),)},
    )


def test_token_is_stable_hex_and_case_insensitive(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)

    token = store.token_from_email("Rider@Example.com ")

    assert token == store.token_from_email("rider@example.com")
    assert subscription_key(token) == f"sub-{token}.json"
    assert len(token) == 64


def test_token_depends_on_salt(tmp_path):
    a = LocalSubscriptionStore(str(tmp_path), "one")
    b = LocalSubscriptionStore(str(tmp_path), "two")

    assert a.token_from_email("rider@example.com") != b.token_from_email("rider@example.com")


@pytest.mark.parametrize("token", ["", "abc", "../../etc/passwd", "A" * 64, "g" * 64])
def test_malformed_tokens_have_no_key(token):
    assert subscription_key(token) == ""


@pytest.mark.asyncio
async def test_save_load_round_trip_preserves_thread_state(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    sub = new_subscription(store)

    await store.save(sub)
    loaded = await store.load_by_email("rider@example.com")

    thread = next(iter(loaded.threads.values()))
    assert loaded.token == sub.token
    assert thread.last_post_id == "42"
    assert thread.last_polled_at == NOW
    assert thread.last_post_time is None
    assert (await store.load_by_token(sub.token)).email == "rider@example.com"


@pytest.mark.asyncio
async def test_documents_are_private_and_leave_no_temp_files(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    sub = new_subscription(store)

    await store.save(sub)
    await store.save(sub)

    assert os.listdir(tmp_path) == [subscription_key(sub.token)]
    mode = os.stat(tmp_path / subscription_key(sub.token)).st_mode
    assert stat.S_IMODE(mode) == 0o600


@pytest.mark.asyncio
async def test_document_is_indented_json(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    sub = new_subscription(store)

    await store.save(sub)

    text = (tmp_path / subscription_key(sub.token)).read_text()
    assert text.startswith("{\n  ")
    assert json.loads(text)["email"] == "rider@example.com"


@pytest.mark.asyncio
async def test_missing_and_invalid_lookups_are_not_found(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)

    with pytest.raises(NotFoundError):
        await store.load_by_email("nobody@example.com")
    with pytest.raises(NotFoundError):
        await store.load_by_token("../secret")


@pytest.mark.asyncio
async def test_save_rejects_malformed_token(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)

    with pytest.raises(StorageError):
        await store.save(Subscription(email="rider@example.com", token="not-a-token"))


@pytest.mark.asyncio
async def test_list_skips_corrupt_documents_and_foreign_files(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    await store.save(new_subscription(store, "a@example.com"))
    await store.save(new_subscription(store, "b@example.com"))
    (tmp_path / f"sub-{'0' * 64}.json").write_text("{not json")
    (tmp_path / "notes.txt").write_text("ignore me")

    subs = await store.list()

    assert sorted(sub.email for sub in subs) == ["a@example.com", "b@example.com"]


@pytest.mark.asyncio
async def test_delete_is_idempotent(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    await store.save(new_subscription(store))

    await store.delete("rider@example.com")
    await store.delete("rider@example.com")

    assert await store.list() == []


@pytest.mark.asyncio
async def test_zero_time_in_stored_document_reads_as_missing(tmp_path):
    store = LocalSubscriptionStore(str(tmp_path), SALT)
    token = store.token_from_email("old@example.com")
    document = {
        "email": "old@example.com",
        "token": token,
        "threads": {
            "123456": {
                "thread_url": "https://advrider.com/f/threads/ride-report.123456/",
                "thread_id": "123456",
                "last_post_id": "9",
                "last_post_time": "0001-01-01T00:00:00Z",
                "last_polled_at": "2025-06-01T11:00:00Z",
            }
        },
    }
    (tmp_path / subscription_key(token)).write_text(json.dumps(document))

    thread = (await store.load_by_token(token)).threads["123456"]

    assert thread.last_post_time is None
    assert thread.last_polled_at is not None


class FakeBlobResponse:
    def __init__(self, status, body=""):
        self.status = status
        self.body = body

    async def text(self, encoding="utf-8"):
        return self.body


class FakeBlobClient:
    """Serves blobs from a dict, failing the first ``flaky`` operations with HTTP 503."""

    def __init__(self, flaky=0):
        self.blobs = {}
        self.flaky = flaky
        self.calls = 0
        self.closed = False

    def _unavailable(self):
        self.calls += 1
        if self.flaky:
            self.flaky -= 1
            return True
        return False

    async def create_container(self, container):
        return FakeBlobResponse(409)

    async def get_blob(self, container, name):
        if self._unavailable():
            return FakeBlobResponse(503)
        if name not in self.blobs:
            return FakeBlobResponse(404)
        return FakeBlobResponse(200, self.blobs[name])

    async def put_blob(self, container, name, payload, mimetype=None):
        if self._unavailable():
            return FakeBlobResponse(503)
        self.blobs[name] = payload.decode("utf-8")
        return FakeBlobResponse(201)

    async def delete_blob(self, container, name):
        if name not in self.blobs:
            return FakeBlobResponse(404)
        del self.blobs[name]
        return FakeBlobResponse(202)

    async def list_blobs(self, container, prefix=None):
        for name in sorted(self.blobs):
            if not prefix or name.startswith(prefix):
                yield {"name": name}

    async def close(self):
        self.closed = True


def azure_store(client, attempts=3):
    return AzureSubscriptionStore(client, "subscriptions", SALT, retry=RetryHelper(max_attempts=attempts, base_delay=0, max_jitter=0))


@pytest.mark.asyncio
async def test_azure_store_retries_transient_failures():
    client = FakeBlobClient(flaky=2)
    store = azure_store(client)
    sub = new_subscription(store)

    await store.ensure_container()
    await store.save(sub)
    loaded = await store.load_by_token(sub.token)

    assert loaded.email == sub.email
    assert client.calls == 4


@pytest.mark.asyncio
async def test_azure_store_does_not_retry_missing_blobs():
    client = FakeBlobClient()
    store = azure_store(client)

    with pytest.raises(NotFoundError):
        await store.load_by_email("nobody@example.com")
    assert client.calls == 1


@pytest.mark.asyncio
async def test_azure_store_gives_up_after_attempts():
    client = FakeBlobClient(flaky=5)
    store = azure_store(client, attempts=2)

    with pytest.raises(StorageError):
        await store.save(new_subscription(store))
    assert client.calls == 2


@pytest.mark.asyncio
async def test_azure_store_lists_and_deletes():
    client = FakeBlobClient()
    store = azure_store(client)
    await store.save(new_subscription(store, "a@example.com"))
    await store.save(new_subscription(store, "b@example.com"))
    client.blobs["other.json"] = "{}"

    assert len(await store.list()) == 2

    await store.delete("a@example.com")
    await store.delete("a@example.com")
    await store.close()

    assert [sub.email for sub in await store.list()] == ["b@example.com"]
    assert client.closed
