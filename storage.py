#!/usr/bin/env python3
"""
Subscription persistence.

Each subscriber is one JSON document named ``sub-<token>.json`` where the token
is an HMAC-SHA256 of the lowercased email address. Documents live either in a
local directory or in an Azure Blob Storage container; saving one subscriber
never touches another subscriber's document.
"""

import os
import re
from hashlib import sha256
from hmac import HMAC
from json import JSONDecodeError
from tempfile import NamedTemporaryFile
from typing import List, Optional

from aiohttp import ClientError, ClientSession

from azure_storage import BlobClient
from config import config, get_logger
from errors import NotFoundError, StorageError, is_retryable
from models import Subscription
from utils import RetryHelper, normalize_email

# Module-specific logger
logger = get_logger("storage")

KEY_PREFIX = "sub-"
KEY_SUFFIX = ".json"
TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def subscription_key(token: str) -> str:
    """Map a token to its document name, or "" if the token is malformed.

    Only 64 lowercase hex characters are accepted so a token can never be used
    to escape the storage directory.
    """
    if not token or not TOKEN_RE.match(token):
        return ""
    return f"{KEY_PREFIX}{token}{KEY_SUFFIX}"


def _is_subscription_key(name: str) -> bool:
    return name.startswith(KEY_PREFIX) and name.endswith(KEY_SUFFIX)


class SubscriptionStore:
    """Common behaviour for the storage backends.

    Subclasses implement ``_read``, ``_write``, ``_remove`` and ``_keys``.
    """

    backend = "base"

    def __init__(self, salt: str = ""):
        if not salt:
            logger.error(
                "SALT is not set: subscription tokens are guessable and anyone could manage any subscription"
            )
        self.salt = (salt or "").encode("utf-8")

    def token_from_email(self, email: str) -> str:
        """Derive the deterministic, unguessable token for an email address."""
        return HMAC(self.salt, normalize_email(email).encode("utf-8"), sha256).hexdigest()

    async def _read(self, key: str) -> str:
        raise NotImplementedError

    async def _write(self, key: str, data: str) -> None:
        raise NotImplementedError

    async def _remove(self, key: str) -> None:
        raise NotImplementedError

    async def _keys(self) -> List[str]:
        raise NotImplementedError

    async def load(self, key: str) -> Subscription:
        """Load one document by key.

        Raises:
            NotFoundError: If no document exists under ``key``
            StorageError: If the document cannot be read or decoded
        """
        if not key:
            raise StorageError("invalid subscription key")
        text = await self._read(key)
        try:
            return Subscription.from_json(text)
        except (JSONDecodeError, ValueError) as e:
            raise StorageError(f"corrupt subscription document {key}: {e}") from e

    async def load_by_email(self, email: str) -> Subscription:
        return await self.load(subscription_key(self.token_from_email(email)))

    async def load_by_token(self, token: str) -> Subscription:
        key = subscription_key(token)
        if not key:
            # Same error as a missing document so tokens cannot be guessed
            raise NotFoundError("subscription not found")
        return await self.load(key)

    async def save(self, sub: Subscription) -> None:
        """Overwrite the subscriber's whole document.

        Raises:
            StorageError: If the token is malformed or the write fails
        """
        key = subscription_key(sub.token)
        if not key:
            raise StorageError(f"invalid token format for {sub.email}")
        await self._write(key, sub.to_json())
        logger.info(f"Subscription saved ({self.backend}): {sub.email} with {len(sub.threads)} thread(s)")

    async def delete(self, email: str) -> None:
        """Remove a subscriber's document; deleting a missing document is not an error."""
        key = subscription_key(self.token_from_email(email))
        try:
            await self._remove(key)
        except NotFoundError:
            logger.debug(f"Subscription for {email} already absent")
            return
        logger.info(f"Subscription deleted ({self.backend}): {email}")

    async def list(self) -> List[Subscription]:
        """Load every subscription.

        Documents that cannot be loaded are skipped with a warning; failing to
        enumerate documents at all raises ``StorageError``.
        """
        subs: List[Subscription] = []
        for key in await self._keys():
            try:
                subs.append(await self.load(key))
            except StorageError as e:
                logger.warning(f"Failed to load subscription {key}: {e}")
        return subs

    async def close(self) -> None:
        pass


class LocalSubscriptionStore(SubscriptionStore):
    """Documents stored as files in a local directory."""

    backend = "local"

    def __init__(self, base_path: str, salt: str = ""):
        super().__init__(salt)
        self.base_path = base_path
        os.makedirs(base_path, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.base_path, key)

    async def _read(self, key: str) -> str:
        try:
            with open(self._path(key), "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"subscription {key} does not exist") from e
        except OSError as e:
            raise StorageError(f"read {key} from local storage: {e}") from e

    async def _write(self, key: str, data: str) -> None:
        # Write to a temp file in the same directory, then rename over the target
        tmp_name: Optional[str] = None
        try:
            with NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.base_path, prefix=".tmp-", suffix=KEY_SUFFIX, delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path(key))
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"write {key} to local storage: {e}") from e

    async def _remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError as e:
            raise NotFoundError(f"subscription {key} does not exist") from e
        except OSError as e:
            raise StorageError(f"delete {key} from local storage: {e}") from e

    async def _keys(self) -> List[str]:
        try:
            names = os.listdir(self.base_path)
        except OSError as e:
            raise StorageError(f"read local storage directory {self.base_path}: {e}") from e
        return sorted(
            name for name in names
            if _is_subscription_key(name) and os.path.isfile(self._path(name))
        )


class AzureSubscriptionStore(SubscriptionStore):
    """Documents stored as blobs in an Azure Storage container, with retries."""

    backend = "azure"

    def __init__(self, blob_client: BlobClient, container: str, salt: str = "", retry: Optional[RetryHelper] = None):
        super().__init__(salt)
        self.blob_client = blob_client
        self.container = container
        self.retry = retry or RetryHelper(
            max_attempts=config.STORAGE_MAX_ATTEMPTS,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_MAX_DELAY,
            max_jitter=config.RETRY_MAX_JITTER,
        )

    async def ensure_container(self) -> None:
        """Create the container if it does not exist yet."""
        res = await self.blob_client.create_container(self.container)
        if res.status not in (201, 409):
            raise StorageError(f"create container {self.container}: HTTP {res.status}")

    async def _read(self, key: str) -> str:
        async def attempt() -> str:
            try:
                res = await self.blob_client.get_blob(self.container, key)
            except ClientError as e:
                raise StorageError(f"read {key}: {e}") from e
            if res.status == 404:
                raise NotFoundError(f"subscription {key} does not exist")
            if res.status != 200:
                raise StorageError(f"read {key}: HTTP {res.status}")
            return await res.text(encoding="utf-8")

        return await self.retry.run(attempt, retry_if=is_retryable, description=f"load {key}")

    async def _write(self, key: str, data: str) -> None:
        payload = data.encode("utf-8")

        async def attempt() -> None:
            try:
                res = await self.blob_client.put_blob(self.container, key, payload, mimetype="application/json")
            except ClientError as e:
                raise StorageError(f"write {key}: {e}") from e
            if res.status not in (200, 201):
                raise StorageError(f"write {key}: HTTP {res.status}")

        await self.retry.run(attempt, retry_if=is_retryable, description=f"save {key}")

    async def _remove(self, key: str) -> None:
        async def attempt() -> None:
            try:
                res = await self.blob_client.delete_blob(self.container, key)
            except ClientError as e:
                raise StorageError(f"delete {key}: {e}") from e
            if res.status == 404:
                raise NotFoundError(f"subscription {key} does not exist")
            if res.status not in (200, 202, 204):
                raise StorageError(f"delete {key}: HTTP {res.status}")

        await self.retry.run(attempt, retry_if=is_retryable, description=f"delete {key}")

    async def _keys(self) -> List[str]:
        keys = []
        try:
            async for item in self.blob_client.list_blobs(self.container, prefix=KEY_PREFIX):
                name = item.get("name") or ""
                if _is_subscription_key(name):
                    keys.append(name)
        except ClientError as e:
            raise StorageError(f"list container {self.container}: {e}") from e
        return keys

    async def close(self) -> None:
        await self.blob_client.close()


def create_store(session: Optional[ClientSession] = None) -> SubscriptionStore:
    """Build the store selected by configuration (local directory wins over Azure)."""
    if config.uses_azure_storage():
        logger.info(f"Using Azure Blob Storage container '{config.AZURE_STORAGE_CONTAINER}'")
        client = BlobClient(config.AZURE_STORAGE_ACCOUNT, config.AZURE_STORAGE_KEY, session)
        return AzureSubscriptionStore(client, config.AZURE_STORAGE_CONTAINER, config.SALT)
    logger.info(f"Using local storage at {config.LOCAL_STORAGE}")
    return LocalSubscriptionStore(config.LOCAL_STORAGE, config.SALT)
