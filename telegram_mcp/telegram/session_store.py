"""
Telegram Session Store

Persists the opaque Telegram session blob, either in a local directory or
in etcd through its JSON/HTTP gateway.
"""

import base64
import binascii
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from telegram_mcp.errors import SessionNotFoundError, StorageConnectionError, StorageError

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """
    Key/value storage for session blobs.

    Keys are stable hashes of the account identifier.
    """

    @abstractmethod
    async def load(self, key: str) -> bytes:
        """
        Load the session stored under key.

        Raises:
            SessionNotFoundError: If nothing was stored under key
            StorageConnectionError: If the backend is unreachable
        """

    @abstractmethod
    async def save(self, key: str, data: bytes) -> None:
        """
        Store data under key, replacing any previous value.

        Raises:
            StorageConnectionError: If the backend is unreachable
        """

    async def close(self) -> None:
        """Release backend resources."""


class FileSessionStore(SessionStore):
    """Stores each session as <directory>/<key>.session."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        """Path of the file holding the session for key."""
        return self.directory / f"{key}.session"

    async def load(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise SessionNotFoundError(f"No session file at {path}") from None
        except OSError as e:
            raise StorageError(f"Failed to read session file {path}: {e}") from e

    async def save(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            # Write next to the target, then swap it in
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write session file {path}: {e}") from e

        logger.info(f"Stored session in file: {path}")


class EtcdSessionStore(SessionStore):
    """
    Stores sessions in etcd using the v3 JSON gateway.

    Keys and values travel base64 encoded, as the gateway expects.
    """

    KEY_PREFIX = "telegram/sessions/"
    HEALTH_PATH = "/health"
    RANGE_PATH = "/v3/kv/range"
    PUT_PATH = "/v3/kv/put"

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        """
        Use EtcdSessionStore.connect() instead; it checks the endpoint first.

        Args:
            base_url: Normalized endpoint without an API path
            client: HTTP client used for all requests
        """
        self.base_url = base_url
        self._client = client

    @classmethod
    async def connect(
        cls,
        endpoint: str,
        probe_timeout: float = 5.0,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "EtcdSessionStore":
        """
        Create a store after verifying etcd is healthy.

        Args:
            endpoint: etcd HTTP endpoint, with or without a /v3 path
            probe_timeout: Timeout of the health probe
            timeout: Timeout of load/save requests
            transport: Optional httpx transport (for tests)

        Raises:
            StorageConnectionError: If the health probe fails
        """
        if not endpoint:
            raise StorageConnectionError("etcd endpoint cannot be empty")

        base_url = normalize_endpoint(endpoint)
        client = httpx.AsyncClient(timeout=timeout, transport=transport)

        try:
            response = await client.get(
                base_url + cls.HEALTH_PATH, timeout=probe_timeout
            )
        except httpx.HTTPError as e:
            await client.aclose()
            raise StorageConnectionError(
                f"failed to connect to etcd at {base_url}: {e}"
            ) from e

        if response.status_code != 200:
            await client.aclose()
            raise StorageConnectionError(
                f"etcd health check failed with status {response.status_code}: {response.text}"
            )

        logger.info(f"Using etcd session storage at {base_url}")
        return cls(base_url, client)

    def storage_key(self, key: str) -> str:
        """Full etcd key for a session key."""
        return self.KEY_PREFIX + key

    async def load(self, key: str) -> bytes:
        body = {"key": _b64encode(self.storage_key(key).encode("utf-8"))}
        data = await self._post(self.RANGE_PATH, body)

        kvs = data.get("kvs") or []
        if not kvs:
            logger.info(f"Session key not found in etcd: {self.storage_key(key)}")
            raise SessionNotFoundError(f"No session stored under {self.storage_key(key)}")

        entry = kvs[0] if isinstance(kvs, list) else None
        if not isinstance(entry, dict):
            raise StorageError("etcd returned a malformed key-value entry")

        try:
            return base64.b64decode(entry.get("value", ""), validate=True)
        except (binascii.Error, TypeError) as e:
            raise StorageError(f"etcd returned a malformed session value: {e}") from e

    async def save(self, key: str, data: bytes) -> None:
        body = {
            "key": _b64encode(self.storage_key(key).encode("utf-8")),
            "value": _b64encode(data),
        }
        await self._post(self.PUT_PATH, body)
        logger.info(f"Saved session to etcd: {self.storage_key(key)}")

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict) -> dict:
        """POST a JSON request and return the decoded JSON response."""
        try:
            response = await self._client.post(self.base_url + path, json=body)
        except httpx.HTTPError as e:
            raise StorageConnectionError(
                f"failed to send HTTP request to etcd: {e}"
            ) from e

        if response.status_code != 200:
            raise StorageConnectionError(
                f"etcd returned status {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise StorageError(f"failed to parse etcd response: {e}") from e

        if not isinstance(data, dict):
            raise StorageError("failed to parse etcd response: expected an object")
        return data


def normalize_endpoint(endpoint: str) -> str:
    """
    Strip the trailing slash and any /v3 API path from an etcd endpoint.

    "http://etcd:2379/v3/kv/" -> "http://etcd:2379"
    """
    endpoint = endpoint.strip().rstrip("/")
    return re.sub(r"/v3(/kv)?$", "", endpoint)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


async def create_session_store(config) -> SessionStore:
    """
    Build the session store selected by the configuration.

    Args:
        config: TelegramConfig instance

    Returns:
        EtcdSessionStore if an etcd endpoint is configured, FileSessionStore otherwise

    Raises:
        StorageConnectionError: If etcd is configured but unreachable
    """
    if config.etcd_endpoint:
        return await EtcdSessionStore.connect(
            config.etcd_endpoint,
            probe_timeout=config.storage_probe_timeout,
            timeout=config.storage_timeout,
        )

    logger.info(f"Using file-based session storage in {config.session_dir}")
    return FileSessionStore(config.session_dir)
