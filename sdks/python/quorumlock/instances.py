"""Store instances the quorum lock races its tokens against.

Each instance wraps one independent key-value backend and exposes two atomic
operations: set-if-absent with an expiry, and delete-if-value-matches. Any
I/O failure is reported as :class:`InstanceUnreachable` so the coordinator
can count it as a miss for that instance only.
"""

import base64
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx
import redis
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .exceptions import InstanceUnreachable

UNLOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class StoreInstance(ABC):
    """A single backend taking part in the quorum."""

    @abstractmethod
    def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        """Set ``key`` to ``value`` for ``ttl`` milliseconds if it is unset.

        Returns:
            True if the key was set by this call
        """

    @abstractmethod
    def compare_and_delete(self, key: str, expected_value: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected_value``.

        Returns:
            True if the key was deleted by this call
        """

    def close(self) -> None:
        """Close any connection the instance created itself."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncStoreInstance(ABC):
    """Coroutine flavour of :class:`StoreInstance`."""

    @abstractmethod
    async def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        ...

    @abstractmethod
    async def compare_and_delete(self, key: str, expected_value: str) -> bool:
        ...

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class RedisInstance(StoreInstance):
    """Redis backend using ``SET NX PX`` and a compare-and-delete script."""

    def __init__(self, client: redis.Redis, owns_client: bool = False):
        """Wrap an already configured Redis client.

        Args:
            client: Redis client connected to one independent server
            owns_client: Close the client in :meth:`close`
        """
        self.client = client
        self._owns_client = owns_client
        self._unlock = client.register_script(UNLOCK_SCRIPT)

    @classmethod
    def from_url(cls, url: str, timeout: float = 1.0) -> "RedisInstance":
        """Connect to the server at ``url`` with socket timeouts of ``timeout`` seconds."""
        client = redis.Redis.from_url(
            url, socket_timeout=timeout, socket_connect_timeout=timeout
        )
        return cls(client, owns_client=True)

    def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        try:
            return bool(self.client.set(key, value, nx=True, px=ttl))
        except RedisError as e:
            raise InstanceUnreachable(f"Redis error setting {key!r}: {e}", instance=self) from e

    def compare_and_delete(self, key: str, expected_value: str) -> bool:
        try:
            return self._unlock(keys=[key], args=[expected_value]) == 1
        except RedisError as e:
            raise InstanceUnreachable(f"Redis error deleting {key!r}: {e}", instance=self) from e

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __repr__(self) -> str:
        return f"RedisInstance({self.client.connection_pool!r})"


class AsyncRedisInstance(AsyncStoreInstance):
    """Redis backend for asyncio applications."""

    def __init__(self, client: aioredis.Redis, owns_client: bool = False):
        self.client = client
        self._owns_client = owns_client
        self._unlock = client.register_script(UNLOCK_SCRIPT)

    @classmethod
    def from_url(cls, url: str, timeout: float = 1.0) -> "AsyncRedisInstance":
        client = aioredis.Redis.from_url(
            url, socket_timeout=timeout, socket_connect_timeout=timeout
        )
        return cls(client, owns_client=True)

    async def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        try:
            return bool(await self.client.set(key, value, nx=True, px=ttl))
        except RedisError as e:
            raise InstanceUnreachable(f"Redis error setting {key!r}: {e}", instance=self) from e

    async def compare_and_delete(self, key: str, expected_value: str) -> bool:
        try:
            return await self._unlock(keys=[key], args=[expected_value]) == 1
        except RedisError as e:
            raise InstanceUnreachable(f"Redis error deleting {key!r}: {e}", instance=self) from e

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def __repr__(self) -> str:
        return f"AsyncRedisInstance({self.client.connection_pool!r})"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _lease_seconds(ttl: int) -> int:
    # etcd leases are whole seconds; rounding up keeps the key alive at
    # least as long as the validity computed from ``ttl``.
    return max(1, math.ceil(ttl / 1000))


def _create_txn(key: str, value: str, lease_id: str) -> dict:
    return {
        "compare": [
            {"key": _b64(key), "target": "CREATE", "result": "EQUAL", "create_revision": "0"}
        ],
        "success": [
            {"request_put": {"key": _b64(key), "value": _b64(value), "lease": lease_id}}
        ],
    }


def _delete_txn(key: str, expected_value: str) -> dict:
    return {
        "compare": [
            {"key": _b64(key), "target": "VALUE", "result": "EQUAL", "value": _b64(expected_value)}
        ],
        "success": [{"request_delete_range": {"key": _b64(key)}}],
    }


class _EtcdResponses:
    """Response handling shared by the etcd instances."""

    def _handle_response(self, response: httpx.Response) -> dict:
        """Decode an etcd gateway response, raising for HTTP errors."""
        if response.status_code >= 400:
            try:
                error_data = response.json()
                message = error_data.get("message") or error_data.get("error")
            except ValueError:
                message = response.text
            raise InstanceUnreachable(
                f"etcd returned HTTP {response.status_code}: {message}", instance=self
            )

        try:
            return response.json() if response.content else {}
        except ValueError as e:
            raise InstanceUnreachable(f"Failed to parse etcd response: {e}", instance=self)

    def _lease_id(self, data: dict) -> str:
        lease_id = data.get("ID")
        if not lease_id:
            raise InstanceUnreachable("etcd did not grant a lease", instance=self)
        return lease_id


class EtcdInstance(_EtcdResponses, StoreInstance):
    """etcd backend talking to the v3 JSON gateway.

    The key is created inside a transaction guarded by ``create_revision == 0``
    and attached to a lease, so it expires on its own.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:2379",
        client: Optional[httpx.Client] = None,
        timeout: float = 1.0,
    ):
        """Initialize the etcd instance.

        Args:
            base_url: The base URL of the etcd gRPC gateway
            client: Preconfigured HTTP client; created when omitted
            timeout: Request timeout in seconds for a created client
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client if client is not None else httpx.Client(timeout=timeout)

    def _post(self, path: str, payload: dict) -> dict:
        response = self.client.post(urljoin(self.base_url, path), json=payload)
        return self._handle_response(response)

    def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        try:
            lease_id = self._lease_id(self._post("/v3/lease/grant", {"TTL": _lease_seconds(ttl)}))
            result = self._post("/v3/kv/txn", _create_txn(key, value, lease_id))
            if result.get("succeeded", False):
                return True
            self._post("/v3/lease/revoke", {"ID": lease_id})
            return False
        except httpx.RequestError as e:
            raise InstanceUnreachable(f"Network error setting {key!r}: {e}", instance=self) from e

    def compare_and_delete(self, key: str, expected_value: str) -> bool:
        try:
            result = self._post("/v3/kv/txn", _delete_txn(key, expected_value))
            return bool(result.get("succeeded", False))
        except httpx.RequestError as e:
            raise InstanceUnreachable(f"Network error deleting {key!r}: {e}", instance=self) from e

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __repr__(self) -> str:
        return f"EtcdInstance({self.base_url!r})"


class AsyncEtcdInstance(_EtcdResponses, AsyncStoreInstance):
    """Async etcd backend talking to the v3 JSON gateway."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:2379",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, payload: dict) -> dict:
        response = await self.client.post(urljoin(self.base_url, path), json=payload)
        return self._handle_response(response)

    async def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        try:
            granted = await self._post("/v3/lease/grant", {"TTL": _lease_seconds(ttl)})
            lease_id = self._lease_id(granted)
            result = await self._post("/v3/kv/txn", _create_txn(key, value, lease_id))
            if result.get("succeeded", False):
                return True
            await self._post("/v3/lease/revoke", {"ID": lease_id})
            return False
        except httpx.RequestError as e:
            raise InstanceUnreachable(f"Network error setting {key!r}: {e}", instance=self) from e

    async def compare_and_delete(self, key: str, expected_value: str) -> bool:
        try:
            result = await self._post("/v3/kv/txn", _delete_txn(key, expected_value))
            return bool(result.get("succeeded", False))
        except httpx.RequestError as e:
            raise InstanceUnreachable(f"Network error deleting {key!r}: {e}", instance=self) from e

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def __repr__(self) -> str:
        return f"AsyncEtcdInstance({self.base_url!r})"


class MemoryInstance(StoreInstance):
    """In-process store for tests and single-host development.

    Expiry is evaluated lazily against ``clock`` (seconds). Setting
    ``online`` to False makes every call raise :class:`InstanceUnreachable`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, online: bool = True):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.online = online

    def _check_online(self) -> None:
        if not self.online:
            raise InstanceUnreachable("Memory instance is offline", instance=self)

    def _current(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if now >= expires_at:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        """Return the live value stored under ``key``, if any."""
        with self._lock:
            return self._current(key, self._clock())

    def conditional_set(self, key: str, value: str, ttl: int) -> bool:
        self._check_online()
        with self._lock:
            now = self._clock()
            if self._current(key, now) is not None:
                return False
            self._data[key] = (value, now + ttl / 1000.0)
            return True

    def compare_and_delete(self, key: str, expected_value: str) -> bool:
        self._check_online()
        with self._lock:
            if self._current(key, self._clock()) != expected_value:
                return False
            del self._data[key]
            return True

    def __repr__(self) -> str:
        return f"MemoryInstance(online={self.online})"
