"""
Key-Value Store Client

KVClient is the surface the config engine consumes. EtcdClient talks
to the etcd v3 JSON gateway over HTTP; InMemoryKVClient backs tests
and dry runs.

Every transport failure is translated to RemoteUnavailableError here,
so callers never see httpx exceptions.
"""

import base64
from typing import Any, Protocol, runtime_checkable

import httpx

from ..common.exceptions import AuthenticationError, RemoteUnavailableError
from ..common.logging_setup import get_service_logger
from .snapshot import Snapshot, make_snapshot

logger = get_service_logger("kv.client")


@runtime_checkable
class KVClient(Protocol):
    """Protocol for the remote key-value store"""

    async def get(self, key: str) -> str | None:
        """Point lookup. Returns None if the key is absent."""
        ...

    async def get_keys_with_prefix(self, prefix: str) -> Snapshot:
        """Scan every key starting with prefix."""
        ...

    async def put(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def authenticate(self, user: str, password: str) -> str:
        """Open an authenticated session, returning the session token."""
        ...

    async def close(self) -> None:
        ...


def _b64(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.b64encode(value).decode("ascii")


def _unb64(value: str | None) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def prefix_range_end(prefix: str) -> bytes:
    """
    Compute etcd's range_end for a prefix scan.

    The prefix with its last incrementable byte bumped by one;
    a prefix of only 0xff bytes scans to the end of the keyspace.
    """
    end = bytearray(prefix.encode("utf-8"))
    for i in range(len(end) - 1, -1, -1):
        if end[i] < 0xFF:
            end[i] += 1
            return bytes(end[: i + 1])
    return b"\x00"


class EtcdClient:
    """
    etcd v3 JSON gateway client.

    Uses one reusable httpx.AsyncClient. The session token from
    authenticate() is sent in the Authorization header of every call.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._token: str | None = None
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = self._token
        return headers

    async def _call(self, operation: str, path: str, body: dict, key: str | None = None) -> dict[str, Any]:
        """POST a gateway request and return the decoded JSON body"""
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.url}{path}",
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(
                f"{operation} failed: {e}", operation=operation, key=key
            ) from e

        if response.status_code >= 300:
            detail = response.text[:200]
            if operation == "authenticate":
                raise AuthenticationError(
                    f"HTTP {response.status_code}: {detail}",
                    user=body.get("name"),
                    status_code=response.status_code,
                )
            raise RemoteUnavailableError(
                f"{operation} returned HTTP {response.status_code}: {detail}",
                operation=operation,
                key=key,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnavailableError(
                f"{operation} returned invalid JSON", operation=operation, key=key,
                status_code=response.status_code,
            ) from e

    async def authenticate(self, user: str, password: str) -> str:
        """
        Authenticate and keep the session token.

        An empty user means the cluster runs without auth; nothing is sent.
        """
        if not user:
            return ""

        data = await self._call(
            "authenticate", "/auth/authenticate", {"name": user, "password": password}
        )
        token = data.get("token")
        if not token:
            raise AuthenticationError("No token in response", user=user)

        self._token = token
        logger.info(f"Authenticated to {self.url} as {user}", extra={"user": user})
        return token

    async def get(self, key: str) -> str | None:
        data = await self._call("get", "/kv/range", {"key": _b64(key)}, key=key)
        kvs = data.get("kvs") or []
        if not kvs:
            return None
        return _unb64(kvs[-1].get("value"))

    async def get_keys_with_prefix(self, prefix: str) -> Snapshot:
        data = await self._call(
            "range",
            "/kv/range",
            {"key": _b64(prefix), "range_end": _b64(prefix_range_end(prefix))},
            key=prefix,
        )
        kvs = data.get("kvs") or []
        return make_snapshot((_unb64(kv.get("key")), _unb64(kv.get("value"))) for kv in kvs)

    async def put(self, key: str, value: str) -> None:
        await self._call("put", "/kv/put", {"key": _b64(key), "value": _b64(value)}, key=key)
        logger.debug(f"Put {key}", extra={"key": key})

    async def delete(self, key: str) -> None:
        await self._call("delete", "/kv/deleterange", {"key": _b64(key)}, key=key)
        logger.debug(f"Deleted {key}", extra={"key": key})


class InMemoryKVClient:
    """Dict-backed KVClient"""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})
        self.user: str | None = None
        self.closed = False

    async def authenticate(self, user: str, password: str) -> str:
        self.user = user or None
        return f"token-{user}" if user else ""

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def get_keys_with_prefix(self, prefix: str) -> Snapshot:
        return make_snapshot((k, v) for k, v in self.data.items() if k.startswith(prefix))

    async def put(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def close(self) -> None:
        self.closed = True
