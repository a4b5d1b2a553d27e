"""Remote document store client.

The cloud mirror only needs four operations, each keyed by a document id
inside a named collection: upsert, find, delete and a liveness ping.
:class:`HttpDocumentStore` speaks a Data-API style JSON protocol
(``POST {base}/action/findOne`` and friends) authenticated by an
``api-key`` header.

Every transport or HTTP failure is raised as SyncError. Callers log it
and move on; nothing here is retried.
"""

import logging
from typing import Optional, Protocol

import httpx

from kidsync.errors import SyncError

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
STATISTICS_COLLECTION = "statistics"

_PING_KEY = "__kidsync_ping__"


class RemoteDocumentStore(Protocol):
    async def upsert(self, collection: str, key: str, document: dict) -> None: ...

    async def find(self, collection: str, key: str) -> Optional[dict]: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def ping(self) -> bool: ...


class HttpDocumentStore:
    """httpx client for a Data-API style document endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        data_source: str = "Cluster0",
        database: str = "kidsync",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.data_source = data_source
        self.database = database
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def _action(
        self, action: str, collection: str, body: dict, timeout: Optional[float] = None
    ) -> dict:
        payload = {
            "dataSource": self.data_source,
            "database": self.database,
            "collection": collection,
            **body,
        }
        try:
            async with self._client(timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/action/{action}",
                    json=payload,
                    headers={
                        "api-key": self._api_key,
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise SyncError(f"{action} on {collection} timed out") from e
        except httpx.HTTPError as e:
            raise SyncError(f"{action} on {collection} failed: {e}") from e

        if resp.status_code >= 400:
            raise SyncError(
                f"{action} on {collection} rejected: HTTP {resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise SyncError(f"{action} on {collection} returned invalid JSON") from e

    async def upsert(self, collection: str, key: str, document: dict) -> None:
        """Replace the document with ``_id == key``, inserting it if missing."""
        replacement = {**document, "_id": key}
        await self._action(
            "replaceOne",
            collection,
            {"filter": {"_id": key}, "replacement": replacement, "upsert": True},
        )
        logger.debug(f"Upserted {collection}/{key}")

    async def find(self, collection: str, key: str) -> Optional[dict]:
        data = await self._action("findOne", collection, {"filter": {"_id": key}})
        return data.get("document")

    async def delete(self, collection: str, key: str) -> bool:
        data = await self._action("deleteOne", collection, {"filter": {"_id": key}})
        return data.get("deletedCount", 0) > 0

    async def ping(self, timeout: Optional[float] = None) -> bool:
        """Lightweight round-trip; False when the endpoint is unreachable."""
        try:
            await self._action(
                "findOne", USERS_COLLECTION, {"filter": {"_id": _PING_KEY}}, timeout=timeout
            )
        except SyncError as e:
            logger.info(f"Remote store unreachable: {e}")
            return False
        return True
