"""
Firebase Realtime Database backend over the REST API.

- Reads and writes map to GET/PUT/PATCH/DELETE on ``{root}/{path}.json``.
- Transactions use ETag conditional writes: a PUT with ``if-match`` is
  rejected with 412 (carrying the fresh value and ETag) when another writer
  got there first, and we re-apply the function against that value.
- Subscriptions use the streaming endpoint (server-sent events); the first
  ``put`` event carries the full current value.
"""

import asyncio
import copy
import json
import logging
from typing import Any, Callable

import httpx

from config import STORE_TIMEOUT, STREAM_RECONNECT_DELAY, TRANSACTION_MAX_RETRIES
from store.base import RemoteStore, Snapshot, SnapshotCallback, Subscription
from store.errors import StoreError, TransactionConflict
from store.tree import split_path, write_in

logger = logging.getLogger(__name__)


class FirebaseStore(RemoteStore):
    """RemoteStore backed by a Firebase Realtime Database."""

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = STORE_TIMEOUT,
        max_retries: int = TRANSACTION_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )
        self._params = {"auth": auth_token} if auth_token else {}
        self._max_retries = max_retries
        self._streams: dict[int, asyncio.Task] = {}

    @staticmethod
    def _url(path: str) -> str:
        return "/" + "/".join(split_path(path)) + ".json"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(
                method, self._url(path), params=self._params, **kwargs
            )
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

    async def get(self, path: str) -> Snapshot:
        response = await self._request("GET", path)
        return Snapshot(path=path, value=response.json())

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self.delete(path)
            return
        await self._request("PUT", path, json=value)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", path, json=fields)

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        response = await self._request("GET", path, headers={"X-Firebase-ETag": "true"})
        etag = response.headers.get("ETag", "")
        current = response.json()

        for attempt in range(self._max_retries):
            proposed = fn(copy.deepcopy(current))
            try:
                response = await self._client.request(
                    "PUT",
                    self._url(path),
                    params=self._params,
                    json=proposed,
                    headers={"if-match": etag},
                )
            except httpx.HTTPError as e:
                raise StoreError(f"Transaction on {path} failed: {e}") from e

            if response.status_code == 412:
                # Precondition failed: the body is the value someone else committed.
                etag = response.headers.get("ETag", "")
                current = response.json()
                logger.debug(f"Transaction on {path} lost a race (attempt {attempt + 1})")
                continue
            if response.is_error:
                raise StoreError(f"Transaction on {path} failed: HTTP {response.status_code}")
            return response.json()

        raise TransactionConflict(f"Transaction on {path} exhausted {self._max_retries} retries")

    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        subscription = Subscription(path, callback)
        subscription.start()
        self._streams[id(subscription)] = asyncio.create_task(self._stream_loop(subscription))
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        task = self._streams.pop(id(subscription), None)
        if task:
            task.cancel()

    async def close(self) -> None:
        for task in self._streams.values():
            task.cancel()
        self._streams.clear()
        await self._client.aclose()

    async def _stream_loop(self, subscription: Subscription) -> None:
        """Hold an event stream open, reconnecting after failures."""
        while subscription.active:
            try:
                await self._consume_stream(subscription)
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Stream on {subscription.path} dropped: {e}")
            await asyncio.sleep(STREAM_RECONNECT_DELAY)

    async def _consume_stream(self, subscription: Subscription) -> None:
        cache: Any = None
        event = ""
        async with self._client.stream(
            "GET",
            self._url(subscription.path),
            params=self._params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(STORE_TIMEOUT, read=None),
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:"):
                    if event in ("cancel", "auth_revoked"):
                        logger.warning(f"Stream on {subscription.path} closed by server: {event}")
                        return
                    if event not in ("put", "patch"):
                        continue
                    payload = json.loads(line[len("data:"):].strip())
                    updated = apply_stream_event(cache, event, payload)
                    if updated != cache or (event == "put" and payload.get("path") == "/"):
                        cache = updated
                        subscription.push(Snapshot(path=subscription.path, value=copy.deepcopy(cache)))


def apply_stream_event(cache: Any, event: str, payload: dict) -> Any:
    """Fold one streaming ``put``/``patch`` event into the cached value."""
    parts = split_path(payload.get("path", "/"))
    data = payload.get("data")
    tree = copy.deepcopy(cache)
    if event == "put":
        return write_in(tree, parts, data)
    for key, value in (data or {}).items():
        tree = write_in(tree, parts + split_path(key), value)
    return tree
