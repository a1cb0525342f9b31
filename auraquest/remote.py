from __future__ import annotations

import asyncio
import copy
import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable, Optional

from auraquest import config
from auraquest.models import canonical_json

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Optional[dict]], None]

REMOTE_ERRORS = (urllib.error.URLError, http.client.HTTPException, asyncio.TimeoutError, TimeoutError, OSError, ValueError)


class RemoteStore:
    """Per-user document store. Documents are plain JSON-ready dicts."""

    async def load(self, uid: str) -> Optional[dict]:
        raise NotImplementedError

    async def save(self, uid: str, partial: dict) -> None:
        raise NotImplementedError

    def subscribe(self, uid: str, callback: SnapshotCallback) -> Callable[[], None]:
        raise NotImplementedError

    async def append_log(self, collection: str, uid: str, payload: dict) -> None:
        raise NotImplementedError


class InMemoryRemoteStore(RemoteStore):
    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.logs: dict[str, list[dict]] = {}
        self.save_calls = 0
        self._subscribers: dict[str, list[SnapshotCallback]] = {}

    async def load(self, uid: str) -> Optional[dict]:
        doc = self.documents.get(uid)
        return copy.deepcopy(doc) if doc is not None else None

    async def save(self, uid: str, partial: dict) -> None:
        self.save_calls += 1
        doc = self.documents.setdefault(uid, {})
        doc.update(copy.deepcopy(partial))
        self.publish(uid)

    def publish(self, uid: str) -> None:
        doc = self.documents.get(uid)
        for callback in list(self._subscribers.get(uid, [])):
            callback(copy.deepcopy(doc) if doc is not None else None)

    def subscribe(self, uid: str, callback: SnapshotCallback) -> Callable[[], None]:
        self._subscribers.setdefault(uid, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(uid, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, uid: str) -> int:
        return len(self._subscribers.get(uid, []))

    async def append_log(self, collection: str, uid: str, payload: dict) -> None:
        self.logs.setdefault(collection, []).append({"uid": uid, **copy.deepcopy(payload)})


class HttpRemoteStore(RemoteStore):
    """PostgREST-style backend: one `aggregates` row per user plus append-only log tables.

    There is no push channel, so subscriptions poll.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout_s: float = 10.0, poll_s: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.poll_s = poll_s

    def _headers(self, extra: dict | None = None) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(extra or {})
        return headers

    def _call(self, method: str, path: str, payload=None, extra_headers: dict | None = None):
        req = urllib.request.Request(
            f"{self.base_url}/{path}",
            data=json.dumps(payload).encode("utf-8") if payload is not None else None,
            headers=self._headers(extra_headers),
            method=method,
        )
        with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
            raw = resp.read().decode("utf-8")
        return json.loads(raw) if raw else None

    async def _run(self, method: str, path: str, payload=None, extra_headers: dict | None = None):
        return await asyncio.wait_for(
            asyncio.to_thread(self._call, method, path, payload, extra_headers),
            timeout=self.timeout_s,
        )

    async def load(self, uid: str) -> Optional[dict]:
        query = urllib.parse.urlencode({"uid": f"eq.{uid}", "select": "document"})
        rows = await self._run("GET", f"aggregates?{query}")
        if not rows:
            return None
        doc = rows[0].get("document")
        return doc if isinstance(doc, dict) else None

    async def save(self, uid: str, partial: dict) -> None:
        current = await self.load(uid) or {}
        current.update(partial)
        await self._run(
            "POST",
            "aggregates?on_conflict=uid",
            {"uid": uid, "document": current},
            {"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    def subscribe(self, uid: str, callback: SnapshotCallback) -> Callable[[], None]:
        async def poll() -> None:
            last = None
            while True:
                try:
                    doc = await self.load(uid)
                except REMOTE_ERRORS as exc:
                    logger.warning("Remote poll failed: %s", exc)
                else:
                    marker = canonical_json(doc)
                    if marker != last:
                        last = marker
                        callback(doc)
                await asyncio.sleep(self.poll_s)

        task = asyncio.get_running_loop().create_task(poll())
        return task.cancel

    async def append_log(self, collection: str, uid: str, payload: dict) -> None:
        await self._run("POST", collection, {"uid": uid, **payload}, {"Prefer": "return=minimal"})


def build_remote_store() -> Optional[RemoteStore]:
    if not config.REMOTE_URL:
        return None
    return HttpRemoteStore(
        config.REMOTE_URL,
        api_key=config.REMOTE_KEY,
        timeout_s=config.REMOTE_TIMEOUT_S,
        poll_s=config.REMOTE_POLL_S,
    )
