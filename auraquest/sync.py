from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Optional

from auraquest import config
from auraquest.engine import ProgressionEngine
from auraquest.models import (
    AGGREGATE_FIELDS,
    Aggregate,
    AIQuest,
    QuestSession,
    UserIdentity,
    UserProfile,
    canonical_json,
    dump,
    parse_aggregate,
)
from auraquest.remote import REMOTE_ERRORS, RemoteStore

logger = logging.getLogger(__name__)


class ChangeDeduplicator:
    """Remembers the last scheduled serialization and rejects exact repeats."""

    def __init__(self) -> None:
        self.last: Optional[str] = None

    @staticmethod
    def serialize(aggregate: Aggregate) -> str:
        payload = dump(aggregate)
        payload.pop("generation", None)
        return canonical_json(payload)

    def should_schedule(self, serialized: str) -> bool:
        if serialized == self.last:
            return False
        self.last = serialized
        return True

    def mark(self, serialized: str) -> None:
        self.last = serialized

    def reset(self) -> None:
        self.last = None


class Debouncer:
    """Cancel-and-restart timer on an event loop."""

    def __init__(self, delay_s: float, callback: Callable[[], None]) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        self.cancel()
        loop = self.loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class SyncCoordinator:
    """Mirrors the engine aggregate to a remote store and applies pulled snapshots.

    Pushes are deduplicated and debounced. Pulled snapshots are applied only when
    their generation is newer than the local one, so the echo of our own push is
    dropped. Inside ``bulk_operation`` pulls are ignored and one push is sent at
    the end.
    """

    def __init__(
        self,
        engine: ProgressionEngine,
        remote: RemoteStore | None,
        debounce_s: float = config.SYNC_DEBOUNCE_S,
        max_attempts: int = config.SYNC_MAX_ATTEMPTS,
        timeout_s: float = config.REMOTE_TIMEOUT_S,
        backoff_s: float = 1.0,
    ) -> None:
        self.engine = engine
        self.remote = remote
        self.max_attempts = max(1, max_attempts)
        self.timeout_s = timeout_s
        self.backoff_s = backoff_s
        self.enabled = remote is not None
        self.identity: Optional[UserIdentity] = None
        self.dedup = ChangeDeduplicator()
        self.debouncer = Debouncer(debounce_s, self._flush)
        self._bulk_depth = 0
        self._deferred = False
        self._unsubscribe_remote: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe_engine = engine.subscribe(self._on_change)

    @property
    def active(self) -> bool:
        return self.enabled and self.identity is not None and self.remote is not None

    @property
    def in_bulk(self) -> bool:
        return self._bulk_depth > 0

    # -- lifecycle ----------------------------------------------------------

    async def start(self, identity: UserIdentity | None) -> None:
        if identity is not None and self.identity is not None and identity.uid == self.identity.uid:
            return
        await self.stop()
        if identity is None or self.remote is None:
            logger.info("Sync running in local-only mode")
            return
        self.identity = identity
        self.debouncer.loop = asyncio.get_running_loop()
        await self._initial_load()
        self._unsubscribe_remote = self.remote.subscribe(identity.uid, self._on_remote)

    async def _initial_load(self) -> None:
        try:
            doc = await asyncio.wait_for(self.remote.load(self.identity.uid), timeout=self.timeout_s)
        except REMOTE_ERRORS as exc:
            logger.warning("Initial remote load failed: %s", exc)
            doc = None
        if doc is not None:
            result = parse_aggregate(doc)
            if result.ok and result.value.generation > self.engine.generation:
                self._apply(result.value)
                return
            if not result.ok:
                logger.warning("Ignoring invalid remote document: %s", result.error)
        self._schedule()

    async def stop(self) -> None:
        if self._unsubscribe_remote is not None:
            self._unsubscribe_remote()
            self._unsubscribe_remote = None
        self.debouncer.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.dedup.reset()
        self.identity = None

    async def close(self) -> None:
        await self.stop()
        self._unsubscribe_engine()

    # -- push side ----------------------------------------------------------

    @contextmanager
    def bulk_operation(self):
        self._bulk_depth += 1
        try:
            with self.engine.batch():
                yield self.engine
        finally:
            self._bulk_depth -= 1
            if self._bulk_depth == 0 and self._deferred:
                self._deferred = False
                self._schedule()

    def _on_change(self, fields: frozenset) -> None:
        if not fields & set(AGGREGATE_FIELDS):
            return
        if self.in_bulk:
            self._deferred = True
            return
        self._schedule()

    def _schedule(self) -> None:
        if not self.active:
            return
        serialized = self.dedup.serialize(self.engine.snapshot())
        if not self.dedup.should_schedule(serialized):
            logger.debug("Skipping unchanged aggregate")
            return
        self.debouncer.trigger()

    def _flush(self) -> None:
        task = asyncio.get_running_loop().create_task(self.push())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def push(self) -> bool:
        if not self.active:
            return False
        uid = self.identity.uid
        payload = dump(self.engine.snapshot())
        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.wait_for(self.remote.save(uid, payload), timeout=self.timeout_s)
                logger.info("Pushed aggregate generation %s", payload["generation"])
                return True
            except REMOTE_ERRORS as exc:
                if attempt >= self.max_attempts:
                    logger.warning("Remote push abandoned after %s attempts: %s", attempt, exc)
                    return False
                await asyncio.sleep(self.backoff_s * attempt)
        return False

    async def drain(self) -> None:
        """Fire any pending debounce now and wait for in-flight pushes."""
        if self.debouncer.pending:
            self.debouncer.cancel()
            self._flush()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- pull side ----------------------------------------------------------

    def _on_remote(self, doc: Optional[dict]) -> None:
        if not self.active or doc is None:
            return
        if self.in_bulk:
            logger.debug("Ignoring remote snapshot during bulk operation")
            return
        result = parse_aggregate(doc)
        if not result.ok:
            logger.warning("Ignoring invalid remote snapshot: %s", result.error)
            return
        if result.value.generation <= self.engine.generation:
            logger.debug("Ignoring remote generation %s", result.value.generation)
            return
        self._apply(result.value)

    def _apply(self, aggregate: Aggregate) -> None:
        self.dedup.mark(self.dedup.serialize(aggregate))
        self.engine.apply_remote(aggregate)
        logger.info("Applied remote generation %s", aggregate.generation)

    # -- best-effort logs ---------------------------------------------------

    async def _append(self, collection: str, payload: dict) -> bool:
        if not self.active:
            return False
        try:
            await asyncio.wait_for(self.remote.append_log(collection, self.identity.uid, payload), timeout=self.timeout_s)
            return True
        except REMOTE_ERRORS as exc:
            logger.warning("Could not write %s: %s", collection, exc)
            return False

    async def save_profile(self, profile: UserProfile) -> bool:
        return await self._append("profiles", dump(profile))

    async def save_quest_session(self, session: QuestSession, completed: bool = True) -> bool:
        return await self._append("quest_sessions", {**dump(session), "completed": completed})

    async def save_generated_quests(self, quests: list[AIQuest]) -> bool:
        return await self._append("generated_quests", {"quests": [dump(q) for q in quests]})
