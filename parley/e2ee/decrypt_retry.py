"""
Decrypt Retry Pipeline

Encrypted room events whose group session has not arrived yet are parked in
a pending store instead of being dropped.  Each parked event gets:

  * a one-shot observer on the crypto engine that fires when the missing
    session lands and the event decrypts on its own,
  * a best-effort room key request to the sender's devices.

Sweeps re-check every parked event and are triggered by room-key to-device
events, by a backup restore that imported at least one key, and by the
crypto engine's "room keys updated" notification.  After each sweep, events
older than the retention window (measured from the event's own timestamp)
are dropped for good.

Decrypted events go to the same dispatch entry point as plaintext events.
Dispatch order follows decryption success, not timeline order.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Optional

from parley.e2ee.types import (
    CryptoBackend,
    E2EETimings,
    PendingEncryptedEvent,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)

_FINISHED_LIMIT = 1000


def _field(content: Any, key: str, default: Any = "") -> Any:
    """Read *key* from event content that may be a dict or a typed object."""
    if isinstance(content, dict):
        return content.get(key, default)
    value = getattr(content, key, None)
    return value if value is not None else default


def pending_from_event(event: Any, now: float) -> PendingEncryptedEvent:
    content = getattr(event, "content", None)
    ts = getattr(event, "timestamp", None)
    algorithm = _field(content, "algorithm", "")
    return PendingEncryptedEvent(
        event_id=str(event.event_id),
        room_id=str(getattr(event, "room_id", "")),
        session_id=str(_field(content, "session_id", "")),
        sender_key=str(_field(content, "sender_key", "")),
        algorithm=str(getattr(algorithm, "value", algorithm)),
        received_at=ts / 1000 if ts else now,
        sender=str(getattr(event, "sender", "")),
        event=event,
    )


class PendingEventStore:
    """Pending encrypted events keyed by event id.

    An entry lives in exactly one of two maps: ``live`` (waiting) or
    ``sweeping`` (snapshotted by the running sweep).  ``claim`` pops an entry
    from either map and is the only way to obtain the right to dispatch it,
    so the observer and a sweep can never both dispatch the same event.
    """

    def __init__(self) -> None:
        self._live: dict[str, PendingEncryptedEvent] = {}
        self._sweeping: dict[str, PendingEncryptedEvent] = {}

    def __len__(self) -> int:
        return len(self._live) + len(self._sweeping)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._live or event_id in self._sweeping

    def add(self, pending: PendingEncryptedEvent) -> bool:
        if pending.event_id in self:
            return False
        self._live[pending.event_id] = pending
        return True

    def claim(self, event_id: str) -> Optional[PendingEncryptedEvent]:
        pending = self._live.pop(event_id, None)
        if pending is None:
            pending = self._sweeping.pop(event_id, None)
        return pending

    def begin_sweep(self) -> list[PendingEncryptedEvent]:
        """Snapshot and clear the live set."""
        self._sweeping.update(self._live)
        self._live.clear()
        return list(self._sweeping.values())

    def requeue(self, pending: PendingEncryptedEvent) -> None:
        if self._sweeping.pop(pending.event_id, None) is not None:
            self._live[pending.event_id] = pending

    def finish_sweep(self) -> None:
        self._live.update(self._sweeping)
        self._sweeping.clear()

    def evict_expired(self, now: float, retention: float) -> list[PendingEncryptedEvent]:
        expired = [p for p in self._live.values() if p.age(now) > retention]
        for pending in expired:
            del self._live[pending.event_id]
        return expired

    def snapshot(self) -> list[PendingEncryptedEvent]:
        return [*self._live.values(), *self._sweeping.values()]


class DecryptRetryPipeline:

    def __init__(
        self,
        backend: CryptoBackend,
        dispatch: Callable[[Any], Any],
        timings: Optional[E2EETimings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._dispatch_fn = dispatch
        self._timings = timings or E2EETimings()
        self._clock = clock
        self._store = PendingEventStore()
        # Event ids that were dispatched or evicted.  Ordered dict as an LRU
        # set so re-deliveries from the sync stream are ignored.
        self._finished: dict[str, None] = {}
        self._sweep_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._store)

    def is_pending(self, event_id: str) -> bool:
        return event_id in self._store

    def pending_events(self) -> list[PendingEncryptedEvent]:
        return self._store.snapshot()

    def _mark_finished(self, event_id: str) -> None:
        self._finished[event_id] = None
        if len(self._finished) > _FINISHED_LIMIT:
            for key in list(self._finished)[:_FINISHED_LIMIT // 2]:
                self._finished.pop(key, None)

    # ------------------------------------------------------------------
    # Receipt path
    # ------------------------------------------------------------------

    async def handle_encrypted(self, event: Any) -> bool:
        """Process a freshly received encrypted event.

        Returns True if it was decrypted and dispatched immediately, False if
        it was parked (or ignored as a duplicate).
        """
        event_id = str(event.event_id)
        if event_id in self._finished or event_id in self._store:
            logger.debug("UTD: ignoring duplicate delivery of %s", event_id)
            return False

        clear = await self._try_decrypt(event)
        if clear is not None:
            if event_id in self._finished:
                return False
            self._mark_finished(event_id)
            await self._dispatch(clear)
            return True

        pending = pending_from_event(event, self._clock())
        if not self._store.add(pending):
            return False
        logger.info(
            "UTD: %s in %s is not decryptable yet (session %.16s), parking it",
            event_id, pending.room_id, pending.session_id,
        )
        self._backend.observe_decryption(
            event, lambda decrypted: self._on_observed(event_id, decrypted),
        )
        self._spawn(self._request_key(pending), f"key-req-{pending.session_id[:8]}")
        return False

    async def _try_decrypt(self, event: Any) -> Any:
        try:
            return await self._backend.decrypt_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.debug("UTD: decrypt of %s failed: %s", getattr(event, "event_id", "?"), exc)
            return None

    async def _request_key(self, pending: PendingEncryptedEvent) -> None:
        if not self._backend.capabilities.room_key_requests:
            logger.debug("UTD: backend cannot request room keys, waiting for other key sources")
            return
        try:
            await self._backend.request_room_key(pending)
        except UnsupportedOperation as exc:
            logger.info("UTD: room key request unsupported: %s", exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("UTD: room key request for session %.16s failed: %s", pending.session_id, exc)

    def _on_observed(self, event_id: str, decrypted: Any) -> None:
        """One-shot observer: the crypto engine decrypted a parked event."""
        if decrypted is None:
            return
        pending = self._store.claim(event_id)
        if pending is None:
            # Already dispatched by a sweep, or evicted.
            return
        self._mark_finished(event_id)
        logger.info("UTD: %s decrypted after its key arrived", event_id)
        self._spawn(self._dispatch(decrypted), f"utd-dispatch-{event_id[-8:]}")

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def request_sweep(self, reason: str) -> None:
        """Schedule a sweep without waiting for it."""
        self._spawn(self.sweep(reason), "utd-sweep")

    async def sweep(self, reason: str = "") -> int:
        """Retry every parked event once, then evict expired entries.

        Returns the number of events dispatched by this sweep.
        """
        async with self._sweep_lock:
            snapshot = self._store.begin_sweep()
            if snapshot:
                logger.info("UTD: retry sweep (%s) over %d pending event(s)", reason or "manual", len(snapshot))
            dispatched = 0
            try:
                for pending in snapshot:
                    clear = await self._try_decrypt(pending.event)
                    if clear is None:
                        self._store.requeue(pending)
                        continue
                    if self._store.claim(pending.event_id) is None:
                        continue
                    self._mark_finished(pending.event_id)
                    await self._dispatch(clear)
                    dispatched += 1
            finally:
                self._store.finish_sweep()

            for expired in self._store.evict_expired(self._clock(), self._timings.pending_retention_seconds):
                self._mark_finished(expired.event_id)
                logger.warning(
                    "UTD: giving up on %s in %s from %s (session %.16s never arrived)",
                    expired.event_id, expired.room_id, expired.sender or "?", expired.session_id,
                )
            if dispatched:
                logger.info("UTD: sweep dispatched %d event(s), %d still pending", dispatched, len(self._store))
            return dispatched

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _dispatch(self, decrypted: Any) -> None:
        try:
            result = self._dispatch_fn(decrypted)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("UTD: message handler raised for %s", getattr(decrypted, "event_id", "?"))

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
