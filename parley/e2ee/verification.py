"""
Verification State Machine

Drives the SAS (emoji) device-verification protocol for peer-initiated and
bot-initiated requests without operator interaction:

  Requested -> accept (always) -> Ready -> fetch peer device keys, settle,
  start SAS -> show SAS -> auto-confirm after a delay -> Done

Cancellation from the peer is possible at any phase and frees the
(peer user, peer device) slot for a new request.

Sessions are keyed by ``"{user_id}|{device_id}"``.  All map mutations go
through ``_store`` / ``_remove``, which check and write in one synchronous
step so concurrent handlers cannot both claim or both free the same key.
Every transition guard on :class:`VerificationSession` follows the same rule,
which makes the change-notification / timeout-poll race resolve to exactly
one SAS initiation.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from parley.e2ee.types import (
    CryptoBackend,
    DeviceInfo,
    E2EETimings,
    SasData,
    VerificationPhase,
    VerificationRequest,
    VerificationSession,
    Verifier,
)

logger = logging.getLogger(__name__)

SAS_METHOD = "m.sas.v1"


def format_emojis(emoji: list[tuple[str, str]]) -> list[str]:
    """Render SAS emoji pairs as ``"<symbol> <name>"`` strings."""
    return [f"{symbol} {name}" for symbol, name in emoji]


@dataclass
class VerificationCallbacks:
    """Operator-facing lifecycle hooks.  Each may return an awaitable."""
    on_show_sas: Optional[Callable[[VerificationSession, list[str]], Any]] = None
    on_complete: Optional[Callable[[VerificationSession], Any]] = None
    on_cancel: Optional[Callable[[VerificationSession, str], Any]] = None
    on_error: Optional[Callable[[Optional[VerificationSession], Exception], Any]] = None


class VerificationStateMachine:

    def __init__(
        self,
        backend: CryptoBackend,
        own_user_id: str,
        own_device_id: str,
        timings: Optional[E2EETimings] = None,
        callbacks: Optional[VerificationCallbacks] = None,
    ) -> None:
        self._backend = backend
        self._own_user_id = own_user_id
        self._own_device_id = own_device_id
        self._timings = timings or E2EETimings()
        self._callbacks = callbacks or VerificationCallbacks()
        self._sessions: dict[str, VerificationSession] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @staticmethod
    def session_key(user_id: str, device_id: str) -> str:
        return f"{user_id}|{device_id}"

    def get_session(self, user_id: str, device_id: str) -> Optional[VerificationSession]:
        return self._sessions.get(self.session_key(user_id, device_id))

    def get_verification_requests(self, user_id: str) -> list[VerificationRequest]:
        """Return the request handles of every active session with *user_id*."""
        prefix = f"{user_id}|"
        return [
            s.request for key, s in self._sessions.items()
            if key.startswith(prefix) and not s.is_terminal
        ]

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.is_terminal)

    def _store(self, session: VerificationSession, *, replace_active: bool) -> bool:
        """Claim the map slot for *session*.

        A missing or terminal occupant is always replaced.  An active occupant
        is replaced only when *replace_active* is set (a fresh Requested-phase
        observation from the peer); otherwise the claim fails.
        """
        current = self._sessions.get(session.key)
        if current is session:
            return False
        if current is not None and not current.is_terminal:
            if not replace_active:
                return False
            logger.info(
                "SAS: replacing active verification with %s (%s) by a new request",
                session.key, current.phase.value,
            )
            self._detach(current)
        self._sessions[session.key] = session
        return True

    def _remove(self, session: VerificationSession) -> bool:
        """Remove *session* only if it still owns its slot."""
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
            return True
        return False

    def _is_current(self, session: VerificationSession) -> bool:
        return self._sessions.get(session.key) is session

    def _detach(self, session: VerificationSession) -> None:
        if session.ready_poll is not None:
            session.ready_poll.cancel()
            session.ready_poll = None
        if session.unsubscribe is not None:
            try:
                session.unsubscribe()
            except Exception:  # noqa: BLE001
                logger.debug("SAS: unsubscribe failed for %s", session.key, exc_info=True)
            session.unsubscribe = None

    # ------------------------------------------------------------------
    # Incoming requests
    # ------------------------------------------------------------------

    def handle_verification_request(self, request: VerificationRequest) -> None:
        """Entry point for requests observed by the transport."""
        phase = request.phase
        if phase.is_terminal:
            return
        session = VerificationSession(
            user_id=request.other_user_id,
            device_id=request.other_device_id,
            request=request,
            phase=phase,
        )
        existing = self._sessions.get(session.key)
        if existing is not None and existing.request is request:
            return
        if not self._store(session, replace_active=phase is VerificationPhase.REQUESTED):
            logger.info("SAS: already handling verification with %s, ignoring request", session.key)
            return

        logger.info(
            "SAS: verification request from %s (txn=%s, phase=%s)",
            session.key, request.transaction_id, phase.value,
        )
        session.unsubscribe = request.on_change(lambda: self._on_request_change(session))

        if phase is VerificationPhase.REQUESTED:
            self._spawn(self._accept(session), f"sas-accept-{session.device_id}")
        elif phase is VerificationPhase.READY:
            self._enter_ready(session)
        elif phase is VerificationPhase.STARTED and request.verifier is not None:
            self._attach_verifier(session, request.verifier)

    def _on_request_change(self, session: VerificationSession) -> None:
        if not self._is_current(session) or session.is_terminal:
            return
        phase = session.request.phase
        session.phase = phase
        logger.debug("SAS: %s moved to phase %s", session.key, phase.value)

        if phase is VerificationPhase.READY:
            self._enter_ready(session)
        elif phase is VerificationPhase.STARTED:
            verifier = session.request.verifier
            if verifier is not None:
                self._attach_verifier(session, verifier)
        elif phase is VerificationPhase.DONE:
            self._finish(session)
        elif phase is VerificationPhase.CANCELLED:
            self._cancelled(session, session.request.cancellation_code or "unknown")

    async def _accept(self, session: VerificationSession) -> None:
        try:
            await session.request.accept()
        except Exception as exc:  # noqa: BLE001
            logger.warning("SAS: accepting request from %s failed: %s", session.key, exc)
            self._emit_error(session, exc)
            return
        logger.info("SAS: accepted verification request from %s", session.key)
        if session.is_terminal or session.ready_handled:
            return
        loop = asyncio.get_running_loop()
        session.ready_poll = loop.call_later(
            self._timings.ready_poll_seconds, self._poll_ready, session,
        )

    def _poll_ready(self, session: VerificationSession) -> None:
        """Timeout fallback in case the Ready change notification is dropped."""
        session.ready_poll = None
        if not self._is_current(session) or session.is_terminal:
            return
        if session.request.phase is VerificationPhase.READY:
            session.phase = VerificationPhase.READY
            self._enter_ready(session)

    def _enter_ready(self, session: VerificationSession) -> None:
        if session.ready_handled:
            return
        session.ready_handled = True
        if session.ready_poll is not None:
            session.ready_poll.cancel()
            session.ready_poll = None
        self._spawn(self._start_sas(session), f"sas-start-{session.device_id}")

    async def _start_sas(self, session: VerificationSession) -> None:
        if session.sas_started:
            return
        session.sas_started = True
        try:
            # Key exchange fails with "device does not exist" unless the
            # peer's device keys are in the local cache.
            await self._backend.get_user_devices(session.user_id, download=True)
            await asyncio.sleep(self._timings.device_keys_settle_seconds)
            if not self._is_current(session) or session.is_terminal:
                return
            verifier = session.request.verifier
            if verifier is None:
                logger.info("SAS: starting %s with %s", SAS_METHOD, session.key)
                verifier = await session.request.start_verification(SAS_METHOD)
            else:
                logger.info("SAS: peer already started verification with %s", session.key)
            self._attach_verifier(session, verifier)
        except Exception as exc:  # noqa: BLE001
            logger.warning("SAS: starting verification with %s failed: %s", session.key, exc)
            self._emit_error(session, exc)

    def _attach_verifier(self, session: VerificationSession, verifier: Verifier) -> None:
        if session.verifier is not None:
            return
        session.verifier = verifier
        session.phase = VerificationPhase.STARTED
        verifier.on_show_sas(lambda sas: self._on_show_sas(session, sas))
        verifier.on_cancel(lambda reason: self._cancelled(session, reason))
        self._spawn(self._run_verifier(session, verifier), f"sas-verify-{session.device_id}")

    async def _run_verifier(self, session: VerificationSession, verifier: Verifier) -> None:
        try:
            await verifier.verify()
        except Exception as exc:  # noqa: BLE001
            if session.is_terminal:
                return
            logger.warning("SAS: verification with %s failed: %s", session.key, exc)
            self._emit_error(session, exc)

    # ------------------------------------------------------------------
    # SAS display / confirm
    # ------------------------------------------------------------------

    def _on_show_sas(self, session: VerificationSession, sas: SasData) -> None:
        if not self._is_current(session) or session.is_terminal:
            return
        session.sas = sas
        emojis = format_emojis(sas.emoji)
        logger.info("SAS: emoji for %s: %s", session.key, " | ".join(emojis))
        self._emit(self._callbacks.on_show_sas, session, emojis)
        if session.confirm_scheduled:
            return
        session.confirm_scheduled = True
        self._spawn(self._auto_confirm(session), f"sas-confirm-{session.device_id}")

    async def _auto_confirm(self, session: VerificationSession) -> None:
        # Stands in for the human comparing the emoji.
        await asyncio.sleep(self._timings.auto_confirm_seconds)
        if not self._is_current(session) or session.is_terminal or session.confirmed or session.verifier is None:
            return
        session.confirmed = True
        try:
            await session.verifier.confirm()
            logger.info("SAS: confirmed emoji match with %s", session.key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("SAS: confirming verification with %s failed: %s", session.key, exc)
            self._emit_error(session, exc)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _finish(self, session: VerificationSession) -> None:
        if session.completed or session.cancelled:
            return
        session.completed = True
        session.phase = VerificationPhase.DONE
        self._detach(session)
        self._remove(session)
        logger.info("SAS: verification with %s complete", session.key)
        self._emit(self._callbacks.on_complete, session)

    def _cancelled(self, session: VerificationSession, reason: str) -> None:
        if session.cancelled or session.completed:
            return
        session.cancelled = True
        session.cancel_reason = reason
        session.phase = VerificationPhase.CANCELLED
        self._detach(session)
        self._remove(session)
        logger.info("SAS: verification with %s cancelled: %s", session.key, reason)
        self._emit(self._callbacks.on_cancel, session, reason)

    # ------------------------------------------------------------------
    # Bot-initiated verification
    # ------------------------------------------------------------------

    async def request_verification(self, user_id: str, device_id: str) -> VerificationRequest:
        """Ask *user_id*'s *device_id* to verify with us.

        Returns the existing handle if that device already has an active
        session.
        """
        existing = self.get_session(user_id, device_id)
        if existing is not None and not existing.is_terminal:
            return existing.request

        request = await self._backend.request_device_verification(user_id, device_id)
        session = VerificationSession(
            user_id=user_id,
            device_id=device_id,
            request=request,
            phase=request.phase,
            initiated_by_us=True,
        )
        if not self._store(session, replace_active=False):
            # Lost the race to a request that arrived while we were sending.
            winner = self.get_session(user_id, device_id)
            try:
                await request.cancel("m.user", "Duplicate verification request")
            except Exception:  # noqa: BLE001
                logger.debug("SAS: cancelling duplicate request to %s failed", session.key, exc_info=True)
            return winner.request if winner is not None else request

        session.unsubscribe = request.on_change(lambda: self._on_request_change(session))
        logger.info("SAS: sent verification request to %s (txn=%s)", session.key, request.transaction_id)
        if request.phase is VerificationPhase.READY:
            self._enter_ready(session)
        return request

    async def verify_user_devices(
        self, user_id: str, device_id: Optional[str] = None,
    ) -> list[VerificationRequest]:
        """Proactively request verification with *user_id*.

        With *device_id* only that device is asked (our own device is a
        no-op).  Otherwise the user's devices are discovered, retrying while
        the list is still empty, and every unverified device other than ours
        is asked.
        """
        if device_id:
            if device_id == self._own_device_id:
                logger.info("SAS: %s is this bot's own device, nothing to verify", device_id)
                return []
            try:
                return [await self.request_verification(user_id, device_id)]
            except Exception as exc:  # noqa: BLE001
                logger.warning("SAS: verification request to %s/%s failed: %s", user_id, device_id, exc)
                self._emit_error(None, exc)
                return []

        devices = await self._discover_devices(user_id)
        if not devices:
            logger.warning("SAS: no devices found for %s, skipping proactive verification", user_id)
            return []

        requests: list[VerificationRequest] = []
        for dev_id, info in devices.items():
            if dev_id == self._own_device_id:
                continue
            try:
                if info.verified or await self._backend.is_device_verified(user_id, dev_id):
                    logger.debug("SAS: %s/%s already verified", user_id, dev_id)
                    continue
                requests.append(await self.request_verification(user_id, dev_id))
            except Exception as exc:  # noqa: BLE001
                logger.warning("SAS: verification request to %s/%s failed: %s", user_id, dev_id, exc)
                self._emit_error(None, exc)
        logger.info("SAS: requested verification with %d device(s) of %s", len(requests), user_id)
        return requests

    async def _discover_devices(self, user_id: str) -> dict[str, DeviceInfo]:
        attempts = max(1, self._timings.discovery_attempts)
        for attempt in range(1, attempts + 1):
            try:
                devices = await self._backend.get_user_devices(user_id, download=True)
            except Exception as exc:  # noqa: BLE001
                logger.warning("SAS: device list fetch for %s failed (attempt %d/%d): %s",
                               user_id, attempt, attempts, exc)
                devices = {}
            if devices:
                return devices
            if attempt < attempts:
                logger.debug("SAS: no devices for %s yet (attempt %d/%d)", user_id, attempt, attempts)
                await asyncio.sleep(self._timings.discovery_backoff_seconds)
        return {}

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("SAS: callback %s raised", getattr(callback, "__name__", callback))
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_callback(result), "sas-callback")

    @staticmethod
    async def _await_callback(awaitable) -> None:
        try:
            await awaitable
        except Exception:  # noqa: BLE001
            logger.exception("SAS: async callback raised")

    def _emit_error(self, session: Optional[VerificationSession], exc: Exception) -> None:
        self._emit(self._callbacks.on_error, session, exc)

    async def stop(self) -> None:
        for session in list(self._sessions.values()):
            self._detach(session)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
