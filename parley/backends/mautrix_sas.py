"""
SAS (m.sas.v1) interactive verification over to-device messages.

mautrix-python ships no SAS state machine, so the protocol messages are
built here on top of python-olm's ``Sas`` object.  The objects below expose
the phase / verifier / callback surface that
:class:`parley.e2ee.verification.VerificationStateMachine` drives; all
policy (always accept, auto-confirm, retries) lives there.

Peer-initiated flow:
  request -> ready (accept) -> start -> accept+commitment (verify) -> key <-> key
  -> SAS shown -> mac (confirm) <-> mac -> done
Bot-initiated flow:
  request -> ready (peer) -> start (start_verification) -> accept (peer)
  -> key <-> key -> SAS shown -> mac <-> mac -> done
"""

import asyncio
import base64
import hashlib
import json
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional

try:
    import olm as _olm
    _HAS_OLM = True
except ImportError:
    _olm = None  # type: ignore[assignment]
    _HAS_OLM = False

from mautrix.types import DeviceID, EventType, UserID

from parley.e2ee.types import SasData, VerificationPhase

logger = logging.getLogger(__name__)

_VERIFY_REQUEST = EventType.find("m.key.verification.request", EventType.Class.TO_DEVICE)
_VERIFY_READY   = EventType.find("m.key.verification.ready",   EventType.Class.TO_DEVICE)
_VERIFY_START   = EventType.find("m.key.verification.start",   EventType.Class.TO_DEVICE)
_VERIFY_ACCEPT  = EventType.find("m.key.verification.accept",  EventType.Class.TO_DEVICE)
_VERIFY_KEY     = EventType.find("m.key.verification.key",     EventType.Class.TO_DEVICE)
_VERIFY_MAC     = EventType.find("m.key.verification.mac",     EventType.Class.TO_DEVICE)
_VERIFY_DONE    = EventType.find("m.key.verification.done",    EventType.Class.TO_DEVICE)
_VERIFY_CANCEL  = EventType.find("m.key.verification.cancel",  EventType.Class.TO_DEVICE)

SAS_METHOD = "m.sas.v1"
_KEY_AGREEMENT = "curve25519-hkdf-sha256"
_HASH = "sha256"
_MAC_METHOD = "hkdf-hmac-sha256.v2"
_SAS_TYPES = ["decimal", "emoji"]

SAS_EMOJIS: list[tuple[str, str]] = [
    ("🐶", "Dog"), ("🐱", "Cat"), ("🦁", "Lion"), ("🐎", "Horse"),
    ("🦄", "Unicorn"), ("🐷", "Pig"), ("🐘", "Elephant"), ("🐰", "Rabbit"),
    ("🐼", "Panda"), ("🐓", "Rooster"), ("🐧", "Penguin"), ("🐢", "Turtle"),
    ("🐟", "Fish"), ("🐙", "Octopus"), ("🦋", "Butterfly"), ("🌷", "Flower"),
    ("🌳", "Tree"), ("🌵", "Cactus"), ("🍄", "Mushroom"), ("🌏", "Globe"),
    ("🌙", "Moon"), ("☁️", "Cloud"), ("🔥", "Fire"), ("🍌", "Banana"),
    ("🍎", "Apple"), ("🍓", "Strawberry"), ("🌽", "Corn"), ("🍕", "Pizza"),
    ("🎂", "Cake"), ("❤️", "Heart"), ("😀", "Smiley"), ("🤖", "Robot"),
    ("🎩", "Hat"), ("👓", "Glasses"), ("🔧", "Spanner"), ("🎅", "Santa"),
    ("👍", "Thumbs Up"), ("☂️", "Umbrella"), ("⌛", "Hourglass"), ("⏰", "Clock"),
    ("🎁", "Gift"), ("💡", "Light Bulb"), ("📕", "Book"), ("✏️", "Pencil"),
    ("📎", "Paperclip"), ("✂️", "Scissors"), ("🔒", "Lock"), ("🔑", "Key"),
    ("🔨", "Hammer"), ("☎️", "Telephone"), ("🏁", "Flag"), ("🚂", "Train"),
    ("🚲", "Bicycle"), ("✈️", "Aeroplane"), ("🚀", "Rocket"), ("🏆", "Trophy"),
    ("⚽", "Ball"), ("🎸", "Guitar"), ("🎺", "Trumpet"), ("🔔", "Bell"),
    ("⚓", "Anchor"), ("🎧", "Headphones"), ("📁", "Folder"), ("📌", "Pin"),
]


def canonical_json(data: dict) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def unpadded_b64(data: bytes) -> str:
    return base64.b64encode(data).decode().rstrip("=")


def sas_emojis(sas_bytes: bytes) -> list[tuple[str, str]]:
    """First 42 bits as seven 6-bit indexes into the emoji table."""
    bits = int.from_bytes(sas_bytes[:6], "big") >> 6
    return [SAS_EMOJIS[(bits >> (36 - 6 * i)) & 0x3F] for i in range(7)]


def sas_decimals(sas_bytes: bytes) -> tuple[int, int, int]:
    """First 39 bits as three 13-bit numbers, each offset by 1000."""
    bits = int.from_bytes(sas_bytes[:5], "big")
    return (
        ((bits >> 27) & 0x1FFF) + 1000,
        ((bits >> 14) & 0x1FFF) + 1000,
        ((bits >> 1) & 0x1FFF) + 1000,
    )


def commitment_for(pubkey: str, start_content: dict) -> str:
    return unpadded_b64(hashlib.sha256((pubkey + canonical_json(start_content)).encode()).digest())


def _v_field(content, key: str, default=""):
    """Get a field from event content regardless of whether it is a dict or typed object."""
    if isinstance(content, dict):
        return content.get(key, default)
    v = getattr(content, key, None)
    return v if v is not None else default


def _content_dict(content) -> dict:
    if isinstance(content, dict):
        return dict(content)
    if hasattr(content, "serialize"):
        return content.serialize()
    return {k: v for k, v in vars(content).items() if not k.startswith("_")}


class SasVerifier:
    """One SAS key exchange.  Created by ``start_verification`` (we send the
    start) or by an incoming start (peer sent it)."""

    def __init__(self, request: "SasVerificationRequest", *, we_started: bool,
                 start_content: Optional[dict] = None) -> None:
        self._request = request
        self._manager = request.manager
        self.we_started = we_started
        self.start_content: dict = start_content or {}
        self.sas = _olm.Sas() if _HAS_OLM else None
        self.their_commitment = ""
        self.their_pubkey = ""
        self.accept_sent = False
        self.key_sent = False
        self.sas_data: Optional[SasData] = None
        self.confirmed = False
        self.their_mac: Optional[dict] = None
        self.their_mac_ok = False
        self.done_sent = False
        self._show_sas_cbs: list[Callable[[SasData], None]] = []
        self._cancel_cbs: list[Callable[[str], None]] = []
        self._finished: asyncio.Future = asyncio.get_running_loop().create_future()

    # --- callback registration -------------------------------------------

    def on_show_sas(self, callback: Callable[[SasData], None]) -> None:
        self._show_sas_cbs.append(callback)
        if self.sas_data is not None:
            callback(self.sas_data)

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        self._cancel_cbs.append(callback)

    # --- driven by the state machine -------------------------------------

    async def verify(self) -> None:
        """Run the exchange until done or cancelled."""
        async with self._request.lock:
            if not self.we_started and not self.accept_sent:
                await self.send_accept()
        await asyncio.shield(self._finished)

    async def confirm(self) -> None:
        """The SAS matched: send our MAC, then done if theirs already checked out."""
        if self.confirmed:
            return
        if self.sas_data is None:
            raise RuntimeError("cannot confirm before the SAS is shown")
        self.confirmed = True
        async with self._request.lock:
            await self._send_mac()
            if self.their_mac is not None and not self.their_mac_ok:
                await self._check_their_mac()
            await self._maybe_done()

    async def mismatch(self) -> None:
        """The SAS did not match."""
        await self._request.cancel("m.mismatched_sas", "SAS mismatch")

    async def cancel(self, code: str = "m.user", reason: str = "") -> None:
        await self._request.cancel(code, reason)

    # --- protocol steps ---------------------------------------------------

    def _sas_info(self) -> str:
        mgr = self._manager
        req = self._request
        ours = (mgr.user_id, mgr.device_id, self.sas.pubkey)
        theirs = (req.other_user_id, req.other_device_id, self.their_pubkey)
        starter, other = (ours, theirs) if self.we_started else (theirs, ours)
        return (
            "MATRIX_KEY_VERIFICATION_SAS"
            f"|{starter[0]}|{starter[1]}|{starter[2]}"
            f"|{other[0]}|{other[1]}|{other[2]}"
            f"|{req.transaction_id}"
        )

    def _mac_info(self, sender_user: str, sender_dev: str, recv_user: str, recv_dev: str) -> str:
        # Plain concatenation, no separators.
        return (
            "MATRIX_KEY_VERIFICATION_MAC"
            f"{sender_user}{sender_dev}{recv_user}{recv_dev}{self._request.transaction_id}"
        )

    async def send_accept(self) -> None:
        self.accept_sent = True
        await self._request.send(_VERIFY_ACCEPT, {
            "key_agreement_protocol": _KEY_AGREEMENT,
            "hash": _HASH,
            "message_authentication_code": _MAC_METHOD,
            "short_authentication_string": _SAS_TYPES,
            "commitment": commitment_for(self.sas.pubkey, self.start_content),
        })
        logger.info("SAS: sent accept to %s (txn=%s)", self._request.key, self._request.transaction_id)

    async def _send_key(self) -> None:
        self.key_sent = True
        await self._request.send(_VERIFY_KEY, {"key": self.sas.pubkey})

    async def handle_accept(self, content) -> None:
        if not self.we_started or self.key_sent:
            return
        self.their_commitment = _v_field(content, "commitment")
        await self._send_key()
        logger.info("SAS: peer accepted, sent key to %s", self._request.key)

    async def handle_key(self, content) -> None:
        their_key = _v_field(content, "key")
        if self.we_started and self.their_commitment:
            if commitment_for(their_key, self.start_content) != self.their_commitment:
                await self._request.cancel("m.mismatched_commitment", "Commitment mismatch")
                return
        try:
            self.sas.set_their_pubkey(their_key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("SAS: key exchange failed for %s: %s", self._request.key, exc)
            await self._request.cancel("m.key_mismatch", str(exc))
            return
        self.their_pubkey = their_key
        # The starter already sent its key after the accept.
        if not self.key_sent:
            await self._send_key()
        sas_bytes = self.sas.generate_bytes(self._sas_info(), 6)
        self.sas_data = SasData(emoji=sas_emojis(sas_bytes), decimal=sas_decimals(sas_bytes))
        logger.info("SAS: key exchange done with %s, showing SAS", self._request.key)
        for cb in list(self._show_sas_cbs):
            cb(self.sas_data)

    async def _send_mac(self) -> None:
        mgr = self._manager
        req = self._request
        info = self._mac_info(mgr.user_id, mgr.device_id, req.other_user_id, req.other_device_id)
        key_id = f"ed25519:{mgr.device_id}"
        key_mac = self.sas.calculate_mac_fixed_base64(mgr.signing_key(), info + key_id)
        keys_mac = self.sas.calculate_mac_fixed_base64(key_id, info + "KEY_IDS")
        await req.send(_VERIFY_MAC, {"mac": {key_id: key_mac}, "keys": keys_mac})
        logger.info("SAS: sent MAC to %s", req.key)

    async def handle_mac(self, content) -> None:
        self.their_mac = _content_dict(content)
        if self.confirmed:
            await self._check_their_mac()
            await self._maybe_done()

    async def _check_their_mac(self) -> None:
        req = self._request
        mac = self.their_mac.get("mac") or {}
        info = self._mac_info(req.other_user_id, req.other_device_id,
                              self._manager.user_id, self._manager.device_id)
        expected_keys = self.sas.calculate_mac_fixed_base64(",".join(sorted(mac)), info + "KEY_IDS")
        if expected_keys != self.their_mac.get("keys"):
            await req.cancel("m.key_mismatch", "Key list MAC mismatch")
            return
        device_key_id = f"ed25519:{req.other_device_id}"
        if device_key_id not in mac:
            await req.cancel("m.key_mismatch", "Device key missing from MAC")
            return
        device_key = await self._manager.get_device_key(req.other_user_id, req.other_device_id)
        if not device_key:
            await req.cancel("m.key_mismatch", "Unknown device key")
            return
        expected = self.sas.calculate_mac_fixed_base64(device_key, info + device_key_id)
        if expected != mac[device_key_id]:
            await req.cancel("m.key_mismatch", "Device key MAC mismatch")
            return
        self.their_mac_ok = True
        await self._manager.mark_verified(req.other_user_id, req.other_device_id)

    async def _maybe_done(self) -> None:
        if self.done_sent or not (self.confirmed and self.their_mac_ok):
            return
        self.done_sent = True
        await self._request.send(_VERIFY_DONE, {})
        self._request.set_phase(VerificationPhase.DONE)
        self.resolve()

    def resolve(self) -> None:
        if not self._finished.done():
            self._finished.set_result(None)

    def fail(self, reason: str) -> None:
        for cb in list(self._cancel_cbs):
            try:
                cb(reason)
            except Exception:  # noqa: BLE001
                logger.exception("SAS: cancel callback raised")
        if not self._finished.done():
            self._finished.set_exception(RuntimeError(f"verification cancelled: {reason}"))
            # Retrieved here so an unawaited verify() does not log a warning.
            self._finished.exception()


class SasVerificationRequest:
    """A verification request tracked per transaction id."""

    def __init__(self, manager: "SasManager", other_user_id: str, other_device_id: str,
                 transaction_id: str, phase: VerificationPhase) -> None:
        self.manager = manager
        self.other_user_id = other_user_id
        self.other_device_id = other_device_id
        self.transaction_id = transaction_id
        self._phase = phase
        self._verifier: Optional[SasVerifier] = None
        self._cancellation_code = ""
        self._listeners: list[Callable[[], None]] = []
        self.lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return f"{self.other_user_id}|{self.other_device_id}"

    @property
    def phase(self) -> VerificationPhase:
        return self._phase

    @property
    def verifier(self) -> Optional[SasVerifier]:
        return self._verifier

    @property
    def cancellation_code(self) -> str:
        return self._cancellation_code

    def on_change(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _unsubscribe

    def set_phase(self, phase: VerificationPhase) -> None:
        if phase is self._phase:
            return
        self._phase = phase
        if phase.is_terminal:
            self.manager.forget(self)
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:  # noqa: BLE001
                logger.exception("SAS: change listener raised for %s", self.key)

    async def send(self, event_type: EventType, content: dict) -> None:
        await self.manager.send_to_device(
            event_type, self.other_user_id, self.other_device_id,
            {**content, "transaction_id": self.transaction_id},
        )

    async def accept(self) -> None:
        if self._phase is not VerificationPhase.REQUESTED:
            return
        await self.send(_VERIFY_READY, {
            "from_device": self.manager.device_id,
            "methods": [SAS_METHOD],
        })
        self.set_phase(VerificationPhase.READY)

    async def start_verification(self, method: str) -> SasVerifier:
        if method != SAS_METHOD:
            raise ValueError(f"unsupported verification method {method}")
        if self._verifier is not None:
            return self._verifier
        start_content = {
            "from_device": self.manager.device_id,
            "method": SAS_METHOD,
            "key_agreement_protocols": [_KEY_AGREEMENT],
            "hashes": [_HASH],
            "message_authentication_codes": [_MAC_METHOD],
            "short_authentication_string": _SAS_TYPES,
            "transaction_id": self.transaction_id,
        }
        self._verifier = SasVerifier(self, we_started=True, start_content=start_content)
        await self.send(_VERIFY_START, start_content)
        self.set_phase(VerificationPhase.STARTED)
        return self._verifier

    async def cancel(self, code: str = "m.user", reason: str = "") -> None:
        if self._phase.is_terminal:
            return
        await self.send(_VERIFY_CANCEL, {"code": code, "reason": reason or code})
        self.mark_cancelled(code)

    def supersede(self) -> None:
        """Forget this request without telling the peer; a newer one replaced it."""
        if self._verifier is not None:
            self._verifier.resolve()
        self.manager.forget(self)

    def mark_cancelled(self, code: str) -> None:
        if self._phase.is_terminal:
            return
        self._cancellation_code = code
        if self._verifier is not None:
            self._verifier.fail(code)
        self.set_phase(VerificationPhase.CANCELLED)

    async def handle_start(self, sender_device: str, content) -> None:
        start = _content_dict(content)
        if start.get("method") != SAS_METHOD:
            await self.cancel("m.unknown_method", "Only m.sas.v1 is supported")
            return
        current = self._verifier
        if current is not None and current.we_started:
            # Both sides sent start: the lexicographically smaller
            # (user id, device id) keeps its start.
            ours = (self.manager.user_id, self.manager.device_id)
            if ours < (self.other_user_id, sender_device):
                logger.info("SAS: start collision with %s, keeping ours", self.key)
                return
            logger.info("SAS: start collision with %s, switching to theirs", self.key)
            current.we_started = False
            current.start_content = start
            if self._phase is VerificationPhase.STARTED:
                await current.send_accept()
            return
        if current is None:
            self._verifier = SasVerifier(self, we_started=False, start_content=start)
        self.set_phase(VerificationPhase.STARTED)


class SasManager:
    """Routes m.key.verification.* to-device events to their requests."""

    def __init__(
        self,
        client,
        user_id: str,
        device_id: str,
        signing_key: Callable[[], str],
        get_device_key: Callable[[str, str], Awaitable[Optional[str]]],
        mark_verified: Callable[[str, str], Awaitable[None]],
    ) -> None:
        self._client = client
        self.user_id = user_id
        self.device_id = device_id
        self.signing_key = signing_key
        self.get_device_key = get_device_key
        self.mark_verified = mark_verified
        self._requests: dict[str, SasVerificationRequest] = {}
        self._on_request: Optional[Callable[[SasVerificationRequest], None]] = None

    @staticmethod
    def available() -> bool:
        return _HAS_OLM

    def register(self, client) -> None:
        client.add_event_handler(_VERIFY_REQUEST, self._on_verify_request)
        client.add_event_handler(_VERIFY_READY,   self._on_verify_ready)
        client.add_event_handler(_VERIFY_START,   self._on_verify_start)
        client.add_event_handler(_VERIFY_ACCEPT,  self._on_verify_accept)
        client.add_event_handler(_VERIFY_KEY,     self._on_verify_key)
        client.add_event_handler(_VERIFY_MAC,     self._on_verify_mac)
        client.add_event_handler(_VERIFY_DONE,    self._on_verify_done)
        client.add_event_handler(_VERIFY_CANCEL,  self._on_verify_cancel)

    def on_request(self, callback: Callable[[SasVerificationRequest], None]) -> None:
        self._on_request = callback

    def forget(self, request: SasVerificationRequest) -> None:
        if self._requests.get(request.transaction_id) is request:
            del self._requests[request.transaction_id]

    def _supersede(self, request: SasVerificationRequest) -> None:
        """Drop older requests with the same peer device as *request*."""
        for old in [r for r in self._requests.values() if r.key == request.key and r is not request]:
            logger.info(
                "SAS: request %s for %s superseded by %s",
                old.transaction_id, old.key, request.transaction_id,
            )
            old.supersede()

    async def send_to_device(self, event_type: EventType, user_id: str, device_id: str, content: dict) -> None:
        await self._client.send_to_device(
            event_type,
            {UserID(user_id): {DeviceID(device_id): content}},
        )

    async def request(self, user_id: str, device_id: str) -> SasVerificationRequest:
        """Send m.key.verification.request to one device of *user_id*."""
        txn_id = str(uuid.uuid4())
        request = SasVerificationRequest(self, user_id, device_id, txn_id, VerificationPhase.REQUESTED)
        self._requests[txn_id] = request
        try:
            await request.send(_VERIFY_REQUEST, {
                "from_device": self.device_id,
                "methods": [SAS_METHOD],
                "timestamp": int(time.time() * 1000),
            })
        except Exception:
            self.forget(request)
            raise
        self._supersede(request)
        return request

    # --- to-device handlers ----------------------------------------------

    def _lookup(self, evt) -> Optional[SasVerificationRequest]:
        txn_id = _v_field(evt.content, "transaction_id")
        request = self._requests.get(txn_id)
        if request is None or str(evt.sender) != request.other_user_id:
            return None
        return request

    async def _on_verify_request(self, evt) -> None:
        c = evt.content
        sender = str(evt.sender)
        txn_id = _v_field(c, "transaction_id")
        from_dev = _v_field(c, "from_device")
        methods = _v_field(c, "methods") or []
        if isinstance(methods, str):
            methods = [methods]
        if not txn_id or not from_dev:
            return
        if SAS_METHOD not in methods:
            await self.send_to_device(_VERIFY_CANCEL, sender, from_dev, {
                "transaction_id": txn_id,
                "code": "m.unknown_method",
                "reason": "Only m.sas.v1 is supported",
            })
            return
        if txn_id in self._requests:
            return
        request = SasVerificationRequest(self, sender, from_dev, txn_id, VerificationPhase.REQUESTED)
        self._requests[txn_id] = request
        self._supersede(request)
        logger.info("SAS: received verification request from %s (txn=%s)", request.key, txn_id)
        if self._on_request is not None:
            self._on_request(request)

    async def _on_verify_ready(self, evt) -> None:
        request = self._lookup(evt)
        if request is None or request.phase is not VerificationPhase.REQUESTED:
            return
        request.other_device_id = _v_field(evt.content, "from_device") or request.other_device_id
        request.set_phase(VerificationPhase.READY)

    async def _on_verify_start(self, evt) -> None:
        request = self._lookup(evt)
        if request is None:
            return
        async with request.lock:
            await request.handle_start(_v_field(evt.content, "from_device"), evt.content)

    async def _on_verify_accept(self, evt) -> None:
        request = self._lookup(evt)
        if request is None or request.verifier is None:
            return
        async with request.lock:
            await request.verifier.handle_accept(evt.content)

    async def _on_verify_key(self, evt) -> None:
        request = self._lookup(evt)
        if request is None or request.verifier is None:
            return
        async with request.lock:
            await request.verifier.handle_key(evt.content)

    async def _on_verify_mac(self, evt) -> None:
        request = self._lookup(evt)
        if request is None or request.verifier is None:
            return
        async with request.lock:
            await request.verifier.handle_mac(evt.content)

    async def _on_verify_done(self, evt) -> None:
        request = self._lookup(evt)
        if request is None:
            return
        logger.debug("SAS: peer %s sent done (txn=%s)", request.key, request.transaction_id)

    async def _on_verify_cancel(self, evt) -> None:
        request = self._lookup(evt)
        if request is None:
            return
        code = _v_field(evt.content, "code", "m.user")
        logger.info(
            "SAS: verification cancelled by %s (txn=%s): %s",
            request.key, request.transaction_id, _v_field(evt.content, "reason", code),
        )
        request.mark_cancelled(code)
