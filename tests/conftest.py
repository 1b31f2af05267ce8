"""
Shared fixtures: in-memory fakes of the crypto backend and the verification
transport, plus timings shrunk so the flows complete in milliseconds.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from typing import Any, Callable, Optional

import pytest
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from parley.e2ee.types import (
    BackupInfo,
    CryptoCapabilities,
    DeviceInfo,
    E2EETimings,
    PendingEncryptedEvent,
    SasData,
    VerificationPhase,
)

SEVEN_EMOJI = [
    ("🐶", "Dog"), ("🐱", "Cat"), ("🦁", "Lion"), ("🐎", "Horse"),
    ("🦄", "Unicorn"), ("🐷", "Pig"), ("🐘", "Elephant"),
]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate* holds or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)


class FakeVerifier:

    def __init__(self) -> None:
        self._show_cbs: list[Callable[[SasData], None]] = []
        self._cancel_cbs: list[Callable[[str], None]] = []
        self._sas: Optional[SasData] = None
        self.verify_calls = 0
        self.confirm_calls = 0
        self.confirmed_at: Optional[float] = None
        self.mismatch_calls = 0
        self.cancel_calls: list[str] = []
        self.confirm_error: Optional[Exception] = None

    @property
    def sas_data(self) -> Optional[SasData]:
        return self._sas

    def on_show_sas(self, callback) -> None:
        self._show_cbs.append(callback)

    def on_cancel(self, callback) -> None:
        self._cancel_cbs.append(callback)

    async def verify(self) -> None:
        self.verify_calls += 1

    async def confirm(self) -> None:
        self.confirm_calls += 1
        self.confirmed_at = time.monotonic()
        if self.confirm_error is not None:
            raise self.confirm_error

    async def mismatch(self) -> None:
        self.mismatch_calls += 1

    async def cancel(self, code: str = "m.user", reason: str = "") -> None:
        self.cancel_calls.append(code)

    # test drivers
    def show(self, emoji=None) -> SasData:
        self._sas = SasData(emoji=list(emoji or SEVEN_EMOJI), decimal=(1234, 2345, 3456))
        for cb in list(self._show_cbs):
            cb(self._sas)
        return self._sas

    def fire_cancel(self, reason: str) -> None:
        for cb in list(self._cancel_cbs):
            cb(reason)


class FakeRequest:
    """Verification request as the transport would report it.

    ``ready_on_accept``: the peer answers our accept by moving to Ready.
    ``notify_ready``: whether that move is announced via ``on_change``
    (False simulates a dropped notification, so only the poll sees it).
    """

    def __init__(
        self,
        user_id: str,
        device_id: str,
        phase: VerificationPhase = VerificationPhase.REQUESTED,
        transaction_id: str = "txn-1",
        ready_on_accept: bool = True,
        notify_ready: bool = True,
    ) -> None:
        self.other_user_id = user_id
        self.other_device_id = device_id
        self.transaction_id = transaction_id
        self._phase = phase
        self._verifier: Optional[FakeVerifier] = None
        self._code = ""
        self._listeners: list[Callable[[], None]] = []
        self.ready_on_accept = ready_on_accept
        self.notify_ready = notify_ready
        self.accept_calls = 0
        self.start_calls = 0
        self.cancel_calls: list[str] = []
        self.accept_error: Optional[Exception] = None

    @property
    def phase(self) -> VerificationPhase:
        return self._phase

    @property
    def verifier(self) -> Optional[FakeVerifier]:
        return self._verifier

    @property
    def cancellation_code(self) -> str:
        return self._code

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def on_change(self, callback):
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _unsubscribe

    def notify(self) -> None:
        for cb in list(self._listeners):
            cb()

    def set_phase(self, phase: VerificationPhase, code: str = "", notify: bool = True) -> None:
        self._phase = phase
        if code:
            self._code = code
        if notify:
            self.notify()

    async def accept(self) -> None:
        self.accept_calls += 1
        if self.accept_error is not None:
            raise self.accept_error
        if self.ready_on_accept:
            self.set_phase(VerificationPhase.READY, notify=self.notify_ready)

    async def start_verification(self, method: str) -> FakeVerifier:
        self.start_calls += 1
        self._verifier = FakeVerifier()
        self.set_phase(VerificationPhase.STARTED)
        return self._verifier

    async def cancel(self, code: str = "m.user", reason: str = "") -> None:
        self.cancel_calls.append(code)
        self.set_phase(VerificationPhase.CANCELLED, code)

    def attach_peer_verifier(self) -> FakeVerifier:
        """The peer sends m.key.verification.start first."""
        self._verifier = FakeVerifier()
        return self._verifier


class FakeBackend:
    """CryptoBackend double that records every call."""

    def __init__(self) -> None:
        self.capabilities = CryptoCapabilities(
            room_key_requests=True,
            key_backup=True,
            secret_storage=True,
            cross_signing=True,
            room_keys_updated_callback=True,
            import_room_keys=True,
            sas_verification=True,
        )
        self.calls: list[tuple] = []
        self.errors: dict[str, Exception] = {}
        self.devices: dict[str, dict[str, DeviceInfo]] = {}
        self.device_responses: list[dict[str, DeviceInfo]] = []
        self.decryptable: dict[str, Any] = {}
        self.observers: dict[str, Callable[[Any], None]] = {}
        self.backup: Optional[BackupInfo] = None
        self.restore_count = 0
        self.imported: list[dict] = []
        self.requests: list[FakeRequest] = []
        self.request_callbacks: list[Callable] = []
        self.room_key_callbacks: list[Callable] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.errors:
            raise self.errors[name]

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def init(self, store_path: str) -> None:
        self._record("init", store_path)

    async def upload_keys(self) -> None:
        self._record("upload_keys")

    async def get_user_devices(self, user_id: str, download: bool = False) -> dict[str, DeviceInfo]:
        self._record("get_user_devices", user_id, download)
        if self.device_responses:
            return self.device_responses.pop(0)
        return dict(self.devices.get(user_id, {}))

    async def is_device_verified(self, user_id: str, device_id: str) -> bool:
        self._record("is_device_verified", user_id, device_id)
        info = self.devices.get(user_id, {}).get(device_id)
        return bool(info and info.verified)

    async def set_device_verified(self, user_id: str, device_id: str, verified: bool = True) -> None:
        self._record("set_device_verified", user_id, device_id, verified)

    async def store_backup_private_key(self, private_key: bytes) -> None:
        self._record("store_backup_private_key", private_key)

    async def bootstrap_secret_storage(self) -> None:
        self._record("bootstrap_secret_storage")

    async def bootstrap_cross_signing(self, recovery_key: str, read_only: bool = True) -> None:
        self._record("bootstrap_cross_signing", read_only)

    async def set_trust_cross_signed_devices(self, trust: bool) -> None:
        self._record("set_trust_cross_signed_devices", trust)

    async def set_block_unverified_devices(self, block: bool) -> None:
        self._record("set_block_unverified_devices", block)

    async def check_key_backup(self) -> Optional[BackupInfo]:
        self._record("check_key_backup")
        return self.backup

    async def restore_key_backup(self, private_key: bytes, backup: BackupInfo) -> int:
        self._record("restore_key_backup", backup.version)
        return self.restore_count

    async def import_room_keys(self, keys: list[dict]) -> int:
        self._record("import_room_keys", len(keys))
        self.imported.extend(keys)
        return len(keys)

    async def request_room_key(self, pending: PendingEncryptedEvent) -> None:
        self._record("request_room_key", pending.session_id)

    async def decrypt_event(self, event: Any) -> Any:
        self._record("decrypt_event", event.event_id)
        return self.decryptable.get(event.event_id)

    def observe_decryption(self, event: Any, callback: Callable[[Any], None]) -> None:
        self.observers[event.event_id] = callback

    async def request_device_verification(self, user_id: str, device_id: str) -> FakeRequest:
        self._record("request_device_verification", user_id, device_id)
        request = FakeRequest(
            user_id, device_id,
            transaction_id=f"txn-{len(self.requests) + 1}",
            ready_on_accept=False,
        )
        self.requests.append(request)
        return request

    def on_verification_request(self, callback) -> None:
        self.request_callbacks.append(callback)

    def on_room_keys_updated(self, callback) -> None:
        self.room_key_callbacks.append(callback)


def encrypted_event(event_id: str, session_id: str = "sess-1", ts: Optional[float] = None,
                    room_id: str = "!room:example.org", sender: str = "@alice:example.org"):
    """A minimal m.room.encrypted event; *ts* in seconds."""
    ts = time.time() if ts is None else ts
    return SimpleNamespace(
        event_id=event_id,
        room_id=room_id,
        sender=sender,
        timestamp=int(ts * 1000),
        content={
            "algorithm": "m.megolm.v1.aes-sha2",
            "session_id": session_id,
            "sender_key": "curve-key",
            "ciphertext": "AwgAEn...",
        },
    )


def clear_event(event_id: str, body: str = "hello"):
    return SimpleNamespace(event_id=event_id, content={"msgtype": "m.text", "body": body})


def encrypt_for_backup(public_key: x25519.X25519PublicKey, payload: dict, mac_empty: bool = True) -> dict:
    """Encrypt *payload* the way a client uploads a session to the key backup."""
    ephemeral = x25519.X25519PrivateKey.generate()
    shared = ephemeral.exchange(public_key)
    material = HKDF(algorithm=hashes.SHA256(), length=80, salt=bytes(32), info=b"").derive(shared)
    aes_key, mac_key, iv = material[:32], material[32:64], material[64:80]

    padder = padding.PKCS7(128).padder()
    padded = padder.update(json.dumps(payload).encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    mac = hmac.new(mac_key, b"" if mac_empty else ciphertext, hashlib.sha256).digest()[:8]

    def b64(data: bytes) -> str:
        return base64.b64encode(data).decode().rstrip("=")

    return {
        "ephemeral": b64(ephemeral.public_key().public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw,
        )),
        "ciphertext": b64(ciphertext),
        "mac": b64(mac),
    }


@pytest.fixture
def fast_timings() -> E2EETimings:
    return E2EETimings(
        ready_poll_seconds=0.02,
        device_keys_settle_seconds=0.0,
        upload_settle_seconds=0.0,
        device_list_settle_seconds=0.0,
        auto_confirm_seconds=0.05,
        discovery_attempts=5,
        discovery_backoff_seconds=0.001,
        pending_retention_seconds=300.0,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    from parley.infra import database
    monkeypatch.setattr(database, "CONVERSATION_DB", tmp_path / "conversation.db")
    database.init_db()
    return database
