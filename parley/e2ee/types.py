"""
Shared types for the parley.e2ee package.

The E2EE core (verification, decrypt retry, bootstrap, key backup) is written
against the ``CryptoBackend`` / ``VerificationRequest`` / ``Verifier``
protocols below and never imports mautrix directly.  The concrete mautrix
implementation lives in ``parley.backends.mautrix_crypto`` and
``parley.backends.mautrix_sas``.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol


class CryptoInitError(RuntimeError):
    """The crypto engine could not be initialised.  Fatal at startup."""


class UnsupportedOperation(Exception):
    """The crypto backend does not implement the requested operation."""


class RecoveryKeyError(ValueError):
    """A recovery key string could not be decoded."""


class InitialSyncTimeout(TimeoutError):
    """The transport did not complete its first sync in time.  Fatal at startup."""


class VerificationPhase(enum.Enum):
    UNSENT = "unsent"
    REQUESTED = "requested"
    READY = "ready"
    STARTED = "started"
    CANCELLED = "cancelled"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationPhase.CANCELLED, VerificationPhase.DONE)


@dataclass
class SasData:
    """Short authentication strings shown to the operator for comparison."""
    emoji: list[tuple[str, str]]             # (symbol, name) pairs, always 7
    decimal: tuple[int, int, int] = (0, 0, 0)


@dataclass
class DeviceInfo:
    user_id: str
    device_id: str
    display_name: str = ""
    verified: bool = False


@dataclass
class BackupInfo:
    """Server-side key backup version as reported by the homeserver."""
    version: str
    algorithm: str
    auth_data: dict = field(default_factory=dict)
    count: int = 0
    etag: str = ""
    trusted: bool = False


@dataclass
class CryptoCapabilities:
    """What the crypto backend can do, captured once after init.

    Consumers branch on these flags instead of probing the backend for
    optional methods, so every "unsupported" fallback path is enumerable.
    """
    room_key_requests: bool = False
    key_backup: bool = False
    secret_storage: bool = False
    cross_signing: bool = False
    room_keys_updated_callback: bool = False
    import_room_keys: bool = False
    sas_verification: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "room_key_requests": self.room_key_requests,
            "key_backup": self.key_backup,
            "secret_storage": self.secret_storage,
            "cross_signing": self.cross_signing,
            "room_keys_updated_callback": self.room_keys_updated_callback,
            "import_room_keys": self.import_room_keys,
            "sas_verification": self.sas_verification,
        }


@dataclass
class CryptoIdentityState:
    """Process-wide crypto identity status, mutated by bootstrap in order."""
    initialized: bool = False
    keys_uploaded: bool = False
    secret_storage_ready: bool = False
    cross_signing_ready: bool = False
    trust_on_first_use: bool = False
    backup_enabled: bool = False
    backup_version: str = ""
    capabilities: CryptoCapabilities = field(default_factory=CryptoCapabilities)


@dataclass
class E2EETimings:
    """Fixed-delay heuristics that stand in for missing completion signals.

    All values are seconds except ``discovery_attempts``.
    """
    ready_poll_seconds: float = 1.0
    device_keys_settle_seconds: float = 0.5
    upload_settle_seconds: float = 2.0
    device_list_settle_seconds: float = 2.0
    auto_confirm_seconds: float = 5.0
    discovery_attempts: int = 5
    discovery_backoff_seconds: float = 3.0
    pending_retention_seconds: float = 300.0

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "E2EETimings":
        raw = raw or {}
        kwargs: dict[str, Any] = {}
        for name, default in cls().__dict__.items():
            if name in raw and raw[name] is not None:
                kwargs[name] = type(default)(raw[name])
        return cls(**kwargs)


@dataclass
class PendingEncryptedEvent:
    """An encrypted room event that could not be decrypted at last check."""
    event_id: str
    room_id: str
    session_id: str
    sender_key: str
    algorithm: str
    received_at: float                  # origin_server_ts in seconds
    sender: str = ""
    event: Any = None                   # the raw encrypted event, kept for retries

    def age(self, now: float) -> float:
        return now - self.received_at


@dataclass
class VerificationSession:
    """One (peer user, peer device) verification in progress.

    The guard flags are flipped synchronously (no await between the check and
    the set), which is what makes each transition fire at most once when the
    change notification and the timeout poll race each other.
    """
    user_id: str
    device_id: str
    request: "VerificationRequest"
    phase: VerificationPhase = VerificationPhase.UNSENT
    verifier: Optional["Verifier"] = None
    sas: Optional[SasData] = None
    initiated_by_us: bool = False
    created_at: float = field(default_factory=time.time)
    ready_handled: bool = False
    sas_started: bool = False
    confirm_scheduled: bool = False
    confirmed: bool = False
    completed: bool = False
    cancelled: bool = False
    cancel_reason: str = ""
    unsubscribe: Optional[Callable[[], None]] = None
    ready_poll: Any = None              # asyncio.TimerHandle for the accept->ready poll

    @property
    def key(self) -> str:
        return f"{self.user_id}|{self.device_id}"

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal or self.completed or self.cancelled


# ---------------------------------------------------------------------------
# Transport protocols
# ---------------------------------------------------------------------------

class Verifier(Protocol):
    """The SAS key-exchange sub-protocol for one verification request."""

    async def verify(self) -> None: ...

    async def confirm(self) -> None: ...

    async def mismatch(self) -> None: ...

    async def cancel(self, code: str = "m.user", reason: str = "") -> None: ...

    def on_show_sas(self, callback: Callable[[SasData], None]) -> None: ...

    def on_cancel(self, callback: Callable[[str], None]) -> None: ...

    @property
    def sas_data(self) -> Optional[SasData]: ...


class VerificationRequest(Protocol):
    """A verification request as tracked by the transport."""

    other_user_id: str
    other_device_id: str
    transaction_id: str

    @property
    def phase(self) -> VerificationPhase: ...

    @property
    def verifier(self) -> Optional[Verifier]: ...

    @property
    def cancellation_code(self) -> str: ...

    async def accept(self) -> None: ...

    async def start_verification(self, method: str) -> Verifier: ...

    async def cancel(self, code: str = "m.user", reason: str = "") -> None: ...

    def on_change(self, callback: Callable[[], None]) -> Callable[[], None]: ...


class CryptoBackend(Protocol):
    """Everything the E2EE core needs from the crypto engine and transport."""

    @property
    def capabilities(self) -> CryptoCapabilities: ...

    async def init(self, store_path: str) -> None: ...

    async def upload_keys(self) -> None: ...

    async def get_user_devices(self, user_id: str, download: bool = False) -> dict[str, DeviceInfo]: ...

    async def is_device_verified(self, user_id: str, device_id: str) -> bool: ...

    async def set_device_verified(self, user_id: str, device_id: str, verified: bool = True) -> None: ...

    async def store_backup_private_key(self, private_key: bytes) -> None: ...

    async def bootstrap_secret_storage(self) -> None: ...

    async def bootstrap_cross_signing(self, recovery_key: str, read_only: bool = True) -> None: ...

    async def set_trust_cross_signed_devices(self, trust: bool) -> None: ...

    async def set_block_unverified_devices(self, block: bool) -> None: ...

    async def check_key_backup(self) -> Optional[BackupInfo]: ...

    async def restore_key_backup(self, private_key: bytes, backup: BackupInfo) -> int: ...

    async def import_room_keys(self, keys: list[dict]) -> int: ...

    async def request_room_key(self, pending: PendingEncryptedEvent) -> None: ...

    async def decrypt_event(self, event: Any) -> Any: ...

    def observe_decryption(self, event: Any, callback: Callable[[Any], None]) -> None: ...

    async def request_device_verification(self, user_id: str, device_id: str) -> VerificationRequest: ...

    def on_verification_request(self, callback: Callable[[VerificationRequest], None]) -> None: ...

    def on_room_keys_updated(self, callback: Callable[[], None]) -> None: ...
