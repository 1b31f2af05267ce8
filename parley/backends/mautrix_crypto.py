"""
mautrix-python implementation of :class:`parley.e2ee.types.CryptoBackend`.

Wraps an ``OlmMachine`` backed by a SQLite ``PgCryptoStore`` (so the device
identity survives restarts).  mautrix's stock ``DecryptionDispatcher`` is
removed: encrypted room events are handed to the decrypt retry pipeline
instead of being dropped when their session is missing.

Server-side key backup (m.megolm_backup.v1.curve25519-aes-sha2) is read
directly over the client-server API and decrypted with ``cryptography``,
since OlmMachine only understands sessions, not backups.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from mautrix.api import Method, Path as ApiPath
from mautrix.client import Client
from mautrix.client.encryption_manager import DecryptionDispatcher
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.crypto import OlmMachine
from mautrix.crypto.sessions import InboundGroupSession
from mautrix.crypto.store import PgCryptoStore
from mautrix.errors import DecryptionError, MNotFound, SessionNotFound
from mautrix.types import DeviceID, IdentityKey, RoomID, SessionID, TrustState, UserID
from mautrix.util.async_db import Database

from parley.backends.mautrix_sas import SasManager, SasVerificationRequest
from parley.e2ee.types import (
    BackupInfo,
    CryptoCapabilities,
    DeviceInfo,
    E2EETimings,
    PendingEncryptedEvent,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)

CRYPTO_PICKLE_KEY = "parley"
BACKUP_ALGORITHM = "m.megolm_backup.v1.curve25519-aes-sha2"
_REQUESTED_SESSIONS_LIMIT = 500


class CryptoMemoryStateStore(MemoryStateStore):
    """MemoryStateStore extended with the find_shared_rooms method needed
    by OlmMachine for key-sharing decisions."""

    async def find_shared_rooms(self, user_id: UserID) -> list[RoomID]:
        return [
            room_id
            for room_id, members in self.members.items()
            if user_id in members
        ]


class NotifyingCryptoStore(PgCryptoStore):
    """PgCryptoStore that reports every newly stored group session.

    Room keys reach the store through several paths (m.room_key,
    m.forwarded_room_key, backup restore, export import); hooking the store
    is the one place that sees them all.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.listeners: list[Callable[[], None]] = []
        self.muted = 0

    async def put_group_session(self, *args: Any, **kwargs: Any) -> None:
        await super().put_group_session(*args, **kwargs)
        if self.muted:
            return
        for cb in list(self.listeners):
            try:
                cb()
            except Exception:  # noqa: BLE001
                logger.exception("Crypto: room-keys listener raised")


def _unpadded_b64decode(value: str) -> bytes:
    return base64.b64decode(value + "=" * (-len(value) % 4))


def backup_public_key(private_key: bytes) -> str:
    """Unpadded base64 of the X25519 public key for a backup private key."""
    priv = x25519.X25519PrivateKey.from_private_bytes(private_key)
    raw = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode().rstrip("=")


def decrypt_backup_session(private_key: bytes, session_data: dict) -> dict:
    """Decrypt one m.megolm_backup.v1.curve25519-aes-sha2 ``session_data``.

    Raises ValueError on a MAC mismatch or malformed payload.
    """
    ephemeral = _unpadded_b64decode(session_data["ephemeral"])
    ciphertext = _unpadded_b64decode(session_data["ciphertext"])
    mac = _unpadded_b64decode(session_data["mac"])

    shared = x25519.X25519PrivateKey.from_private_bytes(private_key).exchange(
        x25519.X25519PublicKey.from_public_bytes(ephemeral),
    )
    material = HKDF(algorithm=hashes.SHA256(), length=80, salt=bytes(32), info=b"").derive(shared)
    aes_key, mac_key, iv = material[:32], material[32:64], material[64:80]

    # libolm MACs an empty buffer instead of the ciphertext; accept both.
    candidates = (ciphertext, b"")
    if not any(
        hmac.compare_digest(hmac.new(mac_key, data, hashlib.sha256).digest()[:8], mac)
        for data in candidates
    ):
        raise ValueError("backup session MAC mismatch")

    decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    plaintext = unpadder.update(padded) + unpadder.finalize()
    return json.loads(plaintext)


class MautrixCryptoBackend:
    """CryptoBackend over mautrix's OlmMachine."""

    def __init__(
        self,
        client: Client,
        user_id: str,
        device_id: str,
        timings: Optional[E2EETimings] = None,
        pickle_key: str = CRYPTO_PICKLE_KEY,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._device_id = device_id
        self._timings = timings or E2EETimings()
        self._pickle_key = pickle_key
        self._db: Optional[Database] = None
        self._store: Optional[NotifyingCryptoStore] = None
        self._olm: Optional[OlmMachine] = None
        self._backup_key: Optional[bytes] = None
        self._trust_cross_signed = False
        self._requested_sessions: dict[str, None] = {}  # ordered dict as LRU set
        self._room_key_listeners: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()
        self._sas = SasManager(
            client,
            user_id,
            device_id,
            signing_key=lambda: self.olm.account.signing_key,
            get_device_key=self._get_device_signing_key,
            mark_verified=lambda user, dev: self.set_device_verified(user, dev, True),
        )
        if SasManager.available():
            self._sas.register(client)
        self._capabilities = CryptoCapabilities()

    @property
    def olm(self) -> OlmMachine:
        if self._olm is None:
            raise RuntimeError("crypto backend used before init()")
        return self._olm

    @property
    def capabilities(self) -> CryptoCapabilities:
        return self._capabilities

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, store_path: str) -> None:
        path = Path(store_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        db = Database.create(
            f"sqlite:///{path.resolve()}",
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await db.start()
        self._db = db

        store = NotifyingCryptoStore(
            account_id=self._user_id,
            pickle_key=self._pickle_key,
            db=db,
        )
        store.listeners.append(self._on_group_session_stored)
        self._store = store

        olm = OlmMachine(
            client=self._client,
            crypto_store=store,
            state_store=self._client.state_store,
        )
        await olm.load()
        self._olm = olm

        # Wire crypto into the client for transparent encryption of outgoing
        # messages, but take over decryption of incoming ones.
        self._client.crypto = olm
        self._client.sync_store = store
        self._client.remove_dispatcher(DecryptionDispatcher)

        self._capabilities = CryptoCapabilities(
            room_key_requests=True,
            key_backup=True,
            secret_storage=True,
            cross_signing=True,
            room_keys_updated_callback=True,
            import_room_keys=True,
            sas_verification=SasManager.available(),
        )
        logger.info("Crypto: OlmMachine loaded (device=%s, store=%s)", self._device_id, path)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._db is not None:
            await self._db.stop()
            self._db = None

    async def upload_keys(self) -> None:
        await self.olm.share_keys()

    # ------------------------------------------------------------------
    # Devices and trust
    # ------------------------------------------------------------------

    async def get_user_devices(self, user_id: str, download: bool = False) -> dict[str, DeviceInfo]:
        uid = UserID(user_id)
        if download:
            try:
                await self.olm._fetch_keys([uid], include_untracked=True)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Crypto: device key download for %s failed: %s", user_id, exc)
        devices = await self._store.get_devices(uid) or {}
        result: dict[str, DeviceInfo] = {}
        for device_id, identity in devices.items():
            if getattr(identity, "deleted", False):
                continue
            result[str(device_id)] = DeviceInfo(
                user_id=user_id,
                device_id=str(device_id),
                display_name=getattr(identity, "name", "") or "",
                verified=await self._is_trusted(identity),
            )
        return result

    async def _is_trusted(self, identity) -> bool:
        trust = await self.olm.resolve_trust(identity)
        if trust >= TrustState.CROSS_SIGNED_TRUSTED:
            return True
        return self._trust_cross_signed and trust >= TrustState.CROSS_SIGNED_TOFU

    async def is_device_verified(self, user_id: str, device_id: str) -> bool:
        identity = await self.olm.get_or_fetch_device(UserID(user_id), DeviceID(device_id))
        if identity is None:
            return False
        return await self._is_trusted(identity)

    async def set_device_verified(self, user_id: str, device_id: str, verified: bool = True) -> None:
        uid = UserID(user_id)
        devices = await self._store.get_devices(uid) or {}
        identity = devices.get(DeviceID(device_id))
        if identity is None:
            identity = await self.olm.get_or_fetch_device(uid, DeviceID(device_id))
            if identity is None:
                raise ValueError(f"unknown device {user_id}/{device_id}")
            devices[DeviceID(device_id)] = identity
        identity.trust = TrustState.VERIFIED if verified else TrustState.UNVERIFIED
        await self._store.put_devices(uid, devices)
        logger.info("Crypto: marked %s/%s as %s", user_id, device_id, "verified" if verified else "unverified")

    async def _get_device_signing_key(self, user_id: str, device_id: str) -> Optional[str]:
        identity = await self.olm.get_or_fetch_device(UserID(user_id), DeviceID(device_id))
        return str(identity.signing_key) if identity is not None else None

    async def set_trust_cross_signed_devices(self, trust: bool) -> None:
        self._trust_cross_signed = trust
        self.olm.share_keys_min_trust = (
            TrustState.CROSS_SIGNED_TOFU if trust else TrustState.VERIFIED
        )

    async def set_block_unverified_devices(self, block: bool) -> None:
        self.olm.send_keys_min_trust = TrustState.VERIFIED if block else TrustState.UNVERIFIED
        if not block:
            self.olm.share_keys_min_trust = TrustState.UNVERIFIED

    # ------------------------------------------------------------------
    # Secret storage / cross-signing
    # ------------------------------------------------------------------

    async def store_backup_private_key(self, private_key: bytes) -> None:
        self._backup_key = private_key

    async def bootstrap_secret_storage(self) -> None:
        try:
            await self._client.get_account_data("m.secret_storage.default_key")
        except MNotFound:
            raise UnsupportedOperation(
                "secret storage is not set up for this account; create it from another client"
            ) from None
        logger.info("Crypto: secret storage already provisioned")

    async def bootstrap_cross_signing(self, recovery_key: str, read_only: bool = True) -> None:
        if not read_only:
            raise UnsupportedOperation("only read-only cross-signing bootstrap is supported")
        # Pulls the existing cross-signing keys out of secret storage and
        # signs this device with them.
        await self.olm.verify_with_recovery_key(recovery_key)
        logger.info("Crypto: device cross-signed with existing identity")

    # ------------------------------------------------------------------
    # Key backup / import
    # ------------------------------------------------------------------

    async def check_key_backup(self) -> Optional[BackupInfo]:
        try:
            resp = await self._client.api.request(Method.GET, ApiPath.v3.room_keys.version)
        except MNotFound:
            return None
        if resp.get("algorithm") != BACKUP_ALGORITHM:
            logger.warning("Backup: unsupported backup algorithm %s", resp.get("algorithm"))
            return None
        auth_data = resp.get("auth_data") or {}
        trusted = False
        if self._backup_key is not None:
            trusted = backup_public_key(self._backup_key) == auth_data.get("public_key", "").rstrip("=")
        return BackupInfo(
            version=str(resp.get("version", "")),
            algorithm=resp["algorithm"],
            auth_data=auth_data,
            count=int(resp.get("count", 0)),
            etag=str(resp.get("etag", "")),
            trusted=trusted,
        )

    async def restore_key_backup(self, private_key: bytes, backup: BackupInfo) -> int:
        resp = await self._client.api.request(
            Method.GET, ApiPath.v3.room_keys.keys, query_params={"version": backup.version},
        )
        restored = failed = 0
        self._store.muted += 1
        try:
            for room_id, room_data in (resp.get("rooms") or {}).items():
                for session_id, entry in (room_data.get("sessions") or {}).items():
                    try:
                        data = decrypt_backup_session(private_key, entry["session_data"])
                        if await self._import_session(room_id, session_id, data):
                            restored += 1
                    except Exception as exc:  # noqa: BLE001
                        failed += 1
                        logger.debug("Backup: session %.16s in %s failed: %s", session_id, room_id, exc)
        finally:
            self._store.muted -= 1
        if failed:
            logger.warning("Backup: %d session(s) could not be decrypted", failed)
        return restored

    async def import_room_keys(self, keys: list[dict]) -> int:
        imported = 0
        self._store.muted += 1
        try:
            for key in keys:
                try:
                    if await self._import_session(key["room_id"], key["session_id"], key):
                        imported += 1
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Crypto: importing session %.16s failed: %s", key.get("session_id", ""), exc)
        finally:
            self._store.muted -= 1
        return imported

    async def _import_session(self, room_id: str, session_id: str, data: dict) -> bool:
        """Store one exported session.  Returns False if it was already known."""
        if await self._store.has_group_session(RoomID(room_id), SessionID(session_id)):
            return False
        sender_key = IdentityKey(data.get("sender_key", ""))
        session = InboundGroupSession.import_session(
            session_key=data["session_key"],
            signing_key=(data.get("sender_claimed_keys") or {}).get("ed25519", ""),
            sender_key=sender_key,
            room_id=RoomID(room_id),
            forwarding_chain=data.get("forwarding_curve25519_key_chain") or [],
        )
        if session.id != session_id:
            raise ValueError(f"session id mismatch: {session.id} != {session_id}")
        await self._store.put_group_session(RoomID(room_id), sender_key, SessionID(session_id), session)
        self.olm._mark_session_received(SessionID(session_id))
        return True

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    async def request_room_key(self, pending: PendingEncryptedEvent) -> None:
        if pending.session_id in self._requested_sessions:
            return
        self._requested_sessions[pending.session_id] = None
        if len(self._requested_sessions) > _REQUESTED_SESSIONS_LIMIT:
            for k in list(self._requested_sessions)[:_REQUESTED_SESSIONS_LIMIT // 2]:
                self._requested_sessions.pop(k, None)

        devices = await self._store.get_devices(UserID(pending.sender)) if pending.sender else None
        if not devices:
            logger.warning(
                "UTD: no known devices for %s, cannot request key for session %.16s",
                pending.sender or "?", pending.session_id,
            )
            return
        logger.info(
            "UTD: requesting session %.16s for %s from %s (%d device(s))",
            pending.session_id, pending.room_id, pending.sender, len(devices),
        )
        await self.olm.request_room_key(
            room_id=RoomID(pending.room_id),
            sender_key=pending.sender_key,
            session_id=SessionID(pending.session_id),
            from_devices={UserID(pending.sender): list(devices.keys())},
            timeout=30,
        )

    async def decrypt_event(self, event: Any) -> Any:
        try:
            return await self.olm.decrypt_megolm_event(event)
        except SessionNotFound:
            return None
        except DecryptionError as exc:
            logger.debug("Crypto: decrypting %s failed: %s", event.event_id, exc)
            return None

    def observe_decryption(self, event: Any, callback: Callable[[Any], None]) -> None:
        task = asyncio.create_task(self._observe(event, callback), name=f"observe-{str(event.event_id)[-8:]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _observe(self, event: Any, callback: Callable[[Any], None]) -> None:
        session_id = getattr(event.content, "session_id", None)
        if not session_id:
            return
        try:
            arrived = await self.olm.wait_for_session(
                event.room_id, session_id, timeout=self._timings.pending_retention_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Crypto: waiting for session %.16s failed: %s", session_id, exc)
            return
        if not arrived:
            return
        decrypted = await self.decrypt_event(event)
        if decrypted is not None:
            callback(decrypted)

    def _on_group_session_stored(self) -> None:
        for cb in list(self._room_key_listeners):
            cb()

    def on_room_keys_updated(self, callback: Callable[[], None]) -> None:
        self._room_key_listeners.append(callback)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def request_device_verification(self, user_id: str, device_id: str) -> SasVerificationRequest:
        if not self._capabilities.sas_verification:
            raise UnsupportedOperation("python-olm is not installed, SAS verification unavailable")
        return await self._sas.request(user_id, device_id)

    def on_verification_request(self, callback: Callable[[SasVerificationRequest], None]) -> None:
        self._sas.on_request(callback)
