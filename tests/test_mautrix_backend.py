"""
Tests for the mautrix crypto backend against a real PgCryptoStore on SQLite
and real olm sessions: device trust, room key import and backup restore.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import olm
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import x25519
from mautrix.errors import MNotFound
from mautrix.types import (
    DeviceID,
    DeviceIdentity,
    IdentityKey,
    RoomID,
    SessionID,
    SigningKey,
    TrustState,
    UserID,
)

from conftest import encrypt_for_backup
from parley.backends.mautrix_crypto import (
    BACKUP_ALGORITHM,
    CryptoMemoryStateStore,
    MautrixCryptoBackend,
    backup_public_key,
)
from parley.e2ee.types import BackupInfo

OWN_USER = "@parley:example.org"
OWN_DEVICE = "BOTDEVICE"
PEER = "@alice:example.org"
ROOM = "!room:example.org"
SENDER_KEY = "aliceCurve25519IdentityKey"
PRIVATE_KEY = bytes(range(32))


def identity(device_id: str, trust: TrustState = TrustState.UNVERIFIED, name: str = "") -> DeviceIdentity:
    return DeviceIdentity(
        user_id=UserID(PEER),
        device_id=DeviceID(device_id),
        identity_key=IdentityKey(f"curve-{device_id}"),
        signing_key=SigningKey(f"ed-{device_id}"),
        trust=trust,
        deleted=False,
        name=name,
    )


def exported_room_key(session_id_override: str = "") -> dict:
    """A megolm session exported at index 0, as found in key exports."""
    outbound = olm.OutboundGroupSession()
    inbound = olm.InboundGroupSession(outbound.session_key)
    return {
        "algorithm": "m.megolm.v1.aes-sha2",
        "room_id": ROOM,
        "session_id": session_id_override or outbound.id,
        "session_key": inbound.export_session(0),
        "sender_key": SENDER_KEY,
        "sender_claimed_keys": {"ed25519": "aliceEd25519Key"},
        "forwarding_curve25519_key_chain": [],
    }


@pytest_asyncio.fixture
async def crypto(tmp_path):
    client = MagicMock()
    client.state_store = CryptoMemoryStateStore()
    client.api.request = AsyncMock()
    backend = MautrixCryptoBackend(client, OWN_USER, OWN_DEVICE)
    await backend.init(str(tmp_path / "crypto.db"))
    # No homeserver: key queries find nothing new.
    backend.olm._fetch_keys = AsyncMock(return_value={})
    yield backend
    await backend.close()


class TestDeviceTrust:

    @pytest.mark.asyncio
    async def test_get_user_devices_reports_trust(self, crypto):
        await crypto._store.put_devices(UserID(PEER), {
            DeviceID("PHONE"): identity("PHONE", TrustState.VERIFIED, name="Element iOS"),
            DeviceID("LAPTOP"): identity("LAPTOP"),
        })

        devices = await crypto.get_user_devices(PEER, download=True)

        assert set(devices) == {"PHONE", "LAPTOP"}
        assert devices["PHONE"].verified
        assert devices["PHONE"].display_name == "Element iOS"
        assert not devices["LAPTOP"].verified

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_devices(self, crypto):
        assert await crypto.get_user_devices("@nobody:example.org") == {}

    @pytest.mark.asyncio
    async def test_is_device_verified(self, crypto):
        await crypto._store.put_devices(UserID(PEER), {
            DeviceID("PHONE"): identity("PHONE", TrustState.VERIFIED),
            DeviceID("LAPTOP"): identity("LAPTOP"),
        })
        assert await crypto.is_device_verified(PEER, "PHONE")
        assert not await crypto.is_device_verified(PEER, "LAPTOP")
        assert not await crypto.is_device_verified(PEER, "GONE")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("trust, tofu, expected", [
        (TrustState.CROSS_SIGNED_TRUSTED, False, True),
        (TrustState.CROSS_SIGNED_TOFU, False, False),
        (TrustState.CROSS_SIGNED_TOFU, True, True),
        (TrustState.CROSS_SIGNED_UNTRUSTED, True, False),
    ])
    async def test_cross_signed_trust_levels(self, crypto, trust, tofu, expected):
        await crypto._store.put_devices(UserID(PEER), {DeviceID("PHONE"): identity("PHONE")})
        crypto.olm.resolve_trust = AsyncMock(return_value=trust)
        await crypto.set_trust_cross_signed_devices(tofu)

        assert await crypto.is_device_verified(PEER, "PHONE") is expected

    @pytest.mark.asyncio
    async def test_set_device_verified_persists(self, crypto):
        await crypto._store.put_devices(UserID(PEER), {
            DeviceID("PHONE"): identity("PHONE"),
            DeviceID("LAPTOP"): identity("LAPTOP"),
        })

        await crypto.set_device_verified(PEER, "LAPTOP", True)

        devices = await crypto.get_user_devices(PEER)
        assert devices["LAPTOP"].verified
        assert not devices["PHONE"].verified

    @pytest.mark.asyncio
    async def test_set_device_verified_unknown_device(self, crypto):
        with pytest.raises(ValueError, match="unknown device"):
            await crypto.set_device_verified(PEER, "GONE", True)


class TestRoomKeyImport:

    @pytest.mark.asyncio
    async def test_exported_session_is_stored(self, crypto):
        key = exported_room_key()

        assert await crypto.import_room_keys([key]) == 1

        session_id = SessionID(key["session_id"])
        assert await crypto._store.has_group_session(RoomID(ROOM), session_id)
        stored = await crypto._store.get_group_session(RoomID(ROOM), session_id)
        assert stored.sender_key == SENDER_KEY
        assert stored.signing_key == "aliceEd25519Key"

        # Already known: not counted again.
        assert await crypto.import_room_keys([key]) == 0

    @pytest.mark.asyncio
    async def test_mismatched_session_id_is_skipped(self, crypto):
        good = exported_room_key()
        bad = exported_room_key(session_id_override="not-the-real-id")
        assert await crypto.import_room_keys([bad, good]) == 1

    @pytest.mark.asyncio
    async def test_import_wakes_session_waiters(self, crypto):
        key = exported_room_key()
        waiter = asyncio.create_task(
            crypto.olm.wait_for_session(RoomID(ROOM), SessionID(key["session_id"]), timeout=30),
        )
        await asyncio.sleep(0)

        await crypto.import_room_keys([key])
        assert await asyncio.wait_for(waiter, 1) is True


class TestServerBackup:

    def backup_version(self, public_key: str) -> dict:
        return {
            "algorithm": BACKUP_ALGORITHM,
            "version": "4",
            "count": 2,
            "etag": "e1",
            "auth_data": {"public_key": public_key},
        }

    @pytest.mark.asyncio
    async def test_check_key_backup_trust_follows_private_key(self, crypto):
        crypto._client.api.request.return_value = self.backup_version(backup_public_key(PRIVATE_KEY))

        untrusted = await crypto.check_key_backup()
        assert untrusted.version == "4" and not untrusted.trusted

        await crypto.store_backup_private_key(PRIVATE_KEY)
        trusted = await crypto.check_key_backup()
        assert trusted.trusted and trusted.count == 2

    @pytest.mark.asyncio
    async def test_missing_backup(self, crypto):
        crypto._client.api.request.side_effect = MNotFound(404, "No current backup version")
        assert await crypto.check_key_backup() is None

    @pytest.mark.asyncio
    async def test_restore_key_backup_imports_sessions(self, crypto):
        public_key = x25519.X25519PrivateKey.from_private_bytes(PRIVATE_KEY).public_key()
        key = exported_room_key()
        payload = {k: v for k, v in key.items() if k not in ("room_id", "session_id")}
        crypto._client.api.request.return_value = {"rooms": {ROOM: {"sessions": {
            key["session_id"]: {"session_data": encrypt_for_backup(public_key, payload)},
            "garbage": {"session_data": {"ephemeral": "AAAA", "ciphertext": "AAAA", "mac": "AAAA"}},
        }}}}
        backup = BackupInfo(version="4", algorithm=BACKUP_ALGORITHM, trusted=True)

        assert await crypto.restore_key_backup(PRIVATE_KEY, backup) == 1
        assert await crypto._store.has_group_session(RoomID(ROOM), SessionID(key["session_id"]))
