"""
Crypto Bootstrap

Brings the bot's cryptographic identity up exactly once at startup, before
the sync loop starts:

  1. init the crypto engine on its persistent store (fatal on failure)
  2. upload device keys, then wait for them to settle server-side
  3. warm the bot's own device list
  4. with a recovery key: store the backup key, bootstrap secret storage,
     then cross-signing from existing keys only
  5. trust policy: trust cross-signed devices, do not block unverified ones

Steps 2-5 log and continue on failure.  Own-device auto-trust is a separate
post-sync step because the device list is empty before the first sync.
"""

import asyncio
import logging
from typing import Optional

from parley.e2ee.recovery_key import decode_recovery_key
from parley.e2ee.types import (
    CryptoBackend,
    CryptoInitError,
    CryptoIdentityState,
    E2EETimings,
    RecoveryKeyError,
)

logger = logging.getLogger(__name__)


class CryptoBootstrap:

    def __init__(
        self,
        backend: CryptoBackend,
        own_user_id: str,
        own_device_id: str,
        store_path: str,
        recovery_key: str = "",
        timings: Optional[E2EETimings] = None,
    ) -> None:
        self._backend = backend
        self._own_user_id = own_user_id
        self._own_device_id = own_device_id
        self._store_path = store_path
        self._recovery_key = recovery_key
        self._timings = timings or E2EETimings()
        self.state = CryptoIdentityState()
        self._ran = False

    async def run(self) -> CryptoIdentityState:
        """Run steps 1-5.  Raises :class:`CryptoInitError` if step 1 fails."""
        if self._ran:
            return self.state
        self._ran = True

        # 1. Engine + persistent store.
        try:
            await self._backend.init(self._store_path)
        except Exception as exc:
            raise CryptoInitError(f"crypto engine failed to initialise: {exc}") from exc
        self.state.initialized = True
        self.state.capabilities = self._backend.capabilities
        logger.info(
            "Crypto: engine ready for %s/%s (store=%s)",
            self._own_user_id, self._own_device_id, self._store_path,
        )

        # 2. Device keys must be on the server before signatures or trust
        # decisions look them up.
        try:
            await self._backend.upload_keys()
            self.state.keys_uploaded = True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: key upload failed: %s", exc)
        await asyncio.sleep(self._timings.upload_settle_seconds)

        # 3. Warm the own-device cache.
        try:
            devices = await self._backend.get_user_devices(self._own_user_id, download=True)
            logger.debug("Crypto: %d own device(s) known", len(devices))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: own device list fetch failed: %s", exc)

        # 4. Secret storage + cross-signing.
        if self._recovery_key:
            await self._bootstrap_with_recovery_key()
        else:
            logger.warning(
                "Crypto: no recovery_key configured, skipping secret storage "
                "and cross-signing bootstrap"
            )

        # 5. Trust policy.
        try:
            await self._backend.set_trust_cross_signed_devices(True)
            self.state.trust_on_first_use = True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: enabling cross-signed device trust failed: %s", exc)
        try:
            await self._backend.set_block_unverified_devices(False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: disabling unverified-device blocking failed: %s", exc)

        logger.info(
            "Crypto: bootstrap done (secret_storage=%s, cross_signing=%s, tofu=%s)",
            self.state.secret_storage_ready, self.state.cross_signing_ready,
            self.state.trust_on_first_use,
        )
        return self.state

    async def _bootstrap_with_recovery_key(self) -> None:
        caps = self.state.capabilities
        try:
            private_key = decode_recovery_key(self._recovery_key)
        except RecoveryKeyError as exc:
            logger.warning("Crypto: recovery_key is invalid (%s), skipping cross-signing bootstrap", exc)
            return

        try:
            await self._backend.store_backup_private_key(private_key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: storing the backup decryption key failed: %s", exc)

        if caps.secret_storage:
            try:
                await self._backend.bootstrap_secret_storage()
                self.state.secret_storage_ready = True
            except Exception as exc:  # noqa: BLE001
                logger.warning("Crypto: secret storage bootstrap failed: %s", exc)
        else:
            logger.info("Crypto: backend has no secret storage support")

        if caps.cross_signing:
            try:
                # read_only: never mint a new cross-signing identity, that
                # would orphan every earlier verification.
                await self._backend.bootstrap_cross_signing(self._recovery_key, read_only=True)
                self.state.cross_signing_ready = True
            except Exception as exc:  # noqa: BLE001
                logger.warning("Crypto: cross-signing bootstrap failed: %s", exc)
        else:
            logger.info("Crypto: backend has no cross-signing support")

    async def trust_own_devices(self) -> int:
        """Mark the bot account's other devices as locally verified.

        Opt-in; run after the first sync.  Returns the number of devices
        newly marked.
        """
        try:
            devices = await self._backend.get_user_devices(self._own_user_id, download=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Crypto: own device list fetch for auto-trust failed: %s", exc)
            return 0
        marked = 0
        for device_id, info in devices.items():
            if device_id == self._own_device_id or info.verified:
                continue
            try:
                await self._backend.set_device_verified(self._own_user_id, device_id, True)
                marked += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Crypto: trusting own device %s failed: %s", device_id, exc)
        if marked:
            logger.info("Crypto: trusted %d of the bot account's own device(s)", marked)
        return marked
