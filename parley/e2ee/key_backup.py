"""
Key Backup Manager

Recovers historical room keys after the first sync, from three optional
sources tried in order:

  1. ``<store_dir>/imported-keys.json``: a decrypted key export produced
     out of band.  Renamed to ``.imported`` once at least one key from it is
     stored, so a restart does not import it twice.
  2. A legacy export at a fixed path (``/tmp/room_keys.txt``).  Only
     plaintext JSON is supported; encrypted Megolm exports are reported and
     skipped.
  3. The server-side key backup, decrypted with the operator's recovery key.

Any source that imports at least one key triggers a retry sweep so parked
undecryptable events get another chance.  This manager never creates a
backup, it only consumes an existing one.
"""

import inspect
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from parley.e2ee.recovery_key import decode_recovery_key
from parley.e2ee.types import (
    CryptoBackend,
    CryptoIdentityState,
    RecoveryKeyError,
)

logger = logging.getLogger(__name__)

EXPORT_FILE_NAME = "imported-keys.json"
CONSUMED_SUFFIX = ".imported"
LEGACY_EXPORT_PATH = Path("/tmp/room_keys.txt")
ENCRYPTED_EXPORT_HEADER = "-----BEGIN MEGOLM SESSION DATA-----"

_REQUIRED_KEY_FIELDS = ("room_id", "session_id", "session_key")


@dataclass
class KeyImportResult:
    export_file: int = 0
    legacy_file: int = 0
    server_backup: int = 0

    @property
    def total(self) -> int:
        return self.export_file + self.legacy_file + self.server_backup


def valid_room_keys(entries: Any) -> tuple[list[dict], int]:
    """Split a parsed export into usable key dicts and a skipped count."""
    if isinstance(entries, dict):
        entries = entries.get("sessions", [])
    if not isinstance(entries, list):
        raise ValueError("key export must be a JSON array of room keys")
    keys: list[dict] = []
    skipped = 0
    for entry in entries:
        if isinstance(entry, dict) and all(entry.get(f) for f in _REQUIRED_KEY_FIELDS):
            keys.append(entry)
        else:
            skipped += 1
    return keys, skipped


class KeyBackupManager:

    def __init__(
        self,
        backend: CryptoBackend,
        store_dir: Path,
        recovery_key: str = "",
        on_keys_imported: Optional[Callable[[int], Any]] = None,
        legacy_export_path: Path = LEGACY_EXPORT_PATH,
    ) -> None:
        self._backend = backend
        self._store_dir = Path(store_dir)
        self._recovery_key = recovery_key
        self._on_keys_imported = on_keys_imported
        self._legacy_export_path = Path(legacy_export_path)

    @property
    def export_path(self) -> Path:
        return self._store_dir / EXPORT_FILE_NAME

    async def restore_all(self, state: CryptoIdentityState) -> KeyImportResult:
        """Try every key source in priority order.  Never raises."""
        result = KeyImportResult()
        try:
            result.export_file = await self.import_export_file()
        except Exception:  # noqa: BLE001
            logger.exception("Backup: importing %s failed", self.export_path)
        try:
            result.legacy_file = await self.import_legacy_export()
        except Exception:  # noqa: BLE001
            logger.exception("Backup: importing %s failed", self._legacy_export_path)
        try:
            result.server_backup = await self.restore_server_backup(state)
        except Exception:  # noqa: BLE001
            logger.exception("Backup: server-side restore failed")
        logger.info(
            "Backup: key recovery finished (export=%d, legacy=%d, server=%d)",
            result.export_file, result.legacy_file, result.server_backup,
        )
        return result

    async def _import(self, entries: Any, source: str) -> int:
        if not self._backend.capabilities.import_room_keys:
            logger.warning("Backup: backend cannot import room keys, ignoring %s", source)
            return 0
        keys, skipped = valid_room_keys(entries)
        if skipped:
            logger.warning("Backup: skipped %d malformed key(s) in %s", skipped, source)
        if not keys:
            return 0
        count = await self._backend.import_room_keys(keys)
        logger.info("Backup: imported %d/%d room key(s) from %s", count, len(keys), source)
        if count:
            await self._notify(count)
        return count

    async def import_export_file(self) -> int:
        path = self.export_path
        if not path.exists():
            return 0
        try:
            entries = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Backup: %s is not a readable JSON key export: %s", path, exc)
            return 0
        count = await self._import(entries, str(path))
        if not count:
            logger.warning("Backup: nothing imported from %s, leaving it in place", path)
            return 0
        consumed = path.with_name(path.name + CONSUMED_SUFFIX)
        os.replace(path, consumed)
        logger.info("Backup: marked %s as consumed", consumed)
        return count

    async def import_legacy_export(self) -> int:
        path = self._legacy_export_path
        if not path.exists():
            return 0
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Backup: cannot read %s: %s", path, exc)
            return 0
        try:
            entries = json.loads(text)
        except ValueError:
            entries = None
        if entries is not None:
            return await self._import(entries, str(path))

        # TODO: support passphrase-encrypted Megolm exports (AES-CTR + PBKDF2 per the key export format).
        if not self._recovery_key:
            logger.warning("Backup: %s is not plaintext JSON and no recovery key is configured", path)
        elif text.lstrip().startswith(ENCRYPTED_EXPORT_HEADER):
            logger.warning(
                "Backup: %s is an encrypted key export, which is not supported; "
                "export the keys unencrypted and place them at %s",
                path, self.export_path,
            )
        else:
            logger.warning("Backup: %s is neither JSON nor an encrypted key export", path)
        return 0

    async def restore_server_backup(self, state: CryptoIdentityState) -> int:
        if not self._backend.capabilities.key_backup:
            logger.info("Backup: backend has no server-side key backup support")
            return 0
        if not self._recovery_key:
            logger.warning("Backup: no recovery_key configured, skipping server-side key backup")
            return 0
        try:
            private_key = decode_recovery_key(self._recovery_key)
        except RecoveryKeyError as exc:
            logger.warning("Backup: recovery_key is invalid (%s), skipping server-side key backup", exc)
            return 0

        backup = await self._backend.check_key_backup()
        if backup is None:
            logger.warning("Backup: no key backup exists on the server")
            return 0
        if not backup.trusted:
            logger.warning(
                "Backup: backup version %s does not match the configured recovery key, not restoring",
                backup.version,
            )
            return 0

        state.backup_enabled = True
        state.backup_version = backup.version
        await self._backend.store_backup_private_key(private_key)
        logger.info("Backup: restoring from backup version %s (%d key(s) on server)", backup.version, backup.count)
        count = await self._backend.restore_key_backup(private_key, backup)
        logger.info("Backup: restored %d room key(s) from backup version %s", count, backup.version)
        if count:
            await self._notify(count)
        return count

    async def _notify(self, count: int) -> None:
        if self._on_keys_imported is None:
            return
        try:
            result = self._on_keys_imported(count)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Backup: key import notification failed")

