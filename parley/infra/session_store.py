"""
Persisted Matrix login (session.json) with rotating backups.

Before each write the current file is shifted into ``session.json.backup.1``
(and older backups up to ``.backup.N``), then the new content is written to a
temp file in the same directory and moved over the original with
``os.replace``, so a crash mid-write never leaves a truncated session.
The device id must survive restarts: cross-signing continuity depends on it.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_BACKUPS = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionRecord:
    user_id: str
    device_id: str
    access_token: str
    homeserver: str
    issued_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict) -> Optional["SessionRecord"]:
        if not isinstance(data, dict):
            return None
        if not data.get("user_id") or not data.get("access_token"):
            return None
        return cls(
            user_id=str(data["user_id"]),
            device_id=str(data.get("device_id", "")),
            access_token=str(data["access_token"]),
            homeserver=str(data.get("homeserver", "")),
            issued_at=str(data.get("issued_at") or _now_iso()),
        )


class SessionStore:

    def __init__(self, path: Path, backups: int = DEFAULT_BACKUPS) -> None:
        self.path = Path(path)
        self.backups = max(0, backups)

    def backup_path(self, n: int) -> Path:
        return self.path.with_name(f"{self.path.name}.backup.{n}")

    def exists(self) -> bool:
        return self.path.exists()

    def _read(self, path: Path) -> Optional[SessionRecord]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Session file %s is unreadable: %s", path, exc)
            return None
        record = SessionRecord.from_dict(data)
        if record is None:
            logger.warning("Session file %s is missing user_id or access_token", path)
        return record

    def load(self) -> Optional[SessionRecord]:
        return self._read(self.path)

    def _rotate(self) -> None:
        if self.backups == 0 or not self.path.exists():
            return
        oldest = self.backup_path(self.backups)
        if oldest.exists():
            oldest.unlink()
        for n in range(self.backups - 1, 0, -1):
            src = self.backup_path(n)
            if src.exists():
                os.replace(src, self.backup_path(n + 1))
        os.replace(self.path, self.backup_path(1))

    def save(self, record: SessionRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._rotate()
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix=".session_",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                fd = -1  # fdopen took ownership of the descriptor
                json.dump(asdict(record), f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if fd >= 0:
                os.close(fd)
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.info("Saved Matrix session for %s (device %s) to %s", record.user_id, record.device_id, self.path)

    def restore_from_backup(self) -> Optional[SessionRecord]:
        """Return the newest readable backup and reinstate it as the session."""
        for n in range(1, self.backups + 1):
            record = self._read(self.backup_path(n))
            if record is None:
                continue
            logger.info("Restoring Matrix session from %s", self.backup_path(n))
            tmp = self.path.with_name(self.path.name + ".restore")
            tmp.write_text(json.dumps(asdict(record), indent=2), encoding="utf-8")
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
            return record
        return None

    def clear(self) -> None:
        """Remove the session file and every backup."""
        for path in [self.path, *(self.backup_path(n) for n in range(1, self.backups + 1))]:
            if path.exists():
                path.unlink()
        logger.info("Cleared Matrix session at %s", self.path)
