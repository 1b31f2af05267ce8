"""Canonical data-directory paths used throughout parley."""

from pathlib import Path

DATA_DIR = Path("data")

MATRIX_STORE_DIR = DATA_DIR / "matrix"
CRYPTO_DB_NAME = "crypto.db"
SESSION_FILE_NAME = "session.json"
CONVERSATION_DB = DATA_DIR / "conversation.db"
VOICE_DIR = DATA_DIR / "voice"
