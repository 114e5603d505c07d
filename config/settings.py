"""Project configuration settings.

Constants shared by the store, archive and CLI layers. Paths may be
overridden through the environment; callers resolve them at construction
time (see `resolve_path`) so tests can monkeypatch the environment.
"""

from pathlib import Path
import os

# Site the chat logs belong to; used as the archive filename prefix
ORIGIN = "f-list.net"

# Local store / backups / scheduler state
DEFAULT_STORE_DIR = Path("logvault_data/store")
DEFAULT_BACKUP_DIR = Path("logvault_data/backups")
DEFAULT_STATE_PATH = Path("logvault_data/state.json")
STORE_SUFFIX = ".sqlite3"

# Schedule
BACKUP_INTERVAL = 24 * 60 * 60 * 1000  # ms
DOWNLOAD_TIMEOUT = 10  # seconds

# Archive naming
BACKUP_SUFFIX = ".json.gz"
ENCRYPTED_SUFFIX = ".enc"

# Archive crypto
DEFAULT_ITERATIONS = 200_000
SALT_LENGTH = 16
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12   # GCM nonce
AUTH_TAG_LENGTH = 16
ARCHIVE_MAGIC = b"LVENC1"

# Logging
LOG_LEVEL = os.environ.get("LOGVAULT_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_path(env_var: str, default: Path) -> Path:
	value = os.environ.get(env_var)
	return Path(value) if value else default


def store_dir() -> Path:
	return resolve_path("LOGVAULT_STORE_DIR", DEFAULT_STORE_DIR)


def backup_dir() -> Path:
	return resolve_path("LOGVAULT_BACKUP_DIR", DEFAULT_BACKUP_DIR)


def state_path() -> Path:
	return resolve_path("LOGVAULT_STATE_PATH", DEFAULT_STATE_PATH)


def passphrase():
	"""Archive passphrase from LOGVAULT_PASSPHRASE, or None for plain archives."""
	return os.environ.get("LOGVAULT_PASSPHRASE") or None


__all__ = [
	'ORIGIN','DEFAULT_STORE_DIR','DEFAULT_BACKUP_DIR','DEFAULT_STATE_PATH','STORE_SUFFIX',
	'BACKUP_INTERVAL','DOWNLOAD_TIMEOUT','BACKUP_SUFFIX','ENCRYPTED_SUFFIX',
	'DEFAULT_ITERATIONS','SALT_LENGTH','KEY_LENGTH','IV_LENGTH','AUTH_TAG_LENGTH','ARCHIVE_MAGIC',
	'LOG_LEVEL','LOG_FORMAT','resolve_path','store_dir','backup_dir','state_path','passphrase'
]
