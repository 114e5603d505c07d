"""Backup archive codec: JSON -> gzip (-> optional passphrase seal).

Datetimes are written the way a browser's JSON.stringify writes a Date
(UTC, millisecond precision, trailing Z) so archives from either side load
the same way.
"""
from __future__ import annotations
import gzip, json, zlib, logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from config.settings import BACKUP_SUFFIX, ENCRYPTED_SUFFIX
from .crypto import ArchiveCrypto, CryptoError, is_sealed

log = logging.getLogger(__name__)

class ArchiveError(Exception): ...
class PassphraseRequired(ArchiveError): ...

def iso_timestamp(dt: datetime) -> str:
	# naive datetimes are local time
	return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

def parse_timestamp(text: str) -> Optional[datetime]:
	"""Inverse of iso_timestamp; None when the text is not an ISO-8601 timestamp."""
	try:
		return datetime.fromisoformat(text.strip().replace('Z', '+00:00'))
	except ValueError:
		return None

def _json_default(obj):
	if isinstance(obj, datetime):
		return iso_timestamp(obj)
	raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

def to_json(backup_data: Dict[str, Any]) -> str:
	return json.dumps(backup_data, indent=2, ensure_ascii=False, default=_json_default)

def encode(backup_data: Dict[str, Any], passphrase: Optional[str] = None) -> bytes:
	try:
		raw = to_json(backup_data).encode('utf-8')
	except (TypeError, ValueError) as e:
		raise ArchiveError(f"Backup data not serializable: {e}")
	blob = gzip.compress(raw)
	if passphrase:
		blob = ArchiveCrypto().seal(blob, passphrase)
	return blob

def decode(blob: bytes, passphrase: Optional[str] = None) -> Dict[str, Any]:
	if is_sealed(blob):
		if not passphrase:
			raise PassphraseRequired('Archive is encrypted; passphrase required')
		try:
			blob = ArchiveCrypto().unseal(blob, passphrase)
		except CryptoError:
			raise ArchiveError('Wrong passphrase or corrupt archive')
	try:
		text = gzip.decompress(blob).decode('utf-8')
	except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
		raise ArchiveError(f"Not a gzip JSON archive: {e}")
	try:
		data = json.loads(text)
	except ValueError as e:
		raise ArchiveError(f"Invalid JSON in archive: {e}")
	if not isinstance(data, dict):
		raise ArchiveError('Archive top level must be an object of databases')
	return data

def is_encrypted(blob: bytes) -> bool:
	return is_sealed(blob)

def archive_name(origin: str, when: datetime, encrypted: bool = False) -> str:
	stamp = iso_timestamp(when).replace(':', '-')
	name = f"{origin}_backup_{stamp}{BACKUP_SUFFIX}"
	return name + ENCRYPTED_SUFFIX if encrypted else name
