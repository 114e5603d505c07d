"""Backup / restore of the chat client's local databases.

Backup: enumerate every database and object store, read all records,
serialize to JSON, gzip and deliver as `<origin>_backup_<timestamp>.json.gz`,
at most once per BACKUP_INTERVAL.

Restore: decode an archive and, for every database in it, recreate the
stores the chat client expects (`conversations`, `logs` plus the log
indexes), clear them and bulk-load the archived records.
"""
from __future__ import annotations
import json, math, logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from config.settings import ORIGIN, DOWNLOAD_TIMEOUT, BACKUP_INTERVAL
from .archive import decode, encode, archive_name, parse_timestamp, PassphraseRequired
from .delivery import deliver, DeliveryError
from .state import BackupState
from .store import LocalStore, Database

log = logging.getLogger(__name__)

class RestoreError(Exception): ...

# name -> (auto_increment, [(index name, key path, unique)])
EXPECTED_STORES: Dict[str, Tuple[bool, List[tuple]]] = {
	'conversations': (True, []),
	'logs': (True, [
		('conversation', 'conversation', False),
		('conversation-day', ['conversation', 'day'], False),
	]),
}
RESTORED_STORES = ('conversations', 'logs')


def is_store_empty(store: LocalStore) -> bool:
	"""True when there are no databases or every object store is empty."""
	infos = store.databases()
	if not infos:
		return True
	for info in infos:
		with store.open(info.name) as db:
			for name in db.object_store_names:
				if db.object_store(name).count() > 0:
					return False
	return True


def inventory(store: LocalStore) -> List[Tuple[str, int, List[Tuple[str, int]]]]:
	out = []
	for info in store.databases():
		with store.open(info.name) as db:
			out.append((info.name, db.version, [(n, db.object_store(n).count()) for n in db.object_store_names]))
	return out


def collect(store: LocalStore) -> Dict[str, Dict[str, List[Any]]]:
	"""Read every record of every store; a failing store is logged and skipped."""
	backup_data: Dict[str, Dict[str, List[Any]]] = {}
	for info in store.databases():
		with store.open(info.name) as db:
			entry = backup_data[info.name] = {name: [] for name in RESTORED_STORES}
			for name in db.object_store_names:
				try:
					with db.transaction(name, 'readonly') as tx:
						entry[name] = tx.object_store(name).get_all()
				except Exception as e:
					log.error("Error backing up store %s in %s: %s", name, info.name, e)
	return backup_data


@dataclass
class BackupOutcome:
	status: str  # written | skipped | nothing | failed
	path: Optional[Path] = None
	size: int = 0
	message: str = ''


def run_backup(store: LocalStore, state: BackupState, dest_dir: Path, now: datetime | None = None,
		force: bool = False, passphrase: str | None = None, origin: str = ORIGIN,
		timeout: float = DOWNLOAD_TIMEOUT, interval: int = BACKUP_INTERVAL) -> BackupOutcome:
	now = now or datetime.now(timezone.utc)
	now_ms = int(now.timestamp() * 1000)
	if not force and not state.is_due(now_ms, interval):
		log.info("Backup skipped; last backup within %d hours", interval // 3_600_000)
		return BackupOutcome('skipped', message='Last backup is recent')
	if not store.databases():
		log.info("No databases to back up")
		return BackupOutcome('nothing', message='No databases to back up')

	blob = encode(collect(store), passphrase)
	log.info("Compressed data size: %d bytes", len(blob))
	filename = archive_name(origin, now, encrypted=bool(passphrase))
	try:
		result = deliver(blob, Path(dest_dir), filename, timeout)
	except DeliveryError as e:
		log.error("%s", e)
		return BackupOutcome('failed', message=str(e))
	log.info("Download succeeded for %s: %s", filename, json.dumps(result.details()))
	state.record(now_ms)
	return BackupOutcome('written', path=result.path, size=result.size)


# --- restore ---

@dataclass
class RestoreReport:
	stores: Dict[str, Dict[str, Dict[str, int]]] = field(default_factory=dict)

	def add(self, db_name: str, store_name: str, added: int, skipped: int):
		self.stores.setdefault(db_name, {})[store_name] = {'added': added, 'skipped': skipped}

	@property
	def total_added(self) -> int:
		return sum(s['added'] for db in self.stores.values() for s in db.values())

	@property
	def total_skipped(self) -> int:
		return sum(s['skipped'] for db in self.stores.values() for s in db.values())


def ensure_schema(db: Database, old_version: int, new_version: int) -> None:
	"""Upgrade callback creating whichever expected stores are missing."""
	existing = set(db.object_store_names)
	for name, (auto_increment, indexes) in EXPECTED_STORES.items():
		if name in existing:
			continue
		created = db.create_object_store(name, auto_increment=auto_increment)
		for idx_name, key_path, unique in indexes:
			created.create_index(idx_name, key_path, unique=unique)
		log.debug("Created store %s in %s", name, db.name)


def open_for_restore(store: LocalStore, name: str) -> Database:
	db = store.open(name, upgrade=ensure_schema)
	if all(n in db.object_store_names for n in EXPECTED_STORES):
		return db
	# Existing database without the expected stores: bump the version to get an upgrade
	version = db.version + 1
	db.close()
	log.info("Upgrading %s to v%d to recreate missing stores", name, version)
	return store.open(name, version, upgrade=ensure_schema)


def _is_blank(record: Any) -> bool:
	if record is None:
		return True
	if isinstance(record, float) and math.isnan(record):
		return True
	return not isinstance(record, (dict, list)) and not record


def _revive_log(record: Dict[str, Any]) -> Dict[str, Any]:
	if isinstance(record.get('time'), str):
		parsed = parse_timestamp(record['time'])
		if parsed is None:
			log.warning("Unparseable log time %r; keeping text", record['time'])
		else:
			record = {**record, 'time': parsed}
	return record


def load_records(db: Database, store_name: str, records: List[Any]) -> Tuple[int, int]:
	"""Replace the store's contents with `records` in one transaction."""
	added = skipped = 0
	with db.transaction(store_name, 'readwrite') as tx:
		target = tx.object_store(store_name)
		target.clear()
		for record in records:
			if _is_blank(record):
				log.warning("Skipping invalid record in %s: %r", store_name, record)
				skipped += 1
				continue
			key = None
			if store_name == 'logs' and isinstance(record, dict):
				record = _revive_log(record)
				key = record.get('id')
			target.add(record, key)
			added += 1
	return added, skipped


def restore(store: LocalStore, blob: bytes, passphrase: str | None = None) -> RestoreReport:
	try:
		backup_data = decode(blob, passphrase)
		report = RestoreReport()
		for db_name, stores in backup_data.items():
			if not isinstance(stores, dict):
				raise RestoreError(f"Database entry {db_name!r} is not an object")
			with open_for_restore(store, db_name) as db:
				for store_name in RESTORED_STORES:
					records = stores.get(store_name)
					if _is_blank(records):
						continue
					if not isinstance(records, list):
						raise RestoreError(f"Store {store_name!r} in {db_name!r} is not a list of records")
					report.add(db_name, store_name, *load_records(db, store_name, records))
				ignored = sorted(set(stores) - set(RESTORED_STORES))
				if ignored:
					log.info("Not restoring stores %s in %s", ', '.join(ignored), db_name)
		log.info("Local store restored successfully (%d records)", report.total_added)
		return report
	except PassphraseRequired:
		raise
	except RestoreError as e:
		log.error("Error restoring local store: %s", e)
		raise
	except Exception as e:
		log.error("Error restoring local store: %s", e)
		raise RestoreError(f"Restore failed: {e}") from e


def restore_file(store: LocalStore, path: Path, passphrase: str | None = None) -> RestoreReport:
	path = Path(path)
	if not path.is_file():
		raise RestoreError(f"Backup file not found: {path}")
	return restore(store, path.read_bytes(), passphrase)
