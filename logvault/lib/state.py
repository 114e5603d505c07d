"""Persisted scheduler state (time of the last successful backup)."""
from __future__ import annotations
import json, os, logging
from pathlib import Path
from typing import Optional
from config.settings import BACKUP_INTERVAL, state_path

log = logging.getLogger(__name__)

class BackupState:
	KEY = 'lastBackup'

	def __init__(self, path: Path | None = None):
		self.path = Path(path) if path is not None else state_path()

	def _read(self) -> dict:
		if not self.path.exists():
			return {}
		try:
			data = json.loads(self.path.read_text(encoding='utf-8'))
		except (OSError, ValueError) as e:
			log.warning("Unreadable state file %s: %s", self.path, e)
			return {}
		return data if isinstance(data, dict) else {}

	def last_backup(self) -> Optional[int]:
		"""Epoch milliseconds of the last backup, or None."""
		raw = self._read().get(self.KEY)
		if raw is None:
			return None
		try:
			return int(raw)
		except (TypeError, ValueError):
			log.warning("Ignoring invalid %s value %r", self.KEY, raw)
			return None

	def is_due(self, now_ms: int, interval_ms: int = BACKUP_INTERVAL) -> bool:
		last = self.last_backup()
		return not (last is not None and now_ms - last < interval_ms)

	def record(self, now_ms: int) -> None:
		data = self._read()
		data[self.KEY] = int(now_ms)
		self.path.parent.mkdir(parents=True, exist_ok=True)
		tmp = self.path.with_suffix('.tmp')
		tmp.write_text(json.dumps(data), encoding='utf-8')
		os.replace(tmp, self.path)
