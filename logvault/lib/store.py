"""Local structured store: named databases holding object stores of records.

Each database lives in its own SQLite file under the store directory. The
model follows the browser storage the chat client writes to:

- a database has an integer version; object stores and indexes may only be
  created or removed while an upgrade runs (see `LocalStore.open`);
- an object store keeps records under unique keys, either out-of-line
  (supplied by the caller or generated when the store auto-increments) or
  in-line (read from the record through `key_path`);
- writes happen inside a `readwrite` transaction and roll back together if
  anything inside the block raises.

Keys order as numbers < dates < strings < arrays. Record values are any
JSON-compatible structure and may also contain `datetime` objects.
"""
from __future__ import annotations
import json, math, sqlite3, logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union
from config.settings import STORE_SUFFIX, store_dir

log = logging.getLogger(__name__)

KeyPath = Union[str, List[str], None]

class StoreError(Exception): ...
class ConstraintError(StoreError): ...
class DataError(StoreError): ...
class ReadOnlyError(StoreError): ...
class VersionError(StoreError): ...
class NotFoundError(StoreError): ...

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS object_stores (
	name TEXT PRIMARY KEY,
	key_path TEXT,
	auto_increment INTEGER NOT NULL,
	next_key INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS indexes (
	store TEXT NOT NULL,
	name TEXT NOT NULL,
	key_path TEXT NOT NULL,
	is_unique INTEGER NOT NULL,
	PRIMARY KEY (store, name)
);
CREATE TABLE IF NOT EXISTS records (
	store TEXT NOT NULL,
	key TEXT NOT NULL,
	value TEXT NOT NULL,
	PRIMARY KEY (store, key)
);
"""

# --- value / key encoding ---
# Datetimes are stored as {"$date": iso}. User dict keys starting with "$"
# gain one extra "$" when stored and lose it when loaded, so a stored
# single-key {"$date": ...} is always a tag.

def _tag(value: Any) -> Any:
	if isinstance(value, datetime):
		return {"$date": value.isoformat()}
	if isinstance(value, dict):
		return {('$' + k if isinstance(k, str) and k.startswith('$') else k): _tag(v) for k, v in value.items()}
	if isinstance(value, (list, tuple)):
		return [_tag(v) for v in value]
	return value

def _decode_hook(obj):
	if len(obj) == 1 and "$date" in obj:
		return datetime.fromisoformat(obj["$date"])
	return {(k[1:] if k.startswith('$$') else k): v for k, v in obj.items()}

def dump_value(value: Any) -> str:
	try:
		return json.dumps(_tag(value), allow_nan=False)
	except (TypeError, ValueError) as e:
		raise DataError(f"Value cannot be stored: {e}")

def load_value(text: str) -> Any:
	return json.loads(text, object_hook=_decode_hook)

def normalize_key(key: Any) -> Any:
	"""Validate a key; integral floats collapse to int so 1 and 1.0 match."""
	if isinstance(key, bool) or key is None:
		raise DataError(f"Invalid key: {key!r}")
	if isinstance(key, float):
		if math.isnan(key): raise DataError("Invalid key: NaN")
		return int(key) if key.is_integer() else key
	if isinstance(key, (int, str, datetime)):
		return key
	if isinstance(key, (list, tuple)):
		return [normalize_key(k) for k in key]
	raise DataError(f"Invalid key type: {type(key).__name__}")

def _key_text(key: Any) -> str:
	return json.dumps(_tag(key))

def key_sort(key: Any):
	if isinstance(key, (int, float)): return (0, key)
	if isinstance(key, datetime): return (1, key.timestamp())
	if isinstance(key, str): return (2, key)
	return (3, tuple(key_sort(k) for k in key))

_MISSING = object()

def extract_key_path(value: Any, key_path: KeyPath) -> Any:
	"""Evaluate a key path against a record; returns _MISSING when absent."""
	if isinstance(key_path, list):
		parts = [extract_key_path(value, p) for p in key_path]
		return _MISSING if any(p is _MISSING for p in parts) else parts
	if key_path == "":
		return value
	cur = value
	for step in key_path.split("."):
		if not isinstance(cur, dict) or step not in cur:
			return _MISSING
		cur = cur[step]
	return cur

def _index_value(value: Any, key_path: KeyPath) -> Any:
	raw = extract_key_path(value, key_path)
	if raw is _MISSING: return _MISSING
	try:
		return normalize_key(raw)
	except DataError:
		return _MISSING


@dataclass
class DatabaseInfo:
	name: str
	version: int


class LocalStore:
	"""Directory of databases; one SQLite file per database."""

	def __init__(self, root: Path | None = None):
		# Resolve path dynamically to honor environment overrides in tests
		self.root = Path(root) if root is not None else store_dir()

	def _path(self, name: str) -> Path:
		if not name or "/" in name or "\\" in name or name in (".", ".."):
			raise DataError(f"Invalid database name: {name!r}")
		return self.root / f"{name}{STORE_SUFFIX}"

	def databases(self) -> List[DatabaseInfo]:
		if not self.root.is_dir():
			return []
		infos = []
		for p in sorted(self.root.glob(f"*{STORE_SUFFIX}")):
			name = p.name[:-len(STORE_SUFFIX)]
			with Database(name, p) as db:
				infos.append(DatabaseInfo(name, db.version))
		return infos

	def exists(self, name: str) -> bool:
		return self._path(name).exists()

	def open(self, name: str, version: Optional[int] = None,
			upgrade: Optional[Callable[['Database', int, int], None]] = None) -> 'Database':
		"""Open (creating if needed) a database.

		A new database, or a requested version above the stored one, runs
		`upgrade(db, old_version, new_version)` inside a schema-changing
		transaction before the version is bumped.
		"""
		if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version < 1):
			raise VersionError(f"Invalid version: {version!r}")
		path = self._path(name)
		path.parent.mkdir(parents=True, exist_ok=True)
		db = Database(name, path)
		old = db.version
		new = version if version is not None else max(old, 1)
		if new < old:
			db.close()
			raise VersionError(f"Requested version {new} is less than existing version {old}")
		if new > old:
			try:
				with db._transaction(None, 'versionchange'):
					if upgrade is not None:
						upgrade(db, old, new)
					db._set_version(new)
			except BaseException:
				db.close()
				if old == 0:
					# Aborted first open: the database never existed
					path.unlink(missing_ok=True)
				raise
			log.debug("Upgraded %s from v%d to v%d", name, old, new)
		return db

	def delete(self, name: str) -> bool:
		path = self._path(name)
		if not path.exists(): return False
		path.unlink()
		return True


class Transaction:
	def __init__(self, db: 'Database', scope: Optional[List[str]], mode: str):
		self.db = db; self.scope = scope; self.mode = mode
		self.active = True

	def covers(self, store_name: str) -> bool:
		return self.scope is None or store_name in self.scope

	def object_store(self, name: str) -> 'ObjectStore':
		if not self.covers(name):
			raise NotFoundError(f"Store {name!r} is not in the transaction scope")
		return self.db.object_store(name)


class Database:
	def __init__(self, name: str, path: Path):
		self.name = name
		self.path = Path(path)
		self._tx: Optional[Transaction] = None
		self._conn: Optional[sqlite3.Connection] = sqlite3.connect(str(self.path), isolation_level=None)
		try:
			self._conn.executescript(_SCHEMA)
		except sqlite3.DatabaseError as e:
			self.close()
			raise StoreError(f"{self.path} is not a store database: {e}")

	def __enter__(self):
		return self

	def __exit__(self, *exc):
		self.close()

	def close(self):
		if self._conn is not None:
			self._conn.close()
			self._conn = None

	@property
	def closed(self) -> bool:
		return self._conn is None

	@property
	def conn(self) -> sqlite3.Connection:
		if self._conn is None:
			raise StoreError(f"Database {self.name!r} is closed")
		return self._conn

	@property
	def version(self) -> int:
		row = self.conn.execute("SELECT value FROM meta WHERE key='version'").fetchone()
		return int(row[0]) if row else 0

	def _set_version(self, version: int):
		self.conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES ('version', ?)", (str(version),))

	@property
	def object_store_names(self) -> List[str]:
		return [r[0] for r in self.conn.execute("SELECT name FROM object_stores ORDER BY name")]

	def object_store(self, name: str) -> 'ObjectStore':
		row = self.conn.execute(
			"SELECT key_path, auto_increment FROM object_stores WHERE name=?", (name,)).fetchone()
		if row is None:
			raise NotFoundError(f"No object store {name!r} in {self.name!r}")
		key_path = json.loads(row[0]) if row[0] is not None else None
		return ObjectStore(self, name, key_path, bool(row[1]))

	def transaction(self, store_names: Union[str, Sequence[str]], mode: str = 'readonly'):
		if mode not in ('readonly', 'readwrite'):
			raise ValueError(f"Invalid transaction mode: {mode!r}")
		names = [store_names] if isinstance(store_names, str) else list(store_names)
		if not names:
			raise StoreError("Transaction scope is empty")
		existing = set(self.object_store_names)
		for n in names:
			if n not in existing:
				raise NotFoundError(f"No object store {n!r} in {self.name!r}")
		return self._transaction(names, mode)

	@contextmanager
	def _transaction(self, scope: Optional[List[str]], mode: str) -> Iterator[Transaction]:
		if self._tx is not None:
			raise StoreError("A transaction is already active")
		self.conn.execute("BEGIN" if mode == 'readonly' else "BEGIN IMMEDIATE")
		tx = Transaction(self, scope, mode)
		self._tx = tx
		try:
			yield tx
		except BaseException:
			self.conn.execute("ROLLBACK")
			raise
		else:
			self.conn.execute("COMMIT")
		finally:
			tx.active = False
			self._tx = None

	def _require_write(self, store_name: str):
		tx = self._tx
		if tx is None or tx.mode == 'readonly':
			raise ReadOnlyError(f"Write to {store_name!r} outside a readwrite transaction")
		if not tx.covers(store_name):
			raise ReadOnlyError(f"Store {store_name!r} is not in the transaction scope")

	def _require_upgrade(self, what: str):
		if self._tx is None or self._tx.mode != 'versionchange':
			raise VersionError(f"{what} is only allowed during an upgrade")

	# --- schema (upgrade only) ---

	def create_object_store(self, name: str, key_path: KeyPath = None, auto_increment: bool = False) -> 'ObjectStore':
		self._require_upgrade("create_object_store")
		if not name:
			raise DataError("Object store name empty")
		if auto_increment and (isinstance(key_path, list) or key_path == ""):
			raise DataError("Auto-increment stores need an out-of-line or single key path")
		if name in self.object_store_names:
			raise ConstraintError(f"Object store {name!r} already exists")
		self.conn.execute(
			"INSERT INTO object_stores (name, key_path, auto_increment) VALUES (?, ?, ?)",
			(name, json.dumps(key_path) if key_path is not None else None, int(auto_increment)))
		return self.object_store(name)

	def delete_object_store(self, name: str):
		self._require_upgrade("delete_object_store")
		self.object_store(name)  # raises NotFoundError
		for table, col in (("records", "store"), ("indexes", "store"), ("object_stores", "name")):
			self.conn.execute(f"DELETE FROM {table} WHERE {col}=?", (name,))


class ObjectStore:
	def __init__(self, db: Database, name: str, key_path: KeyPath, auto_increment: bool):
		self.db = db
		self.name = name
		self.key_path = key_path
		self.auto_increment = auto_increment

	def __repr__(self):
		return f"ObjectStore({self.db.name!r}, {self.name!r})"

	# --- reads ---

	def count(self) -> int:
		return self.db.conn.execute("SELECT COUNT(*) FROM records WHERE store=?", (self.name,)).fetchone()[0]

	def _rows(self) -> List[tuple]:
		rows = [(load_value(k), load_value(v)) for k, v in
				self.db.conn.execute("SELECT key, value FROM records WHERE store=?", (self.name,))]
		return sorted(rows, key=lambda kv: key_sort(kv[0]))

	def get_all(self) -> List[Any]:
		return [v for _k, v in self._rows()]

	def get_all_keys(self) -> List[Any]:
		return [k for k, _v in self._rows()]

	def get(self, key: Any) -> Any:
		row = self.db.conn.execute("SELECT value FROM records WHERE store=? AND key=?",
			(self.name, _key_text(normalize_key(key)))).fetchone()
		return load_value(row[0]) if row else None

	# --- writes ---

	def _next_key(self) -> int:
		return self.db.conn.execute("SELECT next_key FROM object_stores WHERE name=?", (self.name,)).fetchone()[0]

	def _bump_generator(self, key: Any):
		if isinstance(key, (int, float)) and key >= self._next_key():
			self.db.conn.execute("UPDATE object_stores SET next_key=? WHERE name=?",
				(int(math.floor(key)) + 1, self.name))

	def _resolve_key(self, value: Any, key: Any) -> tuple:
		if self.key_path is not None:
			if key is not None:
				raise DataError("Store uses in-line keys; key argument not allowed")
			found = extract_key_path(value, self.key_path)
			if found is _MISSING:
				if not self.auto_increment:
					raise DataError(f"Record has no value at key path {self.key_path!r}")
				if not isinstance(value, dict):
					raise DataError("Generated in-line key needs an object record")
				found = self._next_key()
				value = {**value, self.key_path: found}
			return normalize_key(found), value
		if key is None:
			if not self.auto_increment:
				raise DataError(f"Store {self.name!r} needs an explicit key")
			return self._next_key(), value
		return normalize_key(key), value

	def _write(self, value: Any, key: Any, overwrite: bool) -> Any:
		self.db._require_write(self.name)
		key, value = self._resolve_key(value, key)
		ktext = _key_text(key)
		vtext = dump_value(value)
		exists = self.db.conn.execute("SELECT 1 FROM records WHERE store=? AND key=?", (self.name, ktext)).fetchone()
		if exists and not overwrite:
			raise ConstraintError(f"Key {key!r} already exists in {self.name!r}")
		for idx in self._indexes():
			if idx.unique:
				idx._check_unique(value, ktext)
		self.db.conn.execute("INSERT OR REPLACE INTO records (store, key, value) VALUES (?, ?, ?)",
			(self.name, ktext, vtext))
		if self.auto_increment:
			self._bump_generator(key)
		return key

	def add(self, value: Any, key: Any = None) -> Any:
		"""Insert a record; raises ConstraintError if the key is taken. Returns the key."""
		return self._write(value, key, overwrite=False)

	def put(self, value: Any, key: Any = None) -> Any:
		return self._write(value, key, overwrite=True)

	def delete(self, key: Any):
		self.db._require_write(self.name)
		self.db.conn.execute("DELETE FROM records WHERE store=? AND key=?",
			(self.name, _key_text(normalize_key(key))))

	def clear(self):
		# Key generator is not reset
		self.db._require_write(self.name)
		self.db.conn.execute("DELETE FROM records WHERE store=?", (self.name,))

	# --- indexes ---

	def _indexes(self) -> List['Index']:
		return [Index(self, n, json.loads(kp), bool(u)) for n, kp, u in self.db.conn.execute(
			"SELECT name, key_path, is_unique FROM indexes WHERE store=? ORDER BY name", (self.name,))]

	@property
	def index_names(self) -> List[str]:
		return [i.name for i in self._indexes()]

	def index(self, name: str) -> 'Index':
		for idx in self._indexes():
			if idx.name == name:
				return idx
		raise NotFoundError(f"No index {name!r} on {self.name!r}")

	def create_index(self, name: str, key_path: Union[str, List[str]], unique: bool = False) -> 'Index':
		self.db._require_upgrade("create_index")
		if name in self.index_names:
			raise ConstraintError(f"Index {name!r} already exists on {self.name!r}")
		idx = Index(self, name, list(key_path) if isinstance(key_path, (list, tuple)) else key_path, unique)
		if unique:
			seen = set()
			for v in self.get_all():
				iv = _index_value(v, idx.key_path)
				if iv is _MISSING: continue
				t = _key_text(iv)
				if t in seen:
					raise ConstraintError(f"Existing records violate unique index {name!r}")
				seen.add(t)
		self.db.conn.execute("INSERT INTO indexes (store, name, key_path, is_unique) VALUES (?, ?, ?, ?)",
			(self.name, name, json.dumps(idx.key_path), int(unique)))
		return idx


class Index:
	def __init__(self, store: ObjectStore, name: str, key_path: Union[str, List[str]], unique: bool):
		self.store = store; self.name = name; self.key_path = key_path; self.unique = unique

	def get_all(self, query: Any) -> List[Any]:
		want = _key_text(normalize_key(query))
		out = []
		for v in self.store.get_all():
			iv = _index_value(v, self.key_path)
			if iv is not _MISSING and _key_text(iv) == want:
				out.append(v)
		return out

	def count(self, query: Any) -> int:
		return len(self.get_all(query))

	def _check_unique(self, value: Any, own_key_text: str):
		iv = _index_value(value, self.key_path)
		if iv is _MISSING: return
		want = _key_text(iv)
		for ktext, vtext in self.store.db.conn.execute(
				"SELECT key, value FROM records WHERE store=?", (self.store.name,)):
			if ktext == own_key_text: continue
			other = _index_value(load_value(vtext), self.key_path)
			if other is not _MISSING and _key_text(other) == want:
				raise ConstraintError(f"Unique index {self.name!r} violated by {iv!r}")
