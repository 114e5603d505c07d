from datetime import datetime, timezone
import pytest
from logvault.lib.backup import ensure_schema
from logvault.lib.store import LocalStore


@pytest.fixture
def env_paths(monkeypatch, tmp_path):
    monkeypatch.setenv('LOGVAULT_STORE_DIR', str(tmp_path / 'store'))
    monkeypatch.setenv('LOGVAULT_BACKUP_DIR', str(tmp_path / 'backups'))
    monkeypatch.setenv('LOGVAULT_STATE_PATH', str(tmp_path / 'state.json'))
    monkeypatch.delenv('LOGVAULT_PASSPHRASE', raising=False)
    return tmp_path


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / 'store')


def _seed(store, name='alice', logs=3):
    """Populate a database the way the chat client lays it out."""
    with store.open(name, upgrade=ensure_schema) as db:
        with db.transaction(['conversations', 'logs'], 'readwrite') as tx:
            tx.object_store('conversations').add({'key': 'bob', 'name': 'Bob', 'type': 0})
            for i in range(logs):
                tx.object_store('logs').add({
                    'conversation': 1, 'day': 19723, 'type': 0, 'sender': 'Bob',
                    'text': f'message {i}', 'time': datetime(2024, 1, 1, 12, 0, i, tzinfo=timezone.utc),
                })
    return store


@pytest.fixture
def seed():
    return _seed
