from datetime import datetime, timezone
import pytest
from logvault.lib.store import (
    LocalStore, ConstraintError, DataError, ReadOnlyError, VersionError, NotFoundError
)


def make_kv(store, name='db'):
    def upgrade(db, old, new):
        db.create_object_store('items', auto_increment=True)
        db.create_object_store('kv')
        db.create_object_store('people', key_path='id')
    return store.open(name, upgrade=upgrade)


def test_missing_root_has_no_databases(tmp_path):
    assert LocalStore(tmp_path / 'nowhere').databases() == []


def test_open_runs_upgrade_once(store):
    calls = []
    with store.open('db', upgrade=lambda db, o, n: calls.append((o, n))) as db:
        assert db.version == 1
    with store.open('db', upgrade=lambda db, o, n: calls.append((o, n))) as db:
        assert db.version == 1
    assert calls == [(0, 1)]
    assert [(i.name, i.version) for i in store.databases()] == [('db', 1)]


def test_version_upgrade_and_downgrade(store):
    make_kv(store).close()
    seen = []
    with store.open('db', 3, upgrade=lambda db, o, n: seen.append((o, n))) as db:
        assert db.version == 3
    assert seen == [(1, 3)]
    with pytest.raises(VersionError):
        store.open('db', 2)


def test_schema_changes_only_during_upgrade(store):
    with make_kv(store) as db:
        with pytest.raises(VersionError):
            db.create_object_store('late')
        with pytest.raises(VersionError):
            db.object_store('items').create_index('x', 'x')
        assert db.object_store_names == ['items', 'kv', 'people']


def test_failed_upgrade_rolls_back(store):
    def upgrade(db, old, new):
        db.create_object_store('half')
        raise RuntimeError('boom')
    with pytest.raises(RuntimeError):
        store.open('db', upgrade=upgrade)
    assert not store.exists('db')
    assert store.databases() == []


def test_failed_later_upgrade_keeps_database(store):
    make_kv(store).close()

    def upgrade(db, old, new):
        db.create_object_store('half')
        raise RuntimeError('boom')
    with pytest.raises(RuntimeError):
        store.open('db', 2, upgrade=upgrade)
    with store.open('db') as db:
        assert db.version == 1
        assert db.object_store_names == ['items', 'kv', 'people']


def test_auto_increment_keys(store):
    with make_kv(store) as db:
        with db.transaction('items', 'readwrite') as tx:
            items = tx.object_store('items')
            assert items.add({'n': 1}) == 1
            assert items.add({'n': 2}) == 2
            assert items.add({'n': 10}, 10) == 10
            assert items.add({'n': 11}) == 11
            items.clear()
            assert items.add({'n': 12}) == 12
        assert db.object_store('items').get_all_keys() == [12]


def test_duplicate_key_and_put(store):
    with make_kv(store) as db:
        with db.transaction('kv', 'readwrite') as tx:
            kv = tx.object_store('kv')
            kv.add('first', 'k')
            with pytest.raises(ConstraintError):
                kv.add('second', 'k')
            kv.put('second', 'k')
        assert db.object_store('kv').get('k') == 'second'


def test_out_of_line_store_requires_key(store):
    with make_kv(store) as db:
        with db.transaction('kv', 'readwrite') as tx:
            with pytest.raises(DataError):
                tx.object_store('kv').add({'no': 'key'})
            with pytest.raises(DataError):
                tx.object_store('kv').add('v', True)


def test_inline_key_path(store):
    with make_kv(store) as db:
        with db.transaction('people', 'readwrite') as tx:
            people = tx.object_store('people')
            assert people.add({'id': 'bob', 'age': 30}) == 'bob'
            with pytest.raises(DataError):
                people.add({'age': 1})
            with pytest.raises(DataError):
                people.add({'id': 'x'}, 'x')
        assert db.object_store('people').get('bob')['age'] == 30


def test_writes_need_readwrite_transaction(store):
    with make_kv(store) as db:
        with pytest.raises(ReadOnlyError):
            db.object_store('kv').add('v', 1)
        with db.transaction('kv') as tx:
            with pytest.raises(ReadOnlyError):
                tx.object_store('kv').add('v', 1)
        with db.transaction('kv', 'readwrite') as tx:
            with pytest.raises(NotFoundError):
                tx.object_store('items')
        with pytest.raises(NotFoundError):
            db.transaction('missing', 'readwrite')


def test_transaction_rolls_back_on_error(store):
    with make_kv(store) as db:
        with db.transaction('kv', 'readwrite') as tx:
            tx.object_store('kv').add('keep', 1)
        with pytest.raises(ConstraintError):
            with db.transaction('kv', 'readwrite') as tx:
                kv = tx.object_store('kv')
                kv.clear()
                kv.add('a', 2)
                kv.add('b', 2)
        assert db.object_store('kv').get_all() == ['keep']


def test_get_all_key_order(store):
    with make_kv(store) as db:
        with db.transaction('kv', 'readwrite') as tx:
            kv = tx.object_store('kv')
            kv.add('B', 'b')
            kv.add('list', [1, 'x'])
            kv.add('two', 2)
            kv.add('date', datetime(2024, 1, 1, tzinfo=timezone.utc))
            kv.add('A', 'a')
            kv.add('one', 1.0)
        kv = db.object_store('kv')
        assert kv.get_all() == ['one', 'two', 'date', 'A', 'B', 'list']
        assert kv.get(1) == 'one'
        assert kv.count() == 6


def test_datetime_values_round_trip(store):
    when = datetime(2024, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
    with make_kv(store) as db:
        with db.transaction('items', 'readwrite') as tx:
            tx.object_store('items').add({'time': when, 'nested': {'at': [when]}})
        rec = db.object_store('items').get_all()[0]
    assert rec['time'] == when
    assert rec['nested']['at'][0] == when


def test_unstorable_value(store):
    with make_kv(store) as db:
        with db.transaction('items', 'readwrite') as tx:
            with pytest.raises(DataError):
                tx.object_store('items').add({'bad': object()})


def test_compound_index_lookup(store):
    def upgrade(db, old, new):
        logs = db.create_object_store('logs', auto_increment=True)
        logs.create_index('conversation', 'conversation')
        logs.create_index('conversation-day', ['conversation', 'day'])
    with store.open('chat', upgrade=upgrade) as db:
        with db.transaction('logs', 'readwrite') as tx:
            logs = tx.object_store('logs')
            logs.add({'conversation': 1, 'day': 5, 'text': 'a'})
            logs.add({'conversation': 1, 'day': 6, 'text': 'b'})
            logs.add({'conversation': 2, 'day': 5, 'text': 'c'})
        logs = db.object_store('logs')
        assert logs.index_names == ['conversation', 'conversation-day']
        assert [r['text'] for r in logs.index('conversation').get_all(1)] == ['a', 'b']
        assert [r['text'] for r in logs.index('conversation-day').get_all([1, 6])] == ['b']
        assert logs.index('conversation-day').count([2, 5]) == 1


def test_unique_index(store):
    def upgrade(db, old, new):
        db.create_object_store('users', auto_increment=True).create_index('email', 'email', unique=True)
    with store.open('db', upgrade=upgrade) as db:
        with db.transaction('users', 'readwrite') as tx:
            users = tx.object_store('users')
            users.add({'email': 'a@example.com'})
            users.put({'email': 'a@example.com', 'v': 2}, 1)
            with pytest.raises(ConstraintError):
                users.add({'email': 'a@example.com'})


def test_invalid_database_name(store):
    with pytest.raises(DataError):
        store.open('../escape')


def test_delete_database(store):
    make_kv(store).close()
    assert store.delete('db')
    assert not store.exists('db')
    assert store.databases() == []


def test_delete_record_and_store(store):
    with make_kv(store) as db:
        with db.transaction('kv', 'readwrite') as tx:
            kv = tx.object_store('kv')
            kv.add('x', 'a')
            kv.add('y', 'b')
            kv.delete('a')
        assert db.object_store('kv').get_all() == ['y']
    with store.open('db', 2, upgrade=lambda db, o, n: db.delete_object_store('kv')) as db:
        assert db.object_store_names == ['items', 'people']
        with pytest.raises(NotFoundError):
            db.object_store('kv')


def test_dollar_keys_are_not_mistaken_for_dates(store):
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    record = {
        'meta': {'$date': 'not a date'},
        'iso': {'$date': '2024-01-01T00:00:00'},
        '$$odd': 1,
        'when': when,
    }
    with make_kv(store) as db:
        with db.transaction('items', 'readwrite') as tx:
            tx.object_store('items').add(record)
        assert db.object_store('items').get_all() == [record]
        assert db.object_store('items').get(1)['iso'] == {'$date': '2024-01-01T00:00:00'}
