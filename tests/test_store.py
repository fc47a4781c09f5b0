import json
import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor

import filelock
import pytest

import sverify.store as store_module
from sverify.store import (
    JsonFileTicketStore,
    SqliteTicketStore,
    StoreWriteError,
    TrustScore,
    VerificationTicket,
    get_ticket_store,
)

IP = "203.0.113.5"


@pytest.fixture(params=["json", "sqlite"])
def any_store(request, tmp_path, clock):
    if request.param == "json":
        store = JsonFileTicketStore(str(tmp_path / "data.json"), clock=clock)
    else:
        store = SqliteTicketStore(str(tmp_path / "sverify.db"), clock=clock)
    yield store
    store.close()


def ticket(clock, ip=IP, score=TrustScore.HIGH, count=0):
    return VerificationTicket(ip, clock(), score, count, "pytest")


def test_lookup_unknown(any_store):
    assert any_store.lookup(IP) is False
    assert any_store.get(IP) is None


def test_ttl_boundary(any_store, clock):
    any_store.upsert(ticket(clock))
    clock.advance(899)
    assert any_store.lookup(IP) is True
    clock.advance(1)
    assert any_store.lookup(IP) is False
    # expired tickets are not deleted
    assert any_store.get(IP) is not None


def test_upsert_replaces_and_moves_to_end(any_store, clock):
    any_store.upsert(ticket(clock, IP, TrustScore.LOW, 1))
    clock.advance(5)
    any_store.upsert(ticket(clock, "198.51.100.1"))
    clock.advance(5)
    any_store.upsert(ticket(clock, IP))

    tickets = any_store.all()
    assert [t.identifier for t in tickets] == ["198.51.100.1", IP]
    assert tickets[-1].trust_score is TrustScore.HIGH
    assert tickets[-1].issued_at == clock()


def test_recent_insert(any_store, clock):
    any_store.upsert(ticket(clock))
    clock.advance(29)
    assert any_store.recent_insert(IP, 30) is True
    clock.advance(1)
    assert any_store.recent_insert(IP, 30) is False
    assert any_store.recent_insert("198.51.100.1", 30) is False


def test_remove(any_store, clock):
    any_store.upsert(ticket(clock))
    assert any_store.remove(IP) is True
    assert any_store.remove(IP) is False
    assert any_store.lookup(IP) is False


def test_concurrent_upserts(any_store, clock):
    ips = [f"198.51.100.{i}" for i in range(1, 21)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda ip: any_store.upsert(ticket(clock, ip)), ips + ips))
    assert sorted(t.identifier for t in any_store.all()) == sorted(ips)


def test_json_record_round_trip(store, clock, data_file):
    store.upsert(ticket(clock, count=2, score=TrustScore.LOW))
    records = json.loads(data_file.read_text())
    assert records == [{
        "ip": IP,
        "timestamp": "2025-10-09T08:53:20.000Z",
        "userAgent": "pytest",
        "browserChecks": {
            "trustScore": "low",
            "suspiciousIndicators": 2,
            "verifiedAt": "2025-10-09T08:53:20.000Z",
        },
    }]
    assert store.get(IP) == VerificationTicket(IP, clock(), TrustScore.LOW, 2, "pytest")


@pytest.mark.parametrize("content", ["{not json", '{"ip": "1.2.3.4"}', ""])
def test_json_unreadable_file_is_empty(store, data_file, content):
    data_file.write_text(content)
    assert store.lookup(IP) is False
    assert store.all() == []


def test_json_malformed_records_skipped(store, clock, data_file):
    store.upsert(ticket(clock))
    records = json.loads(data_file.read_text())
    records.insert(0, {"timestamp": "garbage"})
    records.insert(0, "not-a-record")
    data_file.write_text(json.dumps(records))
    assert [t.identifier for t in store.all()] == [IP]
    assert store.lookup(IP) is True


def test_json_write_failure_commits_nothing(store, clock, data_file, monkeypatch):
    store.upsert(ticket(clock))
    before = data_file.read_text()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StoreWriteError):
        store.upsert(ticket(clock, "198.51.100.1"))

    assert data_file.read_text() == before
    assert not [p.name for p in data_file.parent.iterdir() if p.suffix == ".tmp"]


def test_json_unwritable_location(tmp_path, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = JsonFileTicketStore(str(blocker / "data.json"), clock=clock)
    with pytest.raises(StoreWriteError):
        store.upsert(ticket(clock))
    assert store.lookup(IP) is False


def test_json_ensure_exists(store, data_file):
    assert store.ensure_exists() is True
    assert json.loads(data_file.read_text()) == []
    assert store.ensure_exists() is False


def test_store_factory(tmp_path, monkeypatch):
    monkeypatch.setattr(store_module, "DATA_FILE", str(tmp_path / "data.json"))
    monkeypatch.setattr(store_module, "SQLITE_PATH", str(tmp_path / "sverify.db"))

    assert isinstance(get_ticket_store("json"), JsonFileTicketStore)
    sqlite_store = get_ticket_store("sqlite")
    assert isinstance(sqlite_store, SqliteTicketStore)
    sqlite_store.close()
    with pytest.raises(ValueError):
        get_ticket_store("redis")


def test_json_stores_sharing_a_file(data_file, clock):
    server = JsonFileTicketStore(str(data_file), clock=clock)
    admin = JsonFileTicketStore(str(data_file), clock=clock)
    removed = [f"192.0.2.{i}" for i in range(1, 31)]
    kept = [f"198.51.100.{i}" for i in range(1, 31)]
    for ip in removed:
        server.upsert(ticket(clock, ip))

    with ThreadPoolExecutor(max_workers=2) as pool:
        writes = pool.submit(lambda: [server.upsert(ticket(clock, ip)) for ip in kept])
        deletes = pool.submit(lambda: [admin.remove(ip) for ip in removed])
        writes.result()
        assert all(deletes.result())

    assert sorted(t.identifier for t in server.all()) == sorted(kept)


def test_json_write_waits_for_foreign_lock(store, clock, data_file, monkeypatch):
    monkeypatch.setattr(store_module, "LOCK_TIMEOUT_SECONDS", 0.05)
    with filelock.FileLock(str(data_file) + ".lock"):
        with pytest.raises(StoreWriteError):
            store.upsert(ticket(clock))
        with pytest.raises(StoreWriteError):
            store.remove(IP)
    assert not data_file.exists()

    store.upsert(ticket(clock))
    assert store.lookup(IP) is True


def test_sqlite_unreadable_database_is_empty(tmp_path, clock):
    path = tmp_path / "sverify.db"
    store = SqliteTicketStore(str(path), clock=clock)
    store.upsert(ticket(clock))

    other = sqlite3.connect(str(path))
    other.execute("DROP TABLE tickets")
    other.commit()
    other.close()

    assert store.lookup(IP) is False
    assert store.all() == []
    store.close()


def test_sqlite_close_releases_every_thread_connection(tmp_path, clock):
    store = SqliteTicketStore(str(tmp_path / "sverify.db"), clock=clock)
    ips = [f"198.51.100.{i}" for i in range(1, 21)]
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda ip: store.get(ip), ips))
    opened = list(store._connections)
    assert len(opened) >= 2

    store.close()
    assert store._connections == []
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")

    # reopens on demand
    store.upsert(ticket(clock))
    assert store.lookup(IP) is True
    store.close()
