"""
Tests for PendingTransferStore and its key-value backends.
"""

import asyncio
import json
import threading

import pytest

from rollup_bridge.pending_store import (
    PENDING_MESSAGES_KEY,
    UNREADABLE_SUFFIX,
    MemoryKeyValueStore,
    PendingTransferRecord,
    PendingTransferStore,
    SqliteKeyValueStore,
)
from tests.fakes import USER


def record(tx_hash: str, token_id: str = "7", **kwargs) -> PendingTransferRecord:
    return PendingTransferRecord(tx_hash=tx_hash, token_id=token_id, owner=USER, **kwargs)


class TestPendingTransferStore:
    """Test idempotent add/remove/list"""

    def test_add_twice_keeps_one(self):
        store = PendingTransferStore()
        assert store.add(record("0xBB")) is True
        assert store.add(record("0xBB", name="again")) is False

        records = store.list_all()
        assert len(records) == 1
        assert records[0].name == ""

    def test_hash_case_insensitive(self):
        store = PendingTransferStore()
        store.add(record("0xBB"))
        store.add(record("0xbb"))
        assert len(store) == 1

    def test_remove(self):
        store = PendingTransferStore()
        store.add(record("0xBB"))
        store.add(record("0xCC", "8"))

        assert store.remove("0xBB") is True
        assert store.remove("0xBB") is False
        assert [r.tx_hash for r in store.list_all()] == ["0xcc"]

    def test_order_preserved(self):
        store = PendingTransferStore()
        for h in ("0x01", "0x02", "0x03"):
            store.add(record(h))
        assert [r.tx_hash for r in store.list_all()] == ["0x01", "0x02", "0x03"]

    def test_persisted_shape(self):
        backend = MemoryKeyValueStore()
        store = PendingTransferStore(backend)
        store.add(record("0xBB", image="ipfs://img", name="Plot 7", description="d"))

        stored = json.loads(backend.get(PENDING_MESSAGES_KEY))
        assert stored == [{
            'tokenId': "7",
            'hash': "0xbb",
            'owner': USER,
            'image': "ipfs://img",
            'name': "Plot 7",
            'description': "d",
        }]

    def test_unreadable_value_treated_as_empty_and_backed_up(self):
        backend = MemoryKeyValueStore()
        backend.set(PENDING_MESSAGES_KEY, "not json")
        store = PendingTransferStore(backend)

        assert store.list_all() == []
        assert backend.get(PENDING_MESSAGES_KEY + UNREADABLE_SUFFIX) == "not json"

        store.add(record("0xCC"))
        assert [r.tx_hash for r in store.list_all()] == ["0xcc"]
        assert backend.get(PENDING_MESSAGES_KEY + UNREADABLE_SUFFIX) == "not json"

    def test_bad_entry_does_not_drop_others(self):
        """One malformed entry is skipped on read and carried through writes"""
        backend = MemoryKeyValueStore()
        bad = {'tokenId': "9", 'hash': "not-a-hash", 'owner': USER}
        backend.set(PENDING_MESSAGES_KEY, json.dumps([record("0xAA").to_dict(), bad, "junk"]))
        store = PendingTransferStore(backend)

        assert [r.tx_hash for r in store.list_all()] == ["0xaa"]

        assert store.add(record("0xCC", "8")) is True
        assert [r.tx_hash for r in store.list_all()] == ["0xaa", "0xcc"]
        stored = json.loads(backend.get(PENDING_MESSAGES_KEY))
        assert bad in stored
        assert "junk" in stored

        assert store.remove("0xAA") is True
        assert [r.tx_hash for r in store.list_all()] == ["0xcc"]
        assert len(json.loads(backend.get(PENDING_MESSAGES_KEY))) == 3

    def test_concurrent_adds_from_threads(self):
        store = PendingTransferStore()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            store.add(record("0xCC"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert [r.tx_hash for r in store.list_all()] == ["0xcc"]

    @pytest.mark.asyncio
    async def test_concurrent_adds_from_pollers(self):
        store = PendingTransferStore()

        async def poller():
            await asyncio.sleep(0)
            return store.add(record("0xCC"))

        results = await asyncio.gather(poller(), poller())
        assert sorted(results) == [False, True]
        assert len(store) == 1


class TestSqliteKeyValueStore:
    """Test the SQLite backend"""

    def test_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "pending.db")
        backend = SqliteKeyValueStore(db_path)
        PendingTransferStore(backend).add(record("0xBB"))
        backend.close()

        reopened = SqliteKeyValueStore(db_path)
        records = PendingTransferStore(reopened).list_all()
        reopened.close()

        assert [r.tx_hash for r in records] == ["0xbb"]

    def test_set_get_remove(self, tmp_path):
        backend = SqliteKeyValueStore(str(tmp_path / "kv.db"))
        backend.set("k", "1")
        backend.set("k", "2")
        assert backend.get("k") == "2"
        backend.remove("k")
        assert backend.get("k") is None
        backend.close()
