"""
Pending Transfer Store

Locally known outgoing NFT transfers, kept as one JSON array under a single
storage key. Not authoritative: the event log scan is the fallback source
of truth when this store is empty or stale.

Malformed entries are skipped on read and written back unchanged. A value
that is not a JSON list is copied to "<key>:unreadable" before it is
treated as empty.

Backends (KeyValuePort):
- MemoryKeyValueStore: process-local dict
- SqliteKeyValueStore: embedded SQLite key-value table
"""

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .protocol import hash_hex


PENDING_MESSAGES_KEY = "arbitrum:bridge:pending-messages"
UNREADABLE_SUFFIX = ":unreadable"


@dataclass
class PendingTransferRecord:
    """Persisted outgoing NFT transfer"""
    tx_hash: str
    token_id: str
    owner: str
    image: str = ""
    name: str = ""
    description: str = ""

    def __post_init__(self):
        self.tx_hash = hash_hex(self.tx_hash)
        self.token_id = str(self.token_id)

    def to_dict(self) -> Dict:
        return {
            'tokenId': self.token_id,
            'hash': self.tx_hash,
            'owner': self.owner,
            'image': self.image,
            'name': self.name,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PendingTransferRecord':
        return cls(
            tx_hash=data['hash'],
            token_id=data['tokenId'],
            owner=data.get('owner', ''),
            image=data.get('image', ''),
            name=data.get('name', ''),
            description=data.get('description', ''),
        )


class KeyValuePort:
    """String key -> string value storage"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError


class MemoryKeyValueStore(KeyValuePort):

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._data[key] = value

    def remove(self, key: str):
        self._data.pop(key, None)


class SqliteKeyValueStore(KeyValuePort):
    """
    SQLite-backed key-value table

    Features:
    - One row per key (primary key upsert)
    - Last update timestamp per key
    - Safe to share between threads of one process
    """

    def __init__(self, db_path: str = "pending_transfers.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._initialize_db()
        logger.info(f"Pending transfer database initialized: {self.db_path}")

    def _initialize_db(self):
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        self.conn.commit()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
        return row['value'] if row else None

    def set(self, key: str, value: str):
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """, (key, value, datetime.now(timezone.utc).isoformat()))
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def remove(self, key: str):
        with self._lock:
            self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Pending transfer database closed")


class PendingTransferStore:
    """
    Idempotent registry of pending outgoing NFT transfers, unique by tx hash
    """

    def __init__(self, backend: Optional[KeyValuePort] = None, key: str = PENDING_MESSAGES_KEY):
        self.backend = backend or MemoryKeyValueStore()
        self.key = key
        self._lock = threading.Lock()

    def _read(self) -> Tuple[List[PendingTransferRecord], List]:
        """
        Parse the stored list item by item

        Returns:
            (records, unreadable items kept verbatim for the next write)
        """
        raw = self.backend.get(self.key)
        if not raw:
            return [], []
        try:
            items = json.loads(raw)
        except ValueError as e:
            items = None
            logger.warning(f"Pending transfer list is not valid JSON: {e}")
        if not isinstance(items, list):
            # Keep a copy; the next write replaces the value
            self.backend.set(self.key + UNREADABLE_SUFFIX, raw)
            logger.warning(f"✗ Unreadable pending transfer list backed up to {self.key + UNREADABLE_SUFFIX}")
            return [], []

        records: List[PendingTransferRecord] = []
        unreadable: List = []
        for item in items:
            try:
                records.append(PendingTransferRecord.from_dict(item))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable pending transfer entry {item!r}: {e}")
                unreadable.append(item)
        return records, unreadable

    def _write(self, records: List[PendingTransferRecord], unreadable: List):
        items = [r.to_dict() for r in records] + unreadable
        if items:
            self.backend.set(self.key, json.dumps(items))
        else:
            self.backend.remove(self.key)

    def add(self, record: PendingTransferRecord) -> bool:
        """
        Add a record unless one with the same hash exists

        Returns:
            True if the record was appended, False if it was already stored
        """
        with self._lock:
            records, unreadable = self._read()
            if any(r.tx_hash == record.tx_hash for r in records):
                logger.debug(f"Pending transfer {record.tx_hash} already stored")
                return False
            records.append(record)
            self._write(records, unreadable)

        logger.info(f"✓ Pending transfer stored: token {record.token_id} ({record.tx_hash})")
        return True

    def remove(self, tx_hash: str) -> bool:
        """
        Remove the record for a hash (no-op if absent)

        Returns:
            True if a record was removed
        """
        tx_hash = hash_hex(tx_hash)
        with self._lock:
            records, unreadable = self._read()
            kept = [r for r in records if r.tx_hash != tx_hash]
            if len(kept) == len(records):
                return False
            self._write(kept, unreadable)

        logger.info(f"✓ Pending transfer removed: {tx_hash}")
        return True

    def list_all(self) -> List[PendingTransferRecord]:
        with self._lock:
            return self._read()[0]

    def get(self, tx_hash: str) -> Optional[PendingTransferRecord]:
        tx_hash = hash_hex(tx_hash)
        for record in self.list_all():
            if record.tx_hash == tx_hash:
                return record
        return None

    def __len__(self):
        return len(self.list_all())
