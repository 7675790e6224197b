"""Dataset Persistence - Versioned snapshots of the classifier in a key-value store

The whole dataset lives under one fixed key and is overwritten after every
successful training batch. Layout (version 2):

    {"version": 2, "mode": "centroid",
     "classes": {"not_touch": {"kind": "centroid", "centroid": true,
                               "data": [...], "shape": [D], "count": 50,
                               "display_count": 50},
                 "touched": {...}}}

Snapshots from the first, untagged layout ({label: {data, shape, centroid, n}})
are migrated on load. Every store access is best-effort: failures are logged
and treated as "no snapshot", never raised to the caller.
"""

import json
import sqlite3
import threading
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .classifier import LABELS, SNAPSHOT_VERSION, ClassifierStore
from .errors import SnapshotFormatError

logger = logging.getLogger(__name__)

DATASET_KEY = 'touch-guard-dataset'


class KeyValueStore:
    """Minimal get/set/delete contract over an external medium"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def close(self):
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and throwaway sessions"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._data[key] = value

    def delete(self, key: str):
        self._data.pop(key, None)


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed key-value table

    Usage:
        kv = SQLiteKeyValueStore("touchguard.db")
        kv.set("key", "value")
        kv.get("key")
        kv.close()
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the store

        Args:
            db_path: Path to SQLite database. Defaults to touchguard/dataset.db
        """
        if db_path is None:
            db_path = Path(__file__).parent / "dataset.db"

        self.db_path = Path(db_path)

        # Thread-local storage for connections
        self._local = threading.local()
        self._close_lock = threading.Lock()
        self._closed = False

        self._init_db()

    def _init_db(self):
        """Create the table if needed"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(self.SCHEMA)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a thread-local database connection

        Training and the inference loop may run on different threads, so each
        thread gets its own connection.
        """
        with self._close_lock:
            if self._closed:
                raise RuntimeError("SQLiteKeyValueStore has been closed")

        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, check_same_thread=False)

        return self._local.conn

    def get(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str):
        conn = self._get_conn()
        with conn:
            conn.execute(
                """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = CURRENT_TIMESTAMP""",
                (key, value)
            )

    def delete(self, key: str):
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def close(self):
        """Close the calling thread's connection"""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        if hasattr(self._local, 'conn') and self._local.conn is not None:
            try:
                self._local.conn.close()
            except sqlite3.Error as e:
                logger.error(f"Error closing database connection: {e}")
            finally:
                self._local.conn = None


def migrate_snapshot(payload: Dict) -> Dict:
    """Bring a stored payload up to the current snapshot version

    Raises:
        SnapshotFormatError: Unknown version or unrecognised layout
    """
    if not isinstance(payload, dict):
        raise SnapshotFormatError(f"Snapshot is {type(payload).__name__}, expected an object")

    version = payload.get('version')
    if version == SNAPSHOT_VERSION:
        classes = payload.get('classes')
        if not isinstance(classes, dict):
            raise SnapshotFormatError("Snapshot has no 'classes' mapping")
        for label, entry in classes.items():
            if not isinstance(entry, dict):
                raise SnapshotFormatError(
                    f"Entry for label '{label}' is {type(entry).__name__}, expected an object"
                )
        return payload

    if version is not None:
        raise SnapshotFormatError(f"Unsupported snapshot version {version}")

    # Version 1: label-keyed entries with data/shape/centroid/n
    classes = {}
    for label, entry in payload.items():
        if not isinstance(entry, dict) or 'data' not in entry:
            raise SnapshotFormatError(f"Unrecognised entry for label '{label}'")
        centroid = bool(entry.get('centroid', True))
        n = int(entry.get('n', 0) or 0)
        shape = list(entry.get('shape') or [])
        data = list(entry.get('data') or [])
        if centroid:
            count = n
        else:
            count = int(shape[0]) if shape and data else 0
        classes[label] = {
            'kind': 'centroid' if centroid else 'raw',
            'centroid': centroid,
            'data': data,
            'shape': shape,
            'count': count,
            'display_count': n,
        }
    logger.info("Migrated version 1 snapshot")
    return {'version': SNAPSHOT_VERSION, 'mode': None, 'classes': classes}


@dataclass
class LoadResult:
    """Outcome of restoring the dataset at startup"""
    restored: bool = False
    display_counts: Dict[str, int] = field(default_factory=lambda: {label: 0 for label in LABELS})

    @property
    def both_classes(self) -> bool:
        return all(self.display_counts.get(label, 0) > 0 for label in LABELS)


class DatasetPersistence:
    """Save/restore the classifier store under a single fixed key

    Usage:
        persistence = DatasetPersistence(store, SQLiteKeyValueStore("guard.db"))
        persistence.save({"not_touch": 50, "touched": 50})
        result = persistence.load(discard_on_startup=False)
    """

    def __init__(self, store: ClassifierStore, kv_store: KeyValueStore,
                 key: str = DATASET_KEY):
        self.store = store
        self.kv = kv_store
        self.key = key

    def save(self, display_counts: Optional[Dict[str, int]] = None) -> bool:
        """Write a snapshot of the store, replacing any previous one

        Args:
            display_counts: Counts shown to the user, kept with each class

        Returns:
            True if the snapshot was written
        """
        snapshot = self.store.export_snapshot()
        display_counts = display_counts or {}
        for label, entry in snapshot['classes'].items():
            entry['display_count'] = int(display_counts.get(label, entry['count']))

        try:
            self.kv.set(self.key, json.dumps(snapshot))
        except Exception as e:
            logger.warning(f"Could not save dataset snapshot: {e}")
            return False

        logger.debug(f"Saved {snapshot['mode']} snapshot: {self.store.get_class_counts()}")
        return True

    def delete(self) -> bool:
        """Remove the persisted snapshot

        Returns:
            True if the delete reached the store
        """
        try:
            self.kv.delete(self.key)
        except Exception as e:
            logger.warning(f"Could not delete dataset snapshot: {e}")
            return False
        return True

    def load(self, discard_on_startup: bool = False) -> LoadResult:
        """Restore the store from the persisted snapshot

        Args:
            discard_on_startup: Delete the snapshot and start empty instead

        Returns:
            LoadResult with display counts (zeros when nothing was restored)
        """
        if discard_on_startup:
            self.delete()
            logger.info("Discarded persisted dataset on startup")
            return LoadResult()

        try:
            raw = self.kv.get(self.key)
        except Exception as e:
            logger.warning(f"Could not read dataset snapshot: {e}")
            return LoadResult()

        if not raw:
            return LoadResult()

        try:
            snapshot = migrate_snapshot(json.loads(raw))
            self.store.import_snapshot(snapshot)
        except (ValueError, TypeError, KeyError, AttributeError, SnapshotFormatError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Ignoring unusable dataset snapshot: {e}")
            self.store.clear_all()
            return LoadResult()

        counts = {label: 0 for label in LABELS}
        stored = self.store.get_class_counts()
        for label, entry in snapshot['classes'].items():
            # A class with no restorable data shows zero regardless of its old count
            if label in counts and stored.get(label, 0) > 0:
                counts[label] = int(entry.get('display_count', entry.get('count', 0)) or 0) or stored[label]

        logger.info(f"Restored dataset: {counts}")
        return LoadResult(restored=True, display_counts=counts)
