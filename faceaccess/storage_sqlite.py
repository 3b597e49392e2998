# faceaccess/storage_sqlite.py
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import List, Optional

from .config import ATTRIBUTE_HISTORY_CAP, SQLITE_PATH
from .errors import NotFoundError, StorageError
from .schemas import AttributeObservation, PhotoRef, UserRecord, utcnow
from .storage import UserStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    last_seen TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS photos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    uploaded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS embeddings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    vector TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    expression TEXT NOT NULL,
    confidence REAL,
    age INTEGER,
    gender TEXT,
    timestamp TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
INSERT OR IGNORE INTO meta (key, value) VALUES ('revision', 0);
"""


class SqliteUserStore(UserStore):
    """One row per user; photos, embeddings and observations in child tables."""

    backend = "sqlite"

    def __init__(self, path: str = SQLITE_PATH, history_cap: int = ATTRIBUTE_HISTORY_CAP):
        super().__init__(history_cap)
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"SQLite user store at {path}")

    @contextmanager
    def _connect(self):
        """One connection and one transaction per operation."""
        try:
            conn = sqlite3.connect(self.path, timeout=10)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"SQLite error: {e}")
            raise StorageError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _bump(conn) -> None:
        conn.execute("UPDATE meta SET value = value + 1 WHERE key = 'revision'")

    @property
    def revision(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT value FROM meta WHERE key = 'revision'").fetchone()["value"]

    def _insert_observations(self, conn, user_id: int, observations) -> None:
        conn.executemany(
            "INSERT INTO observations (user_id, expression, confidence, age, gender, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            [(user_id, o.expression, o.confidence, o.age, o.gender, o.timestamp.isoformat()) for o in observations],
        )
        conn.execute(
            """
            DELETE FROM observations WHERE user_id = ? AND id NOT IN (
                SELECT id FROM observations WHERE user_id = ? ORDER BY id DESC LIMIT ?
            )
            """,
            (user_id, user_id, max(self.history_cap, 0)),
        )

    def _load(self, conn, row) -> UserRecord:
        uid = row["id"]
        photos = conn.execute("SELECT url, uploaded_at FROM photos WHERE user_id = ? ORDER BY id", (uid,)).fetchall()
        vectors = conn.execute("SELECT vector FROM embeddings WHERE user_id = ? ORDER BY id", (uid,)).fetchall()
        history = conn.execute(
            "SELECT expression, confidence, age, gender, timestamp FROM observations WHERE user_id = ? ORDER BY id",
            (uid,),
        ).fetchall()
        return UserRecord(
            name=row["name"],
            embeddings=[json.loads(v["vector"]) for v in vectors],
            photos=[PhotoRef(url=p["url"], uploaded_at=p["uploaded_at"]) for p in photos],
            attribute_history=[AttributeObservation(**dict(h)) for h in history],
            created_at=row["created_at"],
            last_seen=row["last_seen"],
        )

    def upsert(self, name, embeddings, photos=(), observations=()):
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM users WHERE name = ?", (name,)).fetchone()
            if row is None:
                record = self._new_record(name, embeddings, photos, observations)
                cur = conn.execute(
                    "INSERT INTO users (name, created_at, last_seen) VALUES (?, ?, ?)",
                    (name, record.created_at.isoformat(), record.last_seen.isoformat()),
                )
                uid = cur.lastrowid
            else:
                uid = row["id"]
            conn.executemany(
                "INSERT INTO embeddings (user_id, vector) VALUES (?, ?)",
                [(uid, json.dumps([float(x) for x in e])) for e in embeddings],
            )
            conn.executemany(
                "INSERT INTO photos (user_id, url, uploaded_at) VALUES (?, ?, ?)",
                [(uid, p.url, p.uploaded_at.isoformat()) for p in photos],
            )
            self._insert_observations(conn, uid, observations)
            self._bump(conn)
            record = self._load(conn, conn.execute("SELECT * FROM users WHERE id = ?", (uid,)).fetchone())
        logger.info(f"Upserted {name}: +{len(embeddings)} descriptor(s), total {len(record.embeddings)}")
        return record

    def get(self, name) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
            return self._load(conn, row) if row is not None else None

    def list_users(self) -> List[UserRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [self._load(conn, r) for r in rows]

    def delete(self, name):
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM users WHERE name = ?", (name,)).fetchone()
            if row is None:
                raise NotFoundError(f"User {name} not found")
            urls = [r["url"] for r in conn.execute("SELECT url FROM photos WHERE user_id = ? ORDER BY id", (row["id"],))]
            conn.execute("DELETE FROM users WHERE id = ?", (row["id"],))
            self._bump(conn)
        logger.info(f"Deleted user {name}")
        return urls

    def clear_all(self):
        with self._connect() as conn:
            urls = [r["url"] for r in conn.execute("SELECT url FROM photos ORDER BY id")]
            conn.execute("DELETE FROM users")
            self._bump(conn)
        logger.info("Cleared all users")
        return urls

    def append_observation(self, name, observation):
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM users WHERE name = ?", (name,)).fetchone()
            if row is None:
                raise NotFoundError(f"User {name} not found")
            self._insert_observations(conn, row["id"], [observation])
            conn.execute("UPDATE users SET last_seen = ? WHERE id = ?", (utcnow().isoformat(), row["id"]))
            self._bump(conn)
            return self._load(conn, conn.execute("SELECT * FROM users WHERE id = ?", (row["id"],)).fetchone())
