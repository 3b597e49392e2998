# faceaccess/storage.py
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .config import ATTRIBUTE_HISTORY_CAP, DATABASE, USERS_JSON_PATH
from .errors import NotFoundError, StorageError, ValidationError
from .schemas import AttributeObservation, PhotoRef, UserRecord, utcnow

logger = logging.getLogger(__name__)


class UserStore(ABC):
    """
    name -> UserRecord mapping shared by every backend.

    Embeddings are only ever appended. delete() and clear_all() hand back
    the photo URLs the caller must release, since the store does not own
    the photo files.
    """

    backend = "abstract"

    def __init__(self, history_cap: int = ATTRIBUTE_HISTORY_CAP):
        self.history_cap = history_cap

    @property
    @abstractmethod
    def revision(self) -> int:
        """Counter that moves on every mutation."""

    @abstractmethod
    def upsert(
        self,
        name: str,
        embeddings: Sequence[Sequence[float]],
        photos: Sequence[PhotoRef] = (),
        observations: Sequence[AttributeObservation] = (),
    ) -> UserRecord:
        ...

    @abstractmethod
    def get(self, name: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def list_users(self) -> List[UserRecord]:
        """All records ordered by name."""

    @abstractmethod
    def delete(self, name: str) -> List[str]:
        ...

    @abstractmethod
    def clear_all(self) -> List[str]:
        ...

    @abstractmethod
    def append_observation(self, name: str, observation: AttributeObservation) -> UserRecord:
        ...

    def labeled_descriptors(self):
        return [(u.name, u.embeddings) for u in self.list_users() if u.embeddings]

    def describe(self) -> str:
        return self.backend

    def close(self) -> None:
        pass

    # --- shared helpers ---
    def _new_record(self, name, embeddings, photos, observations) -> UserRecord:
        if not embeddings:
            raise ValidationError(f"Cannot create user {name} without face descriptors")
        now = utcnow()
        return UserRecord(
            name=name,
            embeddings=[list(map(float, e)) for e in embeddings],
            photos=list(photos),
            attribute_history=self._trim(list(observations)),
            created_at=now,
            last_seen=now,
        )

    def _trim(self, history: List[Any]) -> List[Any]:
        if self.history_cap <= 0:
            return []
        return history[-self.history_cap:]


class JsonUserStore(UserStore):
    """
    Whole collection in one JSON file: {"revision": n, "users": {name: record}}.
    A corrupt or missing file is reset to an empty collection.
    """

    backend = "json-file"

    def __init__(self, path: str = USERS_JSON_PATH, history_cap: int = ATTRIBUTE_HISTORY_CAP):
        super().__init__(history_cap)
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(path):
            self._write_db({"revision": 0, "users": {}})

    def _read_db(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            data.setdefault("revision", 0)
            data.setdefault("users", {})
            return data
        except (json.JSONDecodeError, FileNotFoundError):
            logger.warning(f"User DB {self.path} missing or corrupt, resetting")
            reset_data = {"revision": 0, "users": {}}
            self._write_db(reset_data)
            return reset_data
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

    def _write_db(self, data: Dict[str, Any]) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def _commit(self, db: Dict[str, Any]) -> None:
        db["revision"] = db.get("revision", 0) + 1
        self._write_db(db)

    @property
    def revision(self) -> int:
        return self._read_db()["revision"]

    def upsert(self, name, embeddings, photos=(), observations=()):
        with self._lock:
            db = self._read_db()
            existing = db["users"].get(name)
            if existing is None:
                record = self._new_record(name, embeddings, photos, observations)
            else:
                record = UserRecord.model_validate(existing)
                record.embeddings.extend(list(map(float, e)) for e in embeddings)
                record.photos.extend(photos)
                record.attribute_history = self._trim(record.attribute_history + list(observations))
            db["users"][name] = record.model_dump(mode="json")
            self._commit(db)
        logger.info(f"Upserted {name}: +{len(embeddings)} descriptor(s), total {len(record.embeddings)}")
        return record

    def get(self, name):
        raw = self._read_db()["users"].get(name)
        return UserRecord.model_validate(raw) if raw is not None else None

    def list_users(self):
        users = self._read_db()["users"]
        return [UserRecord.model_validate(users[n]) for n in sorted(users)]

    def delete(self, name):
        with self._lock:
            db = self._read_db()
            raw = db["users"].pop(name, None)
            if raw is None:
                raise NotFoundError(f"User {name} not found")
            self._commit(db)
        logger.info(f"Deleted user {name}")
        return [p["url"] for p in raw.get("photos", [])]

    def clear_all(self):
        with self._lock:
            db = self._read_db()
            urls = [p["url"] for u in db["users"].values() for p in u.get("photos", [])]
            db["users"] = {}
            self._commit(db)
        logger.info("Cleared all users")
        return urls

    def append_observation(self, name, observation):
        with self._lock:
            db = self._read_db()
            raw = db["users"].get(name)
            if raw is None:
                raise NotFoundError(f"User {name} not found")
            record = UserRecord.model_validate(raw)
            record.attribute_history = self._trim(record.attribute_history + [observation])
            record.last_seen = utcnow()
            db["users"][name] = record.model_dump(mode="json")
            self._commit(db)
        return record


def create_store(backend: str = DATABASE, **kwargs) -> UserStore:
    """
    Build the configured store. An unreachable MongoDB falls back to the
    JSON file store.
    """
    backend = backend.lower()
    if backend == "json":
        return JsonUserStore(**kwargs)
    if backend == "sqlite":
        from .storage_sqlite import SqliteUserStore

        return SqliteUserStore(**kwargs)
    if backend in ("mongo", "mongodb"):
        from .storage_mongo import MongoUserStore

        try:
            return MongoUserStore(**kwargs)
        except StorageError as e:
            logger.warning(f"MongoDB unavailable ({e}), falling back to JSON file database")
            return JsonUserStore(history_cap=kwargs.get("history_cap", ATTRIBUTE_HISTORY_CAP))
    raise ValueError(f"Unknown database backend: {backend}")
