# faceaccess/storage_mongo.py
import logging
from typing import List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import ATTRIBUTE_HISTORY_CAP, MONGO_DB, MONGO_TIMEOUT_MS, MONGO_URI
from .errors import NotFoundError, StorageError
from .schemas import UserRecord, utcnow
from .storage import UserStore

logger = logging.getLogger(__name__)

COLLECTION_NAME = "users"
META_COLLECTION_NAME = "meta"


class MongoUserStore(UserStore):
    backend = "mongodb"

    def __init__(
        self,
        uri: str = MONGO_URI,
        db_name: str = MONGO_DB,
        history_cap: int = ATTRIBUTE_HISTORY_CAP,
        client: Optional[MongoClient] = None,
    ):
        """
        Connect to MongoDB and make sure the unique name index exists.

        Args:
            uri: connection string, ignored when client is given
            db_name: database holding the users collection
            history_cap: maximum attribute observations kept per user
            client: an already constructed client (tests pass mongomock)
        """
        super().__init__(history_cap)
        try:
            if client is None:
                client = MongoClient(uri, serverSelectionTimeoutMS=MONGO_TIMEOUT_MS, tz_aware=True)
                # Test connection
                client.server_info()
            self.client = client
            self.db = client[db_name]
            self.collection = self.db[COLLECTION_NAME]
            self.meta = self.db[META_COLLECTION_NAME]
            self.collection.create_index([("name", ASCENDING)], unique=True)
            logger.info(f"Connected to MongoDB database: {db_name}")
        except PyMongoError as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise StorageError(f"MongoDB connection failed: {e}") from e

    def _bump(self) -> None:
        self.meta.update_one({"_id": "revision"}, {"$inc": {"value": 1}}, upsert=True)

    @staticmethod
    def _to_record(doc) -> UserRecord:
        return UserRecord.model_validate({k: v for k, v in doc.items() if k != "_id"})

    def _history_push(self, observations):
        return {"$each": [o.model_dump() for o in observations], "$slice": -max(self.history_cap, 0)}

    @property
    def revision(self) -> int:
        try:
            doc = self.meta.find_one({"_id": "revision"})
        except PyMongoError as e:
            raise StorageError(f"Error reading revision: {e}") from e
        return doc["value"] if doc else 0

    def _append(self, name, embeddings, photos, observations):
        # $push keeps concurrent appends atomic per document
        return self.collection.find_one_and_update(
            {"_id": name},
            {
                "$push": {
                    "embeddings": {"$each": [[float(x) for x in e] for e in embeddings]},
                    "photos": {"$each": [p.model_dump() for p in photos]},
                    "attribute_history": self._history_push(observations),
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    def upsert(self, name, embeddings, photos=(), observations=()):
        try:
            doc = self._append(name, embeddings, photos, observations)
            if doc is not None:
                record = self._to_record(doc)
            else:
                record = self._new_record(name, embeddings, photos, observations)
                doc = record.model_dump()
                doc["_id"] = name
                try:
                    self.collection.insert_one(doc)
                except DuplicateKeyError:
                    # another writer created the user first
                    logger.info(f"User {name} created concurrently, appending instead")
                    record = self._to_record(self._append(name, embeddings, photos, observations))
            self._bump()
        except PyMongoError as e:
            logger.error(f"Error saving user {name}: {e}")
            raise StorageError(f"Error saving user {name}: {e}") from e
        logger.info(f"Upserted {name}: +{len(embeddings)} descriptor(s), total {len(record.embeddings)}")
        return record

    def get(self, name):
        try:
            doc = self.collection.find_one({"_id": name})
        except PyMongoError as e:
            raise StorageError(f"Error retrieving user {name}: {e}") from e
        return self._to_record(doc) if doc else None

    def list_users(self) -> List[UserRecord]:
        try:
            return [self._to_record(d) for d in self.collection.find({}).sort("name", ASCENDING)]
        except PyMongoError as e:
            raise StorageError(f"Error listing users: {e}") from e

    def delete(self, name):
        try:
            doc = self.collection.find_one_and_delete({"_id": name})
            if doc is None:
                raise NotFoundError(f"User {name} not found")
            self._bump()
        except PyMongoError as e:
            raise StorageError(f"Error deleting user {name}: {e}") from e
        logger.info(f"Deleted user {name}")
        return [p["url"] for p in doc.get("photos", [])]

    def clear_all(self):
        try:
            # delete one document at a time so every removed record hands back its photos
            urls = []
            doc = self.collection.find_one_and_delete({})
            while doc is not None:
                urls.extend(p["url"] for p in doc.get("photos", []))
                doc = self.collection.find_one_and_delete({})
            self._bump()
        except PyMongoError as e:
            raise StorageError(f"Error clearing users: {e}") from e
        logger.info("Cleared all users")
        return urls

    def append_observation(self, name, observation):
        try:
            doc = self.collection.find_one_and_update(
                {"_id": name},
                {
                    "$set": {"last_seen": utcnow()},
                    "$push": {"attribute_history": self._history_push([observation])},
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                raise NotFoundError(f"User {name} not found")
            self._bump()
        except PyMongoError as e:
            raise StorageError(f"Error updating user {name}: {e}") from e
        return self._to_record(doc)

    def close(self):
        try:
            self.client.close()
            logger.info("MongoDB connection closed")
        except PyMongoError as e:
            logger.error(f"Error closing MongoDB connection: {e}")
