"""
Document store access for the sweep.

The store handle is always passed explicitly; `connect_store` scopes the
MongoDB client so it is released on every exit path.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, Iterator, List, Optional

from pymongo import MongoClient
from pymongo.errors import ConfigurationError, PyMongoError

from .config import MONGODB_DB, MONGODB_URI, SERVER_TIMEOUT_MS, SOCKET_TIMEOUT_MS
from .errors import StoreConnectionError, StoreReadError, StoreWriteError
from ..util.logging import logger


class MongoDocumentStore:
    """Thin wrapper over a pymongo Database that maps driver errors onto the sweep taxonomy."""

    def __init__(self, database, client: Optional[MongoClient] = None):
        self.database = database
        self.client = client

    @property
    def name(self) -> str:
        return self.database.name

    def scan(self, collection: str, fields: Optional[Iterable[str]] = None) -> Iterator[Dict[str, Any]]:
        """Stream every document of a collection, optionally projected to `fields`."""
        projection = {name: 1 for name in fields} if fields else None
        try:
            cursor = self.database[collection].find({}, projection)
            for document in cursor:
                yield document
        except PyMongoError as e:
            raise StoreReadError(f"Scan of '{collection}' failed: {e}", collection=collection) from e

    def find_by_ids(self, collection: str, id_field: str, ids: List[Any]) -> List[Dict[str, Any]]:
        """Fetch full documents for the given identities."""
        if not ids:
            return []
        try:
            return list(self.database[collection].find({id_field: {"$in": list(ids)}}))
        except PyMongoError as e:
            raise StoreReadError(f"Lookup in '{collection}' failed: {e}", collection=collection) from e

    def delete_by_id(self, collection: str, id_field: str, doc_id: Any) -> int:
        """Delete a single document by identity. Returns the number of documents removed (0 or 1)."""
        try:
            result = self.database[collection].delete_one({id_field: doc_id})
        except PyMongoError as e:
            raise StoreWriteError(f"Delete of {id_field}={doc_id!r} in '{collection}' failed: {e}") from e
        return result.deleted_count

    def insert(self, collection: str, document: Dict[str, Any]) -> Any:
        try:
            return self.database[collection].insert_one(document).inserted_id
        except PyMongoError as e:
            raise StoreWriteError(f"Insert into '{collection}' failed: {e}") from e

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


@contextmanager
def connect_store(
    uri: Optional[str] = None,
    database: Optional[str] = None,
    server_timeout_ms: Optional[int] = None,
    socket_timeout_ms: Optional[int] = None,
) -> Generator[MongoDocumentStore, None, None]:
    """
    Open a MongoDB connection, verify it with a ping and yield a store handle.

    Raises:
        StoreConnectionError: If no URI is configured, the server cannot be
            reached, or authentication fails.
    """
    uri = uri or MONGODB_URI
    database = database or MONGODB_DB
    if not uri:
        raise StoreConnectionError("MONGODB_URI environment variable not set")

    try:
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=server_timeout_ms or SERVER_TIMEOUT_MS,
            connectTimeoutMS=server_timeout_ms or SERVER_TIMEOUT_MS,
            socketTimeoutMS=socket_timeout_ms or SOCKET_TIMEOUT_MS,
        )
    except ConfigurationError as e:
        raise StoreConnectionError(f"Invalid store configuration: {e}") from e

    try:
        client.admin.command("ping")
        db = client[database] if database else client.get_default_database()
    except ConfigurationError as e:
        client.close()
        raise StoreConnectionError(f"No database selected: set MONGODB_DB or include one in the URI ({e})") from e
    except PyMongoError as e:
        client.close()
        raise StoreConnectionError(f"Could not connect to store: {e}") from e

    store = MongoDocumentStore(db, client)
    logger.log_operation("store.connect", "success", {"database": store.name})
    try:
        yield store
    finally:
        store.close()
        logger.log_operation("store.disconnect", "success", {"database": db.name})
