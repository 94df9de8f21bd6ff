"""
MongoDB access helpers.

A single client is created from DATABASE_URL / DATABASE_NAME when the module is
imported. Feature modules receive the Database handle as an argument; the API
layer resolves it through get_db() so tests can override it.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import MongoClient
from pymongo.database import Database

from errors import DatabaseUnavailable, NotFound
from logging_setup import get_logger
from settings import settings

logger = get_logger("database")

_client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    """(Re)create the module-level client. Returns None when no URL is configured."""
    global _client, db
    url = url or settings.database_url
    name = name or settings.database_name
    if not url:
        logger.warning("DATABASE_URL not set; database unavailable")
        _client, db = None, None
        return None
    _client = MongoClient(url)
    db = _client[name]
    logger.info("Using database %s", name)
    return db


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailable()
    return db


def ensure_indexes(database: Database) -> None:
    database["users"].create_index("email", unique=True)
    database["chats"].create_index("participant_ids")
    database["sessions"].create_index("user_id")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"Unknown id: {value}")


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    doc = dict(data)
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


connect()
