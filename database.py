"""
Database Helper Functions

MongoDB helper functions used by the API and the background worker.
Collections are named after the lowercased schema: "user", "product", "order".
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database

import settings

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    _client = MongoClient(settings.DATABASE_URL)
    db = _client[settings.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict],
                    session: Optional[ClientSession] = None) -> str:
    """Insert a single document with timestamps and return its id"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    data_dict["created_at"] = now()
    data_dict["updated_at"] = data_dict["created_at"]

    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, newest_first: bool = False) -> List[Dict[str, Any]]:
    """Get documents from collection"""
    cursor = database[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


@contextmanager
def start_transaction(database: Database) -> Iterator[Optional[ClientSession]]:
    """
    Run a block inside a multi-document transaction.

    Commits when the block exits normally and aborts when it raises. With
    MONGO_TRANSACTIONS disabled (standalone servers, tests) the block runs
    without a session and None is yielded.

    Jobs enqueued inside the block are not transactional. A broker failure
    aborts the write, but a commit that fails after an enqueue leaves the
    job queued, so an upload may land for a document that was never saved.
    """
    if not settings.MONGO_TRANSACTIONS:
        yield None
        return

    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def parse_object_id(value: str, what: str = "document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {what} id")


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "password_hash":
            continue
        if isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        else:
            out[k] = v
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
