"""
Document store abstraction with in-memory, SQLAlchemy and MongoDB implementations.

Every client stores schemaless records grouped by collection name and returns
them as plain dicts carrying a string ``id``.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError
from sqlalchemy import JSON, Column, Float, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from school_backend.errors import PersistenceError

POSTS = "posts"
MESSAGES = "messages"
MODULES = "modules"
EVALUATIONS = "evaluations"

# (field, direction) pairs, direction is 1 for ascending and -1 for descending
SortSpec = Sequence[tuple[str, int]]


class DbClient(Protocol):
    """Interface for document store access."""

    def insert_one(self, collection: str, record: dict) -> str:
        ...

    def find(
        self,
        collection: str,
        filter: Optional[dict] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(value)


@dataclass
class MessageRecord:
    sender: str
    receiver: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def as_document(self) -> dict:
        return {
            "sender": self.sender,
            "receiver": self.receiver,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    def as_dict(self) -> dict:
        """JSON-ready form pushed to live connections."""
        return {
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: dict) -> "MessageRecord":
        return cls(
            id=doc.get("id"),
            sender=doc.get("sender", ""),
            receiver=doc.get("receiver", ""),
            content=doc.get("content", ""),
            timestamp=parse_timestamp(doc["timestamp"]),
        )


@dataclass
class PostRecord:
    title: str
    content: str
    image_url: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def as_document(self) -> dict:
        return {
            "title": self.title,
            "content": self.content,
            "imageUrl": self.image_url,
            "createdAt": self.created_at,
        }


@dataclass
class ModuleRecord:
    title: str
    description: str = ""
    file_url: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def as_document(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "fileUrl": self.file_url,
            "createdAt": self.created_at,
        }


@dataclass
class EvaluationRecord:
    student_id: str
    age: str = ""
    gross_b: int = 0
    gross_e: int = 0
    fine_b: int = 0
    fine_e: int = 0
    social_b: int = 0
    social_e: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def as_document(self) -> dict:
        return {
            "studentId": self.student_id,
            "age": self.age,
            "grossB": self.gross_b,
            "grossE": self.gross_e,
            "fineB": self.fine_b,
            "fineE": self.fine_e,
            "socialB": self.social_b,
            "socialE": self.social_e,
            "createdAt": self.created_at,
        }


def matches_filter(doc: dict, filter: Optional[dict]) -> bool:
    """
    Evaluate the subset of Mongo filter syntax the API uses: top-level
    equality plus ``$or`` over nested filters.
    """
    if not filter:
        return True
    for key, expected in filter.items():
        if key == "$or":
            if not any(matches_filter(doc, clause) for clause in expected):
                return False
        elif doc.get(key) != expected:
            return False
    return True


def _sorted_docs(docs: Iterable[dict], sort: Optional[SortSpec]) -> list[dict]:
    items = list(docs)
    # Apply keys in reverse so the first sort key has the highest precedence.
    for key, direction in reversed(list(sort or [])):
        items.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
    return items


class InMemoryDbClient:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def insert_one(self, collection: str, record: dict) -> str:
        doc_id = uuid.uuid4().hex
        with self._lock:
            self.collections.setdefault(collection, {})[doc_id] = {
                **record,
                "id": doc_id,
            }
        return doc_id

    def find(
        self,
        collection: str,
        filter: Optional[dict] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        with self._lock:
            docs = [
                dict(doc)
                for doc in self.collections.get(collection, {}).values()
                if matches_filter(doc, filter)
            ]
        docs = _sorted_docs(docs, sort)
        return docs[:limit] if limit else docs


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


class SqlDbClient:
    """
    SQLAlchemy-backed implementation storing each record as a JSON document.
    Accepts any SQLAlchemy URL (e.g., Postgres, or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def insert_one(self, collection: str, record: dict) -> str:
        doc_id = uuid.uuid4().hex
        try:
            with self.Session() as session:
                session.add(
                    DocumentRow(
                        id=doc_id,
                        collection=collection,
                        data=_encode(record),
                        created_at=time.time(),
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"insert into {collection} failed: {exc}") from exc
        return doc_id

    def find(
        self,
        collection: str,
        filter: Optional[dict] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        # Filtering happens in Python; the JSON column is not indexed.
        try:
            with self.Session() as session:
                stmt = (
                    select(DocumentRow)
                    .where(DocumentRow.collection == collection)
                    .order_by(DocumentRow.created_at.asc())
                )
                rows = session.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"query on {collection} failed: {exc}") from exc

        filter = _encode(filter) if filter else None
        docs = [
            {**row.data, "id": row.id}
            for row in rows
            if matches_filter(row.data, filter)
        ]
        docs = _sorted_docs(docs, sort)
        return docs[:limit] if limit else docs


class MongoDbClient:
    """MongoDB-backed implementation using pymongo."""

    def __init__(
        self,
        uri: str,
        database: str = "admin1",
        timeout_seconds: float = 10.0,
    ):
        if not uri:
            raise ValueError("MONGO_URI is required for MongoDbClient")
        timeout_ms = int(timeout_seconds * 1000)
        self.client = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        self.db = self.client[database]

    def insert_one(self, collection: str, record: dict) -> str:
        try:
            # insert_one mutates its argument to add _id, so pass a copy.
            result = self.db[collection].insert_one(dict(record))
        except PyMongoError as exc:
            raise PersistenceError(f"insert into {collection} failed: {exc}") from exc
        return str(result.inserted_id)

    def find(
        self,
        collection: str,
        filter: Optional[dict] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        try:
            cursor = self.db[collection].find(filter or {})
            if sort:
                cursor = cursor.sort(
                    [(key, ASCENDING if d > 0 else DESCENDING) for key, d in sort]
                )
            if limit:
                cursor = cursor.limit(limit)
            docs = list(cursor)
        except PyMongoError as exc:
            raise PersistenceError(f"query on {collection} failed: {exc}") from exc

        results = []
        for doc in docs:
            doc["id"] = str(doc.pop("_id"))
            results.append(doc)
        return results


Base = declarative_base()


class DocumentRow(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True)
    collection = Column(String, nullable=False, index=True)
    data = Column("document", JSON, nullable=False)
    created_at = Column(Float, nullable=False)
