"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from school_backend.config import get_settings
from school_backend.db import DbClient, InMemoryDbClient, MongoDbClient, SqlDbClient
from school_backend.presence import DeliveryRouter
from school_backend.storage import CosStorageClient, InMemoryStorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_delivery_router: DeliveryRouter | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton document store so records persist across requests.
    """
    global _db_client
    if _db_client is not None:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _db_client = InMemoryDbClient()
    elif settings.mongo_uri:
        _db_client = MongoDbClient(
            settings.mongo_uri,
            database=settings.mongo_database,
            timeout_seconds=settings.persistence_timeout_seconds,
        )
    elif settings.database_url:
        _db_client = SqlDbClient(settings.database_url)
    else:
        _db_client = InMemoryDbClient()
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client is not None:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.cos_bucket:
        _storage_client = InMemoryStorageClient(
            base_url=(
                f"{settings.public_base_url.rstrip('/')}{settings.api_prefix}/files"
            )
        )
    else:
        _storage_client = CosStorageClient(
            bucket=settings.cos_bucket,
            region=settings.cos_region or "",
            endpoint=settings.cos_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.cos_public_base_url,
        )
    return _storage_client


def get_delivery_router() -> DeliveryRouter:
    """
    Return the process-wide router; its registry is shared by every realtime
    connection and REST request.
    """
    global _delivery_router
    if _delivery_router is not None:
        return _delivery_router

    settings = get_settings()
    _delivery_router = DeliveryRouter(
        get_db_client(),
        persistence_timeout=settings.persistence_timeout_seconds,
    )
    return _delivery_router
