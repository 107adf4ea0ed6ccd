from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.blob_store import BlobStore, get_blob_store
from app.core.database import get_db
from app.core.redis_client import get_redis
from app.services.media_proxy import MediaProxyResolver
from app.services.merge import MergeEngine
from app.services.notes import NoteRepository
from app.services.share import ShareCache
from app.services.tags import TagIndexer


def get_media_proxy(redis_client=Depends(get_redis)) -> MediaProxyResolver:
    return MediaProxyResolver(redis_client)


def get_note_repository(
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
    redis_client=Depends(get_redis),
) -> NoteRepository:
    return NoteRepository(db, blobs, redis_client)


def get_merge_engine(
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
    redis_client=Depends(get_redis),
) -> MergeEngine:
    return MergeEngine(db, blobs, redis_client)


def get_share_cache(
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
    redis_client=Depends(get_redis),
    media_proxy: MediaProxyResolver = Depends(get_media_proxy),
) -> ShareCache:
    return ShareCache(db, redis_client, blobs, media_proxy)


def get_tag_indexer(db: AsyncSession = Depends(get_db)) -> TagIndexer:
    return TagIndexer(db)
