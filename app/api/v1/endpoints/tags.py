from typing import List

from fastapi import APIRouter, Depends

from app.api.deps import get_tag_indexer
from app.core.security import SessionUser, get_current_session
from app.schemas.note import TagCount
from app.services.tags import TagIndexer

router = APIRouter()


@router.get("/tags", response_model=List[TagCount])
async def list_tags(
    session: SessionUser = Depends(get_current_session),
    tags: TagIndexer = Depends(get_tag_indexer),
):
    """Tags in use on notes the session can see, most used first"""
    return await tags.list_with_counts(session)
