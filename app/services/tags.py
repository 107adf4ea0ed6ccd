import logging
from typing import List

from sqlalchemy import delete, desc, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import SessionUser, access_clause
from app.models.note import Note
from app.models.note_tag import note_tags
from app.models.tag import Tag
from app.schemas.note import TagCount
from app.services.content import extract_tags

logger = logging.getLogger(__name__)


class TagIndexer:
    """Keeps the note <-> tag join in step with note content.

    Associations are replaced wholesale on every content write rather than
    diffed. Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create_tags(self, tag_names: List[str]) -> List[Tag]:
        """Get existing tags or create new ones"""
        if not tag_names:
            return []

        result = await self.db.execute(select(Tag).where(Tag.name.in_(tag_names)))
        by_name = {tag.name: tag for tag in result.scalars()}

        for tag_name in tag_names:
            if tag_name not in by_name:
                tag = Tag(name=tag_name)
                self.db.add(tag)
                by_name[tag_name] = tag
        await self.db.flush()  # Flush to get the IDs

        return [by_name[name] for name in tag_names]

    async def clear(self, note_id: int) -> None:
        await self.db.execute(delete(note_tags).where(note_tags.c.note_id == note_id))

    async def rebuild(self, note_id: int, content: str) -> List[str]:
        """Replace the note's tag associations with the tags found in content"""
        tag_names = extract_tags(content)
        await self.clear(note_id)

        tags = await self.get_or_create_tags(tag_names)
        if tags:
            await self.db.execute(
                insert(note_tags),
                [{"note_id": note_id, "tag_id": tag.id} for tag in tags],
            )
        return tag_names

    async def cleanup_unused(self) -> None:
        """Delete tags no note refers to any more"""
        await self.db.execute(
            delete(Tag).where(Tag.id.not_in(select(note_tags.c.tag_id)))
        )

    async def list_with_counts(self, session: SessionUser) -> List[TagCount]:
        query = (
            select(Tag.name, func.count(note_tags.c.note_id).label("count"))
            .join(note_tags, Tag.id == note_tags.c.tag_id)
            .join(Note, Note.id == note_tags.c.note_id)
            .where(access_clause(session))
            .group_by(Tag.id, Tag.name)
            .order_by(desc("count"), Tag.name)
        )
        result = await self.db.execute(query)
        return [TagCount(name=name, count=count) for name, count in result.all()]
