import logging
import uuid
from typing import Dict, List, Set

from redis.exceptions import RedisError

from app.core.blob_store import BlobStore, attachment_key
from app.core.exceptions import ErrorCode, Forbidden, NotFound, StorageError, ValidationError
from app.core.security import SessionUser, can_modify_note
from app.models.note import Note
from app.schemas.note import (
    AnyAttachment, Attachment, ExternalProxyAttachment, dump_attachments,
    parse_attachments, parse_url_list,
)
from app.services.content import attachment_url, parse_attachment_url
from app.services.notes import now_ms
from app.services.share_store import forget_file_links, forget_note_share
from app.services.tags import TagIndexer

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n---\n\n"
PLAIN_SEPARATOR = "\n\n"


class MergeEngine:
    """Folds a source note into a target note and removes the source.

    Blob moves are copy-then-delete and skip destinations that already
    exist, so an interrupted merge can simply be run again. Source blobs
    are deleted only after the target row has been committed.
    """

    def __init__(self, db, blobs: BlobStore, kv):
        self.db = db
        self.blobs = blobs
        self.kv = kv
        self.tags = TagIndexer(db)

    async def move_blob(self, source_key: str, dest_key: str) -> bool:
        """Copy ``source_key`` to ``dest_key`` unless it is already there"""
        try:
            if await self.blobs.head(dest_key):
                return True
            if not await self.blobs.head(source_key):
                logger.warning("Merge source blob %s is missing", source_key)
                return False
            await self.blobs.copy(source_key, dest_key)
        except StorageError:
            logger.warning("Failed to move blob %s -> %s", source_key, dest_key, exc_info=True)
            return False
        return True

    async def _load(self, note_id: int, session: SessionUser) -> Note:
        note = await self.db.get(Note, note_id)
        if note is None:
            raise NotFound("Note not found")
        if not can_modify_note(note, session):
            raise Forbidden("Forbidden")
        return note

    async def merge(
        self,
        source_id: int,
        target_id: int,
        add_separator: bool,
        session: SessionUser,
    ) -> Note:
        if not source_id or not target_id or source_id == target_id:
            raise ValidationError("Source and target notes must be two different notes", ErrorCode.INVALID_NOTE_ID)

        source = await self._load(source_id, session)
        target = await self._load(target_id, session)

        separator = SEPARATOR if add_separator else PLAIN_SEPARATOR
        content = (target.content or "") + separator + (source.content or "")

        merged: List[AnyAttachment] = parse_attachments(target.files)
        taken: Set[str] = {a.id for a in merged}
        # old private url -> new private url, for every blob that made it across
        moved_urls: Dict[str, str] = {}
        moved_keys: List[str] = []
        stale_links: List[str] = []

        async def carry(file_id: str) -> str:
            """Move one source blob into the target namespace; returns the new url or ''"""
            old_url = attachment_url(source.id, file_id)
            if old_url in moved_urls:
                return moved_urls[old_url]
            new_id = file_id if file_id not in taken else str(uuid.uuid4())
            source_key = attachment_key(source.id, file_id)
            if not await self.move_blob(source_key, attachment_key(target.id, new_id)):
                return ""
            taken.add(new_id)
            moved_keys.append(source_key)
            moved_urls[old_url] = attachment_url(target.id, new_id)
            return moved_urls[old_url]

        for attachment in parse_attachments(source.files):
            if isinstance(attachment, ExternalProxyAttachment):
                if attachment.id in taken:
                    attachment = attachment.model_copy(update={"id": str(uuid.uuid4())})
                taken.add(attachment.id)
                merged.append(attachment)
                continue

            if attachment.public_id:
                stale_links.append(attachment.public_id)
            new_url = await carry(attachment.id)
            if not new_url:
                logger.warning(
                    "Dropping attachment %s of note %s from merge into %s",
                    attachment.id, source.id, target.id,
                )
                continue
            _, new_id = parse_attachment_url(new_url)
            merged.append(Attachment(
                id=new_id, name=attachment.name, size=attachment.size, type=attachment.type,
            ))

        source_inline: Dict[str, List[str]] = {}
        for column in ("pics", "videos"):
            urls = []
            for url in parse_url_list(getattr(source, column)):
                parsed = parse_attachment_url(url)
                if parsed is None or parsed[0] != source.id:
                    urls.append(url)
                    continue
                # Unmoved urls stay as they are in the merged content
                urls.append(await carry(parsed[1]) or url)
            source_inline[column] = urls

        for old_url, new_url in moved_urls.items():
            content = content.replace(old_url, new_url)

        target.content = content
        target.files = dump_attachments(merged)
        target.pics = list(dict.fromkeys(parse_url_list(target.pics) + source_inline["pics"]))
        target.videos = list(dict.fromkeys(parse_url_list(target.videos) + source_inline["videos"]))
        target.updated_at = now_ms()

        try:
            await self.tags.rebuild(target.id, content)
            await self.tags.clear(source.id)
            await self.db.delete(source)
            await self.tags.cleanup_unused()
            await self.db.commit()
        except Exception:
            # Copied blobs stay behind; a retry finds them already moved
            await self.db.rollback()
            raise

        try:
            await forget_file_links(self.kv, stale_links)
            await forget_note_share(self.kv, source.id)
        except RedisError:
            logger.error("Failed to revoke share of merged note %s", source.id, exc_info=True)

        if moved_keys:
            try:
                await self.blobs.delete(moved_keys)
            except StorageError:
                logger.error("Failed to delete merged source blobs %s", moved_keys, exc_info=True)

        logger.info("Merged note %s into %s (%d attachment(s) moved)", source.id, target.id, len(moved_keys))
        return target
