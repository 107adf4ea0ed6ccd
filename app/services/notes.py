"""
Note lifecycle: create, partial update, cascade delete of emptied notes and
full deletion with blob and share cleanup.

A note touches three stores that share no transaction: the relational row
(plus its tag links), the blob store and the Redis share records. The row
commit is the step that makes a change visible; blob and share cleanup
around it is best-effort and logged.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, List, Optional, Sequence, Tuple, Union

from fastapi import UploadFile
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.blob_store import BlobStore, attachment_key, note_prefix
from app.core.config import settings
from app.core.exceptions import (
    ErrorCode, Forbidden, NotFound, PayloadTooLarge, StorageError,
    UnsupportedMediaType, ValidationError,
)
from app.core.security import (
    SessionUser, access_clause, can_modify_note, can_view_note_detail,
)
from app.models.note import Note, Visibility
from app.models.note_tag import note_tags
from app.models.tag import Tag
from app.schemas.note import (
    AnyAttachment, Attachment, ExternalProxyAttachment, dump_attachments,
    parse_attachments, parse_url_list,
)
from app.services.content import (
    blob_key_for_inline_url, extract_image_urls, extract_video_urls, is_blank,
)
from app.services.share_store import forget_file_links, forget_note_share
from app.services.tags import TagIndexer

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class IncomingFile:
    name: str
    size: int
    content_type: Optional[str]
    data: Union[bytes, BinaryIO]

    @classmethod
    def from_upload(cls, upload: UploadFile) -> "IncomingFile":
        return cls(
            name=upload.filename or "",
            size=upload.size or 0,
            content_type=upload.content_type,
            data=upload.file,
        )

    @property
    def is_present(self) -> bool:
        return bool(self.name) and self.size > 0

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").startswith("image/")


@dataclass
class IngestOptions:
    """Per-call ingestion switches, built by the caller from settings"""

    proxy_external_media: bool = False

    @classmethod
    def from_settings(cls) -> "IngestOptions":
        return cls(proxy_external_media=settings.TELEGRAM_PROXY)


@dataclass
class NotePatch:
    content: Optional[str] = None
    files_to_delete: List[str] = field(default_factory=list)
    new_files: List[IncomingFile] = field(default_factory=list)
    is_pinned: Optional[bool] = None
    is_favorited: Optional[bool] = None
    is_archived: Optional[bool] = None
    visibility: Optional[str] = None
    update_timestamp: bool = True


@dataclass(frozen=True)
class NoteDeleted:
    """Returned by update when the edit emptied the note and it was removed"""

    note_id: int


def check_upload(file: IncomingFile) -> None:
    if file.size > settings.MAX_UPLOAD_BYTES:
        raise PayloadTooLarge("File too large.", details={"name": file.name, "size": file.size})
    if file.content_type not in settings.ALLOWED_UPLOAD_MIME_TYPES:
        raise UnsupportedMediaType("Unsupported file type.", details={"type": file.content_type})


def owned_blob_keys(note: Note) -> Tuple[List[str], bool]:
    """Blob keys referenced by a note's metadata.

    The flag is False when the stored attachment list could not be trusted
    (not a list, or with malformed entries), in which case callers should
    also sweep the note's key prefix.
    """
    raw_files = note.files
    attachments = parse_attachments(raw_files)
    trusted = isinstance(raw_files, list) and len(attachments) == len(raw_files)

    keys = [attachment_key(note.id, a.id) for a in attachments if isinstance(a, Attachment)]
    for url in parse_url_list(note.pics) + parse_url_list(note.videos):
        key = blob_key_for_inline_url(note.id, url)
        if key:
            keys.append(key)
    return list(dict.fromkeys(keys)), trusted


class NoteRepository:
    def __init__(self, db: AsyncSession, blobs: BlobStore, kv):
        self.db = db
        self.blobs = blobs
        self.kv = kv
        self.tags = TagIndexer(db)

    # ---- reads -----------------------------------------------------------

    async def fetch(self, note_id: int) -> Optional[Note]:
        return await self.db.get(Note, note_id)

    async def get(self, note_id: int, session: SessionUser) -> Note:
        note = await self.fetch(note_id)
        if note is None:
            raise NotFound("Note not found")
        if not can_view_note_detail(note, session):
            raise Forbidden("Forbidden")
        return note

    async def get_for_update(self, note_id: int, session: SessionUser) -> Note:
        note = await self.fetch(note_id)
        if note is None:
            raise NotFound("Note not found")
        if not can_modify_note(note, session):
            raise Forbidden("Forbidden")
        return note

    async def list_notes(
        self,
        session: SessionUser,
        page: int = 1,
        tag: Optional[str] = None,
        start_timestamp: Optional[int] = None,
        end_timestamp: Optional[int] = None,
        favorites: bool = False,
        archived: bool = False,
    ) -> Tuple[List[Note], bool]:
        """One page of notes visible to the session, pinned first, newest first"""
        if page < 1:
            raise ValidationError("Invalid page parameter", ErrorCode.INVALID_PAGE)
        limit = settings.NOTES_PER_PAGE

        query = select(Note).where(access_clause(session), Note.is_archived == archived)
        if favorites:
            query = query.where(Note.is_favorited.is_(True))

        if start_timestamp is not None or end_timestamp is not None:
            if (
                start_timestamp is None or end_timestamp is None
                or start_timestamp <= 0 or end_timestamp <= start_timestamp
                or end_timestamp > now_ms() + settings.MAX_TIME_RANGE_MS
            ):
                raise ValidationError("Invalid time range", ErrorCode.INVALID_TIME_RANGE)
            query = query.where(Note.updated_at >= start_timestamp, Note.updated_at < end_timestamp)

        if tag:
            query = (
                query
                .join(note_tags, Note.id == note_tags.c.note_id)
                .join(Tag, Tag.id == note_tags.c.tag_id)
                .where(Tag.name == tag.strip().lower())
            )

        query = (
            query
            .order_by(Note.is_pinned.desc(), Note.updated_at.desc(), Note.id.desc())
            .limit(limit + 1)
            .offset((page - 1) * limit)
        )
        result = await self.db.execute(query)
        notes = list(result.scalars().all())
        return notes[:limit], len(notes) > limit

    # ---- writes ----------------------------------------------------------

    async def create(
        self,
        content: str,
        files: Sequence[IncomingFile],
        visibility: Optional[str],
        owner_id: Optional[int],
        *,
        external_attachments: Iterable[ExternalProxyAttachment] = (),
        options: Optional[IngestOptions] = None,
    ) -> Note:
        options = options or IngestOptions()
        content = content or ""
        incoming = [f for f in files if f.is_present]
        external = list(external_attachments)

        if is_blank(content) and not incoming and not external:
            raise ValidationError("Content or file is required.")
        if external and not options.proxy_external_media:
            raise ValidationError("External media proxying is disabled.")
        for file in incoming:
            check_upload(file)

        now = now_ms()
        note = Note(
            content=content,
            files=[],
            pics=extract_image_urls(content),
            videos=extract_video_urls(content),
            owner_id=owner_id,
            visibility=visibility if visibility in Visibility.ALL else Visibility.PRIVATE,
            is_pinned=False,
            is_favorited=False,
            is_archived=False,
            created_at=now,
            updated_at=now,
        )

        uploaded: List[str] = []
        try:
            self.db.add(note)
            await self.db.flush()  # Flush to get the ID

            attachments: List[AnyAttachment] = []
            # Images are referenced inline through the standalone upload path
            for file in incoming:
                if file.is_image:
                    continue
                file_id = str(uuid.uuid4())
                key = attachment_key(note.id, file_id)
                await self.blobs.put(key, file.data, file.content_type)
                uploaded.append(key)
                attachments.append(Attachment(
                    id=file_id,
                    name=file.name,
                    size=file.size,
                    type=file.content_type or "application/octet-stream",
                ))
            attachments.extend(external)

            note.files = dump_attachments(attachments)
            await self.tags.rebuild(note.id, content)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self._discard_blobs(uploaded, "rolling back note creation")
            raise

        logger.info("Created note %s (%d attachment(s))", note.id, len(note.files))
        return note

    async def update(
        self, note_id: int, patch: NotePatch, session: SessionUser
    ) -> Union[Note, NoteDeleted]:
        note = await self.get_for_update(note_id, session)
        removed_keys: List[str] = []
        removed_links: List[str] = []
        uploaded: List[str] = []
        touched = False

        try:
            if patch.content is not None:
                content = patch.content
                attachments = parse_attachments(note.files)

                # Deletions are applied before emptiness is judged
                if patch.files_to_delete:
                    doomed = set(patch.files_to_delete)
                    removed = [a for a in attachments if a.id in doomed and isinstance(a, Attachment)]
                    removed_keys = [attachment_key(note.id, a.id) for a in removed]
                    removed_links = [a.public_id for a in removed if a.public_id]
                    attachments = [a for a in attachments if a.id not in doomed]

                pics = extract_image_urls(content)
                videos = extract_video_urls(content)
                incoming = [f for f in patch.new_files if f.is_present]

                if is_blank(content) and not attachments and not pics and not videos and not incoming:
                    await self.delete_note(note)
                    return NoteDeleted(note_id)

                for file in incoming:
                    check_upload(file)
                for file in incoming:
                    if file.is_image:
                        continue
                    file_id = str(uuid.uuid4())
                    key = attachment_key(note.id, file_id)
                    await self.blobs.put(key, file.data, file.content_type)
                    uploaded.append(key)
                    attachments.append(Attachment(
                        id=file_id,
                        name=file.name,
                        size=file.size,
                        type=file.content_type or "application/octet-stream",
                    ))

                note.content = content
                note.files = dump_attachments(attachments)
                note.pics = pics
                note.videos = videos
                await self.tags.rebuild(note.id, content)
                await self.tags.cleanup_unused()
                touched = True

            if patch.is_pinned is not None:
                note.is_pinned = patch.is_pinned
                touched = True
            if patch.is_favorited is not None:
                note.is_favorited = patch.is_favorited
                touched = True
            if patch.is_archived is not None:
                note.is_archived = patch.is_archived
                touched = True
            if patch.visibility in Visibility.ALL:
                note.visibility = patch.visibility
                touched = True

            if touched and patch.update_timestamp:
                note.updated_at = now_ms()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self._discard_blobs(uploaded, "rolling back note update")
            raise

        # Removed attachments lose their blobs only once the row no longer lists them
        await self._discard_blobs(removed_keys, f"removing attachments of note {note_id}")
        if removed_links:
            try:
                await forget_file_links(self.kv, removed_links)
            except RedisError:
                logger.error("Failed to drop file links of note %s", note_id, exc_info=True)
        return note

    async def delete(self, note_id: int, session: SessionUser) -> None:
        note = await self.get_for_update(note_id, session)
        await self.delete_note(note)

    async def delete_note(self, note: Note) -> None:
        """Remove blobs, tag links, share records and finally the row itself"""
        note_id = note.id
        keys, trusted = owned_blob_keys(note)
        if not keys or not trusted:
            # Metadata may be missing or broken; sweep the note's namespace
            try:
                keys = list(dict.fromkeys(keys + await self.blobs.list(note_prefix(note_id))))
            except StorageError:
                logger.warning("Failed to list blobs of note %s", note_id, exc_info=True)
        await self._discard_blobs(keys, f"deleting note {note_id}")

        file_links = [
            a.public_id for a in parse_attachments(note.files)
            if isinstance(a, Attachment) and a.public_id
        ]
        await self.tags.clear(note_id)
        await self.forget_share(note_id, file_links)
        await self.db.delete(note)
        await self.tags.cleanup_unused()
        await self.db.commit()
        logger.info("Deleted note %s", note_id)

    async def forget_share(self, note_id: int, file_links: Sequence[str] = ()) -> Optional[str]:
        """Revoke the note's share, its mirrors and any single-file links"""
        try:
            await forget_file_links(self.kv, file_links)
            return await forget_note_share(self.kv, note_id)
        except RedisError:
            logger.error("Failed to drop share records of note %s", note_id, exc_info=True)
            return None

    async def _discard_blobs(self, keys: List[str], reason: str) -> None:
        if not keys:
            return
        try:
            await self.blobs.delete(keys)
        except StorageError:
            logger.error("Blob cleanup failed while %s; orphaned keys: %s", reason, keys, exc_info=True)
