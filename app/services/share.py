"""
Ephemeral public sharing of notes and their files.

A shared note is reachable through ``public_memo:{public_id}`` for as long as
that key lives in Redis. Private resource URLs found in a shared note are
mirrored lazily as ``public_file:{id}`` records whose TTL never outlives the
share that produced them. See ``app.services.share_store`` for the key
layout.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from app.core.blob_store import BlobStore, attachment_key, standalone_image_key
from app.core.config import settings
from app.core.exceptions import (
    Conflict, ErrorCode, Forbidden, NotFound, StorageError, ValidationError,
)
from app.core.security import SessionUser, can_modify_note
from app.models.note import Note
from app.schemas.note import (
    Attachment, ExternalProxyAttachment, dump_attachments, parse_attachments,
)
from app.schemas.share import PublicFileLocator, PublicNoteResponse
from app.services.content import (
    PRIVATE_URL_RE, attachment_url, parse_attachment_url, parse_proxy_url,
    parse_standalone_image_url, proxy_url, public_file_url,
)
from app.services.media_proxy import MediaProxyResolver
from app.services.share_store import (
    expiry_kwargs, forget_note_share, note_share_key, public_file_cache_key,
    public_file_key, public_memo_key, share_lock_key, sweep_public_files,
)

logger = logging.getLogger(__name__)


@dataclass
class PublicFile:
    """Bytes to stream for a public file, or a URL to redirect to"""

    file_name: str
    content_type: str
    body: Optional[bytes] = None
    etag: Optional[str] = None
    redirect_url: Optional[str] = None


def _not_shared() -> NotFound:
    return NotFound("Shared note not found or has expired", ErrorCode.PUBLIC_LINK_NOT_FOUND)


class ShareCache:
    def __init__(self, db, kv, blobs: BlobStore, media_proxy: Optional[MediaProxyResolver] = None):
        self.db = db
        self.kv = kv
        self.blobs = blobs
        self.media_proxy = media_proxy or MediaProxyResolver(kv)

    async def _load_for_update(self, note_id: int, session: SessionUser) -> Note:
        note = await self.db.get(Note, note_id)
        if note is None:
            raise NotFound("Note not found")
        if not can_modify_note(note, session):
            raise Forbidden("Forbidden")
        return note

    @asynccontextmanager
    async def _share_lock(self, note_id: int):
        key = share_lock_key(note_id)
        acquired = await self.kv.set(key, "1", ex=settings.SHARE_LOCK_TTL_SECONDS, nx=True)
        if not acquired:
            raise Conflict("Share update is in progress, please retry.", ErrorCode.RESOURCE_LOCKED)
        try:
            yield
        finally:
            try:
                await self.kv.delete(key)
            except RedisError:
                # The lock expires on its own after SHARE_LOCK_TTL_SECONDS
                logger.error("Failed to release share lock for note %s", note_id, exc_info=True)

    # ---- share state machine ---------------------------------------------

    async def share(self, note_id: int, session: SessionUser, ttl_seconds: Optional[int] = None) -> str:
        """Get or create the note's public id"""
        if ttl_seconds is None:
            ttl_seconds = settings.SHARE_DEFAULT_TTL_SECONDS
        if ttl_seconds < 0:
            raise ValidationError("expirationTtl must be >= 0")

        await self._load_for_update(note_id, session)
        async with self._share_lock(note_id):
            public_id = await self.kv.get(note_share_key(note_id))
            if public_id and await self.kv.get(public_memo_key(public_id)):
                return public_id

            public_id = str(uuid.uuid4())
            expiry = expiry_kwargs(ttl_seconds)
            await self.kv.set(public_memo_key(public_id), json.dumps({"noteId": note_id}), **expiry)
            await self.kv.set(note_share_key(note_id), public_id, **expiry)

        logger.info("Shared note %s as %s (ttl=%s)", note_id, public_id, ttl_seconds or "none")
        return public_id

    async def renew(self, note_id: int, public_id: str, ttl_seconds: Optional[int], session: SessionUser) -> None:
        """Give an existing share a new TTL.

        Mirrors derived under the old TTL are dropped rather than extended;
        the next public read recreates them capped to the new TTL.
        """
        if ttl_seconds is None or ttl_seconds < 0:
            raise ValidationError("expirationTtl is required and must be >= 0")

        await self._load_for_update(note_id, session)
        async with self._share_lock(note_id):
            current = await self.kv.get(note_share_key(note_id))
            memo = await self.kv.get(public_memo_key(public_id)) if current == public_id else None
            if not memo:
                raise NotFound(
                    "Shared memo not found. Cannot update expiration.",
                    ErrorCode.PUBLIC_LINK_NOT_FOUND,
                )

            expiry = expiry_kwargs(ttl_seconds)
            await self.kv.set(public_memo_key(public_id), memo, **expiry)
            await self.kv.set(note_share_key(note_id), public_id, **expiry)
            await sweep_public_files(self.kv, public_id)

        logger.info("Renewed share %s of note %s (ttl=%s)", public_id, note_id, ttl_seconds or "none")

    async def revoke(self, note_id: int, session: SessionUser) -> None:
        await self._load_for_update(note_id, session)
        public_id = await self.forget_note(note_id)
        if public_id:
            logger.info("Revoked share %s of note %s", public_id, note_id)

    async def forget_note(self, note_id: int) -> Optional[str]:
        return await forget_note_share(self.kv, note_id)

    # ---- public reads ----------------------------------------------------

    async def shared_note_id(self, public_id: str) -> int:
        raw = await self.kv.get(public_memo_key(public_id))
        if not raw:
            raise _not_shared()
        try:
            return int(json.loads(raw)["noteId"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Malformed share memo %s", public_id)
            raise _not_shared()

    async def _shared_note(self, public_id: str) -> Note:
        note = await self.db.get(Note, await self.shared_note_id(public_id))
        if note is None:
            raise NotFound("Shared note content not found")
        return note

    async def _remaining_ttl(self, public_id: str) -> Optional[int]:
        """Whole seconds left on the share; None when it never expires"""
        ttl = await self.kv.ttl(public_memo_key(public_id))
        if ttl == -1:
            return None
        # TTL rounds down, so 0 means less than a second left
        if ttl <= 0:
            raise _not_shared()
        return ttl

    def classify(self, private_url: str, note_id: int) -> Optional[PublicFileLocator]:
        parsed = parse_attachment_url(private_url)
        if parsed is not None:
            # Only files of the shared note itself may be exposed
            if parsed[0] != note_id:
                return None
            return PublicFileLocator(note_id=parsed[0], file_id=parsed[1], file_name="media")
        image_id = parse_standalone_image_url(private_url)
        if image_id:
            return PublicFileLocator(standalone_image_id=image_id, file_name="image.png")
        proxy_id = parse_proxy_url(private_url)
        if proxy_id:
            return PublicFileLocator(
                telegram_proxy_id=proxy_id,
                file_name="tg-media",
                content_type="application/octet-stream",
            )
        return None

    async def materialize_public_resource(
        self,
        public_id: str,
        private_url: str,
        note_id: Optional[int] = None,
        locator: Optional[PublicFileLocator] = None,
    ) -> str:
        """Public URL mirroring ``private_url`` under the share ``public_id``.

        Repeated calls for the same pair return the same URL. URLs that are
        not private resources of the shared note come back unchanged.
        """
        if note_id is None:
            note_id = await self.shared_note_id(public_id)
        if locator is None:
            locator = self.classify(private_url, note_id)
            if locator is None:
                return private_url

        cache_key = public_file_cache_key(public_id, private_url)
        existing = await self.kv.get(cache_key)
        if existing:
            return public_file_url(existing)

        expiry = expiry_kwargs(await self._remaining_ttl(public_id))
        public_file_id = str(uuid.uuid4())
        await self.kv.set(
            public_file_key(public_file_id),
            locator.model_dump_json(by_alias=True, exclude_none=True),
            **expiry,
        )
        await self.kv.set(cache_key, public_file_id, **expiry)
        return public_file_url(public_file_id)

    async def render_public_note(self, public_id: str) -> PublicNoteResponse:
        """Read-only view of a shared note with every private URL mirrored"""
        note = await self._shared_note(public_id)
        content = note.content or ""

        parts: List[str] = []
        last = 0
        for match in PRIVATE_URL_RE.finditer(content):
            parts.append(content[last:match.start()])
            parts.append(await self.materialize_public_resource(public_id, match.group(0), note_id=note.id))
            last = match.end()
        parts.append(content[last:])

        files: List[Dict[str, Any]] = []
        for attachment in parse_attachments(note.files):
            data = attachment.model_dump(exclude_none=True)
            if isinstance(attachment, ExternalProxyAttachment):
                locator = PublicFileLocator(
                    telegram_proxy_id=attachment.file_id,
                    file_name=attachment.name or "tg-file",
                    content_type=attachment.mime_type,
                )
                private_url = proxy_url(attachment.file_id)
            else:
                locator = PublicFileLocator(
                    note_id=note.id,
                    file_id=attachment.id,
                    file_name=attachment.name,
                    content_type=attachment.type,
                )
                private_url = attachment_url(note.id, attachment.id)
            data["public_url"] = await self.materialize_public_resource(
                public_id, private_url, note_id=note.id, locator=locator,
            )
            files.append(data)

        return PublicNoteResponse(content="".join(parts), updated_at=note.updated_at, files=files)

    async def raw_public_note(self, public_id: str) -> str:
        note = await self._shared_note(public_id)
        return note.content or ""

    # ---- single-file links -----------------------------------------------

    async def share_file(self, note_id: int, file_id: str, session: SessionUser) -> str:
        """Persistent public URL for one attachment; reused once created"""
        note = await self._load_for_update(note_id, session)
        attachments = parse_attachments(note.files)
        attachment = next(
            (a for a in attachments if isinstance(a, Attachment) and a.id == file_id), None
        )
        if attachment is None:
            raise NotFound("File not found in this note", ErrorCode.FILE_NOT_FOUND)

        locator = PublicFileLocator(
            note_id=note.id,
            file_id=attachment.id,
            file_name=attachment.name,
            content_type=attachment.type,
        )
        if attachment.public_id:
            if not await self.kv.get(public_file_key(attachment.public_id)):
                await self.kv.set(
                    public_file_key(attachment.public_id),
                    locator.model_dump_json(by_alias=True, exclude_none=True),
                )
            return public_file_url(attachment.public_id)

        public_file_id = str(uuid.uuid4())
        await self.kv.set(
            public_file_key(public_file_id),
            locator.model_dump_json(by_alias=True, exclude_none=True),
        )
        attachment.public_id = public_file_id
        note.files = dump_attachments(attachments)
        await self.db.commit()
        logger.info("Shared file %s of note %s as %s", file_id, note_id, public_file_id)
        return public_file_url(public_file_id)

    async def resolve_public_file(self, public_file_id: str) -> PublicFileLocator:
        raw = await self.kv.get(public_file_key(public_file_id))
        if not raw:
            raise NotFound("Public link not found or has expired.", ErrorCode.PUBLIC_LINK_NOT_FOUND)
        try:
            return PublicFileLocator.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Malformed public file record %s", public_file_id)
            raise NotFound("Public link not found or has expired.", ErrorCode.PUBLIC_LINK_NOT_FOUND)

    async def open_public_file(self, locator: PublicFileLocator) -> PublicFile:
        if locator.is_proxy:
            return PublicFile(
                file_name=locator.file_name or "tg-media",
                content_type=locator.content_type or "application/octet-stream",
                redirect_url=await self.media_proxy.resolve(locator.telegram_proxy_id),
            )

        if locator.is_standalone_image:
            key = standalone_image_key(locator.standalone_image_id)
            file_name = locator.file_name or f"image_{locator.standalone_image_id}.png"
            default_type = "image/png"
        elif locator.is_attachment:
            key = attachment_key(locator.note_id, locator.file_id)
            file_name = locator.file_name or locator.file_id
            default_type = None
        else:
            raise StorageError("Invalid public link data.")

        blob = await self.blobs.get(key)
        if blob is None:
            raise NotFound("File not found in storage", ErrorCode.FILE_NOT_FOUND)
        return PublicFile(
            file_name=file_name,
            content_type=locator.content_type or blob.content_type or default_type or "application/octet-stream",
            body=blob.body,
            etag=blob.etag,
        )
