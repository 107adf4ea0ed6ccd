import logging
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

PROXY_ATTACHMENT_TYPE = "telegram_document"


class Attachment(BaseModel):
    """A non-image file owned by a note, backed by the blob ``{note_id}/{id}``"""

    id: str
    name: str
    size: int = 0
    type: str = "application/octet-stream"
    public_id: Optional[str] = None


class ExternalProxyAttachment(BaseModel):
    """A document hosted externally and reached through a proxy id; no blob"""

    type: Literal["telegram_document"] = PROXY_ATTACHMENT_TYPE
    id: str
    file_id: str
    name: str
    size: Optional[int] = None
    mime_type: str = "application/octet-stream"


AnyAttachment = Union[Attachment, ExternalProxyAttachment]


def parse_attachments(value: Any) -> List[AnyAttachment]:
    """Parse a stored ``files`` column, dropping malformed legacy entries"""
    if not isinstance(value, list):
        if value not in (None, ""):
            logger.warning("Ignoring non-list attachment payload: %r", type(value).__name__)
        return []

    attachments: List[AnyAttachment] = []
    for raw in value:
        if not isinstance(raw, dict):
            logger.warning("Dropping malformed attachment entry: %r", raw)
            continue
        model = ExternalProxyAttachment if raw.get("type") == PROXY_ATTACHMENT_TYPE else Attachment
        try:
            attachments.append(model.model_validate(raw))
        except PydanticValidationError:
            logger.warning("Dropping malformed attachment entry: %r", raw)
    return attachments


def dump_attachments(attachments: List[AnyAttachment]) -> List[Dict[str, Any]]:
    return [a.model_dump(exclude_none=True) for a in attachments]


def parse_url_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


class NoteResponse(BaseModel):
    id: int
    content: str
    files: List[Dict[str, Any]] = []
    pics: List[str] = []
    videos: List[str] = []
    owner_id: Optional[int] = None
    visibility: str
    is_pinned: bool = False
    is_favorited: bool = False
    is_archived: bool = False
    created_at: int
    updated_at: int

    @classmethod
    def from_note(cls, note) -> "NoteResponse":
        return cls(
            id=note.id,
            content=note.content or "",
            files=dump_attachments(parse_attachments(note.files)),
            pics=parse_url_list(note.pics),
            videos=parse_url_list(note.videos),
            owner_id=note.owner_id,
            visibility=note.visibility,
            is_pinned=bool(note.is_pinned),
            is_favorited=bool(note.is_favorited),
            is_archived=bool(note.is_archived),
            created_at=note.created_at,
            updated_at=note.updated_at,
        )


class NoteListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notes: List[NoteResponse]
    has_more: bool = Field(alias="hasMore")


class NoteDeletedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    note_deleted: bool = Field(True, alias="noteDeleted")


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_note_id: int = Field(alias="sourceNoteId")
    target_note_id: int = Field(alias="targetNoteId")
    add_separator: bool = Field(False, alias="addSeparator")


class TagCount(BaseModel):
    name: str
    count: int
