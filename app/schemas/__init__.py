from .note import (
    Attachment, ExternalProxyAttachment, NoteResponse, NoteListResponse,
    NoteDeletedResponse, MergeRequest, TagCount,
)
from .share import (
    ShareRequest, ShareLinkResponse, ShareStatusResponse, FileShareResponse,
    PublicFileLocator, PublicNoteResponse,
)

__all__ = [
    "Attachment", "ExternalProxyAttachment", "NoteResponse", "NoteListResponse",
    "NoteDeletedResponse", "MergeRequest", "TagCount",
    "ShareRequest", "ShareLinkResponse", "ShareStatusResponse", "FileShareResponse",
    "PublicFileLocator", "PublicNoteResponse",
]
