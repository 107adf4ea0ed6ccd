import json
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.api.deps import get_merge_engine, get_note_repository
from app.core.exceptions import ErrorCode, ValidationError
from app.core.security import SessionUser, get_current_session
from app.schemas.note import (
    ExternalProxyAttachment, MergeRequest, NoteDeletedResponse, NoteListResponse, NoteResponse,
)
from app.services.merge import MergeEngine
from app.services.notes import IncomingFile, IngestOptions, NoteDeleted, NotePatch, NoteRepository

router = APIRouter()

_external_attachments = TypeAdapter(List[ExternalProxyAttachment])


def parse_files_to_delete(raw: Optional[str]) -> List[str]:
    """``filesToDelete`` arrives as a JSON array of attachment ids"""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        raise ValidationError("filesToDelete must be a JSON array", ErrorCode.INVALID_JSON)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError("filesToDelete must be a JSON array of ids")
    return value


def parse_external_attachments(raw: Optional[str]) -> List[ExternalProxyAttachment]:
    if not raw:
        return []
    try:
        return _external_attachments.validate_json(raw)
    except PydanticValidationError:
        raise ValidationError("Invalid externalAttachments payload", ErrorCode.INVALID_JSON)


@router.get("/", response_model=NoteListResponse)
async def list_notes(
    page: int = Query(1),
    tag: Optional[str] = Query(None),
    start_timestamp: Optional[int] = Query(None, alias="startTimestamp"),
    end_timestamp: Optional[int] = Query(None, alias="endTimestamp"),
    favorites: bool = Query(False),
    archived: bool = Query(False),
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
):
    """List notes visible to the session, pinned first then most recently updated"""
    items, has_more = await notes.list_notes(
        session,
        page=page,
        tag=tag,
        start_timestamp=start_timestamp,
        end_timestamp=end_timestamp,
        favorites=favorites,
        archived=archived,
    )
    return NoteListResponse(notes=[NoteResponse.from_note(n) for n in items], has_more=has_more)


@router.post("/", response_model=NoteResponse, status_code=status.HTTP_201_CREATED)
async def create_note(
    content: str = Form(""),
    visibility: str = Form("private"),
    file: List[UploadFile] = File(default=[]),
    external_attachments: Optional[str] = Form(None, alias="externalAttachments"),
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
):
    """Create a new note"""
    note = await notes.create(
        content,
        [IncomingFile.from_upload(f) for f in file],
        visibility,
        session.id,
        external_attachments=parse_external_attachments(external_attachments),
        options=IngestOptions.from_settings(),
    )
    return NoteResponse.from_note(note)


@router.post("/merge", response_model=NoteResponse)
async def merge_notes(
    request: MergeRequest,
    session: SessionUser = Depends(get_current_session),
    merger: MergeEngine = Depends(get_merge_engine),
):
    """Append the source note to the target note and delete the source"""
    note = await merger.merge(
        request.source_note_id,
        request.target_note_id,
        request.add_separator,
        session,
    )
    return NoteResponse.from_note(note)


@router.get("/{note_id}", response_model=NoteResponse)
async def get_note(
    note_id: int,
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
):
    """Get a specific note"""
    return NoteResponse.from_note(await notes.get(note_id, session))


@router.put("/{note_id}", response_model=Union[NoteResponse, NoteDeletedResponse])
async def update_note(
    note_id: int,
    request: Request,
    files_to_delete: Optional[str] = Form(None, alias="filesToDelete"),
    file: List[UploadFile] = File(default=[]),
    is_pinned: Optional[bool] = Form(None, alias="isPinned"),
    is_favorited: Optional[bool] = Form(None, alias="isFavorited"),
    is_archived: Optional[bool] = Form(None),
    visibility: Optional[str] = Form(None),
    update_timestamp: bool = Form(True),
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
):
    """Update a note; emptying it completely deletes it"""
    # An empty "content" field is meaningful here, so read it from the raw form
    form = await request.form()
    content = form.get("content") if "content" in form else None
    if content is not None and not isinstance(content, str):
        raise ValidationError("content must be text")

    patch = NotePatch(
        content=content,
        files_to_delete=parse_files_to_delete(files_to_delete),
        new_files=[IncomingFile.from_upload(f) for f in file],
        is_pinned=is_pinned,
        is_favorited=is_favorited,
        is_archived=is_archived,
        visibility=visibility,
        update_timestamp=update_timestamp,
    )
    result = await notes.update(note_id, patch, session)
    if isinstance(result, NoteDeleted):
        return NoteDeletedResponse()
    return NoteResponse.from_note(result)


@router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_note(
    note_id: int,
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
):
    """Delete a note with its files, tags and share"""
    await notes.delete(note_id, session)
