import json
from typing import Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from app.api.deps import get_share_cache
from app.api.v1.endpoints.files import blob_response, content_disposition
from app.core.config import settings
from app.core.exceptions import ErrorCode, ValidationError
from app.core.security import SessionUser, get_current_session
from app.schemas.share import (
    FileShareResponse, PublicNoteResponse, ShareLinkResponse, ShareRequest, ShareStatusResponse,
)
from app.services.share import ShareCache

router = APIRouter()


async def read_share_request(request: Request) -> ShareRequest:
    """The share body is optional; an empty body means "create with defaults" """
    body = await request.body()
    if not body:
        return ShareRequest()
    try:
        data = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid JSON body", ErrorCode.INVALID_JSON)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body", ErrorCode.INVALID_JSON)
    try:
        return ShareRequest.model_validate(data)
    except PydanticValidationError:
        raise ValidationError("expirationTtl must be an integer")


def absolute_url(request: Request, path: str) -> str:
    return f"{str(request.base_url).rstrip('/')}{path}"


@router.post("/notes/{note_id}/share", response_model=Union[ShareLinkResponse, ShareStatusResponse])
async def share_note(
    note_id: int,
    request: Request,
    session: SessionUser = Depends(get_current_session),
    shares: ShareCache = Depends(get_share_cache),
):
    """Create (or return) a note's public link, or renew it when publicId is given"""
    body = await read_share_request(request)
    if body.public_id:
        await shares.renew(note_id, body.public_id, body.expiration_ttl, session)
        return ShareStatusResponse(message="Expiration updated.")

    public_id = await shares.share(note_id, session, body.expiration_ttl)
    return ShareLinkResponse(
        display_url=absolute_url(request, f"/share/{public_id}"),
        raw_url=absolute_url(request, f"{settings.API_V1_STR}/public/note/raw/{public_id}"),
        public_id=public_id,
    )


@router.delete("/notes/{note_id}/share", response_model=ShareStatusResponse)
async def unshare_note(
    note_id: int,
    session: SessionUser = Depends(get_current_session),
    shares: ShareCache = Depends(get_share_cache),
):
    await shares.revoke(note_id, session)
    return ShareStatusResponse(message="Sharing has been revoked.")


@router.post("/notes/{note_id}/files/{file_id}/share", response_model=FileShareResponse)
async def share_file(
    note_id: int,
    file_id: str,
    request: Request,
    session: SessionUser = Depends(get_current_session),
    shares: ShareCache = Depends(get_share_cache),
):
    """Permanent public link for a single attachment"""
    path = await shares.share_file(note_id, file_id, session)
    return FileShareResponse(url=absolute_url(request, path))


@router.get("/public/note/{public_id}", response_model=PublicNoteResponse)
async def read_public_note(public_id: str, shares: ShareCache = Depends(get_share_cache)):
    return await shares.render_public_note(public_id)


@router.get("/public/note/raw/{public_id}", response_class=PlainTextResponse)
async def read_public_note_raw(public_id: str, shares: ShareCache = Depends(get_share_cache)):
    return PlainTextResponse(await shares.raw_public_note(public_id))


@router.get("/public/file/{public_file_id}")
async def read_public_file(public_file_id: str, shares: ShareCache = Depends(get_share_cache)):
    locator = await shares.resolve_public_file(public_file_id)
    public_file = await shares.open_public_file(locator)
    if public_file.redirect_url:
        return RedirectResponse(public_file.redirect_url, status_code=302)
    return blob_response(
        public_file.body,
        public_file.content_type,
        content_disposition("inline", public_file.file_name),
        public_file.etag,
    )
