import uuid
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Path, Query, UploadFile
from fastapi.responses import RedirectResponse, Response

from app.api.deps import get_media_proxy, get_note_repository
from app.core.blob_store import BlobStore, attachment_key, get_blob_store, standalone_image_key
from app.core.exceptions import ErrorCode, NotFound, UnsupportedMediaType, ValidationError
from app.core.security import SessionUser, get_current_session
from app.schemas.note import Attachment, parse_attachments
from app.services.content import standalone_image_url
from app.services.media_proxy import MediaProxyResolver
from app.services.notes import IncomingFile, NoteRepository, check_upload

router = APIRouter()

CACHE_CONTROL = "public, max-age=86400, immutable"
TEXT_LIKE_EXTENSIONS = {"yml", "yaml", "md", "log", "toml", "sh", "py", "js", "json", "css", "html"}


def content_disposition(disposition: str, filename: str) -> str:
    return f"{disposition}; filename*=UTF-8''{quote(filename)}"


def blob_response(body: bytes, content_type: str, disposition: str, etag=None) -> Response:
    headers = {"Content-Disposition": disposition, "Cache-Control": CACHE_CONTROL}
    if etag:
        headers["ETag"] = etag
    return Response(content=body, media_type=content_type, headers=headers)


@router.get("/files/{note_id}/{file_id}")
async def get_note_file(
    note_id: int,
    file_id: str,
    preview: bool = Query(False),
    session: SessionUser = Depends(get_current_session),
    notes: NoteRepository = Depends(get_note_repository),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Serve an attachment or inline upload of a readable note"""
    note = await notes.get(note_id, session)
    blob = await blobs.get(attachment_key(note_id, file_id))
    if blob is None:
        raise NotFound("File not found in storage", ErrorCode.FILE_NOT_FOUND)

    meta = next(
        (a for a in parse_attachments(note.files) if isinstance(a, Attachment) and a.id == file_id),
        None,
    )
    if meta is None:
        # Inline media with no attachment record; let the browser render it
        return blob_response(
            blob.body, blob.content_type or "application/octet-stream", "inline", blob.etag
        )

    extension = meta.name.rsplit(".", 1)[-1].lower() if "." in meta.name else ""
    content_type = meta.type or "application/octet-stream"
    if content_type.startswith("text/") or extension in TEXT_LIKE_EXTENSIONS:
        content_type = "text/plain; charset=utf-8"
    disposition = content_disposition("inline" if preview else "attachment", meta.name)
    return blob_response(blob.body, content_type, disposition, blob.etag)


@router.post("/upload/image")
async def upload_image(
    file: UploadFile = File(...),
    session: SessionUser = Depends(get_current_session),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Store an image outside any note and return its private URL"""
    incoming = IncomingFile.from_upload(file)
    if not incoming.is_present:
        raise ValidationError("A file is required for upload.")
    check_upload(incoming)
    if not incoming.is_image:
        raise UnsupportedMediaType("Only images can be uploaded here.", details={"type": incoming.content_type})

    image_id = str(uuid.uuid4())
    await blobs.put(standalone_image_key(image_id), incoming.data, incoming.content_type)
    return {"success": True, "url": standalone_image_url(image_id)}


@router.get("/images/{image_id}")
async def get_image(
    image_id: str,
    session: SessionUser = Depends(get_current_session),
    blobs: BlobStore = Depends(get_blob_store),
):
    blob = await blobs.get(standalone_image_key(image_id))
    if blob is None:
        raise NotFound("Image not found", ErrorCode.FILE_NOT_FOUND)
    return blob_response(blob.body, blob.content_type or "image/png", "inline", blob.etag)


@router.get("/tg-media-proxy/{proxy_id}")
async def media_proxy_redirect(
    proxy_id: str = Path(..., pattern=r"^[A-Za-z0-9_-]+$"),
    session: SessionUser = Depends(get_current_session),
    media_proxy: MediaProxyResolver = Depends(get_media_proxy),
):
    """Redirect to a short-lived download URL for externally hosted media"""
    return RedirectResponse(await media_proxy.resolve(proxy_id), status_code=302)
