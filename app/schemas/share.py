from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ShareRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_id: Optional[str] = Field(None, alias="publicId")
    expiration_ttl: Optional[int] = Field(None, alias="expirationTtl")


class ShareLinkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_url: str = Field(alias="displayUrl")
    raw_url: str = Field(alias="rawUrl")
    public_id: str = Field(alias="publicId")


class ShareStatusResponse(BaseModel):
    success: bool = True
    message: str


class FileShareResponse(BaseModel):
    url: str


class PublicFileLocator(BaseModel):
    """What a public file id resolves to.

    Exactly one of (note_id, file_id), standalone_image_id or
    telegram_proxy_id identifies the bytes.
    """

    model_config = ConfigDict(populate_by_name=True)

    note_id: Optional[int] = Field(None, alias="noteId")
    file_id: Optional[str] = Field(None, alias="fileId")
    standalone_image_id: Optional[str] = Field(None, alias="standaloneImageId")
    telegram_proxy_id: Optional[str] = Field(None, alias="telegramProxyId")
    file_name: Optional[str] = Field(None, alias="fileName")
    content_type: Optional[str] = Field(None, alias="contentType")

    @property
    def is_attachment(self) -> bool:
        return self.note_id is not None and bool(self.file_id)

    @property
    def is_standalone_image(self) -> bool:
        return bool(self.standalone_image_id)

    @property
    def is_proxy(self) -> bool:
        return bool(self.telegram_proxy_id)


class PublicNoteResponse(BaseModel):
    """Read-only public view: no id, no inline media lists"""

    content: str
    updated_at: int
    files: List[Dict[str, Any]] = []
