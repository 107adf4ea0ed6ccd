from fastapi import APIRouter
from app.api.v1.endpoints import files, notes, share, tags

api_router = APIRouter()

api_router.include_router(notes.router, prefix="/notes", tags=["notes"])
api_router.include_router(share.router, tags=["share"])
api_router.include_router(files.router, tags=["files"])
api_router.include_router(tags.router, tags=["tags"])
