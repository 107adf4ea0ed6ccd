import json
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import or_, true

from app.core.config import settings
from app.core.exceptions import Unauthorized
from app.core.redis_client import get_redis
from app.models.note import Note, Visibility

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionUser:
    id: int
    is_admin: bool = False


async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    redis_client=Depends(get_redis),
) -> SessionUser:
    """Resolve the bearer token issued by the auth service into a session"""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Unauthorized")

    raw = await redis_client.get(f"{settings.SESSION_KEY_PREFIX}{credentials.credentials}")
    if not raw:
        raise Unauthorized("Session expired or invalid")
    try:
        data = json.loads(raw)
        return SessionUser(id=int(data["id"]), is_admin=bool(data.get("isAdmin", False)))
    except (ValueError, KeyError, TypeError):
        raise Unauthorized("Session expired or invalid")


def is_owner(note: Note, session: Optional[SessionUser]) -> bool:
    return bool(session and note.owner_id is not None and session.id == note.owner_id)


def can_access_note(note: Optional[Note], session: Optional[SessionUser]) -> bool:
    """Admin, owner, any session for 'users' notes, anyone for 'public' notes"""
    if note is None:
        return False
    if session and session.is_admin:
        return True
    if is_owner(note, session):
        return True
    if note.visibility == Visibility.USERS and session:
        return True
    return note.visibility == Visibility.PUBLIC


def can_view_note_detail(note: Optional[Note], session: Optional[SessionUser]) -> bool:
    """Authenticated detail path: public notes are only served to non-owners
    through the public share endpoints."""
    if not can_access_note(note, session):
        return False
    if note.visibility == Visibility.PUBLIC:
        return bool(session and (session.is_admin or is_owner(note, session)))
    return True


def can_modify_note(note: Optional[Note], session: Optional[SessionUser]) -> bool:
    return bool(note is not None and session and (session.is_admin or is_owner(note, session)))


def access_clause(session: SessionUser):
    """SQL filter selecting the notes a session may list.

    Mirrors the detail path: other users' public notes are reachable only
    through the share endpoints.
    """
    if session.is_admin:
        return true()
    return or_(Note.owner_id == session.id, Note.visibility == Visibility.USERS)
