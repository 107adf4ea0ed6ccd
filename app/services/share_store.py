"""
Redis key layout for public shares.

    note_share:{note_id}                         -> public_id
    public_memo:{public_id}                      -> {"noteId": note_id}
    public_file_cache:{public_id}:{sha256(url)}  -> public_file_id
    public_file:{public_file_id}                 -> locator JSON
    share_lock:{note_id}                         -> "1" while a share is being written

Every share record carries its own TTL; expiry is left entirely to Redis.
"""

import hashlib
import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

NOTE_SHARE_PREFIX = "note_share:"
PUBLIC_MEMO_PREFIX = "public_memo:"
PUBLIC_FILE_PREFIX = "public_file:"
PUBLIC_FILE_CACHE_PREFIX = "public_file_cache:"
SHARE_LOCK_PREFIX = "share_lock:"


def note_share_key(note_id: int) -> str:
    return f"{NOTE_SHARE_PREFIX}{note_id}"


def public_memo_key(public_id: str) -> str:
    return f"{PUBLIC_MEMO_PREFIX}{public_id}"


def public_file_key(public_file_id: str) -> str:
    return f"{PUBLIC_FILE_PREFIX}{public_file_id}"


def public_file_cache_prefix(public_id: str) -> str:
    return f"{PUBLIC_FILE_CACHE_PREFIX}{public_id}:"


def public_file_cache_key(public_id: str, private_url: str) -> str:
    digest = hashlib.sha256(private_url.encode("utf-8")).hexdigest()
    return f"{public_file_cache_prefix(public_id)}{digest}"


def share_lock_key(note_id: int) -> str:
    return f"{SHARE_LOCK_PREFIX}{note_id}"


def expiry_kwargs(ttl_seconds: Optional[int]) -> dict:
    """``SET`` options for a TTL; 0 or None stores without expiry"""
    if ttl_seconds and ttl_seconds > 0:
        return {"ex": ttl_seconds}
    return {}


async def sweep_public_files(kv, public_id: str) -> int:
    """Delete every public file mirror materialized under ``public_id``"""
    swept = 0
    async for cache_key in kv.scan_iter(match=f"{public_file_cache_prefix(public_id)}*"):
        public_file_id = await kv.get(cache_key)
        keys = [cache_key]
        if public_file_id:
            keys.append(public_file_key(public_file_id))
        await kv.delete(*keys)
        swept += 1
    if swept:
        logger.debug("Swept %d public file mirror(s) for share %s", swept, public_id)
    return swept


async def forget_note_share(kv, note_id: int) -> Optional[str]:
    """Drop a note's share and its derived mirrors; returns the old public id"""
    public_id = await kv.get(note_share_key(note_id))
    if public_id:
        await kv.delete(public_memo_key(public_id), note_share_key(note_id))
        await sweep_public_files(kv, public_id)
    else:
        await kv.delete(note_share_key(note_id))
    return public_id


async def forget_file_links(kv, public_file_ids: Iterable[str]) -> None:
    """Drop persistent single-file links, e.g. when their attachment goes away"""
    keys = [public_file_key(pid) for pid in public_file_ids if pid]
    if keys:
        await kv.delete(*keys)
