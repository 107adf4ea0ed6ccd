"""In-memory stand-ins for the blob store and Redis.

Both implement only the calls the services make, with the same return
conventions as the real clients (``decode_responses=True`` strings for
Redis, ``None`` for a missing blob). Failures can be injected per key.
"""
import fnmatch
from typing import Dict, Iterable, List, Optional, Set

from app.core.blob_store import BlobObject
from app.core.exceptions import StorageError
from app.core.security import SessionUser
from app.services.notes import IncomingFile


class FakeBlobStore:
    def __init__(self) -> None:
        self.objects: Dict[str, BlobObject] = {}
        self.fail_keys: Set[str] = set()
        self.fail_deletes = False
        self.copies: List[tuple] = []

    def _check(self, key: str) -> None:
        if key in self.fail_keys:
            raise StorageError(f"Injected failure for {key}")

    async def put(self, key: str, data, content_type: Optional[str] = None) -> None:
        self._check(key)
        body = data.read() if hasattr(data, "read") else bytes(data)
        self.objects[key] = BlobObject(
            key=key, body=body, content_type=content_type, size=len(body), etag=f'"{len(body)}"'
        )

    async def get(self, key: str) -> Optional[BlobObject]:
        self._check(key)
        return self.objects.get(key)

    async def head(self, key: str) -> bool:
        self._check(key)
        return key in self.objects

    async def copy(self, source_key: str, dest_key: str) -> None:
        self._check(source_key)
        self._check(dest_key)
        if source_key not in self.objects:
            raise StorageError(f"No such key {source_key}")
        source = self.objects[source_key]
        self.objects[dest_key] = BlobObject(
            key=dest_key, body=source.body, content_type=source.content_type,
            size=source.size, etag=source.etag,
        )
        self.copies.append((source_key, dest_key))

    async def delete(self, keys: Iterable[str]) -> None:
        if self.fail_deletes:
            raise StorageError("Injected delete failure")
        for key in keys:
            self.objects.pop(key, None)

    async def list(self, prefix: str) -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def close(self) -> None:
        pass


class FakeRedis:
    """Dict-backed async Redis with TTLs driven by a manual clock"""

    def __init__(self) -> None:
        self.now = 0.0
        self.data: Dict[str, str] = {}
        self.expires: Dict[str, float] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _purge(self, key: str) -> None:
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= self.now:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        return self.data.get(key)

    async def set(self, key: str, value, ex: Optional[int] = None, nx: bool = False):
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex:
            self.expires[key] = self.now + ex
        else:
            self.expires.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self.data:
                removed += 1
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        found = 0
        for key in keys:
            if await self.get(key) is not None:
                found += 1
        return found

    async def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expires:
            return -1
        return int(self.expires[key] - self.now)

    async def scan_iter(self, match: Optional[str] = None):
        for key in list(self.data):
            self._purge(key)
            if key in self.data and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key

    async def ping(self) -> bool:
        return True


OWNER = SessionUser(id=1)
OTHER = SessionUser(id=2)
ADMIN = SessionUser(id=99, is_admin=True)

TOKENS = {"owner-token": OWNER, "other-token": OTHER, "admin-token": ADMIN}


def auth(token: str = "owner-token") -> dict:
    return {"Authorization": f"Bearer {token}"}


def upload(name="report.pdf", data=b"%PDF-1.4 test", content_type="application/pdf") -> IncomingFile:
    return IncomingFile(name=name, size=len(data), content_type=content_type, data=data)
