"""
Content-addressed blob store for conversion inputs and outputs.

Refs are SHA-256 hex digests. Writes go to a temp file in the store and are
renamed into place, so a reader never sees a partial blob. Identical
content shares one blob; callers must check references before deleting.
"""
import asyncio
import hashlib
import os
import re
import shutil
import tempfile
from pathlib import Path
from datetime import datetime
from typing import List, Protocol

from converty.errors import BlobNotFound, StoreError
from converty.utils.logger import get_logger

logger = get_logger("blob_store")

_REF_PATTERN = re.compile(r"^[0-9a-f]{64}$")
CHUNK_SIZE = 1024 * 1024


class BlobStore(Protocol):
    async def put(self, data: bytes) -> str:
        ...

    async def get(self, ref: str) -> bytes:
        ...

    async def delete(self, ref: str) -> None:
        ...

    async def exists(self, ref: str) -> bool:
        ...

    async def put_file(self, path: str) -> str:
        ...

    async def fetch_to(self, ref: str, dest_path: str) -> None:
        ...

    async def list_older_than(self, cutoff: datetime) -> List[str]:
        ...


def is_valid_ref(ref: str) -> bool:
    return bool(ref) and bool(_REF_PATTERN.match(ref))


class LocalBlobStore:
    """Blobs under <root>/<ab>/<cd>/<ref>"""

    def __init__(self, root: str) -> None:
        self._root = Path(root).resolve()
        self._tmp = self._root / "tmp"
        self._tmp.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, ref: str) -> Path:
        if not is_valid_ref(ref):
            raise BlobNotFound(ref)
        return self._root / ref[:2] / ref[2:4] / ref

    # ----- sync implementations, run in a worker thread -----

    def _commit(self, tmp_path: Path, ref: str) -> str:
        final = self._path(ref)
        final.parent.mkdir(parents=True, exist_ok=True)
        if final.exists():
            tmp_path.unlink(missing_ok=True)
            # A re-upload counts as fresh for the unreferenced-blob sweep
            os.utime(final)
        else:
            os.replace(tmp_path, final)
        return ref

    def _put_sync(self, data: bytes) -> str:
        ref = hashlib.sha256(data).hexdigest()
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            return self._commit(Path(tmp_name), ref)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _put_file_sync(self, path: str) -> str:
        sha256 = hashlib.sha256()
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp)
        try:
            with open(path, "rb") as src, os.fdopen(fd, "wb") as dst:
                while chunk := src.read(CHUNK_SIZE):
                    sha256.update(chunk)
                    dst.write(chunk)
            return self._commit(Path(tmp_name), sha256.hexdigest())
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _get_sync(self, ref: str) -> bytes:
        try:
            return self._path(ref).read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(ref)

    def _fetch_to_sync(self, ref: str, dest_path: str) -> None:
        try:
            shutil.copyfile(self._path(ref), dest_path)
        except FileNotFoundError:
            raise BlobNotFound(ref)

    def _list_older_than_sync(self, cutoff: float) -> List[str]:
        refs = []
        for path in self._root.glob("??/??/*"):
            ref = path.name
            if not is_valid_ref(ref) or path.parent.parent.name != ref[:2] or path.parent.name != ref[2:4]:
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    refs.append(ref)
            except FileNotFoundError:
                continue
        return refs

    def _delete_sync(self, ref: str) -> None:
        try:
            self._path(ref).unlink(missing_ok=True)
        except BlobNotFound:
            return

    # ----- async API -----

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except BlobNotFound:
            raise
        except OSError as exc:
            raise StoreError(f"blob store I/O failed: {exc}") from exc

    async def put(self, data: bytes) -> str:
        return await self._run(self._put_sync, data)

    async def put_file(self, path: str) -> str:
        return await self._run(self._put_file_sync, path)

    async def get(self, ref: str) -> bytes:
        return await self._run(self._get_sync, ref)

    async def fetch_to(self, ref: str, dest_path: str) -> None:
        await self._run(self._fetch_to_sync, ref, dest_path)

    async def list_older_than(self, cutoff: datetime) -> List[str]:
        """Refs of blobs last written before cutoff"""
        return await self._run(self._list_older_than_sync, cutoff.timestamp())

    async def delete(self, ref: str) -> None:
        await self._run(self._delete_sync, ref)
        logger.debug(f"blob.deleted {ref}")

    async def exists(self, ref: str) -> bool:
        if not is_valid_ref(ref):
            return False
        return await self._run(self._path(ref).is_file)

