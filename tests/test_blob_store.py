import hashlib
import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from converty.errors import BlobNotFound, StoreError
from converty.services.blob_store import LocalBlobStore, is_valid_ref


async def test_put_is_content_addressed(blob_store):
    ref = await blob_store.put(b"hello")
    assert ref == hashlib.sha256(b"hello").hexdigest()
    assert await blob_store.put(b"hello") == ref
    assert await blob_store.get(ref) == b"hello"
    assert await blob_store.exists(ref)


async def test_put_file_and_fetch_to(blob_store, tmp_path):
    src = tmp_path / "upload.bin"
    src.write_bytes(b"x" * 3_000_000)
    ref = await blob_store.put_file(str(src))
    assert ref == hashlib.sha256(src.read_bytes()).hexdigest()

    dest = tmp_path / "copy.bin"
    await blob_store.fetch_to(ref, str(dest))
    assert dest.read_bytes() == src.read_bytes()


async def test_missing_and_malformed_refs(blob_store, tmp_path):
    with pytest.raises(BlobNotFound):
        await blob_store.get("0" * 64)
    with pytest.raises(BlobNotFound):
        await blob_store.get("../secret")
    with pytest.raises(BlobNotFound):
        await blob_store.fetch_to("0" * 64, str(tmp_path / "out"))
    assert not await blob_store.exists("not-a-ref")
    assert not is_valid_ref("ABC")


async def test_delete_is_idempotent(blob_store):
    ref = await blob_store.put(b"bye")
    await blob_store.delete(ref)
    await blob_store.delete(ref)
    assert not await blob_store.exists(ref)


async def test_io_failure_is_a_store_error(tmp_path):
    store = LocalBlobStore(str(tmp_path / "store"))
    with pytest.raises(StoreError):
        await store.put_file(str(tmp_path / "does-not-exist"))


async def test_no_temp_files_left_behind(blob_store):
    await blob_store.put(b"a")
    await blob_store.put(b"a")
    assert list((blob_store.root / "tmp").iterdir()) == []


def age(store, ref, seconds):
    path = store.root / ref[:2] / ref[2:4] / ref
    then = time.time() - seconds
    os.utime(path, (then, then))


async def test_list_older_than(blob_store):
    old = await blob_store.put(b"old")
    fresh = await blob_store.put(b"fresh")
    age(blob_store, old, 7200)
    (blob_store.root / "tmp" / "partial").write_bytes(b"ignored")

    cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
    assert await blob_store.list_older_than(cutoff) == [old]
    assert fresh not in await blob_store.list_older_than(cutoff)


async def test_reupload_refreshes_age(blob_store):
    ref = await blob_store.put(b"again")
    age(blob_store, ref, 7200)
    await blob_store.put(b"again")
    assert await blob_store.list_older_than(datetime.now(timezone.utc) - timedelta(hours=1)) == []
