import asyncio
import os
import stat
from pathlib import Path

import pytest

# Keep the module-level engine off the working directory
os.environ.setdefault("CONVERTY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from converty.config import Settings  # noqa: E402
from converty.converters import ConversionOutput, ConverterRegistry  # noqa: E402
from converty.database import build_engine, build_session_factory, init_db  # noqa: E402
from converty.services.blob_store import LocalBlobStore  # noqa: E402
from converty.services.format_router import AdapterKind  # noqa: E402

WEBM_BYTES = b"\x1a\x45\xdf\xa3" + b"\x00" * 28
MP4_BYTES = b"\x00\x00\x00\x18ftypisom" + b"\x00" * 20
MP3_BYTES = b"ID3\x04\x00\x00" + b"\x00" * 26


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'converty.db'}",
        blob_dir=str(tmp_path / "blobs"),
        run_workers_in_process=False,
        worker_count=3,
        poll_interval_seconds=0.01,
        max_idle_interval_seconds=0.05,
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.04,
        store_retry_attempts=2,
        store_retry_base_seconds=0.01,
        converter_timeout_seconds=5.0,
        liveness_timeout_seconds=60.0,
        heartbeat_interval_seconds=0.05,
        recovery_interval_seconds=3600.0,
        reaper_interval_seconds=3600.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url, busy_timeout=settings.sqlite_busy_timeout_seconds)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(settings) -> LocalBlobStore:
    return LocalBlobStore(settings.blob_dir)


def stored_refs(store: LocalBlobStore) -> set:
    """Every blob currently in the store"""
    refs = set()
    for path in Path(store.root).rglob("*"):
        if path.is_file() and "tmp" not in path.relative_to(store.root).parts:
            refs.add(path.name)
    return refs


def write_script(directory: Path, name: str, body: str) -> str:
    """An executable /bin/sh script standing in for a converter binary"""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class FakeAdapter:
    """
    Scripted converter: each call pops the next outcome.

    An outcome is "ok" (store a fake output), an exception instance to raise,
    or an exception class to raise on every call once the script runs out.
    """

    def __init__(self, blob_store, outcomes=None, always=None, delay: float = 0.0, output: bytes = WEBM_BYTES):
        self.blob_store = blob_store
        self.outcomes = list(outcomes or [])
        self.always = always
        self.delay = delay
        self.output = output
        self.calls = []

    async def execute(self, source_ref, target_format, options, deadline, source_format=None):
        self.calls.append({
            "source_ref": source_ref,
            "target_format": target_format,
            "options": dict(options),
            "deadline": deadline,
            "at": asyncio.get_running_loop().time(),
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        elif self.always is not None:
            outcome = self.always("scripted failure")
        else:
            outcome = "ok"
        if isinstance(outcome, Exception):
            raise outcome
        # Unique per source so shared-content dedup never hides a write
        data = self.output + source_ref.encode()
        ref = await self.blob_store.put(data)
        return ConversionOutput(ref=ref, media_type=target_format, size=len(data))


@pytest.fixture
def fake_transcoder(blob_store) -> FakeAdapter:
    return FakeAdapter(blob_store)


@pytest.fixture
def registry(fake_transcoder) -> ConverterRegistry:
    return ConverterRegistry({
        AdapterKind.TRANSCODER: fake_transcoder,
        AdapterKind.RASTERIZER: fake_transcoder,
    })


@pytest.fixture
async def source_ref(blob_store) -> str:
    return await blob_store.put(MP4_BYTES + os.urandom(8))
