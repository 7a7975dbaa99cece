"""
Standalone conversion worker: python -m converty.worker

Runs the worker pool (workers, orphan recovery, reaper) without the API.
Set CONVERTY_RUN_WORKERS_IN_PROCESS=false on the API service when workers
run here instead.
"""
import asyncio
import signal

from converty.config import get_settings
from converty.converters import build_default_registry
from converty.database import AsyncSessionLocal, init_db
from converty.services.blob_store import LocalBlobStore
from converty.services.scheduler import WorkerPool
from converty.utils.logger import logger


async def main() -> None:
    """Run worker pool until SIGINT/SIGTERM."""
    settings = get_settings()
    await init_db()

    blob_store = LocalBlobStore(settings.blob_dir)
    pool = WorkerPool(AsyncSessionLocal, blob_store, build_default_registry(blob_store, settings), settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pool.start()
    logger.info("worker.ready", extra={"workers": settings.worker_count})
    await stop.wait()
    await pool.stop()


if __name__ == "__main__":
    asyncio.run(main())
