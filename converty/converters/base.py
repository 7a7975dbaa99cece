"""
Converter adapter base: runs one external converter process per call.

Subclasses build the command line and collect the product; this class owns
input staging, deadline enforcement, output validation and the single blob
write. Everything lives in a private temp directory that is removed on the
way out, so a failed run leaves nothing behind.
"""
import asyncio
import os
import shutil
import signal
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from converty.converters import signatures
from converty.errors import (
    BlobNotFound,
    ConversionTimeout,
    InputCorrupt,
    ProcessFailure,
    StoreError,
)
from converty.services.blob_store import BlobStore
from converty.services.format_router import AdapterKind
from converty.services.formats import FormatTag, normalize_format, parse_format
from converty.services.retry import retry_store_operation
from converty.utils import metrics
from converty.utils.logger import get_logger

logger = get_logger("converters")

STDERR_TAIL = 2000


@dataclass(frozen=True)
class ConversionOutput:
    ref: str
    media_type: str
    size: int


class ConverterAdapter(ABC):
    kind: AdapterKind
    # stderr fragments meaning the source itself is unreadable
    corrupt_markers: Tuple[str, ...] = ()

    def __init__(
        self,
        blob_store: BlobStore,
        binary: str,
        *,
        store_retry_attempts: int = 3,
        store_retry_base_seconds: float = 0.2,
        work_dir: Optional[str] = None,
    ) -> None:
        self._blobs = blob_store
        self.binary = binary
        self._store_retry_attempts = store_retry_attempts
        self._store_retry_base = store_retry_base_seconds
        self._work_dir = work_dir

    @abstractmethod
    async def _convert(
        self,
        input_path: str,
        work_dir: str,
        target: FormatTag,
        options: Dict[str, Any],
        deadline: float,
        source: Optional[FormatTag] = None,
    ) -> Tuple[str, FormatTag]:
        """Run the converter and return (validated output path, media type)"""

    async def execute(
        self,
        source_ref: str,
        target_format: str,
        options: Optional[Dict[str, Any]],
        deadline: float,
        source_format: Optional[str] = None,
    ) -> ConversionOutput:
        """
        Convert the blob at source_ref into target_format before deadline.

        deadline is an absolute event-loop time (loop.time()). Raises
        ConversionTimeout, ProcessFailure or InputCorrupt; on success exactly
        one blob has been written.
        """
        target = normalize_format(target_format)
        source = parse_format(source_format) if source_format else None
        work = tempfile.mkdtemp(prefix=f"converty-{self.kind.value}-", dir=self._work_dir)
        try:
            input_name = f"input.{source.extension}" if source else "input"
            input_path = os.path.join(work, input_name)
            await self._fetch_input(source_ref, input_path)

            async with metrics.track_duration(self.kind.value, target.extension):
                output_path, media_type = await self._convert(
                    input_path, work, target, dict(options or {}), deadline, source=source
                )

            size = os.path.getsize(output_path)
            ref = await self._store_output(output_path)
            logger.info("converter.succeeded", extra={
                "adapter": self.kind.value, "target_format": target.value, "count": size,
            })
            return ConversionOutput(ref=ref, media_type=media_type.value, size=size)
        finally:
            await asyncio.to_thread(shutil.rmtree, work, True)

    # ----- blob I/O -----

    async def _fetch_input(self, source_ref: str, input_path: str) -> None:
        try:
            await retry_store_operation(
                lambda: self._blobs.fetch_to(source_ref, input_path),
                attempts=self._store_retry_attempts,
                base_delay=self._store_retry_base,
                description="blob.fetch",
            )
        except BlobNotFound as exc:
            raise InputCorrupt(f"source blob {source_ref} is missing") from exc
        except StoreError as exc:
            raise ProcessFailure(f"could not read source blob: {exc}") from exc

    async def _store_output(self, output_path: str) -> str:
        try:
            return await retry_store_operation(
                lambda: self._blobs.put_file(output_path),
                attempts=self._store_retry_attempts,
                base_delay=self._store_retry_base,
                description="blob.put",
            )
        except StoreError as exc:
            raise ProcessFailure(f"could not store output: {exc}") from exc

    # ----- process handling -----

    async def _run_process(self, args: Sequence[str], deadline: float) -> str:
        """Run binary with args until exit or deadline; returns the stderr tail"""
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ConversionTimeout(f"{self.kind.value} deadline passed before start")

        cmd: List[str] = [self.binary, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessFailure(f"cannot start {self.binary}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=remaining)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ConversionTimeout(
                f"{self.kind.value} exceeded its deadline of {remaining:.1f}s and was killed"
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        tail = (stderr or b"").decode("utf-8", errors="replace")[-STDERR_TAIL:]
        if proc.returncode != 0:
            logger.warning("converter.exit_nonzero", extra={
                "adapter": self.kind.value, "returncode": proc.returncode,
            })
            if self._looks_corrupt(tail):
                raise InputCorrupt(f"{self.kind.value} could not read the input: {tail.strip()[-500:]}")
            raise ProcessFailure(
                f"{self.kind.value} exited with status {proc.returncode}: {tail.strip()[-500:]}"
            )
        return tail

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the converter and anything it spawned"""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    def _looks_corrupt(self, stderr_tail: str) -> bool:
        lowered = stderr_tail.lower()
        return any(marker.lower() in lowered for marker in self.corrupt_markers)

    # ----- validation -----

    def _check_output(self, path: str, target: FormatTag) -> None:
        """Reject missing, empty or structurally wrong products"""
        if not os.path.isfile(path):
            raise ProcessFailure(f"{self.kind.value} exited 0 but wrote no output")
        if os.path.getsize(path) == 0:
            raise ProcessFailure(f"{self.kind.value} exited 0 but wrote an empty file")
        if not signatures.file_matches(target, path):
            raise ProcessFailure(
                f"{self.kind.value} output does not look like {target.value}"
            )
