import os
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from converty.errors import FileTooLarge, ValidationError

CHUNK_SIZE = 64 * 1024


class FileHandler:
    """Stream uploads to a scratch directory with a hard size limit"""

    def __init__(self, base_dir: str, max_size_bytes: int):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.max_size_bytes = max_size_bytes

    @property
    def max_size_mb(self) -> int:
        return self.max_size_bytes // (1024 * 1024)

    async def save_upload(self, file: UploadFile) -> dict:
        """
        Save an uploaded file to a temp path, enforcing the size limit while streaming

        Returns:
            dict with file_path, filename, size
        """
        if not file.filename:
            raise ValidationError("No filename provided")

        # Reject early when the client declared a size
        if file.size is not None and file.size > self.max_size_bytes:
            raise FileTooLarge(self.max_size_mb)

        fd, tmp_name = tempfile.mkstemp(prefix="upload-", dir=self.base_dir)
        file_path = Path(tmp_name)
        bytes_written = 0
        try:
            with os.fdopen(fd, "wb") as buffer:
                while chunk := await file.read(CHUNK_SIZE):
                    bytes_written += len(chunk)
                    if bytes_written > self.max_size_bytes:
                        raise FileTooLarge(self.max_size_mb)
                    buffer.write(chunk)
        except BaseException:
            file_path.unlink(missing_ok=True)
            raise

        if bytes_written == 0:
            file_path.unlink(missing_ok=True)
            raise ValidationError("Uploaded file is empty")

        return {
            "file_path": str(file_path),
            "filename": file.filename,
            "size": bytes_written,
        }

    @staticmethod
    def cleanup(file_path: Optional[str]) -> None:
        if file_path:
            Path(file_path).unlink(missing_ok=True)
