import logging
import os
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple

from .config import normalize_content_type
from .errors import EmptyUpload, StorageError, TooLarge, UnsupportedType, UploadInterrupted
from .storage import (
    TEMP_PREFIX,
    TEMP_SUFFIX,
    ImageStorage,
    StoredImage,
    extension_for_content_type,
)

logger = logging.getLogger("photoframe.storage")

CHUNK_SIZE_BYTES = 64 * 1024
MAX_NAME_ATTEMPTS = 5


def generate_image_name(content_type: str) -> str:
    """Build a server-side filename: ``<epoch-ms>-<uuid hex><ext>``."""

    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{extension_for_content_type(content_type)}"


class UploadWriter:
    """Validate an incoming image stream and commit it to storage atomically."""

    def __init__(
        self,
        storage: ImageStorage,
        allowed_content_types: Iterable[str],
        max_file_size_bytes: int,
        chunk_size: int = CHUNK_SIZE_BYTES,
    ) -> None:
        self.storage = storage
        self.allowed_content_types = frozenset(allowed_content_types)
        self.max_file_size_bytes = int(max_file_size_bytes)
        self.chunk_size = max(1, int(chunk_size))

    def validate_declared(self, declared_content_type: Optional[str], declared_size: Optional[int]) -> str:
        content_type = normalize_content_type(declared_content_type)
        if content_type not in self.allowed_content_types:
            raise UnsupportedType(
                f"Content type '{content_type or 'unknown'}' is not allowed"
            )
        if declared_size is not None and declared_size > self.max_file_size_bytes:
            raise TooLarge()
        return content_type

    def _target_path(self, content_type: str) -> Path:
        for _ in range(MAX_NAME_ATTEMPTS):
            candidate = self.storage.directory / generate_image_name(content_type)
            if not candidate.exists():
                return candidate
        logger.error("name_generation_exhausted directory=%s", self.storage.directory)
        raise StorageError()

    def _open_temp(self) -> Tuple[Path, BinaryIO]:
        temp_path = self.storage.directory / f"{TEMP_PREFIX}{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as error:
            logger.error("temp_create_failed path=%s error=%s", temp_path, error)
            raise StorageError() from error
        return temp_path, os.fdopen(fd, "wb")

    def ingest(
        self,
        stream: BinaryIO,
        declared_content_type: Optional[str],
        declared_size: Optional[int] = None,
    ) -> StoredImage:
        content_type = self.validate_declared(declared_content_type, declared_size)

        temp_path, destination = self._open_temp()
        committed = False
        try:
            written = 0
            with destination:
                while True:
                    try:
                        chunk = stream.read(self.chunk_size)
                    except OSError as error:
                        # Client side failure; nothing is wrong with storage.
                        logger.warning(
                            "upload_stream_interrupted temp=%s written=%d error=%s",
                            temp_path.name,
                            written,
                            error,
                        )
                        raise UploadInterrupted() from error
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_file_size_bytes:
                        raise TooLarge()
                    destination.write(chunk)
                destination.flush()
                os.fsync(destination.fileno())

            if written == 0:
                raise EmptyUpload()

            target_path = self._target_path(content_type)
            os.replace(temp_path, target_path)
            committed = True
            stat_result = target_path.stat()
            return StoredImage(
                name=target_path.name,
                size_bytes=stat_result.st_size,
                content_type=content_type,
                created_at=stat_result.st_mtime,
            )
        except OSError as error:
            logger.error("upload_write_failed path=%s error=%s", temp_path, error)
            raise StorageError() from error
        finally:
            if not committed:
                try:
                    temp_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as error:
                    logger.warning("temp_cleanup_failed path=%s error=%s", temp_path, error)
