import logging
import mimetypes
import os
import re
import stat
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageError

logger = logging.getLogger("photoframe.storage")

MAX_FILENAME_LENGTH = 255
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".tmp"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/avif": ".avif",
    "image/heic": ".heic",
    "image/svg+xml": ".svg",
}

CONTENT_TYPE_BY_EXTENSION = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".avif": "image/avif",
    ".heic": "image/heic",
    ".svg": "image/svg+xml",
}

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def is_safe_image_name(name: Optional[str]) -> bool:
    """Check that *name* is a bare filename that cannot escape its directory."""

    if not name or len(name) > MAX_FILENAME_LENGTH:
        return False
    if name.startswith("."):
        return False
    if "/" in name or "\\" in name or ":" in name:
        return False
    if ".." in name:
        return False
    if _CONTROL_CHAR_PATTERN.search(name):
        return False
    if name != name.strip():
        return False
    return True


def is_temp_artifact(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) or name.endswith(TEMP_SUFFIX)


def extension_for_content_type(content_type: str) -> str:
    extension = EXTENSION_BY_CONTENT_TYPE.get(content_type)
    if extension:
        return extension
    guessed = mimetypes.guess_extension(content_type)
    return guessed or ".img"


def content_type_for_name(name: str) -> str:
    extension = os.path.splitext(name)[1].lower()
    if extension in CONTENT_TYPE_BY_EXTENSION:
        return CONTENT_TYPE_BY_EXTENSION[extension]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class StoredImage:
    name: str
    size_bytes: int
    content_type: str
    created_at: float

    @classmethod
    def from_stat(cls, name: str, stat_result: os.stat_result) -> "StoredImage":
        return cls(
            name=name,
            size_bytes=stat_result.st_size,
            content_type=content_type_for_name(name),
            created_at=stat_result.st_mtime,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size_bytes,
            "mimeType": self.content_type,
            "createdAt": isoformat_utc(self.created_at),
        }


class ImageStorage:
    """Flat directory of image files; the directory listing is the source of truth."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).resolve()

    def _candidate_path(self, name: Optional[str]) -> Optional[Path]:
        if not is_safe_image_name(name) or is_temp_artifact(name):
            return None
        candidate = self.directory / name
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            return None
        if resolved.parent != self.directory:
            return None
        return candidate

    def resolve(self, name: Optional[str]) -> Optional[Path]:
        """Return the path of an existing stored image, or ``None``."""

        candidate = self._candidate_path(name)
        if candidate is None:
            return None
        try:
            mode = candidate.lstat().st_mode
        except OSError:
            return None
        if not stat.S_ISREG(mode):
            return None
        return candidate

    def list_images(self) -> List[StoredImage]:
        """Return stored images ordered lexicographically by name."""

        images: List[StoredImage] = []
        try:
            entries = sorted(os.scandir(self.directory), key=lambda entry: entry.name)
        except OSError as error:
            logger.error("list_failed directory=%s error=%s", self.directory, error)
            raise StorageError() from error

        for entry in entries:
            name = entry.name
            if is_temp_artifact(name) or not is_safe_image_name(name):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                stat_result = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # Removed between the directory scan and the stat call.
                continue
            except OSError as error:
                logger.warning("list_entry_failed name=%s error=%s", name, error)
                continue
            images.append(StoredImage.from_stat(name, stat_result))
        return images

    def delete(self, name: Optional[str]) -> bool:
        """Remove *name*; ``False`` means it was invalid or already absent."""

        path = self.resolve(name)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.error("delete_failed path=%s error=%s", path, error)
            raise StorageError() from error
        return True

    def cleanup_temp_files(self, max_age_seconds: float = 3600) -> int:
        """Remove temporary upload files older than *max_age_seconds*."""

        removed = 0
        cutoff = time.time() - max_age_seconds
        for temp_file in self.directory.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
        return removed
