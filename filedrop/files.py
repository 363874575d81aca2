import logging
import os
import shutil
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator, Tuple, Union

from werkzeug.utils import secure_filename

from .errors import StorageWriteError

logger = logging.getLogger("filedrop.files")

CHUNK_SIZE_BYTES = 1024 * 1024
MAX_BASE_NAME_LENGTH = 50
MAX_EXTENSION_LENGTH = 16
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".part"


def derive_stored_name(suggested_name: str) -> str:
    """Build a collision-resistant on-disk name from a user-supplied one.

    The result is ``<epoch_ms>-<8 hex>-<base><ext>``; the base is sanitized
    with :func:`werkzeug.utils.secure_filename`, so separators, traversal
    segments and non-ASCII characters never reach the file system.
    """

    # Drop any client-side directory part, whatever separator it used.
    leaf = PurePosixPath((suggested_name or "").replace("\\", "/")).name
    cleaned = secure_filename(leaf)
    suffix = Path(cleaned).suffix.lower()
    if len(suffix) > MAX_EXTENSION_LENGTH or not suffix[1:].isalnum():
        suffix = ""
    base = cleaned[: len(cleaned) - len(suffix)] if suffix else cleaned
    base = base.strip("._")[:MAX_BASE_NAME_LENGTH] or "file"
    timestamp = int(time.time() * 1000)
    return f"{timestamp}-{uuid.uuid4().hex[:8]}-{base}{suffix}"


class FileStore:
    """Content storage for uploads, addressed by derived stored names."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, stored_name: str) -> Path:
        """Return the absolute path for *stored_name*.

        Raises ``ValueError`` for names that are empty, contain path
        separators or would resolve outside the uploads directory.
        """

        if not stored_name or stored_name in {".", ".."}:
            raise ValueError("stored name must not be empty")
        if "/" in stored_name or "\\" in stored_name or "\x00" in stored_name:
            raise ValueError(f"unsafe stored name: {stored_name!r}")
        candidate = (self.root / stored_name).resolve()
        if candidate.parent != self.root:
            raise ValueError(f"stored name escapes storage root: {stored_name!r}")
        return candidate

    def save(self, data: Union[bytes, BinaryIO], suggested_name: str) -> str:
        """Persist *data* and return the stored name actually used.

        Content is written to a hidden ``.upload-<hex>.part`` file and
        renamed into place once fully flushed. A partial write therefore never
        shares a name with a committed upload, whatever extension the client
        sent.
        """

        stored_name = derive_stored_name(suggested_name)
        target = self.resolve(stored_name)
        temp_path = self.root / f"{TEMP_PREFIX}{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            with temp_path.open("xb") as handle:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    handle.write(data)
                else:
                    shutil.copyfileobj(data, handle, CHUNK_SIZE_BYTES)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as error:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                pass
            logger.error(
                "file_save_failed stored_name=%s error=%s", stored_name, error
            )
            raise StorageWriteError(f"Failed to store file: {error}") from error

        logger.debug("file_saved stored_name=%s", stored_name)
        return stored_name

    def exists(self, stored_name: str) -> bool:
        try:
            return self.resolve(stored_name).is_file()
        except ValueError:
            return False

    def size_of(self, stored_name: str) -> int:
        return self.resolve(stored_name).stat().st_size

    def delete(self, stored_name: str) -> bool:
        """Remove a stored file; returns whether something was deleted.

        Missing files are not an error. Other ``OSError`` failures propagate
        so callers can decide whether to retry.
        """

        try:
            path = self.resolve(stored_name)
        except ValueError:
            logger.warning("file_delete_rejected stored_name=%r", stored_name)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("file_deleted stored_name=%s", stored_name)
        return True

    def iter_files(self) -> Iterator[Tuple[str, os.stat_result]]:
        """Yield ``(stored_name, stat)`` for every committed upload."""

        for entry in self._scan():
            if entry.name.startswith("."):
                continue
            stat = _stat_entry(entry)
            if stat is not None:
                yield entry.name, stat

    def iter_temp_files(self) -> Iterator[Tuple[Path, os.stat_result]]:
        for entry in self._scan():
            if is_temp_name(entry.name):
                stat = _stat_entry(entry)
                if stat is not None:
                    yield Path(entry.path), stat

    def _scan(self) -> Iterator[os.DirEntry]:
        with os.scandir(self.root) as entries:
            for entry in entries:
                try:
                    if entry.is_file(follow_symlinks=False):
                        yield entry
                except OSError as error:
                    logger.warning("file_scan_entry_failed entry=%s error=%s", entry.name, error)


def is_temp_name(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


def _stat_entry(entry: os.DirEntry):
    try:
        return entry.stat(follow_symlinks=False)
    except FileNotFoundError:
        return None
