import json
import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .errors import CorruptIndexError, StorageReadError, StorageWriteError
from .models import FileRecord

logger = logging.getLogger("filedrop.index")

DEFAULT_BACKUP_COUNT = 3
DEEP_BACKUP_COUNT = 10
BACKUP_MARKER = ".bak."


def _now_ms() -> int:
    return int(time.time() * 1000)


def _snapshot(records: Dict[str, FileRecord]) -> Dict[str, dict]:
    return {code: record.to_dict() for code, record in records.items()}


def parse_index(text: str, source: str = "index") -> Dict[str, FileRecord]:
    """Parse a serialized index, raising :class:`CorruptIndexError` on bad data."""

    try:
        data = json.loads(text)
    except json.JSONDecodeError as error:
        raise CorruptIndexError(f"{source} is not valid JSON: {error}", path=source) from error

    if not isinstance(data, dict):
        raise CorruptIndexError(f"{source} must contain a JSON object", path=source)

    records: Dict[str, FileRecord] = {}
    for code, entry in data.items():
        try:
            record = FileRecord.from_dict(entry)
        except ValueError as error:
            raise CorruptIndexError(f"{source} record {code}: {error}", path=source) from error
        if record.pickup_code != code:
            raise CorruptIndexError(
                f"{source} record {code} carries pickup code {record.pickup_code}",
                path=source,
            )
        records[code] = record
    return records


class MetadataStore:
    """Durable pickup code -> :class:`FileRecord` index stored as one JSON file.

    Every mutation is a full read-modify-write of the index, serialized by a
    single re-entrant lock. Writes go to a temp file that replaces the index
    atomically; the previous index is first copied to a numbered backup
    (``files.json.bak.<epoch_ms>``) and only the newest ``backup_count``
    backups are kept.

    Parsed records are cached against the index file's mtime and size, and
    callers always receive copies.
    """

    def __init__(
        self,
        index_path: Path,
        *,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.index_path = Path(index_path)
        self.backup_count = max(1, int(backup_count))
        self._clock = clock or _now_ms
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, FileRecord]] = None
        self._cache_key: Optional[Tuple[int, int]] = None

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _stat_key(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self.index_path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _load(self) -> Dict[str, FileRecord]:
        key = self._stat_key()
        if key is None:
            self._cache = {}
            self._cache_key = None
            return self._cache
        if self._cache is not None and key == self._cache_key:
            return self._cache

        try:
            text = self.index_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._cache = {}
            self._cache_key = None
            return self._cache
        except OSError as error:
            logger.error("index_read_failed path=%s error=%s", self.index_path, error)
            raise StorageReadError(f"Failed to read index: {error}") from error

        try:
            records = parse_index(text, str(self.index_path))
        except CorruptIndexError as error:
            logger.critical("index_corrupt path=%s error=%s", self.index_path, error)
            raise

        self._cache = records
        self._cache_key = key
        return records

    def read_all(self) -> Dict[str, FileRecord]:
        with self._lock:
            return {code: record.copy() for code, record in self._load().items()}

    def write_all(
        self, records: Dict[str, FileRecord], backup_count: Optional[int] = None
    ) -> None:
        keep = self.backup_count if backup_count is None else max(1, int(backup_count))
        payload = {code: records[code].to_dict() for code in sorted(records)}

        with self._lock:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            backup_path = self._rotate_backup()

            temp_path = self.index_path.with_name(self.index_path.name + ".tmp")
            try:
                with temp_path.open("w", encoding="utf-8") as index_file:
                    json.dump(payload, index_file, indent=2, ensure_ascii=False)
                    index_file.flush()
                    os.fsync(index_file.fileno())
                os.replace(temp_path, self.index_path)
            except OSError as error:
                try:
                    temp_path.unlink(missing_ok=True)
                except OSError:
                    pass
                logger.error("index_write_failed path=%s error=%s", self.index_path, error)
                raise StorageWriteError(f"Failed to write index: {error}") from error

            self._cache = {code: record.copy() for code, record in records.items()}
            self._cache_key = self._stat_key()
            logger.debug(
                "index_saved records=%d backup=%s",
                len(records),
                backup_path.name if backup_path else None,
            )
            self.compact_backups(keep)

    def get(self, code: str) -> Optional[FileRecord]:
        with self._lock:
            record = self._load().get(code)
            return record.copy() if record else None

    def put(self, code: str, record: FileRecord) -> None:
        with self.transaction() as records:
            records[code] = record.copy()

    def remove(self, code: str) -> Optional[FileRecord]:
        with self.transaction() as records:
            return records.pop(code, None)

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, FileRecord]]:
        """Hold the store lock and yield a mutable copy of the index.

        The index is written back on normal exit when its contents changed;
        an exception inside the block discards the changes.
        """

        with self._lock:
            records = self.read_all()
            before = _snapshot(records)
            yield records
            if _snapshot(records) != before:
                self.write_all(records)

    def normalize(self, backup_count: Optional[int] = None) -> int:
        """Rewrite persisted records in canonical form.

        Drops unknown keys and fills missing optional ones. Returns the number
        of records whose stored form changed; nothing is written when zero.
        """

        with self._lock:
            records = self.read_all()
            try:
                raw = json.loads(self.index_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return 0
            except (OSError, ValueError) as error:
                raise StorageReadError(f"Failed to read index: {error}") from error

            changed = sum(
                1 for code, record in records.items() if raw.get(code) != record.to_dict()
            )
            if changed:
                self.write_all(records, backup_count=backup_count)
                logger.info("index_normalized changed=%d", changed)
            return changed

    def _backup_stamp(self, path: Path) -> Optional[int]:
        prefix = self.index_path.name + BACKUP_MARKER
        if not path.name.startswith(prefix):
            return None
        suffix = path.name[len(prefix):]
        if not suffix.isdigit():
            return None
        return int(suffix)

    def list_backups(self) -> List[Path]:
        """Return backup snapshots, newest first."""

        directory = self.index_path.parent
        if not directory.exists():
            return []
        stamped = []
        for path in directory.glob(self.index_path.name + BACKUP_MARKER + "*"):
            stamp = self._backup_stamp(path)
            if stamp is not None and path.is_file():
                stamped.append((stamp, path))
        stamped.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in stamped]

    def _rotate_backup(self) -> Optional[Path]:
        if not self.index_path.exists():
            return None
        backups = self.list_backups()
        stamp = self._clock()
        if backups:
            newest = self._backup_stamp(backups[0]) or 0
            stamp = max(stamp, newest + 1)
        backup_path = self.index_path.with_name(f"{self.index_path.name}{BACKUP_MARKER}{stamp}")
        try:
            shutil.copy2(self.index_path, backup_path)
        except OSError as error:
            logger.error("index_backup_failed path=%s error=%s", backup_path, error)
            raise StorageWriteError(f"Failed to back up index: {error}") from error
        return backup_path

    def compact_backups(self, keep: Optional[int] = None) -> Tuple[int, int]:
        """Delete all but the newest *keep* backups; return (removed, failed)."""

        keep = self.backup_count if keep is None else max(0, int(keep))
        removed = 0
        failed = 0
        with self._lock:
            for path in self.list_backups()[keep:]:
                try:
                    path.unlink()
                    removed += 1
                    logger.debug("index_backup_removed path=%s", path.name)
                except FileNotFoundError:
                    continue
                except OSError as error:
                    failed += 1
                    logger.warning("index_backup_remove_failed path=%s error=%s", path.name, error)
        return removed, failed

    def restore_backup(self, backup_path: Optional[Path] = None) -> int:
        """Replace the index with the newest readable backup.

        This is the manual way out of :class:`CorruptIndexError`. The
        current index file, if any, is preserved as ``files.json.corrupt.<ms>``.
        Returns the number of restored records.
        """

        with self._lock:
            candidates = [Path(backup_path)] if backup_path else self.list_backups()
            for candidate in candidates:
                try:
                    records = parse_index(candidate.read_text(encoding="utf-8"), str(candidate))
                except (OSError, CorruptIndexError) as error:
                    logger.warning("index_backup_unusable path=%s error=%s", candidate, error)
                    continue

                if self.index_path.exists():
                    preserved = self.index_path.with_name(
                        f"{self.index_path.name}.corrupt.{self._clock()}"
                    )
                    os.replace(self.index_path, preserved)
                    logger.warning("index_preserved path=%s", preserved.name)

                self._cache = None
                self._cache_key = None
                self.write_all(records)
                logger.warning(
                    "index_restored backup=%s records=%d", candidate.name, len(records)
                )
                return len(records)

        raise CorruptIndexError("No readable index backup found", path=str(self.index_path))
