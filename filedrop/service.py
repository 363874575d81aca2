import logging
import math
import mimetypes
import time
from typing import Any, BinaryIO, Callable, Dict, Optional, Union

from .codes import CODE_ALPHABET, CODE_LENGTH, DEFAULT_MAX_ATTEMPTS, generate_unique_code, validate_code
from .config import DAY_MS
from .errors import (
    ExpiredError,
    FileMissingError,
    InvalidFormatError,
    InvalidMetadataError,
    NotFoundError,
    PickupError,
    StorageWriteError,
)
from .files import FileStore
from .index import MetadataStore
from .models import (
    DEFAULT_MIME_TYPE,
    MAX_DESCRIPTION_LENGTH,
    MAX_TAGS_LENGTH,
    DownloadTicket,
    FileRecord,
)

logger = logging.getLogger("filedrop.service")

DEFAULT_RETENTION_DAYS = 7
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 30


def _now_ms() -> int:
    return int(time.time() * 1000)


def clamp_retention_days(
    value: Any,
    default: int = DEFAULT_RETENTION_DAYS,
    minimum: int = MIN_RETENTION_DAYS,
    maximum: int = MAX_RETENTION_DAYS,
) -> int:
    """Coerce a caller-supplied retention into whole days within bounds.

    Missing, non-numeric, NaN or infinite values use *default*.
    """

    if value is None or value == "":
        days = float(default)
    else:
        try:
            days = float(value)
        except (TypeError, ValueError):
            days = float(default)
        if math.isnan(days) or math.isinf(days):
            days = float(default)
    return int(min(max(int(days), minimum), maximum))


def _bounded_text(value: Optional[str], limit: int, field: str) -> str:
    text = (value or "").strip()
    if len(text) > limit:
        raise InvalidMetadataError(
            f"{field} must be at most {limit} characters", field=field
        )
    return text


class PickupService:
    """Public API of the pickup store.

    Uploads allocate a code and commit a record; lookups validate existence,
    expiry and the physical file before returning a record or raising a
    typed :class:`~filedrop.errors.PickupError`.
    """

    def __init__(
        self,
        index: MetadataStore,
        files: FileStore,
        *,
        code_length: int = CODE_LENGTH,
        code_alphabet: str = CODE_ALPHABET,
        max_code_attempts: int = DEFAULT_MAX_ATTEMPTS,
        default_retention_days: int = DEFAULT_RETENTION_DAYS,
        min_retention_days: int = MIN_RETENTION_DAYS,
        max_retention_days: int = MAX_RETENTION_DAYS,
        clock: Optional[Callable[[], int]] = None,
        rng: Optional[Any] = None,
    ) -> None:
        self.index = index
        self.files = files
        self.code_length = code_length
        self.code_alphabet = code_alphabet
        self.max_code_attempts = max_code_attempts
        self.default_retention_days = default_retention_days
        # Caller-supplied bounds can only narrow the fixed [1, 30] day window.
        self.min_retention_days = min(
            max(int(min_retention_days), MIN_RETENTION_DAYS), MAX_RETENTION_DAYS
        )
        self.max_retention_days = min(
            max(int(max_retention_days), self.min_retention_days), MAX_RETENTION_DAYS
        )
        self._clock = clock or _now_ms
        self._rng = rng

    def now(self) -> int:
        return self._clock()

    def upload(
        self,
        data: Union[bytes, BinaryIO],
        original_name: str,
        mime_type: Optional[str] = None,
        *,
        description: Optional[str] = None,
        tags: Optional[str] = None,
        retention_days: Any = None,
        source: Optional[str] = None,
    ) -> FileRecord:
        started = time.monotonic()
        description = _bounded_text(description, MAX_DESCRIPTION_LENGTH, "description")
        tags = _bounded_text(tags, MAX_TAGS_LENGTH, "tags")
        days = clamp_retention_days(
            retention_days,
            self.default_retention_days,
            self.min_retention_days,
            self.max_retention_days,
        )
        display_name = (original_name or "").strip() or "file"
        content_type = (
            mime_type or mimetypes.guess_type(display_name)[0] or DEFAULT_MIME_TYPE
        )

        stored_name = self.files.save(data, display_name)
        try:
            size = self.files.size_of(stored_name)
            # Drawing the code under the store lock keeps two concurrent
            # uploads from committing the same code.
            with self.index.transaction() as records:
                code = generate_unique_code(
                    records,
                    self.max_code_attempts,
                    length=self.code_length,
                    alphabet=self.code_alphabet,
                    rng=self._rng,
                )
                uploaded_at = self._clock()
                record = FileRecord(
                    pickup_code=code,
                    original_name=display_name,
                    stored_name=stored_name,
                    size=size,
                    mime_type=content_type,
                    uploaded_at=uploaded_at,
                    expires_at=uploaded_at + days * DAY_MS,
                    description=description,
                    tags=tags,
                    uploader_source=source,
                )
                records[code] = record
        except Exception as error:
            self._rollback_upload(stored_name)
            if isinstance(error, OSError) and not isinstance(error, PickupError):
                raise StorageWriteError(f"Failed to store file: {error}") from error
            raise

        logger.info(
            "upload_registered code=%s original_name=%s stored_name=%s size=%d "
            "retention_days=%d expires_at=%d duration_ms=%d",
            record.pickup_code,
            record.original_name,
            record.stored_name,
            record.size,
            days,
            record.expires_at,
            (time.monotonic() - started) * 1000,
        )
        return record.copy()

    def _rollback_upload(self, stored_name: str) -> None:
        try:
            self.files.delete(stored_name)
            logger.info("upload_rolled_back stored_name=%s", stored_name)
        except OSError as error:
            logger.error(
                "upload_rollback_failed stored_name=%s error=%s", stored_name, error
            )

    def _check_code(self, code: str) -> None:
        if not validate_code(code, self.code_length):
            raise InvalidFormatError(pickup_code=code if isinstance(code, str) else None)

    def _resolve_live(self, records: Dict[str, FileRecord], code: str) -> FileRecord:
        """Return the live record for *code* or raise.

        Runs inside a transaction: a record whose file has vanished is
        removed from *records* before :class:`FileMissingError` is raised,
        and the caller's transaction must persist that removal.
        """

        record = records.get(code)
        if record is None:
            raise NotFoundError(pickup_code=code)

        if record.is_expired(self._clock()):
            logger.info(
                "pickup_code_expired code=%s expired_at=%d", code, record.expires_at
            )
            raise ExpiredError(record.expires_at, pickup_code=code)

        if not self.files.exists(record.stored_name):
            del records[code]
            logger.warning(
                "dangling_record_purged code=%s stored_name=%s original_name=%s",
                code,
                record.stored_name,
                record.original_name,
            )
            raise FileMissingError(pickup_code=code)

        return record

    def lookup(self, code: str) -> FileRecord:
        """Return the record for *code* without changing it.

        Side effect: a record whose physical file is missing is purged from
        the index and :class:`FileMissingError` (a :class:`NotFoundError`)
        is raised; the next lookup then raises a plain ``NotFoundError``.
        """

        self._check_code(code)
        purged = None
        with self.index.transaction() as records:
            try:
                record = self._resolve_live(records, code)
            except FileMissingError as error:
                # Leave the block normally so the purge is written.
                purged = error
            else:
                return record.copy()
        raise purged

    def record_download(self, code: str, source: Optional[str] = None) -> DownloadTicket:
        self._check_code(code)
        purged = None
        with self.index.transaction() as records:
            try:
                record = self._resolve_live(records, code)
            except FileMissingError as error:
                purged = error
            else:
                record.download_count += 1
                record.last_download_at = self._clock()
                record.last_download_source = source
                ticket = DownloadTicket(
                    record=record.copy(), path=self.files.resolve(record.stored_name)
                )
        if purged is not None:
            raise purged

        logger.info(
            "download_recorded code=%s original_name=%s download_count=%d",
            code,
            ticket.record.original_name,
            ticket.record.download_count,
        )
        return ticket

    def delete_by_code(self, code: str) -> bool:
        """Remove a record and its file; unknown codes return ``False``."""

        self._check_code(code)
        with self.index.transaction() as records:
            record = records.pop(code, None)
            if record is None:
                return False
            try:
                file_removed = self.files.delete(record.stored_name)
            except OSError as error:
                # Raising discards the record removal, so both sides stay in place.
                logger.warning(
                    "file_delete_disk_failed code=%s stored_name=%s error=%s",
                    code,
                    record.stored_name,
                    error,
                )
                raise StorageWriteError(f"Failed to delete file: {error}") from error

        logger.info(
            "file_deleted code=%s stored_name=%s original_name=%s file_removed=%s",
            code,
            record.stored_name,
            record.original_name,
            file_removed,
        )
        return True

    def stats(self) -> Dict[str, int]:
        """Aggregate counters, safe to expose publicly."""

        now = self._clock()
        records = self.index.read_all()
        live = [record for record in records.values() if not record.is_expired(now)]
        return {
            "total_records": len(records),
            "live_records": len(live),
            "expired_records": len(records) - len(live),
            "total_bytes_live": sum(record.size for record in live),
            "downloaded_record_count": sum(
                1 for record in records.values() if record.download_count > 0
            ),
        }
