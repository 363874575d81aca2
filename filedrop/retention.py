import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from .errors import PickupError
from .files import FileStore
from .index import DEEP_BACKUP_COUNT, MetadataStore

logger = logging.getLogger("filedrop.retention")

DEFAULT_GRACE_SECONDS = 60 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SweepReport:
    """Outcome of one sweep.

    ``flagged`` counts findings that were logged but deliberately left alone.
    """

    name: str
    scanned: int = 0
    removed: int = 0
    failed: int = 0
    flagged: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class RetentionEngine:
    """Reconciles the record index against the uploads directory.

    Sweeps are independent, run to completion when individual items fail,
    and are safe to repeat: a second run with no intervening changes removes
    nothing. They work directly on the stores and never go through the
    request path.
    """

    def __init__(
        self,
        index: MetadataStore,
        files: FileStore,
        *,
        orphan_grace_seconds: float = DEFAULT_GRACE_SECONDS,
        temp_max_age_seconds: float = DEFAULT_GRACE_SECONDS,
        deep_backup_count: int = DEEP_BACKUP_COUNT,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.index = index
        self.files = files
        self.orphan_grace_seconds = max(0.0, float(orphan_grace_seconds))
        self.temp_max_age_seconds = max(0.0, float(temp_max_age_seconds))
        self.deep_backup_count = max(1, int(deep_backup_count))
        self._clock = clock or _now_ms

    def sweep_expired(self, now_ms: Optional[int] = None) -> SweepReport:
        report = SweepReport("expired")
        try:
            with self.index.transaction() as records:
                now = self._clock() if now_ms is None else now_ms
                for code, record in list(records.items()):
                    report.scanned += 1
                    if not record.is_expired(now):
                        continue
                    try:
                        self.files.delete(record.stored_name)
                    except OSError as error:
                        # Best effort; a leftover file is picked up by the orphan sweep.
                        report.failed += 1
                        logger.warning(
                            "expired_file_delete_failed code=%s stored_name=%s error=%s",
                            code,
                            record.stored_name,
                            error,
                        )
                    del records[code]
                    report.removed += 1
                    logger.info(
                        "expired_record_removed code=%s original_name=%s expired_at=%d",
                        code,
                        record.original_name,
                        record.expires_at,
                    )
        except PickupError as error:
            report.failed += 1
            logger.error("expired_sweep_aborted error=%s", error)

        if report.removed or report.failed:
            logger.info(
                "expired_sweep_completed removed=%d failed=%d", report.removed, report.failed
            )
        return report

    def sweep_orphans(self, now: Optional[float] = None) -> SweepReport:
        """Delete uploads that no record references.

        Files younger than the grace period are skipped; they may belong to
        an upload whose record has not been committed yet.
        """

        report = SweepReport("orphans")
        try:
            referenced = {record.stored_name for record in self.index.read_all().values()}
        except PickupError as error:
            report.failed += 1
            logger.error("orphan_sweep_aborted error=%s", error)
            return report

        current = self._clock() / 1000.0 if now is None else now
        cutoff = current - self.orphan_grace_seconds
        try:
            for stored_name, stat in self.files.iter_files():
                report.scanned += 1
                if stored_name in referenced or stat.st_mtime > cutoff:
                    continue
                try:
                    if self.files.delete(stored_name):
                        report.removed += 1
                        logger.info(
                            "orphan_file_removed stored_name=%s size=%d age_seconds=%d",
                            stored_name,
                            stat.st_size,
                            current - stat.st_mtime,
                        )
                except OSError as error:
                    report.failed += 1
                    logger.warning(
                        "orphan_cleanup_failed stored_name=%s error=%s", stored_name, error
                    )
        except OSError as error:
            report.failed += 1
            logger.error("orphan_scan_failed root=%s error=%s", self.files.root, error)

        if report.removed or report.failed:
            logger.info(
                "orphan_sweep_completed removed=%d failed=%d", report.removed, report.failed
            )
        return report

    def detect_dangling(self) -> SweepReport:
        """Log records whose file is missing without touching them.

        A missing file may be a storage outage rather than real loss, so
        this sweep only reports; lookups purge such records on demand.
        """

        report = SweepReport("dangling")
        try:
            records = self.index.read_all()
        except PickupError as error:
            report.failed += 1
            logger.error("consistency_check_aborted error=%s", error)
            return report

        for code, record in records.items():
            report.scanned += 1
            if not self.files.exists(record.stored_name):
                report.flagged += 1
                logger.warning(
                    "inconsistency record_without_file code=%s stored_name=%s original_name=%s",
                    code,
                    record.stored_name,
                    record.original_name,
                )

        if report.flagged:
            logger.warning("consistency_check_completed inconsistencies=%d", report.flagged)
        else:
            logger.info("consistency_check_passed records=%d", report.scanned)
        return report

    def compact_backups(self, keep: Optional[int] = None) -> SweepReport:
        report = SweepReport("backups")
        keep_count = self.deep_backup_count if keep is None else max(0, int(keep))
        try:
            report.scanned = len(self.index.list_backups())
            report.removed, report.failed = self.index.compact_backups(keep_count)
        except OSError as error:
            report.failed += 1
            logger.error("backup_compaction_failed error=%s", error)
        if report.removed:
            logger.info("backup_compaction_completed removed=%d kept=%d", report.removed, keep_count)
        return report

    def sweep_temp_files(self, now: Optional[float] = None) -> SweepReport:
        """Remove partial-write leftovers from interrupted uploads.

        Names referenced by the index are never touched.
        """

        report = SweepReport("temp")
        try:
            referenced = {record.stored_name for record in self.index.read_all().values()}
        except PickupError as error:
            report.failed += 1
            logger.error("temp_sweep_aborted error=%s", error)
            return report

        current = self._clock() / 1000.0 if now is None else now
        cutoff = current - self.temp_max_age_seconds
        try:
            for temp_path, stat in self.files.iter_temp_files():
                report.scanned += 1
                if temp_path.name in referenced or stat.st_mtime >= cutoff:
                    continue
                try:
                    temp_path.unlink()
                    report.removed += 1
                    logger.info("temp_file_removed path=%s", temp_path.name)
                except FileNotFoundError:
                    continue
                except OSError as error:
                    report.failed += 1
                    logger.warning("temp_cleanup_failed path=%s error=%s", temp_path.name, error)
        except OSError as error:
            report.failed += 1
            logger.error("temp_scan_failed root=%s error=%s", self.files.root, error)
        return report

    def normalize_index(self) -> SweepReport:
        report = SweepReport("normalize")
        try:
            report.flagged = self.index.normalize(backup_count=self.deep_backup_count)
        except PickupError as error:
            report.failed += 1
            logger.error("index_normalize_aborted error=%s", error)
        return report

    def run_routine(self) -> Dict[str, SweepReport]:
        started = time.monotonic()
        reports = {
            "expired": self.sweep_expired(),
            "orphans": self.sweep_orphans(),
            "temp": self.sweep_temp_files(),
        }
        self._log_summary("routine", reports, started)
        return reports

    def run_deep(self) -> Dict[str, SweepReport]:
        started = time.monotonic()
        reports = self.run_routine()
        reports["backups"] = self.compact_backups()
        reports["normalize"] = self.normalize_index()
        reports["dangling"] = self.detect_dangling()
        self._log_summary("deep", reports, started)
        return reports

    def _log_summary(self, kind: str, reports: Dict[str, SweepReport], started: float) -> None:
        logger.info(
            "maintenance_completed kind=%s %s failed=%d duration_ms=%d",
            kind,
            " ".join(f"{name}={report.removed}" for name, report in reports.items()),
            sum(report.failed for report in reports.values()),
            (time.monotonic() - started) * 1000,
        )
