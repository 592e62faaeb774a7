from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
import logging
from pathlib import Path
import threading
import time
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from markmaster.backup import copy_with_timestamp, snapshot, timestamped_path
from markmaster.cancellation import RunCancellation
from markmaster.config import Settings
from markmaster.db_models import ConsolidationRun
from markmaster.discovery import discover
from markmaster.errors import DuplicateRunError, ExtractionError
from markmaster.extractor import RecordExtractor
from markmaster.merge import MergeEngine, validate_destination
from markmaster.retry import RetryExhaustedError, run_with_retries
from markmaster.run_store import (
    create_run,
    finish_run,
    get_latest_run,
    get_run_by_key,
    mark_run_failed,
    store_file_outcomes,
)
from markmaster.schemas import Failed, Outcome, Record, RunStatistics, Skipped, Succeeded, Summary


logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _is_retryable(exc: Exception) -> bool:
    # Malformed cells stay malformed; only I/O trouble is worth another try.
    if isinstance(exc, ExtractionError):
        return exc.retryable
    return isinstance(exc, OSError)


class OutcomeCollector:
    """Folds task outcomes into the run summary.

    Worker threads finish in any order; every mutation of the summary and of
    the record buffer happens under one lock.
    """

    def __init__(self, summary: Summary) -> None:
        self.summary = summary
        self.records: list[Record] = []
        self.outcomes: list[Outcome] = []
        self._lock = threading.Lock()

    def add(self, outcome: Outcome) -> int:
        with self._lock:
            self.outcomes.append(outcome)
            if isinstance(outcome, Succeeded):
                self.summary.successful_files += 1
                self.records.append(outcome.record)
            elif isinstance(outcome, Skipped):
                self.summary.skipped_files += 1
                self.summary.warnings.append(f"File {outcome.path} skipped: {outcome.reason}")
            else:
                self.summary.failed_files += 1
                self.summary.errors.append(f"File {outcome.path}: {outcome.reason}")
            return self.summary.completed_files


class Consolidator:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        extractor: RecordExtractor | None = None,
        merge_engine: MergeEngine | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.extractor = extractor or RecordExtractor(settings)
        self.merge_engine = merge_engine or MergeEngine(
            sheet=settings.master_sheet_name,
            id_column=settings.master_id_column,
            mapping=settings.field_mapping,
            precision=settings.mark_precision,
        )

    def process(
        self,
        *,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
        trigger_source: str = "manual",
        run_key: str | None = None,
    ) -> Summary:
        """Run discovery, extraction and merge once and return the summary.

        Per-file problems end up in the summary. Problems with the master
        sheet, the backup or the merge itself raise ConsolidationError after
        the run has been recorded as failed. A reused run key raises
        DuplicateRunError before anything is recorded.
        """
        run_key = run_key or self._new_run_key()
        summary = Summary(run_key=run_key, dry_run=dry_run, start_time=datetime.now(UTC))
        cancellation = RunCancellation(cancel_event, self.settings.timeout_seconds or None)

        with self.session_factory() as db:
            run = self._start_run(db, run_key=run_key, dry_run=dry_run, trigger_source=trigger_source)
            summary.run_id = run.id
            logger.info(
                "consolidation run started",
                extra={"run_key": run_key, "dry_run": dry_run, "trigger_source": trigger_source},
            )

            try:
                outcomes = self._execute(summary, cancellation)
            except Exception as exc:
                summary.status = "failed"
                summary.end_time = datetime.now(UTC)
                summary.errors.append(str(exc))
                mark_run_failed(db, run, error=str(exc), summary=summary)
                logger.exception("consolidation run failed", extra={"run_key": run_key})
                raise

            self._finalize(summary)
            finish_run(db, run, summary)
            store_file_outcomes(db, run_id=run.id, outcomes=outcomes)

        logger.info(
            "consolidation run completed",
            extra={
                "run_key": run_key,
                "status": summary.status,
                "total_files": summary.total_files,
                "successful_files": summary.successful_files,
                "failed_files": summary.failed_files,
                "skipped_files": summary.skipped_files,
                "records_merged": summary.records_merged,
                "records_not_matched": summary.records_not_matched,
                "duration_seconds": summary.duration_seconds,
            },
        )
        return summary

    def statistics(self) -> RunStatistics:
        discovery = discover(self.settings.student_files_dir)
        with self.session_factory() as db:
            latest = get_latest_run(db)

        return RunStatistics(
            total_discovered=len(discovery.paths),
            discovery_errors=discovery.errors,
            student_files_dir=self.settings.student_files_dir,
            master_sheet_path=self.settings.master_sheet_path,
            max_concurrent_files=self.settings.max_concurrent_files,
            backup_enabled=self.settings.backup_enabled,
            last_run_status=latest.status if latest else None,
        )

    @staticmethod
    def _start_run(db: Session, *, run_key: str, dry_run: bool, trigger_source: str) -> ConsolidationRun:
        existing = get_run_by_key(db, run_key)
        if existing is not None:
            logger.error("run key already used", extra={"run_key": run_key, "run_id": existing.id})
            raise DuplicateRunError(f"run key {run_key!r} already used by run {existing.id}")
        try:
            return create_run(db, run_key=run_key, dry_run=dry_run, trigger_source=trigger_source)
        except IntegrityError as exc:
            # Another process claimed the key between the lookup and the insert.
            db.rollback()
            raise DuplicateRunError(f"run key {run_key!r} already used") from exc

    def _execute(self, summary: Summary, cancellation: RunCancellation) -> list[Outcome]:
        settings = self.settings
        validate_destination(settings.master_sheet_path, settings.master_sheet_name)

        discovery = discover(settings.student_files_dir)
        summary.total_files = len(discovery.paths)
        summary.warnings.extend(discovery.errors)
        logger.info("processing started", extra={"total_files": summary.total_files})

        if not discovery.paths:
            logger.info("no spreadsheet files found to process", extra={"root": settings.student_files_dir})
            return []
        if self._check_cancelled(summary, cancellation):
            return []

        if settings.backup_enabled and not summary.dry_run:
            summary.backup_path = str(snapshot(settings.master_sheet_path, settings.backup_dir))

        collector = self._extract_all(discovery.paths, summary, cancellation)

        # Records that made it out before a cancel are still merged; the run
        # stays "cancelled".
        self._check_cancelled(summary, cancellation)
        if summary.dry_run:
            logger.info("dry run: master sheet left untouched", extra={"records": len(collector.records)})
            return collector.outcomes
        if collector.records:
            self._merge(summary, collector.records)
        return collector.outcomes

    def _extract_all(
        self,
        paths: Sequence[Path],
        summary: Summary,
        cancellation: RunCancellation,
    ) -> OutcomeCollector:
        collector = OutcomeCollector(summary)
        limit = self.settings.max_concurrent_files
        gate = threading.BoundedSemaphore(limit)
        total = len(paths)

        def task(path: Path) -> None:
            try:
                completed = collector.add(self._process_file(path, cancellation))
            finally:
                gate.release()
            if completed % PROGRESS_EVERY == 0 or completed == total:
                logger.info(
                    "processing progress",
                    extra={
                        "processed": completed,
                        "total": total,
                        "percentage": f"{completed / total * 100:.1f}%",
                        "current_file": str(path),
                    },
                )

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="extract") as pool:
            futures = []
            for path in paths:
                # A new file is admitted only once a running one hands back its slot.
                if not cancellation.wait_for_slot(gate):
                    logger.warning(
                        "processing cancelled, no further files admitted",
                        extra={"admitted": len(futures), "total_files": total},
                    )
                    break
                futures.append(pool.submit(task, path))

            for future in futures:
                future.result()

        return collector

    def _process_file(self, path: Path, cancellation: RunCancellation) -> Outcome:
        started = time.perf_counter()
        max_retries = self.settings.retry_attempts

        def on_attempt_failure(attempt: int, exc: Exception) -> None:
            if attempt <= max_retries and _is_retryable(exc):
                logger.warning(
                    "retrying file processing",
                    extra={
                        "file_path": str(path),
                        "attempt": attempt,
                        "max_attempts": max_retries + 1,
                        "error": str(exc),
                    },
                )

        try:
            record, attempts = run_with_retries(
                lambda: self.extractor.extract(path),
                max_retries=max_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                on_attempt_failure=on_attempt_failure,
                should_retry=_is_retryable,
                sleep=cancellation.wait,
            )
        except RetryExhaustedError as exc:
            return self._failure(path, exc, _elapsed_ms(started))

        duration_ms = _elapsed_ms(started)
        logger.info(
            "file processed successfully",
            extra={
                "file_path": str(path),
                "student_id": record.identifier,
                "mark_count": record.mark_count,
                "attempts": attempts,
                "duration_ms": duration_ms,
            },
        )
        return Succeeded(path=str(path), record=record, attempts=attempts, duration_ms=duration_ms)

    def _failure(self, path: Path, exc: RetryExhaustedError, duration_ms: float) -> Outcome:
        cause = exc.last_error
        if isinstance(cause, ExtractionError):
            classification = cause.classification
        elif isinstance(cause, OSError):
            classification = "io"
        else:
            classification = "unexpected"
        reason = str(exc) if exc.cancelled else str(cause)

        logger.error(
            "file processing failed",
            extra={
                "file_path": str(path),
                "stage": getattr(cause, "stage", None),
                "classification": classification,
                "attempts": exc.attempts,
                "error": reason,
            },
        )
        if self.settings.skip_invalid_files:
            logger.warning("file skipped", extra={"file_path": str(path), "reason": reason})
            return Skipped(
                path=str(path),
                reason=reason,
                classification=classification,
                attempts=exc.attempts,
                duration_ms=duration_ms,
            )
        return Failed(
            path=str(path),
            reason=reason,
            classification=classification,
            attempts=exc.attempts,
            duration_ms=duration_ms,
        )

    def _merge(self, summary: Summary, records: Sequence[Record]) -> None:
        settings = self.settings
        if settings.update_in_place:
            merge_summary = self.merge_engine.apply_all(settings.master_sheet_path, records)
        else:
            output_path = timestamped_path(settings.master_sheet_path, settings.output_dir, "updated")
            merge_summary = self.merge_engine.apply_all(settings.master_sheet_path, records, save_path=output_path)
            summary.output_path = str(output_path)

        summary.records_merged = merge_summary.records_merged
        summary.records_not_matched = merge_summary.records_not_matched
        summary.errors.extend(merge_summary.errors)
        summary.warnings.extend(merge_summary.warnings)

        if not settings.update_in_place:
            logger.info("updated master sheet saved", extra={"output_path": summary.output_path})
            return

        try:
            output_path = copy_with_timestamp(settings.master_sheet_path, settings.output_dir, "updated")
        except OSError as exc:
            logger.error("failed to save master sheet copy", extra={"output_dir": settings.output_dir, "error": str(exc)})
            summary.errors.append(f"Failed to save master sheet copy: {exc}")
            return
        summary.output_path = str(output_path)
        logger.info("updated master sheet saved", extra={"output_path": summary.output_path})

    def _check_cancelled(self, summary: Summary, cancellation: RunCancellation) -> bool:
        if not cancellation.is_cancelled():
            return False
        if summary.status != "cancelled":
            summary.status = "cancelled"
            reason = "timed out" if cancellation.timed_out else "cancelled"
            summary.warnings.append(
                f"Run {reason}: {summary.completed_files} of {summary.total_files} files processed"
            )
            logger.warning(
                "consolidation run %s",
                reason,
                extra={"completed_files": summary.completed_files, "total_files": summary.total_files},
            )
        return True

    def _finalize(self, summary: Summary) -> None:
        summary.end_time = datetime.now(UTC)
        if summary.status == "cancelled":
            return
        summary.status = "failed" if summary.failed_files else "succeeded"

    @staticmethod
    def _new_run_key() -> str:
        return f"{datetime.now(UTC):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
