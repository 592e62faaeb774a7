from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from markmaster.db_models import ConsolidationRun, FileOutcome, utc_now
from markmaster.schemas import Outcome, Succeeded, Summary


def create_run(db: Session, *, run_key: str, dry_run: bool, trigger_source: str) -> ConsolidationRun:
    run = ConsolidationRun(
        run_key=run_key,
        dry_run=dry_run,
        trigger_source=trigger_source,
        status="running",
        started_at=utc_now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def _copy_counters(run: ConsolidationRun, summary: Summary) -> None:
    run.total_files = summary.total_files
    run.successful_files = summary.successful_files
    run.failed_files = summary.failed_files
    run.skipped_files = summary.skipped_files
    run.records_merged = summary.records_merged
    run.records_not_matched = summary.records_not_matched
    run.backup_path = summary.backup_path
    run.output_path = summary.output_path


def finish_run(db: Session, run: ConsolidationRun, summary: Summary) -> None:
    _copy_counters(run, summary)
    run.status = summary.status
    run.completed_at = utc_now()
    run.error = "; ".join(summary.errors[:5]) if summary.status == "failed" else None
    db.commit()


def mark_run_failed(db: Session, run: ConsolidationRun, *, error: str, summary: Summary | None = None) -> None:
    if summary is not None:
        _copy_counters(run, summary)
    run.status = "failed"
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def store_file_outcomes(db: Session, *, run_id: int, outcomes: Sequence[Outcome]) -> None:
    for outcome in outcomes:
        if isinstance(outcome, Succeeded):
            row = FileOutcome(
                run_id=run_id,
                file_path=outcome.path,
                status=outcome.status,
                student_id=outcome.record.identifier,
                attempts=outcome.attempts,
                duration_ms=outcome.duration_ms,
            )
        else:
            row = FileOutcome(
                run_id=run_id,
                file_path=outcome.path,
                status=outcome.status,
                attempts=outcome.attempts,
                classification=outcome.classification,
                reason=outcome.reason,
                duration_ms=outcome.duration_ms,
            )
        db.add(row)
    db.commit()


def get_run_by_key(db: Session, run_key: str) -> ConsolidationRun | None:
    stmt = select(ConsolidationRun).where(ConsolidationRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def get_latest_run(db: Session) -> ConsolidationRun | None:
    stmt = select(ConsolidationRun).order_by(ConsolidationRun.id.desc()).limit(1)
    return db.execute(stmt).scalar_one_or_none()


def list_recent_runs(db: Session, limit: int = 10) -> list[ConsolidationRun]:
    stmt = select(ConsolidationRun).order_by(ConsolidationRun.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())
