import argparse
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import signal
import threading

from markmaster.config import Settings, get_settings
from markmaster.database import build_session_factory
from markmaster.errors import ConfigError, ConsolidationError
from markmaster.processor import Consolidator
from markmaster.run_store import list_recent_runs
from markmaster.scheduler import start_scheduler
from markmaster.schemas import Summary


logger = logging.getLogger(__name__)

MAX_LISTED_MESSAGES = 5
EXIT_FAILED = 1
EXIT_CANCELLED = 2


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consolidate student mark sheets into the master sheet")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one consolidation")
    run_parser.add_argument("--dry-run", action="store_true", help="extract and validate only, change nothing")
    run_parser.add_argument("--run-key", required=False, help="Unique key recorded for this run")
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )

    subparsers.add_parser("stats", help="show discovery statistics and exit")

    history_parser = subparsers.add_parser("history", help="list recent runs")
    history_parser.add_argument("--limit", type=int, default=10, help="number of runs to show")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    def handle(signum, _frame) -> None:
        logger.info("received shutdown signal", extra={"signal": signal.Signals(signum).name})
        cancel_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def print_summary(summary: Summary) -> None:
    print(
        "run_key={run_key} status={status} mode={mode} total={total} successful={successful} failed={failed} "
        "skipped={skipped} merged={merged} not_matched={not_matched} duration={duration:.2f}s "
        "backup={backup} output={output}".format(
            run_key=summary.run_key,
            status=summary.status,
            mode="dry-run" if summary.dry_run else "production",
            total=summary.total_files,
            successful=summary.successful_files,
            failed=summary.failed_files,
            skipped=summary.skipped_files,
            merged=summary.records_merged,
            not_matched=summary.records_not_matched,
            duration=summary.duration_seconds or 0.0,
            backup=summary.backup_path,
            output=summary.output_path,
        )
    )
    for title, messages in (("errors", summary.errors), ("warnings", summary.warnings)):
        if not messages:
            continue
        print(f"{title} ({len(messages)}):")
        for message in messages[:MAX_LISTED_MESSAGES]:
            print(f"  - {message}")
        if len(messages) > MAX_LISTED_MESSAGES:
            print(f"  ... and {len(messages) - MAX_LISTED_MESSAGES} more {title}")


def main() -> None:
    args = parse_args()
    try:
        settings = get_settings()
    except (ConfigError, ValueError) as exc:
        print(f"invalid configuration: {exc}")
        raise SystemExit(EXIT_FAILED) from exc

    configure_logging(settings)
    session_factory = build_session_factory(settings.database_url)

    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    if args.command == "history":
        with session_factory() as db:
            for run in list_recent_runs(db, limit=args.limit):
                print(
                    f"run_id={run.id} run_key={run.run_key} trigger={run.trigger_source} dry_run={run.dry_run} "
                    f"status={run.status} total={run.total_files} successful={run.successful_files} "
                    f"failed={run.failed_files} skipped={run.skipped_files} merged={run.records_merged} "
                    f"started_at={run.started_at.isoformat()}"
                )
        return

    consolidator = Consolidator(settings, session_factory)

    if args.command == "stats":
        stats = consolidator.statistics()
        print(
            f"total_excel_files={stats.total_discovered} student_files_dir={stats.student_files_dir} "
            f"master_sheet_path={stats.master_sheet_path} max_concurrent_files={stats.max_concurrent_files} "
            f"backup_enabled={stats.backup_enabled} last_run_status={stats.last_run_status}"
        )
        for error in stats.discovery_errors:
            print(f"  - {error}")
        return

    if not Path(settings.student_files_dir).is_dir():
        logger.error("student files folder not found", extra={"path": settings.student_files_dir})
        print(f"status=failed error=student files folder not found: {settings.student_files_dir}")
        raise SystemExit(EXIT_FAILED)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    if args.dry_run:
        logger.info("running in dry-run mode, no changes will be made")

    try:
        summary = consolidator.process(
            dry_run=args.dry_run,
            cancel_event=cancel_event,
            trigger_source=args.trigger_source,
            run_key=args.run_key,
        )
    except ConsolidationError as exc:
        print(f"status=failed error={exc}")
        raise SystemExit(EXIT_FAILED) from exc

    print_summary(summary)
    if summary.status == "failed":
        raise SystemExit(EXIT_FAILED)
    if summary.status == "cancelled":
        raise SystemExit(EXIT_CANCELLED)


if __name__ == "__main__":
    main()
