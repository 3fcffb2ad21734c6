"""
Fuel Transaction Import - Main Entry Point

Imports fuel-card transaction extracts into the destination store and keeps
the reference tables in sync with upstream master data. Handles CLI arguments,
logging setup and signal handling, and coordinates the service components.
"""

from __future__ import annotations
import argparse
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional
import logging
import psycopg2
import structlog
from dateutil import tz
from dotenv import load_dotenv
from pydantic import ValidationError


from card_enrichment import CardEnrichmentService, EnrichmentCache
from database_manager import DatabaseManager
from duplicate_detector import DuplicateDetector
from entity_resolver import EntityResolver
from exceptions import FuelImportError, ImportCancelled
from extract_reader import (
    CONTRACT_HEADERS,
    CUSTOMER_HEADERS,
    DRIVER_HEADERS,
    read_card_spreadsheet,
    read_reference_extract,
    read_transaction_extract,
)
from file_intake import FileIntake
from metrics import metrics
from models import (
    DestinationProfile,
    FileImportResult,
    PanSuffixMode,
    ReferenceSyncStats,
    RunStatus,
    Settings,
)
from reference_catalog import load_reference_catalog
from reference_sync import ReferenceStore, ReferenceSynchronizer
from report_generator import ReportGenerator
from row_mapper import RowMapper, TenderCodePolicy
from upsert_engine import UpsertEngine


load_dotenv()


logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ROW_ERRORS = 1
EXIT_FAILURE = 2
EXIT_CANCELLED = 130

REFSYNC_KINDS = ("customers", "contracts", "employees", "cards")


def resolve_local_timezone(name: Optional[str]):
    """tzinfo for LOCAL_TIMEZONE, or the host zone when unset."""
    if not name:
        return tz.tzlocal()
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown time zone: {name}")
    return zone


def exit_code_for(results: List[FileImportResult]) -> int:
    statuses = {r.status for r in results}
    if RunStatus.CANCELLED in statuses:
        return EXIT_CANCELLED
    if RunStatus.FAILED in statuses:
        return EXIT_FAILURE
    if RunStatus.COMPLETED_WITH_ERRORS in statuses:
        return EXIT_ROW_ERRORS
    return EXIT_OK


class FuelImportSystem:
    """
    Coordinates the import of extract files.

    For each file:
    - claims it into processing/ and records an import run
    - loads the reference catalog once on the file's connection
    - runs every row through the upsert engine for the active profile
    - archives the file, or moves it to error/ on a file-level failure
    - writes the JSON summary and rejected-rows CSV, and records metrics

    The card enrichment cache lives as long as this object, so it is shared by
    all files of one run and dropped afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        profile: Optional[DestinationProfile] = None,
        base_dir: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
        database_manager: Optional[DatabaseManager] = None,
    ) -> None:
        self.settings = settings
        self.profile = settings.profile_config(profile)
        self.cancel_event = cancel_event or threading.Event()
        self.database_manager = database_manager or DatabaseManager(settings=settings)
        self.intake = FileIntake(base_dir or settings.IMPORT_BASE_DIR)
        self.report_generator = ReportGenerator()
        self.enrichment_cache = EnrichmentCache()
        self.local_tz = resolve_local_timezone(settings.LOCAL_TIMEZONE)
        self.tender_policy = TenderCodePolicy(
            mode=settings.TENDER_MODE,
            card_code=settings.TENDER_CARD_CODE,
            cash_code=settings.TENDER_CASH_CODE,
            voucher_code=settings.TENDER_VOUCHER_CODE,
            unknown_code=settings.TENDER_UNKNOWN_CODE,
        )

    @property
    def strip_pan_suffix(self) -> bool:
        return self.settings.PAN_SUFFIX_MODE == PanSuffixMode.STRIP

    def _build_engine(self, session, catalog) -> UpsertEngine:
        mapper = RowMapper(
            tender_policy=self.tender_policy,
            local_tz=self.local_tz,
            last_changed_by_user=self.settings.LAST_CHANGED_BY_USER,
            payment_type=self.profile.payment_type,
        )
        enrichment = CardEnrichmentService(
            session,
            self.enrichment_cache,
            pan_suffix_mode=self.settings.PAN_SUFFIX_MODE,
            enabled=self.settings.CARD_ENRICHMENT_ENABLED,
        )
        return UpsertEngine(
            store=session,
            profile=self.profile,
            resolver=EntityResolver(catalog),
            mapper=mapper,
            enrichment=enrichment,
            detector=DuplicateDetector(session, self.profile.key_kind),
            max_age_days=self.settings.MAX_TRANSACTION_AGE_DAYS,
            cancel_event=self.cancel_event,
        )

    def import_file(self, path: Path) -> FileImportResult:
        """Import one extract file. Row errors never escape; file-level errors move it to error/."""
        start_time = time.time()
        path = self.intake.claim(path)
        result = FileImportResult(
            file_name=path.name,
            profile=self.profile.profile,
            status=RunStatus.RUNNING,
            started_at=datetime.now(),
        )
        log = logger.bind(file=path.name, profile=self.profile.profile.value)
        log.info("Starting import", phase="Import")
        result.run_id = self.database_manager.create_import_run(path.name, self.profile.profile.value)

        engine = None
        try:
            rows = read_transaction_extract(path)
            with self.database_manager.open_session(
                self.profile, strip_pan_suffix=self.strip_pan_suffix
            ) as session:
                catalog = load_reference_catalog(session.conn)
                engine = self._build_engine(session, catalog)
                engine.run(rows)
            result.status = (
                RunStatus.COMPLETED_WITH_ERRORS if engine.stats.skipped_error else RunStatus.COMPLETED
            )
            self.intake.archive_file(path)
        except ImportCancelled as exc:
            result.status = RunStatus.CANCELLED
            result.error_message = str(exc)
            log.warning("Import cancelled, file left in processing", phase="Shutdown")
        except (FuelImportError, psycopg2.Error) as exc:
            result.status = RunStatus.FAILED
            result.error_message = str(exc).strip()
            log.error("File import failed", phase="Import", error=result.error_message,
                      error_type=type(exc).__name__, exc_info=True)
            self.intake.reject_file(path)

        if engine is not None:
            result.stats = engine.stats
            result.rejected_rows = engine.rejected
        result.finished_at = datetime.now()

        self._finalize(result, time.time() - start_time)
        return result

    def _finalize(self, result: FileImportResult, duration: float) -> None:
        if result.run_id:
            self.database_manager.complete_import_run(result.run_id, result)
        csv_path, summary_text, json_path = self.report_generator.generate_all_reports(
            result, self.settings.REPORT_OUTPUT_DIR
        )
        metrics.record_file_import(result, duration)
        logger.info(
            "Import finished",
            phase="Import",
            file=result.file_name,
            status=result.status.value,
            duration_seconds=round(duration, 3),
            json_report=str(json_path),
            rejected_report=str(csv_path) if csv_path else None,
            **result.stats.model_dump(),
        )
        logger.debug("Import summary", summary=summary_text)

    def run_once(self, source: Optional[Path] = None) -> List[FileImportResult]:
        """Import a single file, or every pending file under the base directory."""
        if source is not None:
            return [self.import_file(Path(source))]

        self.intake.ensure_layout()
        pending = self.intake.pending()
        metrics.set_files_pending(len(pending))
        if not pending:
            logger.info("No extract files pending", phase="FileIntake",
                        directory=str(self.intake.incoming))
        results = []
        for path in pending:
            if self.cancel_event.is_set():
                break
            result = self.import_file(path)
            results.append(result)
            if result.status == RunStatus.CANCELLED:
                break
        return results

    def watch(self, interval: int) -> List[FileImportResult]:
        """Poll incoming/ until cancelled."""
        logger.info("Watching for extract files", phase="Startup",
                    directory=str(self.intake.incoming), interval_seconds=interval)
        results: List[FileImportResult] = []
        while not self.cancel_event.is_set():
            results.extend(self.run_once())
            self.cancel_event.wait(interval)
        logger.info("Watch loop stopped", phase="Shutdown")
        return results


class ReferenceSyncSystem:
    """Runs one reference-sync extract against the reference tables."""

    def __init__(self, settings: Settings, database_manager: Optional[DatabaseManager] = None) -> None:
        self.settings = settings
        self.database_manager = database_manager or DatabaseManager(settings=settings)

    def run(self, kind: str, source: Path) -> ReferenceSyncStats:
        source = Path(source)
        if kind == "cards":
            records = read_card_spreadsheet(source)
        else:
            headers = {
                "customers": CUSTOMER_HEADERS,
                "contracts": CONTRACT_HEADERS,
                "employees": DRIVER_HEADERS,
            }[kind]
            records = read_reference_extract(source, headers)

        with self.database_manager.get_connection() as conn:
            if conn is None:
                raise psycopg2.OperationalError("Database URL not configured")
            synchronizer = ReferenceSynchronizer(
                ReferenceStore(conn), last_changed_by_user=self.settings.LAST_CHANGED_BY_USER
            )
            if kind == "customers":
                stats = synchronizer.sync_customers(records)
            elif kind == "contracts":
                stats = synchronizer.sync_contracts(records)
            elif kind == "employees":
                stats = synchronizer.sync_employees(records)
            else:
                stats = synchronizer.sync_cards(records, source_file=source.name)
        metrics.record_reference_sync(stats)
        return stats


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """
    Configure structured JSON logging for production observability.

    Sets up structlog with:
    - Timestamp formatting
    - Log level inclusion
    - Stack trace rendering
    - Exception info formatting
    - JSON output to stdout and, when log_dir is given, to a per-run log file
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"fuel_import_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """SIGINT/SIGTERM request a stop at the next row boundary."""

    def _handler(signum, frame):
        logger.warning("Shutdown requested", phase="Shutdown", signal=signal.Signals(signum).name)
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fuel Transaction Import.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py import
  python main.py import --source import/incoming/tx_20240515.csv --profile shadow
  python main.py import --watch --interval 30
  python main.py refsync contracts --source master/contracts.csv
  python main.py refsync cards --source master/cards.xlsx
  python main.py history --days 7
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import transaction extracts")
    import_parser.add_argument(
        "--source",
        type=Path,
        help="Single extract file to import. Defaults to every file pending under the base directory.",
    )
    import_parser.add_argument(
        "--profile",
        choices=[p.value for p in DestinationProfile],
        help="Destination profile. Defaults to DESTINATION_PROFILE.",
    )
    import_parser.add_argument("--dsn", type=str, help="Database URL. Defaults to the DB_* settings.")
    import_parser.add_argument("--base-dir", type=Path, help="Import base directory. Defaults to IMPORT_BASE_DIR.")
    import_parser.add_argument("--watch", action="store_true", help="Keep polling incoming/ until stopped.")
    import_parser.add_argument("--interval", type=int, help="Polling interval in seconds for --watch.")

    sync_parser = subparsers.add_parser("refsync", help="Synchronise reference data")
    sync_parser.add_argument("kind", choices=REFSYNC_KINDS)
    sync_parser.add_argument("--source", type=Path, required=True, help="Extract or spreadsheet to apply.")
    sync_parser.add_argument("--dsn", type=str, help="Database URL. Defaults to the DB_* settings.")

    history_parser = subparsers.add_parser("history", help="Show recent import runs")
    history_parser.add_argument("--days", type=int, default=30, help="How many days back to list.")
    history_parser.add_argument("--dsn", type=str, help="Database URL. Defaults to the DB_* settings.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
        if args.dsn:
            settings = settings.model_copy(update={"DB_URL": args.dsn})
    except ValidationError as e:
        setup_logging()
        logger.error("Failed to load environment settings. Check your .env file.",
                     phase="Startup", error=str(e))
        return EXIT_FAILURE

    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    if settings.METRICS_PORT:
        metrics.port = settings.METRICS_PORT
        metrics.start_metrics_server()

    database_manager = DatabaseManager(settings=settings)
    if not database_manager.health_check():
        logger.error("Database unavailable", phase="Startup")
        return EXIT_FAILURE

    if args.command == "history":
        runs = database_manager.get_import_history(days=args.days)
        for run in runs:
            logger.info(
                "Import run",
                phase="History",
                run_id=str(run.get("id")),
                file_name=run.get("file_name"),
                profile=run.get("profile"),
                status=run.get("status"),
                start_time=str(run.get("start_time")),
                rows_read=run.get("rows_read"),
            )
        logger.info("Import history listed", phase="History", days=args.days, runs=len(runs))
        return EXIT_OK

    if args.command == "refsync":
        try:
            stats = ReferenceSyncSystem(settings, database_manager).run(args.kind, args.source)
        except (FuelImportError, psycopg2.Error) as e:
            logger.error("Reference sync failed", phase=f"RefData-{args.kind.capitalize()}",
                         error=str(e).strip(), exc_info=True)
            return EXIT_FAILURE
        logger.info("Reference sync complete", phase=f"RefData-{args.kind.capitalize()}",
                    **stats.model_dump())
        return EXIT_OK

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)
    try:
        system = FuelImportSystem(
            settings,
            profile=DestinationProfile(args.profile) if args.profile else None,
            base_dir=args.base_dir,
            cancel_event=cancel_event,
            database_manager=database_manager,
        )
    except (FuelImportError, ValueError) as e:
        logger.error("Invalid import configuration", phase="Startup", error=str(e))
        return EXIT_FAILURE

    logger.info(
        "Import starting",
        phase="Startup",
        profile=system.profile.profile.value,
        transactions_table=system.profile.transactions_table,
        payments_table=system.profile.payments_table,
        commit_mode=system.profile.commit_mode.value,
    )
    if args.watch:
        system.watch(args.interval or settings.POLL_INTERVAL_SECONDS)
        return EXIT_CANCELLED
    return exit_code_for(system.run_once(args.source))


if __name__ == "__main__":
    sys.exit(main())
