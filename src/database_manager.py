"""
database_manager.py

## Production PostgreSQL Manager

This module provides the **DatabaseManager** class, handling run bookkeeping
(import runs and the audit log) and schema bootstrap, and the
**ImportSession** class, which wraps the single connection used to import one
file: existing-key loading, payment signature lookups, card enrichment
lookups, explicit-id **bulk insertion** using `psycopg2.extras.execute_values`,
guarded updates and savepoint control.

Destination table names come from the profile configuration and are always
composed with `psycopg2.sql.Identifier`.
"""

import json
import os
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import quote_plus

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values
from structlog import get_logger

from exceptions import ConfigError
from metrics import track_duration
from models import (
    FileImportResult,
    PaymentFact,
    ProfileConfig,
    RunStatus,
    Settings,
    TransactionFact,
    TransactionKeyKind,
)

logger = get_logger()

APPLICATION_NAME = "fuel_transaction_import"
SAVEPOINT_NAME = "import_row"


def _persisted_columns(model) -> List[str]:
    return [name for name, field in model.model_fields.items() if not field.exclude]


TRANSACTION_COLUMNS = _persisted_columns(TransactionFact)
PAYMENT_COLUMNS = _persisted_columns(PaymentFact)

TRANSACTION_MUTABLE_COLUMNS = [
    "trans_end_datetime",
    "quantity",
    "unit_price_sold",
    "unit_price_marked",
    "amount",
    "currency",
    "tax_rate",
    "discount",
    "article_id",
    "article_code",
    "article_description",
    "device_address",
    "sub_device_address",
    "tank_number",
    "exported_common",
    "exported_customer",
]


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def fact_values(fact, columns: Sequence[str]) -> Tuple:
    """Column-ordered parameter tuple for a fact."""
    return tuple(_db_value(getattr(fact, column)) for column in columns)


def table_identifier(name: str) -> sql.Composable:
    """Identifier for ``table`` or ``schema.table``."""
    return sql.Identifier(*name.split("."))


class ImportSession:
    """All statements issued while importing one file, on one connection."""

    def __init__(self, conn, profile: ProfileConfig, strip_pan_suffix: bool = True) -> None:
        self.conn = conn
        self.profile = profile
        self.strip_pan_suffix = strip_pan_suffix
        self.transactions_table = table_identifier(profile.transactions_table)
        self.payments_table = table_identifier(profile.payments_table)

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------
    def savepoint(self) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(sql.SQL("SAVEPOINT {}").format(sql.Identifier(SAVEPOINT_NAME)))

    def release_savepoint(self) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(sql.SQL("RELEASE SAVEPOINT {}").format(sql.Identifier(SAVEPOINT_NAME)))

    def rollback_to_savepoint(self) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(sql.Identifier(SAVEPOINT_NAME)))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------
    @track_duration("database", {"operation": "load_transaction_keys"})
    def load_transaction_keys(self, key_kind: TransactionKeyKind) -> Dict[Tuple, int]:
        """
        Natural key -> id for every row of the transactions table. Uses a
        server-side cursor; on duplicate keys the lowest id wins.
        """
        if TransactionKeyKind(key_kind) == TransactionKeyKind.DEVICE:
            query = sql.SQL(
                "SELECT id, trans_datetime, trans_number, COALESCE(device_address, -1) "
                "FROM {} ORDER BY id"
            ).format(self.transactions_table)
        else:
            query = sql.SQL(
                "SELECT id, trans_datetime::date, trans_number, terminal_id "
                "FROM {} ORDER BY id"
            ).format(self.transactions_table)

        keys: Dict[Tuple, int] = {}
        with self.conn.cursor(name="transaction_keys") as cursor:
            cursor.itersize = 10000
            cursor.execute(query)
            for row in cursor:
                keys.setdefault((row[1], row[2], row[3]), row[0])
        return keys

    def max_transaction_id(self) -> int:
        return self._max_id(self.transactions_table)

    def max_payment_id(self) -> int:
        return self._max_id(self.payments_table)

    def _max_id(self, table: sql.Composable) -> int:
        with self.conn.cursor() as cursor:
            cursor.execute(sql.SQL("SELECT COALESCE(MAX(id), 0) FROM {}").format(table))
            return int(cursor.fetchone()[0])

    def insert_transactions(self, facts: List[TransactionFact]) -> None:
        self._bulk_insert(self.transactions_table, TRANSACTION_COLUMNS, facts)

    def update_transaction(self, fact: TransactionFact) -> bool:
        """Overwrite mutable columns when at least one differs. Returns True if a row changed."""
        columns = TRANSACTION_MUTABLE_COLUMNS
        query = sql.SQL(
            "UPDATE {table} SET {assignments}, last_changed_datetime = %s, last_changed_by_user = %s "
            "WHERE id = %s AND ({columns}) IS DISTINCT FROM ({placeholders})"
        ).format(
            table=self.transactions_table,
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
            ),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            placeholders=sql.SQL(", ").join([sql.Placeholder()] * len(columns)),
        )
        values = fact_values(fact, columns)
        params = values + (fact.last_changed_datetime, fact.last_changed_by_user, fact.id) + values
        with self.conn.cursor() as cursor:
            cursor.execute(query, params)
            return cursor.rowcount > 0

    def find_transaction_loose(self, trans_number: int, terminal_id: int) -> Optional[Dict[str, Any]]:
        """Most recent transaction with this number on this terminal, any date."""
        query = sql.SQL(
            "SELECT id, trans_datetime FROM {} WHERE trans_number = %s AND terminal_id = %s "
            "ORDER BY trans_datetime DESC LIMIT 1"
        ).format(self.transactions_table)
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, (trans_number, terminal_id))
            row = cursor.fetchone()
            return dict(row) if row else None

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------
    def find_payment(self, candidate: PaymentFact) -> Optional[Dict[str, Any]]:
        """Lowest-id payment matching the candidate's signature."""
        query = sql.SQL(
            """
            SELECT * FROM {}
            WHERE transaction_id = %(transaction_id)s
              AND trans_number = %(trans_number)s
              AND terminal_id = %(terminal_id)s
              AND COALESCE(article_code, '') = COALESCE(%(article_code)s::text, '')
              AND COALESCE(device_address, -1) = COALESCE(%(device_address)s::integer, -1)
              AND COALESCE(sub_device_address, -1) = COALESCE(%(sub_device_address)s::integer, -1)
              AND ROUND(COALESCE(amount, 0), 4) = ROUND(%(amount)s::numeric, 4)
              AND ROUND(COALESCE(quantity, 0), 4) = ROUND(%(quantity)s::numeric, 4)
              AND trans_datetime BETWEEN %(trans_datetime)s::timestamp - INTERVAL '1 second'
                                     AND %(trans_datetime)s::timestamp + INTERVAL '1 second'
            ORDER BY id
            LIMIT 1
            """
        ).format(self.payments_table)
        params = {
            "transaction_id": candidate.transaction_id,
            "trans_number": candidate.trans_number,
            "terminal_id": candidate.terminal_id,
            "article_code": candidate.article_code,
            "device_address": candidate.device_address,
            "sub_device_address": candidate.sub_device_address,
            "amount": candidate.amount,
            "quantity": candidate.quantity,
            "trans_datetime": candidate.trans_datetime,
        }
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return dict(row) if row else None

    def insert_payments(self, facts: List[PaymentFact]) -> None:
        self._bulk_insert(self.payments_table, PAYMENT_COLUMNS, facts)

    def update_payment(self, payment_id: int, fact: PaymentFact) -> None:
        """Full overwrite of every payment column except the id."""
        columns = [c for c in PAYMENT_COLUMNS if c != "id"]
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s").format(
            table=self.payments_table,
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
            ),
        )
        with self.conn.cursor() as cursor:
            cursor.execute(query, fact_values(fact, columns) + (payment_id,))

    # -------------------------------------------------------------------------
    # Card enrichment lookups
    # -------------------------------------------------------------------------
    def card_vehicle_mapping(self, pan: str, trans_number: int) -> Optional[Dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(
                """
                SELECT driver_pan, vehicle_card_id, vehicle_card_number, vehicle_id, vehicle_plate
                FROM card_driver_vehicle_map
                WHERE driver_pan = %s AND trans_number = %s
                ORDER BY id
                LIMIT 1
                """,
                (pan, trans_number),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def card_live_lookup(self, pan: str) -> Optional[Dict[str, Any]]:
        pan_expr = "RTRIM(UPPER(TRIM(c.pan)), '=')" if self.strip_pan_suffix else "UPPER(TRIM(c.pan))"
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(
                f"""
                SELECT c.id AS card_id, c.number AS card_number, c.holder AS card_holder,
                       v.id AS vehicle_id, v.license_plate,
                       e.number AS employee_number,
                       NULLIF(TRIM(CONCAT_WS(' ', e.first_name, e.last_name)), '') AS employee_name
                FROM cards c
                LEFT JOIN vehicles v ON v.card_id = c.id
                LEFT JOIN employees e ON e.card_id = c.id
                WHERE {pan_expr} = %s
                ORDER BY c.valid_from DESC NULLS LAST, c.id
                LIMIT 1
                """,
                (pan,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @track_duration("database", {"operation": "bulk_insert"})
    def _bulk_insert(self, table: sql.Composable, columns: List[str], facts: List[Any]) -> None:
        """Explicit-id insert through execute_values."""
        if not facts:
            return
        query = sql.SQL("INSERT INTO {} ({}) VALUES %s").format(
            table, sql.SQL(", ").join(sql.Identifier(c) for c in columns)
        )
        rows = [fact_values(fact, columns) for fact in facts]
        with self.conn.cursor() as cursor:
            execute_values(cursor, query, rows, template=None, page_size=1000)
        logger.debug("Bulk inserted rows", phase="BulkCopy", count=len(rows))


class DatabaseManager:
    """PostgreSQL manager for import runs, audit trail and import sessions."""

    def __init__(self, settings: Settings = None, initialize: bool = True):
        """Initializes database configuration from provided Settings or environment variables."""
        self.settings = settings
        if settings and getattr(settings, "DB_URL", None):
            self.db_url = settings.DB_URL
        else:
            self.host = getattr(settings, "DB_HOST", None) or os.getenv("DB_HOST", "localhost")
            self.port = int(getattr(settings, "DB_PORT", None) or os.getenv("DB_PORT", "5432"))
            self.dbname = getattr(settings, "DB_NAME", None) or os.getenv("DB_NAME", "fuel_import")
            self.user = getattr(settings, "DB_USER", None) or os.getenv("DB_USER", "postgres")
            password = getattr(settings, "DB_PASSWORD", None) or os.getenv("DB_PASSWORD", "")
            # URL-encode the password to handle special characters
            encoded_password = quote_plus(password) if password else ""
            self.db_url = f"postgresql://{self.user}:{encoded_password}@{self.host}:{self.port}/{self.dbname}"
            logger.info(
                "Database connection configured",
                host=self.host,
                port=self.port,
                dbname=self.dbname,
            )
        self.audit_user = getattr(settings, "AUDIT_USER_ID", None) or os.getenv(
            "AUDIT_USER_ID", "fuel_import_system"
        )

        if initialize:
            self._initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Provides a transactionally safe database connection.

        The connection is automatically rolled back on any exception and closed
        when exiting the context, ensuring data integrity.
        """
        conn = None
        if not self.db_url or "None" in self.db_url:
            logger.warning(
                "Database URL not properly configured; skipping database operations"
            )
            yield None
            return
        try:
            conn = psycopg2.connect(self.db_url)
            conn.autocommit = False  # Enforce explicit transaction control
            yield conn
        except psycopg2.Error as exc:
            if conn:
                conn.rollback()
            logger.error(
                "Database transaction failed (psycopg2 error)",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        except Exception as exc:
            if conn:
                conn.rollback()
            logger.error("Unexpected database error", error=str(exc))
            raise
        finally:
            if conn:
                conn.close()

    @contextmanager
    def open_session(self, profile: ProfileConfig, strip_pan_suffix: bool = True) -> Iterator[ImportSession]:
        """Connection-scoped ImportSession for one file."""
        with self.get_connection() as conn:
            if conn is None:
                raise ConfigError("Database URL not configured")
            yield ImportSession(conn, profile, strip_pan_suffix=strip_pan_suffix)

    # =========================================================================
    # IMPORT RUN BOOKKEEPING
    # =========================================================================

    @track_duration("database", {"operation": "create_import_run"})
    def create_import_run(self, file_name: str, profile: str) -> Optional[str]:
        """Records a new import run with 'running' status and returns its id (UUID)."""
        run_id = str(uuid.uuid4())
        with self.get_connection() as conn:
            if conn is None:
                return None
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO import_runs (
                        id, file_name, profile, status, start_time, created_by
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                    (
                        run_id,
                        file_name,
                        profile,
                        RunStatus.RUNNING.value,
                        datetime.utcnow(),
                        APPLICATION_NAME,
                    ),
                )
                self._log_audit_event(
                    cursor,
                    action="import_started",
                    table_name="import_runs",
                    record_id=run_id,
                    new_values={"file_name": file_name, "profile": profile},
                )
                conn.commit()
                return run_id

    @track_duration("database", {"operation": "complete_import_run"})
    def complete_import_run(self, run_id: str, result: FileImportResult) -> Optional[bool]:
        """Stores final counters and status for an import run."""
        stats = result.stats
        with self.get_connection() as conn:
            if conn is None:
                return None
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE import_runs SET
                        status = %s,
                        end_time = %s,
                        rows_read = %s,
                        transactions_inserted = %s,
                        transactions_updated = %s,
                        payments_inserted = %s,
                        payments_updated = %s,
                        payments_unchanged = %s,
                        skipped_duplicate = %s,
                        skipped_error = %s,
                        skipped_too_old = %s,
                        skipped_no_transaction = %s,
                        warnings = %s,
                        error_message = %s,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                """,
                    (
                        result.status.value,
                        result.finished_at or datetime.utcnow(),
                        stats.rows_read,
                        stats.transactions_inserted,
                        stats.transactions_updated,
                        stats.payments_inserted,
                        stats.payments_updated,
                        stats.payments_unchanged,
                        stats.skipped_duplicate,
                        stats.skipped_error,
                        stats.skipped_too_old,
                        stats.skipped_no_transaction,
                        stats.warnings,
                        result.error_message[:2000] if result.error_message else None,
                        run_id,
                    ),
                )
                self._log_audit_event(
                    cursor,
                    action=f"import_{result.status.value}",
                    table_name="import_runs",
                    record_id=run_id,
                    new_values={"file_name": result.file_name, **stats.model_dump()},
                )
                conn.commit()
                logger.info("Import run recorded", run_id=run_id, status=result.status.value)
                return True

    def get_import_history(self, days: int = 30) -> List[Dict[str, Any]]:
        """Retrieves recent import runs for monitoring."""
        with self.get_connection() as conn:
            if conn is None:
                return []
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT * FROM import_runs
                    WHERE start_time >= CURRENT_DATE - INTERVAL %s
                    ORDER BY start_time DESC
                """,
                    (f"{days} days",),
                )
                return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # INTERNAL HELPER METHODS
    # =========================================================================

    def _log_audit_event(
        self,
        cursor,
        action: str,
        table_name: str = None,
        record_id: str = None,
        old_values: Dict[str, Any] = None,
        new_values: Dict[str, Any] = None,
    ):
        """Logs an audit event to the `audit_log` table."""
        cursor.execute(
            """
            INSERT INTO audit_log (
                id, action, table_name, record_id, old_values, new_values,
                user_id, application_name
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
            (
                str(uuid.uuid4()),
                action,
                table_name,
                record_id,
                json.dumps(old_values or {}, default=str),
                json.dumps(new_values or {}, default=str),
                self.audit_user,
                APPLICATION_NAME,
            ),
        )

    def _initialize_database(self):
        """Initialize database schema if tables don't exist."""
        try:
            with self.get_connection() as conn:
                if conn is None:
                    logger.warning("Cannot initialize database - no connection")
                    return

                with conn.cursor() as cursor:
                    cursor.execute(
                        "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = 'import_runs')"
                    )
                    table_exists = cursor.fetchone()[0]

                    if table_exists:
                        logger.info("Database schema already exists")
                        return

                    logger.info("Database tables not found, initializing schema...")
                    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                    possible_paths = [
                        "/app/setup.sql",  # Docker container
                        os.path.join(base_dir, "setup.sql"),  # Local dev
                        "setup.sql",  # Current directory
                    ]
                    setup_sql_path = next(
                        (os.path.normpath(p) for p in possible_paths if os.path.exists(p)), None
                    )
                    if not setup_sql_path:
                        logger.error("setup.sql not found", searched=possible_paths)
                        return

                    with open(setup_sql_path, "r") as f:
                        setup_sql = f.read()
                    if not setup_sql.strip():
                        logger.error("setup.sql file is empty", path=setup_sql_path)
                        return
                    cursor.execute(setup_sql)
                    conn.commit()
                    logger.info("Database schema initialized", path=setup_sql_path)
        except (psycopg2.Error, OSError) as e:
            logger.error("Failed to initialize database schema", error=str(e))

    def health_check(self) -> bool:
        """Performs a database connectivity check."""
        try:
            with self.get_connection() as conn:
                if conn is None:
                    return False
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
                    return cursor.fetchone() is not None
        except psycopg2.Error as e:
            logger.error("Database health check failed", error=str(e))
            return False
