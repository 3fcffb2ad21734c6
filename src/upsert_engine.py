"""
Upsert engine: the per-row state machine that turns extract rows into
transaction and payment writes.

For every row the transaction is either inserted (new natural key), left as
is (key already present) or, for profiles that allow it, updated. The payment
is then inserted, updated or left untouched depending on the signature match.
A row error is contained at the row boundary and the file carries on.

Two commit modes:
- bulk: one database transaction per file. New facts get ids from in-memory
  counters and are staged, then written with one bulk insert at the end.
  Each row runs inside a savepoint so a failed statement only drops that row.
- per_row: every row is written and committed on its own.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import psycopg2
import structlog

from card_enrichment import CardEnrichmentService
from duplicate_detector import DuplicateDetector, changed_fields, classify_payment
from entity_resolver import EntityResolver
from exceptions import ImportCancelled, RowError
from models import (
    CommitMode,
    ExtractRow,
    ImportStats,
    PaymentAction,
    PaymentFact,
    PaymentType,
    ProfileConfig,
    RejectedRow,
    TransactionFact,
)
from row_mapper import RowMapper

logger = structlog.get_logger()

TX_INSERTED = "inserted"
TX_UPDATED = "updated"
TX_EXISTING = "existing"


class RowOutcome:
    """What one row did, applied to the run state only after the row succeeded."""

    def __init__(self) -> None:
        self.skip_reason: Optional[str] = None
        self.transaction: Optional[TransactionFact] = None
        self.transaction_key: Optional[Tuple] = None
        self.transaction_action: Optional[str] = None
        self.payment: Optional[PaymentFact] = None
        self.payment_action: Optional[PaymentAction] = None
        self.warnings = 0


class UpsertEngine:
    """Applies extract rows to one destination profile through a store session."""

    def __init__(
        self,
        store,
        profile: ProfileConfig,
        resolver: EntityResolver,
        mapper: RowMapper,
        enrichment: CardEnrichmentService,
        detector: DuplicateDetector,
        max_age_days: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self.profile = profile
        self.resolver = resolver
        self.mapper = mapper
        self.enrichment = enrichment
        self.detector = detector
        self.max_age_days = max_age_days
        self.cancel_event = cancel_event or threading.Event()

        self.stats = ImportStats()
        self.rejected: List[RejectedRow] = []
        self._next_transaction_id = 1
        self._next_payment_id = 1
        self._staged_transactions: List[TransactionFact] = []
        self._staged_payments: Dict[int, PaymentFact] = {}

    @property
    def bulk(self) -> bool:
        return self.profile.commit_mode == CommitMode.BULK

    def prepare(self) -> None:
        """Load existing keys and seed the id counters from the destination."""
        self.detector.load()
        self._next_transaction_id = self.store.max_transaction_id() + 1
        self._next_payment_id = self.store.max_payment_id() + 1
        logger.info(
            "Import prepared",
            phase="Import",
            profile=self.profile.profile.value,
            commit_mode=self.profile.commit_mode.value,
            next_transaction_id=self._next_transaction_id,
            next_payment_id=self._next_payment_id,
        )

    def run(self, rows: Iterable[ExtractRow]) -> ImportStats:
        self.prepare()
        for row in rows:
            self.process(row)
        self.finish()
        return self.stats

    def process(self, row: ExtractRow) -> None:
        if self.cancel_event.is_set():
            if self.bulk:
                self.store.rollback()
            logger.warning("Import cancelled", phase="Import", row=row.row_number)
            raise ImportCancelled(f"Cancelled before row {row.row_number}")

        self.stats.rows_read += 1
        if self.bulk:
            self.store.savepoint()
        try:
            outcome = self._process_row(row)
        except (RowError, psycopg2.Error, ArithmeticError, ValueError, TypeError) as exc:
            if self.bulk:
                self.store.rollback_to_savepoint()
            else:
                self.store.rollback()
            self._reject(row, exc)
            return

        if self.bulk:
            self.store.release_savepoint()
        else:
            self.store.commit()
        self._apply(outcome)

    def finish(self) -> None:
        """Write staged facts and commit (bulk mode only)."""
        if not self.bulk:
            return
        if self._staged_transactions:
            self.store.insert_transactions(self._staged_transactions)
        if self._staged_payments:
            self.store.insert_payments(list(self._staged_payments.values()))
        self.store.commit()
        logger.info(
            "Bulk write committed",
            phase="BulkCopy",
            transactions=len(self._staged_transactions),
            payments=len(self._staged_payments),
        )
        self._staged_transactions = []
        self._staged_payments = {}

    # -------------------------------------------------------------------------
    # Row processing
    # -------------------------------------------------------------------------
    def _process_row(self, row: ExtractRow) -> RowOutcome:
        outcome = RowOutcome()
        now = datetime.now()

        if self.max_age_days:
            started = self.mapper.start_timestamp(row)
            if started < now - timedelta(days=self.max_age_days):
                logger.debug("Row older than age limit", phase="Import", row=row.row_number,
                             trans_datetime=started.isoformat())
                outcome.skip_reason = "too_old"
                return outcome

        keys = self.resolver.resolve(row)
        outcome.warnings += len(keys.warnings)
        txn = self.mapper.map_transaction(row, keys, now=now)
        key = txn.identity_key(self.profile.key_kind)
        existing_id = self.detector.transaction_id(key)

        if existing_id is None:
            if not self.profile.creates_transactions:
                loose = self.store.find_transaction_loose(txn.trans_number, txn.terminal_id)
                logger.warning(
                    "Transaction not found for payment",
                    phase="Payments",
                    row=row.row_number,
                    trans_number=txn.trans_number,
                    terminal_id=txn.terminal_id,
                    trans_date=txn.trans_datetime.date().isoformat(),
                    loose_match_id=loose.get("id") if loose else None,
                    loose_match_datetime=str(loose.get("trans_datetime")) if loose else None,
                )
                outcome.warnings += 1
                outcome.skip_reason = "no_transaction"
                return outcome
            txn.id = self._next_transaction_id
            outcome.transaction_action = TX_INSERTED
            outcome.transaction_key = key
            if not self.bulk:
                self.store.insert_transactions([txn])
        else:
            txn.id = existing_id
            outcome.transaction_action = TX_EXISTING
            if self.profile.updates_transactions and self.store.update_transaction(txn):
                outcome.transaction_action = TX_UPDATED
        outcome.transaction = txn

        enrichment = self.enrichment.enrich(row, txn.trans_number)
        payment = self.mapper.map_payment(row, keys, enrichment, transaction_id=txn.id)
        staged = self._staged_payments.values() if self.bulk else ()
        existing = self.detector.find_payment(payment, staged)
        action = classify_payment(existing, payment)

        if (
            action == PaymentAction.UPDATE
            and self.profile.payment_type == PaymentType.BACKFILL
            and _payment_type(existing) not in (None, PaymentType.BACKFILL.value)
        ):
            logger.info("Non-backfill payment left untouched", phase="Payments",
                        row=row.row_number, payment_id=_payment_id(existing))
            action = PaymentAction.NOOP

        if action == PaymentAction.INSERT:
            payment.id = self._next_payment_id
            if not self.bulk:
                self.store.insert_payments([payment])
        elif action == PaymentAction.UPDATE:
            payment.id = _payment_id(existing)
            logger.info(
                "Payment updated",
                phase="Payments",
                row=row.row_number,
                payment_id=payment.id,
                changes={
                    name: {"old": str(_value(existing, name)), "new": str(getattr(payment, name))}
                    for name in changed_fields(existing, payment)
                },
            )
            if not isinstance(existing, PaymentFact):
                self.store.update_payment(payment.id, payment)
        outcome.payment = payment
        outcome.payment_action = action
        return outcome

    def _apply(self, outcome: RowOutcome) -> None:
        """Advance counters, key map and statistics together for a successful row."""
        stats = self.stats
        stats.warnings += outcome.warnings
        if outcome.skip_reason == "too_old":
            stats.skipped_too_old += 1
            return
        if outcome.skip_reason == "no_transaction":
            stats.skipped_no_transaction += 1
            return

        if outcome.transaction_action == TX_INSERTED:
            self.detector.register(outcome.transaction_key, outcome.transaction.id)
            self._next_transaction_id += 1
            stats.transactions_inserted += 1
            if self.bulk:
                self._staged_transactions.append(outcome.transaction)
        elif outcome.transaction_action == TX_UPDATED:
            stats.transactions_updated += 1

        payment = outcome.payment
        if outcome.payment_action == PaymentAction.INSERT:
            self._next_payment_id += 1
            stats.payments_inserted += 1
            if self.bulk:
                self._staged_payments[payment.id] = payment
        elif outcome.payment_action == PaymentAction.UPDATE:
            stats.payments_updated += 1
            if self.bulk and payment.id in self._staged_payments:
                self._staged_payments[payment.id] = payment
        elif outcome.transaction_action == TX_EXISTING:
            stats.skipped_duplicate += 1
        else:
            stats.payments_unchanged += 1

    def _reject(self, row: ExtractRow, exc: Exception) -> None:
        self.stats.skipped_error += 1
        if isinstance(exc, RowError):
            rejected = RejectedRow(
                row_number=exc.row_number or row.row_number,
                error_type=type(exc).__name__,
                message=exc.message,
                field=exc.field,
                value=exc.value,
                transaction_number=row.transaction_number or None,
                station_code=row.station_code or None,
            )
        else:
            rejected = RejectedRow(
                row_number=row.row_number,
                error_type=type(exc).__name__,
                message=str(exc).strip(),
                transaction_number=row.transaction_number or None,
                station_code=row.station_code or None,
            )
        self.rejected.append(rejected)
        logger.error(
            "Row skipped",
            phase="Import",
            row=row.row_number,
            error_type=rejected.error_type,
            error=rejected.message,
            field=rejected.field,
            transaction_number=row.transaction_number,
            station_code=row.station_code,
            terminal_code=row.terminal_code,
        )


def _value(record, name: str):
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _payment_id(record) -> Optional[int]:
    return _value(record, "id")


def _payment_type(record) -> Optional[str]:
    value = _value(record, "payment_type")
    if isinstance(value, PaymentType):
        return value.value
    return value
