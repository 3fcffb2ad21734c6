"""
Reference-data synchronisation from upstream master-data extracts.

- customers: update only; unknown numbers are reported.
- contracts: inserted when their customer resolves, updated when the
  description or the customer differs.
- employees (drivers extract): inserted or updated.
- cards (spreadsheet): PAN and holder updated for known cards; unknown card
  numbers go to the cards_pending table for manual review.

Values are compared trimmed with NULL treated as empty, and a row is only
written when at least one field differs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from key_normalizer import normalize_card_number
from models import ReferenceSyncStats

logger = structlog.get_logger()

Changes = Dict[str, Tuple[Any, Any]]


def _norm(value: Any) -> str:
    return "" if value is None else str(value).strip()


def diff_fields(existing: Dict[str, Any], desired: Dict[str, Any]) -> Changes:
    """Fields of ``desired`` whose trimmed value differs from ``existing``."""
    return {
        field: (existing.get(field), value)
        for field, value in desired.items()
        if _norm(existing.get(field)) != _norm(value)
    }


def _empty_to_none(value: str) -> Optional[str]:
    return value or None


class ReferenceStore:
    """Reads and writes of the reference tables on one connection."""

    def __init__(self, conn) -> None:
        self.conn = conn

    def find_by_number(self, table: str, number: str, normalize_upper: bool = False) -> Optional[Dict[str, Any]]:
        column = "UPPER(TRIM(number))" if normalize_upper else "TRIM(number)"
        query = sql.SQL("SELECT * FROM {} WHERE " + column + " = %s ORDER BY id LIMIT 1").format(
            sql.Identifier(table)
        )
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, (number,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def update(self, table: str, row_id: int, values: Dict[str, Any]) -> None:
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(k)) for k in values),
        )
        with self.conn.cursor() as cursor:
            cursor.execute(query, tuple(values.values()) + (row_id,))

    def insert(self, table: str, values: Dict[str, Any]) -> Optional[int]:
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(k) for k in values),
            sql.SQL(", ").join([sql.Placeholder()] * len(values)),
        )
        with self.conn.cursor() as cursor:
            cursor.execute(query, tuple(values.values()))
            row = cursor.fetchone()
            return row[0] if row else None

    def upsert_pending_card(self, number: str, pan: Optional[str], holder: Optional[str], source_file: str) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO cards_pending (number, pan, holder, source_file)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (number)
                DO UPDATE SET pan = EXCLUDED.pan, holder = EXCLUDED.holder,
                              source_file = EXCLUDED.source_file
                """,
                (number, pan, holder, source_file),
            )

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()


class ReferenceSynchronizer:
    """Applies master-data extracts to the reference tables."""

    def __init__(self, store, last_changed_by_user: str = "fuel-import") -> None:
        self.store = store
        self.user = last_changed_by_user

    def _audit_values(self) -> Dict[str, Any]:
        return {"last_changed_datetime": datetime.now(), "last_changed_by_user": self.user}

    def _apply_update(self, phase: str, table: str, number: str, existing: Dict[str, Any],
                      desired: Dict[str, Any], stats: ReferenceSyncStats) -> None:
        changes = diff_fields(existing, desired)
        if not changes:
            stats.unchanged += 1
            logger.debug("Already up to date", phase=phase, number=number)
            return
        self.store.update(table, existing["id"], {
            **{field: new for field, (_, new) in changes.items()},
            **self._audit_values(),
        })
        stats.updated += 1
        logger.info(
            "Reference row updated",
            phase=phase,
            number=number,
            changes={f: {"old": _norm(old), "new": _norm(new)} for f, (old, new) in changes.items()},
        )

    def sync_customers(self, records: List[Dict[str, str]]) -> ReferenceSyncStats:
        phase = "RefData-Customers"
        stats = ReferenceSyncStats(kind="customers")
        for record in records:
            stats.rows_read += 1
            number = record.get("Customer_Number", "")
            if not number:
                stats.skipped_empty_key += 1
                continue
            existing = self.store.find_by_number("customers", number)
            if existing is None:
                stats.unknown += 1
                logger.warning("Unknown customer number", phase=phase, number=number)
                continue
            desired = {
                "company": _empty_to_none(record.get("Customer_Company", "")),
                "first_name": _empty_to_none(record.get("Customer_FirstName", "")),
                "last_name": _empty_to_none(record.get("Customer_LastName", "")),
                "email": _empty_to_none(record.get("Customer_Contact_EmailAddress", "")),
            }
            self._apply_update(phase, "customers", number, existing, desired, stats)
        self._finish(phase, stats)
        return stats

    def sync_contracts(self, records: List[Dict[str, str]]) -> ReferenceSyncStats:
        phase = "RefData-Contracts"
        stats = ReferenceSyncStats(kind="contracts")
        for record in records:
            stats.rows_read += 1
            number = record.get("Contract_Number", "")
            if not number:
                stats.skipped_empty_key += 1
                continue
            description = _empty_to_none(record.get("Contract_Description", ""))
            customer_number = record.get("Customer_Number", "")
            customer = self.store.find_by_number("customers", customer_number) if customer_number else None
            existing = self.store.find_by_number("contracts", number)

            if existing is None:
                if customer is None:
                    stats.unknown += 1
                    logger.warning("Contract skipped, customer unknown", phase=phase,
                                   number=number, customer_number=customer_number)
                    continue
                self.store.insert("contracts", {
                    "number": number,
                    "description": description,
                    "customer_id": customer["id"],
                    **self._audit_values(),
                })
                stats.inserted += 1
                logger.info("Contract inserted", phase=phase, number=number,
                            customer_id=customer["id"])
                continue

            desired = {
                "description": description,
                "customer_id": customer["id"] if customer else existing.get("customer_id"),
            }
            self._apply_update(phase, "contracts", number, existing, desired, stats)
        self._finish(phase, stats)
        return stats

    def sync_employees(self, records: List[Dict[str, str]]) -> ReferenceSyncStats:
        phase = "RefData-Employees"
        stats = ReferenceSyncStats(kind="employees")
        for record in records:
            stats.rows_read += 1
            number = record.get("Driver_Number", "")
            if not number:
                stats.skipped_empty_key += 1
                continue
            customer_number = record.get("Customer_Number", "")
            customer = self.store.find_by_number("customers", customer_number) if customer_number else None
            if customer_number and customer is None:
                logger.warning("Driver customer unknown", phase=phase, number=number,
                               customer_number=customer_number)
            street = " ".join(
                p for p in (record.get("Driver_Street", ""), record.get("Driver_HouseNumber", "")) if p
            )
            desired = {
                "first_name": _empty_to_none(record.get("Driver_FirstName", "")),
                "last_name": _empty_to_none(record.get("Driver_LastName", "")),
                "street": _empty_to_none(street),
                "zip_code": _empty_to_none(record.get("Driver_ZipCode", "")),
                "city": _empty_to_none(record.get("Driver_City", "")),
                "email": _empty_to_none(record.get("Driver_EmailAddress", "")),
            }
            existing = self.store.find_by_number("employees", number)
            if existing is None:
                self.store.insert("employees", {
                    "number": number,
                    **desired,
                    "customer_id": customer["id"] if customer else None,
                    **self._audit_values(),
                })
                stats.inserted += 1
                logger.info("Employee inserted", phase=phase, number=number)
                continue
            desired["customer_id"] = customer["id"] if customer else existing.get("customer_id")
            self._apply_update(phase, "employees", number, existing, desired, stats)
        self._finish(phase, stats)
        return stats

    def sync_cards(self, records: List[Dict[str, str]], source_file: str) -> ReferenceSyncStats:
        phase = "RefData-Cards"
        stats = ReferenceSyncStats(kind="cards")
        for record in records:
            stats.rows_read += 1
            number = normalize_card_number(record.get("Card_Number", ""))
            if not number:
                stats.skipped_empty_key += 1
                continue
            pan = _empty_to_none(record.get("Card_Pan", ""))
            holder = _empty_to_none(record.get("Card_Holder", ""))
            existing = self.store.find_by_number("cards", number, normalize_upper=True)
            if existing is None:
                self.store.upsert_pending_card(number, pan, holder, source_file)
                stats.pending += 1
                logger.info("Unknown card routed to pending review", phase=phase,
                            number=number, source_file=source_file)
                continue
            self._apply_update(phase, "cards", number, existing, {"pan": pan, "holder": holder}, stats)
        self._finish(phase, stats)
        return stats

    def _finish(self, phase: str, stats: ReferenceSyncStats) -> None:
        self.store.commit()
        logger.info("Reference sync finished", phase=phase, **stats.model_dump(exclude={"kind"}))
