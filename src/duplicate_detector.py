"""
Existing-fact detection.

Transactions are checked against an in-memory map of natural keys loaded once
per file. Payments are matched by signature with a point query, since the
signature carries a timestamp tolerance; in bulk mode payments staged earlier
in the same file are checked first with the same predicate.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from models import PaymentAction, PaymentFact, TransactionKeyKind

logger = structlog.get_logger()

SIGNATURE_PRECISION = Decimal("0.0001")
TIMESTAMP_TOLERANCE = timedelta(seconds=1)

PAYMENT_COMPARED_FIELDS: Tuple[str, ...] = (
    "quantity",
    "amount",
    "amount_net",
    "amount_tax",
    "tax_rate",
    "article_description",
    "currency",
    "card_pan",
)
_NUMERIC_FIELDS = {"quantity", "amount", "amount_net", "amount_tax", "tax_rate"}


def _get(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _signature_decimal(value: Any) -> Decimal:
    return (_as_decimal(value) or Decimal("0")).quantize(SIGNATURE_PRECISION, rounding=ROUND_HALF_UP)


def _device(value: Any) -> int:
    return -1 if value is None else int(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def field_differs(name: str, existing: Any, candidate: Any) -> bool:
    if name in _NUMERIC_FIELDS:
        return _as_decimal(existing) != _as_decimal(candidate)
    return _text(existing) != _text(candidate)


def changed_fields(existing: Any, candidate: PaymentFact) -> List[str]:
    return [
        name
        for name in PAYMENT_COMPARED_FIELDS
        if field_differs(name, _get(existing, name), getattr(candidate, name))
    ]


def classify_payment(existing: Optional[Any], candidate: PaymentFact) -> PaymentAction:
    """
    Three-way decision for a payment:
    no signature match -> INSERT, match with identical compared fields -> NOOP,
    match with any compared field different -> UPDATE.
    """
    if existing is None:
        return PaymentAction.INSERT
    if changed_fields(existing, candidate):
        return PaymentAction.UPDATE
    return PaymentAction.NOOP


def payment_signature_matches(existing: Any, candidate: PaymentFact) -> bool:
    """In-memory equivalent of the payment point query."""
    if _get(existing, "transaction_id") != candidate.transaction_id:
        return False
    if _get(existing, "trans_number") != candidate.trans_number:
        return False
    if _get(existing, "terminal_id") != candidate.terminal_id:
        return False
    if _text(_get(existing, "article_code")) != _text(candidate.article_code):
        return False
    if _device(_get(existing, "device_address")) != _device(candidate.device_address):
        return False
    if _device(_get(existing, "sub_device_address")) != _device(candidate.sub_device_address):
        return False
    if _signature_decimal(_get(existing, "amount")) != _signature_decimal(candidate.amount):
        return False
    if _signature_decimal(_get(existing, "quantity")) != _signature_decimal(candidate.quantity):
        return False
    existing_ts = _get(existing, "trans_datetime")
    if existing_ts is None:
        return False
    return abs(existing_ts - candidate.trans_datetime) <= TIMESTAMP_TOLERANCE


class DuplicateDetector:
    """Tracks existing transaction keys and looks up existing payments."""

    def __init__(self, store, key_kind: TransactionKeyKind) -> None:
        self.store = store
        self.key_kind = TransactionKeyKind(key_kind)
        self._keys: Dict[Tuple, int] = {}

    def load(self) -> int:
        self._keys = dict(self.store.load_transaction_keys(self.key_kind))
        logger.info("Existing transaction keys loaded", phase="Import",
                    key_kind=self.key_kind.value, count=len(self._keys))
        return len(self._keys)

    def transaction_id(self, key: Tuple) -> Optional[int]:
        return self._keys.get(key)

    def register(self, key: Tuple, transaction_id: int) -> None:
        self._keys[key] = transaction_id

    def __contains__(self, key: Tuple) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def find_payment(
        self, candidate: PaymentFact, staged: Iterable[PaymentFact] = ()
    ) -> Optional[Any]:
        """Lowest-id match across staged payments and the store."""
        matches = [p for p in staged if payment_signature_matches(p, candidate)]
        stored = self.store.find_payment(candidate)
        if stored is not None:
            matches.append(stored)
        if not matches:
            return None
        return min(matches, key=_record_id)


def _record_id(record) -> int:
    value = record.get("id") if isinstance(record, Mapping) else record.id
    return value if value is not None else 0
