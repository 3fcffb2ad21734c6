# tests/conftest.py

import copy
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import pytest

from duplicate_detector import payment_signature_matches
from models import ExtractRow, PaymentFact, TransactionFact, TransactionKeyKind
from reference_catalog import ReferenceCatalog, StationRef, TankRef, TerminalRef, CustomerRef

MUTABLE_TRANSACTION_FIELDS = (
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
)

BASE_ROW = {
    "Transaction_StartDateTime": "2024-05-15T10:30:00",
    "Transaction_Number": "1001",
    "Station_Code": "ST01",
    "Terminal_Code": "A",
    "TransactionLineItem_Article_Number": "42",
    "TransactionLineItem_Article_Code": "DIESEL",
    "TransactionLineItem_Article_Description": "Diesel",
    "TransactionLineItem_Quantity_Value": "40.00",
    "TransactionLineItem_GrossSellUnitPrice_Amount": "1.50",
    "TransactionLineItem_GrossSellAmount_Amount": "60.00",
    "TransactionLineItem_GrossSellAmount_CurrencyISOCode": "EUR",
    "TransactionLineItem_TaxRate_Value": "19",
    "TransactionLineItem_DispenserNumber": "3",
    "TransactionLineItem_NozzleNumber": "1",
    "Transaction_NetSellTotalPrice_Amount": "50.42",
    "Transaction_SellTaxAmount_Amount": "9.58",
    "CardOne_Pan": "700001234=",
    "CardOne_Number": "7077A1",
    "Payment_Card": "true",
    "Payment_Cash": "false",
    "Payment_Voucher": "false",
    "Mileage": "40066",
}


# -------------------------------
# Fixtures: extract rows
# -------------------------------
@pytest.fixture
def make_row():
    """
    Returns a factory building ExtractRow objects from CSV header names.
    Keyword overrides use the CSV header as key.
    """

    def _make(row_number: int = 1, **overrides) -> ExtractRow:
        record = dict(BASE_ROW)
        record.update(overrides)
        return ExtractRow.model_validate({**record, "row_number": row_number})

    return _make


# -------------------------------
# Fixtures: reference catalog
# -------------------------------
@pytest.fixture
def catalog():
    """
    One station ST01 (id 10) with terminals A (id 5) and B (id 3), a tank for
    article 42, one customer, one contract, one vehicle and one card.
    """
    return ReferenceCatalog(
        stations={
            "ST01": StationRef(
                id=10,
                code="ST01",
                mandator_id=1,
                mandator_number="M1",
                mandator_description="Main mandator",
            )
        },
        terminals={
            10: [
                TerminalRef(id=5, station_id=10, code="A", number="1", terminal_number="T-1"),
                TerminalRef(id=3, station_id=10, code="B", number="2", terminal_number="T-2"),
            ]
        },
        tanks={(10, 42): TankRef(id=7, number=2)},
        customers={"C100": CustomerRef(id=100, display_name="Acme Logistics")},
        contracts={"K1": 200},
        vehicles={"AB123CD": 900},
        cards={"7077A1": 500},
        articles={("ADBLUE", "ADBLUE", None): 77},
    )


# -------------------------------
# Fixture: in-memory destination store
# -------------------------------
class FakeStore:
    """
    In-memory stand-in for ImportSession with commit, rollback and savepoint
    semantics over a working copy and a committed copy.
    """

    def __init__(self) -> None:
        self.transactions: Dict[int, TransactionFact] = {}
        self.payments: Dict[int, PaymentFact] = {}
        self._committed = ({}, {})
        self._savepoint: Optional[Tuple[Dict, Dict]] = None
        self.mappings: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.live_cards: Dict[str, Dict[str, Any]] = {}
        self.fail_payment_for: set = set()
        self.commits = 0
        self.rollbacks = 0
        self.loose_lookups: List[Tuple[int, int]] = []
        self.lookup_calls: List[Tuple] = []

    # transaction control
    def _snapshot(self):
        return copy.deepcopy(self.transactions), copy.deepcopy(self.payments)

    def seed(self, transactions=(), payments=()) -> None:
        for t in transactions:
            self.transactions[t.id] = t
        for p in payments:
            self.payments[p.id] = p
        self._committed = self._snapshot()

    def savepoint(self) -> None:
        self._savepoint = self._snapshot()

    def release_savepoint(self) -> None:
        self._savepoint = None

    def rollback_to_savepoint(self) -> None:
        self.transactions, self.payments = self._savepoint
        self._savepoint = None

    def commit(self) -> None:
        self.commits += 1
        self._committed = self._snapshot()

    def rollback(self) -> None:
        self.rollbacks += 1
        self.transactions, self.payments = copy.deepcopy(self._committed)

    @property
    def committed_transactions(self) -> Dict[int, TransactionFact]:
        return self._committed[0]

    @property
    def committed_payments(self) -> Dict[int, PaymentFact]:
        return self._committed[1]

    # transactions
    def load_transaction_keys(self, key_kind: TransactionKeyKind):
        keys = {}
        for tid in sorted(self.transactions):
            keys.setdefault(self.transactions[tid].identity_key(key_kind), tid)
        return keys

    def max_transaction_id(self) -> int:
        return max(self.transactions, default=0)

    def max_payment_id(self) -> int:
        return max(self.payments, default=0)

    def insert_transactions(self, facts) -> None:
        for fact in facts:
            assert fact.id not in self.transactions, f"duplicate transaction id {fact.id}"
            self.transactions[fact.id] = fact.model_copy(deep=True)

    def update_transaction(self, fact) -> bool:
        current = self.transactions[fact.id]
        if all(getattr(current, f) == getattr(fact, f) for f in MUTABLE_TRANSACTION_FIELDS):
            return False
        self.transactions[fact.id] = current.model_copy(
            update={f: getattr(fact, f) for f in MUTABLE_TRANSACTION_FIELDS}
        )
        return True

    def find_transaction_loose(self, trans_number: int, terminal_id: int):
        self.loose_lookups.append((trans_number, terminal_id))
        matches = [
            t for t in self.transactions.values()
            if t.trans_number == trans_number and t.terminal_id == terminal_id
        ]
        if not matches:
            return None
        best = max(matches, key=lambda t: t.trans_datetime)
        return {"id": best.id, "trans_datetime": best.trans_datetime}

    # payments
    def find_payment(self, candidate):
        matches = [p for p in self.payments.values() if payment_signature_matches(p, candidate)]
        if not matches:
            return None
        return min(matches, key=lambda p: p.id).model_dump()

    def insert_payments(self, facts) -> None:
        for fact in facts:
            if fact.trans_number in self.fail_payment_for:
                raise psycopg2.Error(f"constraint violation for {fact.trans_number}")
            assert fact.id not in self.payments, f"duplicate payment id {fact.id}"
            self.payments[fact.id] = fact.model_copy(deep=True)

    def update_payment(self, payment_id: int, fact) -> None:
        self.payments[payment_id] = fact.model_copy(update={"id": payment_id}, deep=True)

    # enrichment
    def card_vehicle_mapping(self, pan: str, trans_number: int):
        self.lookup_calls.append(("mapping", pan, trans_number))
        return self.mappings.get((pan, trans_number))

    def card_live_lookup(self, pan: str):
        self.lookup_calls.append(("live", pan))
        return self.live_cards.get(pan)


@pytest.fixture
def store():
    return FakeStore()
