# tests/test_duplicate_detector.py

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from duplicate_detector import (
    DuplicateDetector,
    changed_fields,
    classify_payment,
    payment_signature_matches,
)
from models import PaymentAction, PaymentFact, TransactionKeyKind


@pytest.fixture
def payment():
    return PaymentFact(
        id=1,
        transaction_id=10,
        trans_datetime=datetime(2024, 5, 15, 10, 30),
        trans_number=1001,
        terminal_id=5,
        article_id=42,
        article_code="DIESEL",
        article_description="Diesel",
        quantity=Decimal("40.00"),
        amount=Decimal("60.00"),
        amount_net=Decimal("50.42"),
        amount_tax=Decimal("9.58"),
        tax_rate=Decimal("19"),
        currency="EUR",
        device_address=3,
        sub_device_address=1,
        card_pan="700001234=",
    )


# -------------------------------
# Tri-state classification
# -------------------------------
class TestClassifyPayment:
    def test_no_match_inserts(self, payment):
        assert classify_payment(None, payment) == PaymentAction.INSERT

    def test_identical_is_noop(self, payment):
        existing = payment.model_dump()
        assert classify_payment(existing, payment.model_copy(update={"id": None})) == PaymentAction.NOOP

    def test_amount_changed_by_one_cent_updates(self, payment):
        candidate = payment.model_copy(update={"amount": Decimal("60.01")})
        assert classify_payment(payment.model_dump(), candidate) == PaymentAction.UPDATE
        assert changed_fields(payment.model_dump(), candidate) == ["amount"]

    def test_numeric_scale_does_not_count_as_change(self, payment):
        existing = payment.model_dump()
        existing["quantity"] = Decimal("40.0000")
        existing["currency"] = "EUR "
        assert classify_payment(existing, payment) == PaymentAction.NOOP

    def test_null_and_empty_text_are_equal(self, payment):
        existing = payment.model_dump()
        existing["article_description"] = None
        candidate = payment.model_copy(update={"article_description": ""})
        assert classify_payment(existing, candidate) == PaymentAction.NOOP


# -------------------------------
# Signature matching
# -------------------------------
class TestSignature:
    def test_within_one_second_matches(self, payment):
        candidate = payment.model_copy(
            update={"trans_datetime": payment.trans_datetime + timedelta(milliseconds=900)}
        )
        assert payment_signature_matches(payment, candidate)

    def test_beyond_one_second_does_not_match(self, payment):
        candidate = payment.model_copy(
            update={"trans_datetime": payment.trans_datetime + timedelta(seconds=2)}
        )
        assert not payment_signature_matches(payment, candidate)

    def test_amount_compared_at_four_decimals(self, payment):
        same = payment.model_copy(update={"amount": Decimal("60.00004")})
        different = payment.model_copy(update={"amount": Decimal("60.01")})
        assert payment_signature_matches(payment, same)
        assert not payment_signature_matches(payment, different)

    def test_missing_device_equals_minus_one(self, payment):
        existing = payment.model_copy(update={"device_address": None})
        assert payment_signature_matches(existing, payment.model_copy(update={"device_address": None}))
        assert not payment_signature_matches(existing, payment)


# -------------------------------
# Detector
# -------------------------------
class TestDuplicateDetector:
    def test_load_and_register(self):
        store = MagicMock()
        store.load_transaction_keys.return_value = {("k",): 1}
        detector = DuplicateDetector(store, TransactionKeyKind.DEVICE)

        assert detector.load() == 1
        store.load_transaction_keys.assert_called_once_with(TransactionKeyKind.DEVICE)
        assert detector.transaction_id(("k",)) == 1
        detector.register(("j",), 2)
        assert ("j",) in detector
        assert len(detector) == 2

    def test_staged_payment_matched(self, payment):
        store = MagicMock()
        store.find_payment.return_value = None
        detector = DuplicateDetector(store, TransactionKeyKind.DEVICE)
        candidate = payment.model_copy(update={"id": None})

        assert detector.find_payment(candidate, [payment]) is payment

    def test_lowest_id_wins_across_staged_and_store(self, payment):
        store = MagicMock()
        stored = {**payment.model_dump(), "id": 3}
        store.find_payment.return_value = stored
        detector = DuplicateDetector(store, TransactionKeyKind.DEVICE)
        staged = payment.model_copy(update={"id": 9})
        candidate = payment.model_copy(update={"id": None})

        assert detector.find_payment(candidate, [staged]) is stored

    def test_store_queried_when_nothing_staged(self, payment):
        store = MagicMock()
        store.find_payment.return_value = None
        detector = DuplicateDetector(store, TransactionKeyKind.DEVICE)

        assert detector.find_payment(payment) is None
        store.find_payment.assert_called_once_with(payment)
