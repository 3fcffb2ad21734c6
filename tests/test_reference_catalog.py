# tests/test_reference_catalog.py

from decimal import Decimal
from unittest.mock import MagicMock

import psycopg2
import pytest

from exceptions import CatalogLoadError
from reference_catalog import (
    customer_display_name,
    load_reference_catalog,
    tax_rate_key,
)


# -------------------------------
# Fixture: mocked connection
# -------------------------------
def _connection(result_sets):
    """Connection whose cursor returns one result set per executed query, in order."""
    conn = MagicMock()
    cursor = MagicMock()
    cursor.__enter__.return_value = cursor
    cursor.__exit__.return_value = None
    cursor.fetchall.side_effect = result_sets
    conn.cursor.return_value = cursor
    return conn, cursor


@pytest.fixture
def result_sets():
    return [
        # stations
        [
            {"id": 10, "code": "st01", "mandator_id": 1, "mandator_number": 7,
             "mandator_description": "Main"},
            {"id": 11, "code": "ST01", "mandator_id": None, "mandator_number": None,
             "mandator_description": None},
        ],
        # terminals
        [
            {"id": 5, "station_id": 10, "code": "A", "number": 1, "terminal_number": None},
            {"id": 3, "station_id": 10, "code": "B", "number": 2, "terminal_number": "T-2"},
        ],
        # tanks
        [{"id": 7, "station_id": 10, "article_id": 42, "number": 2}],
        # customers
        [
            {"id": 100, "number": "C100", "company": None, "first_name": "Ada", "last_name": "Byron"},
            {"id": 101, "number": "C101", "company": "Acme", "first_name": "X", "last_name": "Y"},
        ],
        # contracts
        [{"id": 200, "number": "K1"}],
        # vehicles
        [{"id": 900, "license_plate": "ab-123 cd"}, {"id": 901, "license_plate": "AB 123CD"}],
        # cards
        [{"id": 500, "number": " 7077a1"}],
        # article map
        [{"article_code": "adblue", "article_description": "AdBlue", "tax_rate": "19.00", "article_id": 77}],
    ]


# -------------------------------
# Tests: loader
# -------------------------------
def test_load_builds_case_insensitive_indexes(result_sets):
    conn, cursor = _connection(result_sets)
    catalog = load_reference_catalog(conn)

    assert cursor.execute.call_count == 8
    assert catalog.station("ST01").id == 10
    assert catalog.station("st01").mandator_number == "7"
    assert [t.id for t in catalog.terminals_for(10)] == [5, 3]
    assert catalog.terminals_for(10)[0].number == "1"
    assert catalog.tank(10, 42).number == 2
    assert catalog.customer("c100").display_name == "Ada Byron"
    assert catalog.customer("C101").display_name == "Acme"
    assert catalog.contract_id("k1") == 200
    assert catalog.card_id("7077A1") == 500
    assert catalog.article_id("ADBLUE", "adblue", "19") == 77


def test_duplicate_keys_keep_first_occurrence(result_sets):
    conn, _ = _connection(result_sets)
    catalog = load_reference_catalog(conn)
    assert catalog.station("ST01").id == 10
    assert catalog.vehicle_id("AB123CD") == 900
    assert catalog.counts()["vehicles"] == 1


def test_database_error_raises_catalog_load_error():
    conn, cursor = _connection([])
    cursor.execute.side_effect = psycopg2.OperationalError("connection lost")
    with pytest.raises(CatalogLoadError):
        load_reference_catalog(conn)


# -------------------------------
# Tests: helpers
# -------------------------------
def test_tax_rate_key_normalizes():
    assert tax_rate_key("19.00") == tax_rate_key("19") == Decimal("19").normalize()
    assert tax_rate_key("") is None
    assert tax_rate_key("abc") is None


def test_customer_display_name_prefers_company():
    assert customer_display_name(" Acme ", "Ada", "Byron") == "Acme"
    assert customer_display_name(None, "Ada", None) == "Ada"
    assert customer_display_name("", None, None) is None
