# tests/test_entity_resolver.py

import pytest

from entity_resolver import EntityResolver
from exceptions import ParseError, ResolutionError


@pytest.fixture
def resolver(catalog):
    return EntityResolver(catalog)


class TestTerminalResolution:
    """Terminal matching order and fallback."""

    def test_match_by_code(self, resolver, make_row):
        keys = resolver.resolve(make_row(Terminal_Code="b"))
        assert keys.terminal_id == 3
        assert keys.warnings == []

    def test_match_by_number_when_code_missing(self, resolver, make_row):
        keys = resolver.resolve(make_row(Terminal_Code="", Terminal_Number="2"))
        assert keys.terminal_id == 3

    def test_match_by_alternate_terminal_number(self, resolver, make_row):
        keys = resolver.resolve(make_row(Terminal_Code="", Terminal_Number="t-1"))
        assert keys.terminal_id == 5

    def test_fallback_to_lowest_id_with_warning(self, resolver, make_row):
        keys = resolver.resolve(make_row(Terminal_Code="ZZZ", Terminal_Number="99"))
        assert keys.terminal_id == 3
        assert any("LookupTerminals" in w for w in keys.warnings)

    def test_station_without_terminals_is_row_error(self, catalog, make_row):
        catalog._terminals.clear()
        with pytest.raises(ResolutionError):
            EntityResolver(catalog).resolve(make_row())


class TestMandatoryKeys:
    def test_unknown_station_raises(self, resolver, make_row):
        with pytest.raises(ResolutionError) as exc:
            resolver.resolve(make_row(Station_Code="NOPE"))
        assert exc.value.field == "Station_Code"
        assert exc.value.row_number == 1

    def test_non_numeric_article_number_raises(self, resolver, make_row):
        with pytest.raises(ParseError):
            resolver.resolve(make_row(TransactionLineItem_Article_Number="4X"))

    def test_article_map_fallback(self, resolver, make_row):
        keys = resolver.resolve(
            make_row(
                TransactionLineItem_Article_Number="",
                TransactionLineItem_Article_Code="AdBlue",
                TransactionLineItem_Article_Description="adblue",
                TransactionLineItem_TaxRate_Value="",
            )
        )
        assert keys.article_id == 77
        assert any("LookupArticles" in w for w in keys.warnings)

    def test_article_unresolvable_raises(self, resolver, make_row):
        with pytest.raises(ResolutionError):
            resolver.resolve(
                make_row(TransactionLineItem_Article_Number="", TransactionLineItem_Article_Code="X")
            )


class TestOptionalKeys:
    def test_all_optional_keys_resolved(self, resolver, make_row):
        keys = resolver.resolve(
            make_row(
                Customer_Number="c100",
                Contract_Number="K1",
                Vehicle_LicensePlate="ab-123 cd",
            )
        )
        assert keys.station_id == 10
        assert keys.terminal_id == 5
        assert keys.article_id == 42
        assert (keys.tank_id, keys.tank_number) == (7, 2)
        assert keys.customer_id == 100
        assert keys.customer_name == "Acme Logistics"
        assert keys.contract_id == 200
        assert keys.vehicle_id == 900
        assert keys.card_id == 500
        assert keys.mandator_id == 1
        assert keys.warnings == []

    def test_misses_are_warnings_not_errors(self, resolver, make_row):
        keys = resolver.resolve(
            make_row(
                Customer_Number="C999",
                Customer_FirstName="Ada",
                Customer_LastName="Byron",
                Contract_Number="K9",
                Vehicle_LicensePlate="ZZ 1",
                CardOne_Number="UNKNOWN",
                TransactionLineItem_Article_Number="43",
            )
        )
        assert keys.customer_id is None
        assert keys.customer_name == "Ada Byron"
        assert keys.contract_id is None
        assert keys.vehicle_id is None
        assert keys.card_id is None
        assert keys.tank_id is None
        assert len(keys.warnings) == 5
