# tests/test_card_enrichment.py

import pytest

from card_enrichment import CardEnrichmentService, EnrichmentCache
from models import PanSuffixMode


@pytest.fixture
def cache():
    return EnrichmentCache()


class TestEnrichmentPriority:
    def test_mapping_table_wins(self, store, cache, make_row):
        store.mappings[("700001234", 1001)] = {"vehicle_id": 900, "vehicle_plate": "AB123CD"}
        store.live_cards["700001234"] = {"card_id": 501, "vehicle_id": 901}
        service = CardEnrichmentService(store, cache)

        result = service.enrich(make_row(Driver_Number="D1"), 1001)

        assert result.source == "mapping"
        assert result.vehicle_id == 900
        assert result.vehicle_license_plate == "AB123CD"
        assert result.employee_number == "D1"
        assert ("live", "700001234") not in store.lookup_calls

    def test_live_lookup_second(self, store, cache, make_row):
        store.live_cards["700001234"] = {
            "card_id": 501,
            "card_number": "7077A1",
            "card_holder": "Fleet",
            "vehicle_id": 901,
            "license_plate": "XY1",
            "employee_number": "E7",
            "employee_name": "Grace Hopper",
        }
        result = CardEnrichmentService(store, cache).enrich(make_row(), 1001)

        assert result.source == "live"
        assert result.card_id == 501
        assert result.vehicle_license_plate == "XY1"
        assert result.employee_name == "Grace Hopper"

    def test_extract_fallback(self, store, cache, make_row):
        row = make_row(Vehicle_LicensePlate="AB-123 CD", Driver_Number="D1")
        result = CardEnrichmentService(store, cache).enrich(row, 1001)

        assert result.source == "extract"
        assert result.card_pan == "700001234="
        assert result.vehicle_license_plate == "AB-123 CD"
        assert result.employee_number == "D1"

    def test_disabled_skips_store(self, store, cache, make_row):
        result = CardEnrichmentService(store, cache, enabled=False).enrich(make_row(), 1001)
        assert result.source == "extract"
        assert store.lookup_calls == []

    def test_keep_suffix_mode_uses_raw_marker(self, store, cache, make_row):
        store.live_cards["700001234="] = {"card_id": 502}
        service = CardEnrichmentService(store, cache, pan_suffix_mode=PanSuffixMode.KEEP)
        assert service.enrich(make_row(), 1001).card_id == 502


class TestEnrichmentCache:
    def test_misses_are_cached(self, store, cache, make_row):
        service = CardEnrichmentService(store, cache)
        service.enrich(make_row(), 1001)
        service.enrich(make_row(row_number=2), 1001)

        assert store.lookup_calls == [("mapping", "700001234", 1001), ("live", "700001234")]
        assert cache.hits == 2
        assert cache.misses == 2
        assert len(cache) == 2

    def test_clear(self, cache):
        cache.get_or_load("k", lambda: {"a": 1})
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == cache.misses == 0
