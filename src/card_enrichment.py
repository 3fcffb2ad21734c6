"""
Card / vehicle / driver enrichment for payment rows.

Sources, in priority order:
1. the historical card-driver-vehicle map, keyed by (PAN, transaction number)
2. a live card -> vehicle -> employee join, keyed by PAN
3. the raw card fields of the extract row

Lookups go through an EnrichmentCache owned by the caller for one run, so
nothing survives between runs.
"""

from __future__ import annotations

from typing import Any, Dict, Hashable, Optional

import structlog

from key_normalizer import normalize_pan
from models import CardEnrichment, ExtractRow, PanSuffixMode

logger = structlog.get_logger()

_MISS = object()


class EnrichmentCache:
    """Run-scoped memo of store lookups, including misses."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, Any] = {}
        self.hits = 0
        self.misses = 0

    def get_or_load(self, key: Hashable, loader) -> Optional[Dict[str, Any]]:
        cached = self._entries.get(key, _MISS)
        if cached is not _MISS:
            self.hits += 1
            return cached
        self.misses += 1
        value = loader()
        self._entries[key] = value
        return value

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


class CardEnrichmentService:
    """Resolves CardEnrichment for a row using a store with two lookup methods:
    ``card_vehicle_mapping(pan, trans_number)`` and ``card_live_lookup(pan)``."""

    def __init__(
        self,
        store,
        cache: EnrichmentCache,
        pan_suffix_mode: PanSuffixMode = PanSuffixMode.STRIP,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.cache = cache
        self.strip_suffix = PanSuffixMode(pan_suffix_mode) == PanSuffixMode.STRIP
        self.enabled = enabled

    def pan_key(self, raw: Optional[str]) -> str:
        return normalize_pan(raw, strip_suffix_marker=self.strip_suffix)

    def enrich(self, row: ExtractRow, trans_number: int) -> CardEnrichment:
        pan = self.pan_key(row.card_one_pan)
        if self.enabled and pan:
            mapped = self.cache.get_or_load(
                ("mapping", pan, trans_number),
                lambda: self.store.card_vehicle_mapping(pan, trans_number),
            )
            if mapped:
                logger.debug("Card enriched from mapping table", phase="Enrichment",
                             row=row.row_number, trans_number=trans_number)
                return CardEnrichment(
                    source="mapping",
                    card_pan=row.card_one_pan or None,
                    card_number=row.card_one_number or None,
                    card_holder=row.card_one_holder or None,
                    vehicle_id=mapped.get("vehicle_id"),
                    vehicle_license_plate=mapped.get("vehicle_plate"),
                    employee_number=row.driver_number or None,
                )

            live = self.cache.get_or_load(("live", pan), lambda: self.store.card_live_lookup(pan))
            if live:
                logger.debug("Card enriched from live join", phase="Enrichment",
                             row=row.row_number)
                return CardEnrichment(
                    source="live",
                    card_pan=row.card_one_pan or None,
                    card_number=live.get("card_number") or row.card_one_number or None,
                    card_holder=live.get("card_holder") or row.card_one_holder or None,
                    card_id=live.get("card_id"),
                    vehicle_id=live.get("vehicle_id"),
                    vehicle_license_plate=live.get("license_plate"),
                    employee_number=live.get("employee_number"),
                    employee_name=live.get("employee_name"),
                )

        return CardEnrichment(
            source="extract",
            card_pan=row.card_one_pan or None,
            card_number=row.card_one_number or None,
            card_holder=row.card_one_holder or None,
            vehicle_license_plate=row.vehicle_license_plate or None,
            employee_number=row.driver_number or None,
        )
