"""
Entity resolution for extract rows.

Maps the raw business keys of one ExtractRow onto catalog identifiers.
Station, terminal and article are mandatory and raise ResolutionError when
they cannot be resolved; every other miss is logged as a warning and leaves
the identifier empty.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from exceptions import ParseError, ResolutionError
from models import ExtractRow, ResolvedKeys
from reference_catalog import ReferenceCatalog, StationRef, TerminalRef, catalog_key

logger = structlog.get_logger()


class EntityResolver:
    """Resolves business keys against a ReferenceCatalog with ordered fallbacks."""

    def __init__(self, catalog: ReferenceCatalog) -> None:
        self.catalog = catalog

    def resolve(self, row: ExtractRow) -> ResolvedKeys:
        warnings: List[str] = []

        station = self.resolve_station(row)
        terminal = self.resolve_terminal(station, row, warnings)
        article_id = self.resolve_article(row, warnings)

        tank_number = tank_id = None
        if article_id <= 0:
            self._warn(warnings, "LookupTanks", "Article id not usable for tank lookup", row,
                       article_id=article_id)
        else:
            tank = self.catalog.tank(station.id, article_id)
            if tank is None:
                self._warn(warnings, "LookupTanks", "No tank for station and article", row,
                           station_id=station.id, article_id=article_id)
            else:
                tank_number, tank_id = tank.number, tank.id

        if station.mandator_id is None:
            self._warn(warnings, "LookupMandators", "No mandator linked to station", row,
                       station_id=station.id)

        customer_id = customer_name = None
        if row.customer_number:
            customer = self.catalog.customer(row.customer_number)
            if customer is None:
                self._warn(warnings, "LookupCustomers", "Unknown customer number", row,
                           customer_number=row.customer_number)
            else:
                customer_id, customer_name = customer.id, customer.display_name

        contract_id = None
        if row.contract_number:
            contract_id = self.catalog.contract_id(row.contract_number)
            if contract_id is None:
                self._warn(warnings, "LookupContracts", "Unknown contract number", row,
                           contract_number=row.contract_number)

        vehicle_id = None
        if row.vehicle_license_plate:
            vehicle_id = self.catalog.vehicle_id(row.vehicle_license_plate)
            if vehicle_id is None:
                self._warn(warnings, "LookupVehicles", "Unknown vehicle plate", row,
                           license_plate=row.vehicle_license_plate)

        card_id = self._resolve_card(row.card_one_number, row, warnings, "CardOne_Number")
        card_id2 = self._resolve_card(row.card_two_number, row, warnings, "CardTwo_Number")

        return ResolvedKeys(
            station_id=station.id,
            terminal_id=terminal.id,
            article_id=article_id,
            tank_number=tank_number,
            tank_id=tank_id,
            card_id=card_id,
            card_id2=card_id2,
            customer_id=customer_id,
            customer_name=customer_name or _name_from_row(row),
            contract_id=contract_id,
            vehicle_id=vehicle_id,
            mandator_id=station.mandator_id,
            mandator_number=station.mandator_number,
            mandator_description=station.mandator_description,
            warnings=warnings,
        )

    def resolve_station(self, row: ExtractRow) -> StationRef:
        station = self.catalog.station(row.station_code)
        if station is None:
            logger.error("Station not found", phase="LookupStations",
                         station_code=row.station_code, row=row.row_number)
            raise ResolutionError(
                "Station not found", row_number=row.row_number,
                field="Station_Code", value=row.station_code,
            )
        return station

    def resolve_terminal(
        self, station: StationRef, row: ExtractRow, warnings: Optional[List[str]] = None
    ) -> TerminalRef:
        """
        Match by code, then by number, then by alternate terminal number.
        Falls back to the lowest-id terminal of the station with a warning.
        """
        terminals = self.catalog.terminals_for(station.id)
        if not terminals:
            logger.error("No terminal known for station", phase="LookupTerminals",
                         station_id=station.id, station_code=station.code, row=row.row_number)
            raise ResolutionError(
                "No terminal known for station", row_number=row.row_number,
                field="Station_Code", value=row.station_code,
            )

        code = catalog_key(row.terminal_code)
        number = catalog_key(row.terminal_number)
        match = None
        if code:
            match = next((t for t in terminals if catalog_key(t.code) == code), None)
        if match is None and number:
            match = next((t for t in terminals if catalog_key(t.number) == number), None)
        if match is None and number:
            match = next((t for t in terminals if catalog_key(t.terminal_number) == number), None)
        if match is not None:
            return match

        fallback = min(terminals, key=lambda t: t.id)
        self._warn(
            warnings if warnings is not None else [],
            "LookupTerminals",
            "No exact terminal match; using lowest-id terminal of station",
            row,
            station_id=station.id,
            terminal_code_csv=row.terminal_code,
            terminal_number_csv=row.terminal_number,
            fallback_terminal_id=fallback.id,
            fallback_terminal_code=fallback.code,
            fallback_terminal_number=fallback.number,
        )
        return fallback

    def resolve_article(self, row: ExtractRow, warnings: Optional[List[str]] = None) -> int:
        raw = row.article_number
        if raw:
            try:
                return int(raw)
            except ValueError:
                raise ParseError(
                    "Article number is not numeric", row_number=row.row_number,
                    field="TransactionLineItem_Article_Number", value=raw,
                ) from None

        article_id = self.catalog.article_id(row.article_code, row.article_description, row.tax_rate)
        if article_id is None:
            logger.error("Article not resolvable", phase="LookupArticles",
                         article_code=row.article_code, row=row.row_number)
            raise ResolutionError(
                "Article number missing and no article map entry", row_number=row.row_number,
                field="TransactionLineItem_Article_Number", value=raw,
            )
        self._warn(
            warnings if warnings is not None else [],
            "LookupArticles",
            "Article number missing; resolved through article map",
            row,
            article_code=row.article_code,
            article_description=row.article_description,
            article_id=article_id,
        )
        return article_id

    def _resolve_card(
        self, card_number: str, row: ExtractRow, warnings: List[str], field: str
    ) -> Optional[int]:
        if not card_number:
            return None
        card_id = self.catalog.card_id(card_number)
        if card_id is None:
            self._warn(warnings, "LookupCards", "Unknown card number", row,
                       field=field, card_number=card_number)
        return card_id

    @staticmethod
    def _warn(warnings: List[str], phase: str, message: str, row: ExtractRow, **data) -> None:
        warnings.append(f"{phase}: {message}")
        logger.warning(message, phase=phase, row=row.row_number, **data)


def _name_from_row(row: ExtractRow) -> Optional[str]:
    if row.customer_company:
        return row.customer_company
    name = " ".join(p for p in (row.customer_first_name, row.customer_last_name) if p)
    return name or None
