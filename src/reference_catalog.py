"""
Reference catalog: in-memory snapshot of the lookup tables used to resolve
extract rows (stations, terminals, tanks, customers, contracts, vehicles,
cards and the article map).

Loaded with one full-table query per table at the start of every file and
read-only afterwards.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import structlog
from psycopg2.extras import RealDictCursor
from pydantic import BaseModel

from exceptions import CatalogLoadError
from key_normalizer import normalize_card_number, normalize_plate

logger = structlog.get_logger()


class StationRef(BaseModel):
    id: int
    code: str
    mandator_id: Optional[int] = None
    mandator_number: Optional[str] = None
    mandator_description: Optional[str] = None


class TerminalRef(BaseModel):
    id: int
    station_id: int
    code: Optional[str] = None
    number: Optional[str] = None
    terminal_number: Optional[str] = None


class TankRef(BaseModel):
    id: int
    number: int


class CustomerRef(BaseModel):
    id: int
    display_name: Optional[str] = None


def catalog_key(value: Any) -> str:
    """Case-insensitive lookup key for codes and numbers."""
    if value is None:
        return ""
    return str(value).strip().upper()


def tax_rate_key(value: Any) -> Optional[Decimal]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return Decimal(str(value).strip()).normalize()
    except InvalidOperation:
        return None


def customer_display_name(company: Optional[str], first: Optional[str], last: Optional[str]) -> Optional[str]:
    """Company name when present, otherwise "first last"."""
    if company and company.strip():
        return company.strip()
    name = " ".join(p.strip() for p in (first, last) if p and p.strip())
    return name or None


class ReferenceCatalog:
    """Lookup maps keyed by normalized business keys."""

    def __init__(
        self,
        stations: Optional[Dict[str, StationRef]] = None,
        terminals: Optional[Dict[int, List[TerminalRef]]] = None,
        tanks: Optional[Dict[Tuple[int, int], TankRef]] = None,
        customers: Optional[Dict[str, CustomerRef]] = None,
        contracts: Optional[Dict[str, int]] = None,
        vehicles: Optional[Dict[str, int]] = None,
        cards: Optional[Dict[str, int]] = None,
        articles: Optional[Dict[Tuple[str, str, Optional[Decimal]], int]] = None,
    ) -> None:
        self._stations = dict(stations or {})
        self._terminals = {k: list(v) for k, v in (terminals or {}).items()}
        self._tanks = dict(tanks or {})
        self._customers = dict(customers or {})
        self._contracts = dict(contracts or {})
        self._vehicles = dict(vehicles or {})
        self._cards = dict(cards or {})
        self._articles = dict(articles or {})

    def station(self, code: str) -> Optional[StationRef]:
        return self._stations.get(catalog_key(code))

    def terminals_for(self, station_id: int) -> List[TerminalRef]:
        return list(self._terminals.get(station_id, []))

    def tank(self, station_id: int, article_id: int) -> Optional[TankRef]:
        return self._tanks.get((station_id, article_id))

    def customer(self, number: str) -> Optional[CustomerRef]:
        return self._customers.get(catalog_key(number))

    def contract_id(self, number: str) -> Optional[int]:
        return self._contracts.get(catalog_key(number))

    def vehicle_id(self, plate: str) -> Optional[int]:
        key = normalize_plate(plate)
        return self._vehicles.get(key) if key else None

    def card_id(self, card_number: str) -> Optional[int]:
        key = normalize_card_number(card_number)
        return self._cards.get(key) if key else None

    def article_id(self, code: str, description: str, tax_rate: Any) -> Optional[int]:
        return self._articles.get((catalog_key(code), catalog_key(description), tax_rate_key(tax_rate)))

    def counts(self) -> Dict[str, int]:
        return {
            "stations": len(self._stations),
            "terminals": sum(len(v) for v in self._terminals.values()),
            "tanks": len(self._tanks),
            "customers": len(self._customers),
            "contracts": len(self._contracts),
            "vehicles": len(self._vehicles),
            "cards": len(self._cards),
            "articles": len(self._articles),
        }


# -----------------------------------------------------------------------------
# Loader
# -----------------------------------------------------------------------------
STATIONS_SQL = """
    SELECT s.id, s.code, s.mandator_id,
           m.number AS mandator_number, m.description AS mandator_description
    FROM stations s
    LEFT JOIN mandators m ON m.id = s.mandator_id
    ORDER BY s.id
"""
TERMINALS_SQL = "SELECT id, station_id, code, number, terminal_number FROM terminals ORDER BY station_id, id"
TANKS_SQL = "SELECT id, station_id, article_id, number FROM tanks ORDER BY id"
CUSTOMERS_SQL = "SELECT id, number, company, first_name, last_name FROM customers ORDER BY id"
CONTRACTS_SQL = "SELECT id, number FROM contracts ORDER BY id"
VEHICLES_SQL = "SELECT id, license_plate FROM vehicles ORDER BY id"
CARDS_SQL = "SELECT id, number FROM cards ORDER BY id"
ARTICLES_SQL = """
    SELECT article_code, article_description, tax_rate, article_id
    FROM article_map
    ORDER BY id
"""


def _keep_first(index: Dict, key, value, table: str) -> None:
    if not key:
        return
    if key in index:
        logger.warning(
            "Duplicate reference key; keeping first occurrence",
            phase="ReferenceData",
            table=table,
            key=str(key),
        )
        return
    index[key] = value


def load_reference_catalog(conn) -> ReferenceCatalog:
    """
    Load every lookup table through ``conn`` and build a ReferenceCatalog.

    Any database error is raised as CatalogLoadError: without reference data
    no row of the file can be resolved.
    """
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            stations: Dict[str, StationRef] = {}
            cursor.execute(STATIONS_SQL)
            for row in cursor.fetchall():
                _keep_first(stations, catalog_key(row["code"]), StationRef(
                    id=row["id"],
                    code=row["code"],
                    mandator_id=row.get("mandator_id"),
                    mandator_number=_as_text(row.get("mandator_number")),
                    mandator_description=row.get("mandator_description"),
                ), "stations")

            terminals: Dict[int, List[TerminalRef]] = {}
            cursor.execute(TERMINALS_SQL)
            for row in cursor.fetchall():
                terminals.setdefault(row["station_id"], []).append(TerminalRef(
                    id=row["id"],
                    station_id=row["station_id"],
                    code=_as_text(row.get("code")),
                    number=_as_text(row.get("number")),
                    terminal_number=_as_text(row.get("terminal_number")),
                ))

            tanks: Dict[Tuple[int, int], TankRef] = {}
            cursor.execute(TANKS_SQL)
            for row in cursor.fetchall():
                _keep_first(
                    tanks,
                    (row["station_id"], row["article_id"]),
                    TankRef(id=row["id"], number=row["number"]),
                    "tanks",
                )

            customers: Dict[str, CustomerRef] = {}
            cursor.execute(CUSTOMERS_SQL)
            for row in cursor.fetchall():
                _keep_first(customers, catalog_key(row["number"]), CustomerRef(
                    id=row["id"],
                    display_name=customer_display_name(
                        row.get("company"), row.get("first_name"), row.get("last_name")
                    ),
                ), "customers")

            contracts: Dict[str, int] = {}
            cursor.execute(CONTRACTS_SQL)
            for row in cursor.fetchall():
                _keep_first(contracts, catalog_key(row["number"]), row["id"], "contracts")

            vehicles: Dict[str, int] = {}
            cursor.execute(VEHICLES_SQL)
            for row in cursor.fetchall():
                _keep_first(vehicles, normalize_plate(row["license_plate"]), row["id"], "vehicles")

            cards: Dict[str, int] = {}
            cursor.execute(CARDS_SQL)
            for row in cursor.fetchall():
                _keep_first(cards, normalize_card_number(row["number"]), row["id"], "cards")

            articles: Dict[Tuple[str, str, Optional[Decimal]], int] = {}
            cursor.execute(ARTICLES_SQL)
            for row in cursor.fetchall():
                key = (
                    catalog_key(row["article_code"]),
                    catalog_key(row["article_description"]),
                    tax_rate_key(row["tax_rate"]),
                )
                _keep_first(articles, key, row["article_id"], "article_map")
    except psycopg2.Error as exc:
        logger.error("Reference data load failed", phase="ReferenceData", error=str(exc))
        raise CatalogLoadError(f"Reference data load failed: {exc}") from exc

    catalog = ReferenceCatalog(
        stations=stations,
        terminals=terminals,
        tanks=tanks,
        customers=customers,
        contracts=contracts,
        vehicles=vehicles,
        cards=cards,
        articles=articles,
    )
    logger.info("Reference data loaded", phase="ReferenceData", **catalog.counts())
    return catalog


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
