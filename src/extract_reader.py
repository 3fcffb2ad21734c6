"""
Readers for upstream extracts.

Transaction and reference-sync extracts are UTF-8, ';'-separated text files
with a header row; the card list arrives as a spreadsheet. Everything is read
as text (no type inference, no NA conversion) and headers are validated once,
before the first row is handed out.
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Dict, Iterable, List

import pandas as pd
import structlog
from pydantic import ValidationError

from exceptions import FileLevelError
from models import MANDATORY_HEADERS, ExtractRow

logger = structlog.get_logger()

CSV_SEPARATOR = ";"
CSV_ENCODING = "utf-8-sig"

CUSTOMER_HEADERS = ("Customer_Number",)
CONTRACT_HEADERS = ("Contract_Number", "Customer_Number")
DRIVER_HEADERS = ("Driver_Number",)
CARD_HEADERS = ("Card_Number",)


def _read_csv_frame(path: Path) -> pd.DataFrame:
    try:
        frame = pd.read_csv(
            path,
            sep=CSV_SEPARATOR,
            dtype=str,
            keep_default_na=False,
            encoding=CSV_ENCODING,
        )
    except pd.errors.EmptyDataError as exc:
        raise FileLevelError(f"Empty extract: {path.name}") from exc
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as exc:
        raise FileLevelError(f"Unreadable extract {path.name}: {exc}") from exc
    frame.columns = [str(c).strip() for c in frame.columns]
    return frame


def _require_headers(frame: pd.DataFrame, required: Iterable[str], path: Path) -> None:
    missing = [h for h in required if h not in frame.columns]
    if missing:
        logger.error("Missing mandatory headers", phase="Import", file=path.name, missing=missing)
        raise FileLevelError(f"Missing mandatory headers in {path.name}: {', '.join(missing)}")


def read_transaction_extract(path: Path) -> List[ExtractRow]:
    """Read a transaction extract into typed rows numbered from 1."""
    path = Path(path)
    frame = _read_csv_frame(path)
    _require_headers(frame, MANDATORY_HEADERS, path)

    unknown = sorted(set(frame.columns) - set(ExtractRow.header_names()))
    if unknown:
        logger.debug("Ignoring unknown columns", phase="Import", file=path.name, columns=unknown)

    rows = []
    for number, record in enumerate(frame.to_dict(orient="records"), start=1):
        try:
            rows.append(ExtractRow.model_validate({**record, "row_number": number}))
        except ValidationError as exc:
            raise FileLevelError(f"Row {number} of {path.name} is not a valid extract row: {exc}") from exc
    logger.info("Extract read", phase="Import", file=path.name, rows=len(rows))
    return rows


def read_reference_extract(path: Path, required_headers: Iterable[str]) -> List[Dict[str, str]]:
    """Read a reference-sync extract into stripped string records."""
    path = Path(path)
    frame = _read_csv_frame(path)
    _require_headers(frame, required_headers, path)
    records = [
        {key: (value or "").strip() for key, value in record.items()}
        for record in frame.to_dict(orient="records")
    ]
    logger.info("Reference extract read", file=path.name, rows=len(records))
    return records


def read_card_spreadsheet(path: Path) -> List[Dict[str, str]]:
    """Read the first sheet of the card list (Card_Number, Card_Pan, Card_Holder)."""
    path = Path(path)
    try:
        frame = pd.read_excel(path, sheet_name=0, dtype=str, engine="openpyxl")
    except (ValueError, OSError, KeyError, zipfile.BadZipFile) as exc:
        raise FileLevelError(f"Unreadable spreadsheet {path.name}: {exc}") from exc
    frame = frame.fillna("")
    frame.columns = [str(c).strip() for c in frame.columns]
    _require_headers(frame, CARD_HEADERS, path)
    records = [
        {key: str(value).strip() for key, value in record.items()}
        for record in frame.to_dict(orient="records")
    ]
    logger.info("Card spreadsheet read", file=path.name, rows=len(records))
    return records
