"""
models.py

Defines all core data models for the fuel transaction import.
Models are built using Pydantic for validation, type safety, and serialization.
They carry configuration, the typed extract row, the facts written to the
destination store, and the per-file statistics used for reporting and audit.
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from exceptions import ConfigError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


# -----------------------------------------------------------------------------
# 1. Enumerations
# -----------------------------------------------------------------------------
class DestinationProfile(str, Enum):
    """Which destination tables a run writes to."""

    LIVE = "live"
    SHADOW = "shadow"
    BACKFILL = "backfill"


class CommitMode(str, Enum):
    BULK = "bulk"
    PER_ROW = "per_row"


class TransactionKeyKind(str, Enum):
    """Natural key used to detect an existing transaction."""

    DEVICE = "device"  # (timestamp, number, device address or -1)
    TERMINAL_DATE = "terminal_date"  # (date, number, terminal id)


class TenderMode(str, Enum):
    STRICT = "strict"
    MAPPED = "mapped"


class PanSuffixMode(str, Enum):
    STRIP = "strip"
    KEEP = "keep"


class PaymentAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    NOOP = "noop"


class PaymentType(str, Enum):
    """Origin marker stored on every payment row."""

    SAAS = "SAAS"
    BACKFILL = "BACKFILL"
    LEGACY = "LEGACY"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# 2. System Configuration Model
# -----------------------------------------------------------------------------
class ProfileConfig(BaseModel):
    """Concrete table names and write policy for one destination profile."""

    profile: DestinationProfile
    transactions_table: str
    payments_table: str
    key_kind: TransactionKeyKind
    commit_mode: CommitMode
    updates_transactions: bool = False
    creates_transactions: bool = True
    payment_type: PaymentType = PaymentType.SAAS


PROFILE_DEFAULTS: Dict[DestinationProfile, Dict[str, Any]] = {
    DestinationProfile.LIVE: {
        "transactions_table": "transactions",
        "payments_table": "payments",
        "key_kind": TransactionKeyKind.DEVICE,
        "commit_mode": CommitMode.BULK,
        "updates_transactions": False,
        "creates_transactions": True,
        "payment_type": PaymentType.SAAS,
    },
    DestinationProfile.SHADOW: {
        "transactions_table": "transactions_shadow",
        "payments_table": "payments_shadow",
        "key_kind": TransactionKeyKind.TERMINAL_DATE,
        "commit_mode": CommitMode.PER_ROW,
        "updates_transactions": True,
        "creates_transactions": True,
        "payment_type": PaymentType.SAAS,
    },
    DestinationProfile.BACKFILL: {
        "transactions_table": "transactions",
        "payments_table": "payments_shadow",
        "key_kind": TransactionKeyKind.TERMINAL_DATE,
        "commit_mode": CommitMode.PER_ROW,
        "updates_transactions": False,
        "creates_transactions": False,
        "payment_type": PaymentType.BACKFILL,
    },
}


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables or .env files.

    Centralizes database access, the import directory layout, destination
    profile overrides, resolution modes and reporting.
    """

    # Database Configuration
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: int = Field(default=5432, description="Database port")
    DB_NAME: str = Field(default="fuel_import", description="Database name")
    DB_USER: str = Field(default="fuel_import", description="Database user")
    DB_PASSWORD: str = Field(default="", description="Database password")
    DB_URL: Optional[str] = Field(
        None, description="Database connection URL (overrides individual params)"
    )

    # Import Configuration
    IMPORT_BASE_DIR: Path = Field(
        default=Path("import"),
        description="Base directory holding incoming/processing/archive/error",
    )
    DESTINATION_PROFILE: DestinationProfile = Field(
        default=DestinationProfile.LIVE, description="live, shadow or backfill"
    )
    PAYMENTS_TABLE: Optional[str] = Field(
        None, description="Overrides the profile's payments table"
    )
    COMMIT_MODE: Optional[CommitMode] = Field(
        None, description="Overrides the profile's commit mode (bulk or per_row)"
    )
    MAX_TRANSACTION_AGE_DAYS: Optional[int] = Field(
        None, ge=1, description="Skip rows older than this many days (unset disables)"
    )
    POLL_INTERVAL_SECONDS: int = Field(
        default=60, ge=1, description="Polling interval in watch mode"
    )
    LOCAL_TIMEZONE: Optional[str] = Field(
        None, description="IANA zone used for stored wall-clock times (default: host zone)"
    )

    # Resolution Configuration
    TENDER_MODE: TenderMode = Field(
        default=TenderMode.STRICT, description="strict rejects unknown flag combinations"
    )
    TENDER_CARD_CODE: str = Field(default="0", description="Tender code for card payments")
    TENDER_CASH_CODE: str = Field(default="1", description="Tender code for cash (mapped mode)")
    TENDER_VOUCHER_CODE: str = Field(
        default="2", description="Tender code for vouchers (mapped mode)"
    )
    TENDER_UNKNOWN_CODE: str = Field(
        default="UNKN", description="Tender code when no flag is set (mapped mode)"
    )
    PAN_SUFFIX_MODE: PanSuffixMode = Field(
        default=PanSuffixMode.STRIP, description="strip or keep the trailing '=' of PANs"
    )
    CARD_ENRICHMENT_ENABLED: bool = Field(
        default=True, description="Look up card/vehicle/driver data in the store"
    )

    # Application Configuration
    REPORT_OUTPUT_DIR: Path = Field(
        default=Path("local_reports"), description="Directory for report outputs"
    )
    LOG_DIR: Path = Field(default=Path("logs"), description="Directory for JSON log files")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    METRICS_PORT: Optional[int] = Field(
        None, description="Expose Prometheus metrics on this port when set"
    )
    AUDIT_USER_ID: str = Field(default="fuel_import_system", description="Audit log user")
    LAST_CHANGED_BY_USER: str = Field(
        default="fuel-import", description="Value of last_changed_by_user on written rows"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        """
        Construct database URL from individual components or return DB_URL if provided.
        """
        if self.DB_URL:
            return self.DB_URL
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    def profile_config(
        self, profile: Optional[DestinationProfile] = None
    ) -> ProfileConfig:
        """Build the profile configuration, applying PAYMENTS_TABLE and COMMIT_MODE overrides."""
        profile = DestinationProfile(profile or self.DESTINATION_PROFILE)
        values = dict(PROFILE_DEFAULTS[profile])
        if self.PAYMENTS_TABLE:
            values["payments_table"] = self.PAYMENTS_TABLE
        if self.COMMIT_MODE:
            values["commit_mode"] = self.COMMIT_MODE
        for table in (values["transactions_table"], values["payments_table"]):
            if not _IDENTIFIER_RE.match(table):
                raise ConfigError(f"Invalid table name: {table!r}")
        return ProfileConfig(profile=profile, **values)


# -----------------------------------------------------------------------------
# 3. Extract Row
# -----------------------------------------------------------------------------
class ExtractRow(BaseModel):
    """
    One line of the upstream transaction extract.

    Fields are populated by their CSV header (alias). Values are kept as
    stripped strings; parsing happens in the row mapper so that a bad value
    becomes a row error carrying the field name.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    row_number: int = Field(..., description="1-based data row number in the file")

    transaction_start: str = Field("", alias="Transaction_StartDateTime")
    transaction_end: str = Field("", alias="Transaction_EndDateTime")
    transaction_number: str = Field("", alias="Transaction_Number")
    station_code: str = Field("", alias="Station_Code")
    terminal_code: str = Field("", alias="Terminal_Code")
    terminal_number: str = Field("", alias="Terminal_Number")

    quantity: str = Field("", alias="TransactionLineItem_Quantity_Value")
    sell_unit_price: str = Field("", alias="TransactionLineItem_GrossSellUnitPrice_Amount")
    marked_unit_price: str = Field("", alias="TransactionLineItem_GrossMarkedUnitPrice_Amount")
    sell_amount: str = Field("", alias="TransactionLineItem_GrossSellAmount_Amount")
    marked_amount: str = Field("", alias="TransactionLineItem_GrossMarkedAmount_Amount")
    currency: str = Field("", alias="TransactionLineItem_GrossSellAmount_CurrencyISOCode")
    tax_rate: str = Field("", alias="TransactionLineItem_TaxRate_Value")
    article_number: str = Field("", alias="TransactionLineItem_Article_Number")
    article_code: str = Field("", alias="TransactionLineItem_Article_Code")
    article_description: str = Field("", alias="TransactionLineItem_Article_Description")
    dispenser_number: str = Field("", alias="TransactionLineItem_DispenserNumber")
    nozzle_number: str = Field("", alias="TransactionLineItem_NozzleNumber")

    net_total: str = Field("", alias="Transaction_NetSellTotalPrice_Amount")
    tax_total: str = Field("", alias="Transaction_SellTaxAmount_Amount")
    exported_common: str = Field("", alias="Transaction_IsExportedCommon")
    exported_customer: str = Field("", alias="Transaction_IsExportedCustomer")

    contract_number: str = Field("", alias="Contract_Number")
    card_one_pan: str = Field("", alias="CardOne_Pan")
    card_one_number: str = Field("", alias="CardOne_Number")
    card_one_holder: str = Field("", alias="CardOne_Holder")
    card_two_pan: str = Field("", alias="CardTwo_Pan")
    card_two_number: str = Field("", alias="CardTwo_Number")
    card_two_holder: str = Field("", alias="CardTwo_Holder")
    customer_number: str = Field("", alias="Customer_Number")
    customer_first_name: str = Field("", alias="Customer_FirstName")
    customer_last_name: str = Field("", alias="Customer_LastName")
    customer_company: str = Field("", alias="Customer_Company")
    driver_number: str = Field("", alias="Driver_Number")
    driver_first_name: str = Field("", alias="Driver_FirstName")
    driver_last_name: str = Field("", alias="Driver_LastName")
    vehicle_number: str = Field("", alias="Vehicle_Number")
    vehicle_description: str = Field("", alias="Vehicle_Description")
    vehicle_license_plate: str = Field("", alias="Vehicle_LicensePlate")
    mileage: str = Field("", alias="Mileage")

    payment_card: str = Field("", alias="Payment_Card")
    payment_cash: str = Field("", alias="Payment_Cash")
    payment_voucher: str = Field("", alias="Payment_Voucher")

    fiscal_document_type: str = Field(
        "", alias="Transaction_AdditionalProperties_Fiscalization_DocumentType"
    )
    fiscal_amount: str = Field("", alias="Transaction_AdditionalProperties_Fiscalization_Amount")
    fiscal_discount: str = Field(
        "", alias="Transaction_AdditionalProperties_Fiscalization_Discount"
    )
    fiscal_tax_amount: str = Field(
        "", alias="Transaction_AdditionalProperties_Fiscalization_TaxAmount"
    )

    @field_validator("*", mode="before")
    @classmethod
    def _clean(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value

    @classmethod
    def header_names(cls) -> List[str]:
        return [f.alias for f in cls.model_fields.values() if f.alias]


MANDATORY_HEADERS: Tuple[str, ...] = (
    "Transaction_StartDateTime",
    "Transaction_Number",
    "Station_Code",
    "TransactionLineItem_Article_Number",
    "TransactionLineItem_Quantity_Value",
    "TransactionLineItem_GrossSellAmount_Amount",
)


# -----------------------------------------------------------------------------
# 4. Resolution Results
# -----------------------------------------------------------------------------
class ResolvedKeys(BaseModel):
    """Canonical identifiers for one row. Station and terminal are mandatory."""

    station_id: int
    terminal_id: int
    article_id: int
    tank_number: Optional[int] = None
    tank_id: Optional[int] = None
    card_id: Optional[int] = None
    card_id2: Optional[int] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    contract_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    mandator_id: Optional[int] = None
    mandator_number: Optional[str] = None
    mandator_description: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class CardEnrichment(BaseModel):
    """Card, vehicle and driver data flattened into the payment row."""

    source: str = Field(..., description="mapping, live or extract")
    card_pan: Optional[str] = None
    card_number: Optional[str] = None
    card_holder: Optional[str] = None
    card_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    vehicle_license_plate: Optional[str] = None
    employee_number: Optional[str] = None
    employee_name: Optional[str] = None


# -----------------------------------------------------------------------------
# 5. Destination Facts
# -----------------------------------------------------------------------------
class TransactionFact(BaseModel):
    """One fuel dispensing event as stored in the transactions table."""

    id: Optional[int] = None
    trans_datetime: datetime
    trans_end_datetime: Optional[datetime] = None
    trans_number: int
    terminal_id: int
    trans_type: str = "X"
    quantity: Decimal = Decimal("0")
    unit_price_sold: Decimal = Decimal("0")
    unit_price_marked: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    tax_rate: Decimal = Decimal("0")
    discount: Optional[Decimal] = None
    article_id: int
    article_code: Optional[str] = None
    article_description: Optional[str] = None
    device_address: Optional[int] = None
    sub_device_address: Optional[int] = None
    tank_number: Optional[int] = None
    was_exported: str = "N"
    file_id: int = -1
    exported_common: str = "N"
    exported_customer: str = "N"
    modified_flag: str = "N"
    fleet_import: str = "Y"
    poll_datetime: Optional[datetime] = None
    insert_datetime: Optional[datetime] = None
    last_changed_datetime: Optional[datetime] = None
    last_changed_by_user: str = "fuel-import"
    derivations: List[str] = Field(default_factory=list, exclude=True)

    def identity_key(self, kind: TransactionKeyKind) -> Tuple:
        if kind == TransactionKeyKind.DEVICE:
            device = self.device_address if self.device_address is not None else -1
            return (self.trans_datetime, self.trans_number, device)
        return (self.trans_datetime.date(), self.trans_number, self.terminal_id)


class PaymentFact(BaseModel):
    """One payment line attached to a transaction."""

    id: Optional[int] = None
    transaction_id: Optional[int] = None
    trans_datetime: datetime
    trans_number: int
    terminal_id: int
    number: int = 1
    article_id: int
    article_code: Optional[str] = None
    article_description: Optional[str] = None
    quantity: Decimal = Decimal("0")
    unit_price_sold: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    amount_net: Optional[Decimal] = None
    amount_tax: Optional[Decimal] = None
    tax_rate: Decimal = Decimal("0")
    currency: Optional[str] = None
    device_address: Optional[int] = None
    sub_device_address: Optional[int] = None
    station_code: Optional[str] = None
    terminal_number: Optional[str] = None
    mandator_id: Optional[int] = None
    mandator_number: Optional[str] = None
    mandator_description: Optional[str] = None
    contract_id: Optional[int] = None
    contract_number: Optional[str] = None
    card_pan: Optional[str] = None
    card_number: Optional[str] = None
    card_holder: Optional[str] = None
    card_pan2: Optional[str] = None
    card_number2: Optional[str] = None
    card_holder2: Optional[str] = None
    card_id: Optional[int] = None
    card_id2: Optional[int] = None
    customer_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[int] = None
    employee_number: Optional[str] = None
    employee_name: Optional[str] = None
    vehicle_license_plate: Optional[str] = None
    vehicle_id: Optional[int] = None
    mileage: Optional[int] = None
    tender_code: str = "0"
    tank_id: Optional[int] = None
    dispenser_number: Optional[str] = None
    nozzle_number: Optional[str] = None
    modified_flag: str = "N"
    fleet_import: str = "Y"
    fiscal_doc_type: Optional[str] = None
    fiscal_amount: Optional[Decimal] = None
    fiscal_discount: Optional[Decimal] = None
    fiscal_tax_amount: Optional[Decimal] = None
    payment_type: PaymentType = PaymentType.SAAS
    enrichment_source: Optional[str] = Field(None, exclude=True)


# -----------------------------------------------------------------------------
# 6. Run Statistics and Report Contracts
# -----------------------------------------------------------------------------
class ImportStats(BaseModel):
    """Per-file counters. Fact counters count writes, skipped_* counters count rows."""

    rows_read: int = 0
    transactions_inserted: int = 0
    transactions_updated: int = 0
    payments_inserted: int = 0
    payments_updated: int = 0
    payments_unchanged: int = 0
    skipped_duplicate: int = 0
    skipped_error: int = 0
    skipped_too_old: int = 0
    skipped_no_transaction: int = 0
    warnings: int = 0


class RejectedRow(BaseModel):
    """A row that was skipped because of a row-level error."""

    row_number: Optional[int] = None
    error_type: str
    message: str
    field: Optional[str] = None
    value: Optional[str] = None
    transaction_number: Optional[str] = None
    station_code: Optional[str] = None


class FileImportResult(BaseModel):
    """Outcome of importing one extract file."""

    file_name: str
    profile: DestinationProfile
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    stats: ImportStats = Field(default_factory=ImportStats)
    rejected_rows: List[RejectedRow] = Field(default_factory=list)
    error_message: Optional[str] = None
    run_id: Optional[str] = None


class ReferenceSyncStats(BaseModel):
    """Counters for one reference-sync extract."""

    kind: str
    rows_read: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    unknown: int = 0
    pending: int = 0
    skipped_empty_key: int = 0
