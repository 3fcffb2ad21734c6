"""
Row mapping: turns one ExtractRow plus its ResolvedKeys into a
TransactionFact and a PaymentFact.

Parsing follows the upstream export conventions: invariant-culture numbers,
empty or ``NULL`` meaning "no value", ISO-8601 timestamps with an offset.
Numeric fallbacks live in DERIVATION_RULES and are applied in one pass.
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import structlog
from dateutil import parser as dtp

from exceptions import ParseError, TenderCodeError
from models import (
    CardEnrichment,
    ExtractRow,
    PaymentFact,
    PaymentType,
    ResolvedKeys,
    TenderMode,
    TransactionFact,
)

logger = structlog.get_logger()

CENT = Decimal("0.01")
# NUMERIC(18,4) leaves 14 integer digits
MAX_INTEGER_DIGITS = 14
UNIT_PRICE_PRECISION = Decimal("0.0001")
TRUE_VALUES = {"true", "1"}


# -----------------------------------------------------------------------------
# Parsing helpers
# -----------------------------------------------------------------------------
def is_blank(raw: Optional[str]) -> bool:
    return raw is None or raw.strip() == "" or raw.strip().upper() == "NULL"


def parse_decimal_nullable(raw: Optional[str], field: str, row_number: int) -> Optional[Decimal]:
    if is_blank(raw):
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        logger.error("Unparseable decimal", phase="ParseDecimal", field=field,
                     value=raw, row=row_number)
        raise ParseError("Unparseable decimal", row_number=row_number, field=field, value=raw) from None
    if not value.is_finite():
        raise ParseError("Unparseable decimal", row_number=row_number, field=field, value=raw)
    if value and value.adjusted() >= MAX_INTEGER_DIGITS:
        logger.error("Decimal out of range", phase="ParseDecimal", field=field,
                     value=raw, row=row_number)
        raise ParseError("Decimal out of range", row_number=row_number, field=field, value=raw)
    return value


def parse_decimal(raw: Optional[str], field: str, row_number: int) -> Decimal:
    """Empty or NULL gives 0."""
    value = parse_decimal_nullable(raw, field, row_number)
    return Decimal("0") if value is None else value


def parse_int_nullable(raw: Optional[str], field: str, row_number: int) -> Optional[int]:
    if is_blank(raw):
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ParseError("Unparseable integer", row_number=row_number, field=field, value=raw) from None


def parse_int(raw: Optional[str], field: str, row_number: int) -> int:
    value = parse_int_nullable(raw, field, row_number)
    if value is None:
        raise ParseError("Missing mandatory integer", row_number=row_number, field=field, value=raw)
    return value


def parse_timestamp(
    raw: Optional[str], field: str, row_number: int, local_tz: Optional[tzinfo] = None
) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp and return naive local wall-clock time.

    Offsets are honoured and converted to ``local_tz`` (host zone when None).
    Timestamps without offset are taken as already local.
    """
    if is_blank(raw):
        return None
    try:
        value = dtp.isoparse(raw.strip())
    except (ValueError, OverflowError):
        logger.error("Unparseable timestamp", phase="ParseDateTime", field=field,
                     value=raw, row=row_number)
        raise ParseError("Unparseable timestamp", row_number=row_number, field=field, value=raw) from None
    if value.tzinfo is None:
        return value
    return value.astimezone(local_tz).replace(tzinfo=None)


def parse_mileage(raw: Optional[str], row_number: int) -> Optional[int]:
    """
    Odometer reading. Integers are taken as-is, decimals are rounded half away
    from zero ("40066.50" -> 40067), anything else is a row error.
    """
    if is_blank(raw):
        return None
    text = raw.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = Decimal(text)
        if not value.is_finite():
            raise InvalidOperation
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        logger.error("Unparseable mileage", phase="ParseMileage", value=raw, row=row_number)
        raise ParseError("Unparseable mileage", row_number=row_number, field="Mileage", value=raw) from None


def parse_flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in TRUE_VALUES


def export_flag(raw: Optional[str]) -> str:
    return "Y" if (raw or "").strip().lower() == "true" else "N"


def round_money(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_discount(marked_amount: Decimal, sold_amount: Decimal) -> Optional[Decimal]:
    """Marked minus sold, only when positive."""
    discount = round_money(marked_amount - sold_amount)
    return discount if discount > 0 else None


def text_or_none(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


# -----------------------------------------------------------------------------
# Derivation rules
# -----------------------------------------------------------------------------
class DerivationRule(NamedTuple):
    name: str
    target: str
    applies: Callable[[Dict[str, Optional[Decimal]]], bool]
    derive: Callable[[Dict[str, Optional[Decimal]]], Decimal]


def _sell_unit_from_amount(v: Dict[str, Optional[Decimal]]) -> Decimal:
    return ((v["sell_amount"] or Decimal("0")) / v["quantity"]).quantize(
        UNIT_PRICE_PRECISION, rounding=ROUND_HALF_UP
    )


DERIVATION_RULES: Tuple[DerivationRule, ...] = (
    DerivationRule(
        "sell_unit_price_from_amount",
        "sell_unit_price",
        lambda v: v["sell_unit_price"] is None and bool(v["quantity"]),
        _sell_unit_from_amount,
    ),
    DerivationRule(
        "marked_unit_price_from_sell_unit_price",
        "marked_unit_price",
        lambda v: v["marked_unit_price"] is None and v["sell_unit_price"] is not None,
        lambda v: v["sell_unit_price"],
    ),
    DerivationRule(
        "marked_amount_from_sell_amount",
        "marked_amount",
        lambda v: v["marked_amount"] is None and v["sell_amount"] is not None,
        lambda v: v["sell_amount"],
    ),
)


def apply_derivations(values: Dict[str, Optional[Decimal]], row_number: int) -> List[str]:
    """Fill missing values in place, in rule order. Returns the names of applied rules."""
    applied = []
    for rule in DERIVATION_RULES:
        if rule.applies(values):
            values[rule.target] = rule.derive(values)
            applied.append(rule.name)
            logger.debug("Derived value", phase="Derivation", rule=rule.name,
                         target=rule.target, value=str(values[rule.target]), row=row_number)
    return applied


# -----------------------------------------------------------------------------
# Tender codes
# -----------------------------------------------------------------------------
class TenderCodePolicy:
    """Maps the payment flags of a row onto a tender code."""

    def __init__(
        self,
        mode: TenderMode = TenderMode.STRICT,
        card_code: str = "0",
        cash_code: str = "1",
        voucher_code: str = "2",
        unknown_code: str = "UNKN",
    ) -> None:
        self.mode = TenderMode(mode)
        self.card_code = card_code
        self.cash_code = cash_code
        self.voucher_code = voucher_code
        self.unknown_code = unknown_code

    def resolve(self, row: ExtractRow) -> str:
        card = parse_flag(row.payment_card)
        cash = parse_flag(row.payment_cash)
        voucher = parse_flag(row.payment_voucher)

        if self.mode == TenderMode.STRICT:
            if card and not cash and not voucher:
                return self.card_code
            logger.error("Unsupported payment flag combination", phase="TenderCode",
                         card=card, cash=cash, voucher=voucher, row=row.row_number)
            raise TenderCodeError(
                f"Unsupported payment flags card={card} cash={cash} voucher={voucher}",
                row_number=row.row_number, field="Payment_Card",
            )

        if card:
            return self.card_code
        if cash:
            return self.cash_code
        if voucher:
            return self.voucher_code
        return self.unknown_code


# -----------------------------------------------------------------------------
# Mapper
# -----------------------------------------------------------------------------
class RowMapper:
    """Builds destination facts from a resolved extract row."""

    def __init__(
        self,
        tender_policy: Optional[TenderCodePolicy] = None,
        local_tz: Optional[tzinfo] = None,
        last_changed_by_user: str = "fuel-import",
        payment_type: PaymentType = PaymentType.SAAS,
    ) -> None:
        self.tender_policy = tender_policy or TenderCodePolicy()
        self.local_tz = local_tz
        self.last_changed_by_user = last_changed_by_user
        self.payment_type = payment_type

    def start_timestamp(self, row: ExtractRow) -> datetime:
        value = parse_timestamp(row.transaction_start, "Transaction_StartDateTime",
                                row.row_number, self.local_tz)
        if value is None:
            raise ParseError("Missing transaction start timestamp", row_number=row.row_number,
                             field="Transaction_StartDateTime", value=row.transaction_start)
        return value

    def line_values(self, row: ExtractRow) -> Tuple[Dict[str, Decimal], List[str]]:
        n = row.row_number
        values: Dict[str, Optional[Decimal]] = {
            "quantity": parse_decimal(row.quantity, "TransactionLineItem_Quantity_Value", n),
            "sell_unit_price": parse_decimal_nullable(
                row.sell_unit_price, "TransactionLineItem_GrossSellUnitPrice_Amount", n),
            "marked_unit_price": parse_decimal_nullable(
                row.marked_unit_price, "TransactionLineItem_GrossMarkedUnitPrice_Amount", n),
            "sell_amount": parse_decimal_nullable(
                row.sell_amount, "TransactionLineItem_GrossSellAmount_Amount", n),
            "marked_amount": parse_decimal_nullable(
                row.marked_amount, "TransactionLineItem_GrossMarkedAmount_Amount", n),
        }
        applied = apply_derivations(values, n)
        resolved = {k: (v if v is not None else Decimal("0")) for k, v in values.items()}
        resolved["sell_amount"] = round_money(resolved["sell_amount"])
        resolved["marked_amount"] = round_money(resolved["marked_amount"])
        return resolved, applied

    def map_transaction(
        self, row: ExtractRow, keys: ResolvedKeys, now: Optional[datetime] = None
    ) -> TransactionFact:
        n = row.row_number
        now = now or datetime.now()
        values, applied = self.line_values(row)
        return TransactionFact(
            trans_datetime=self.start_timestamp(row),
            trans_end_datetime=parse_timestamp(row.transaction_end, "Transaction_EndDateTime",
                                               n, self.local_tz),
            trans_number=parse_int(row.transaction_number, "Transaction_Number", n),
            terminal_id=keys.terminal_id,
            quantity=values["quantity"],
            unit_price_sold=values["sell_unit_price"],
            unit_price_marked=values["marked_unit_price"],
            amount=values["sell_amount"],
            currency=text_or_none(row.currency),
            tax_rate=parse_decimal(row.tax_rate, "TransactionLineItem_TaxRate_Value", n),
            discount=compute_discount(values["marked_amount"], values["sell_amount"]),
            article_id=keys.article_id,
            article_code=text_or_none(row.article_code),
            article_description=text_or_none(row.article_description),
            device_address=parse_int_nullable(row.dispenser_number,
                                              "TransactionLineItem_DispenserNumber", n),
            sub_device_address=parse_int_nullable(row.nozzle_number,
                                                  "TransactionLineItem_NozzleNumber", n),
            tank_number=keys.tank_number,
            exported_common=export_flag(row.exported_common),
            exported_customer=export_flag(row.exported_customer),
            poll_datetime=now,
            insert_datetime=now,
            last_changed_datetime=now,
            last_changed_by_user=self.last_changed_by_user,
            derivations=applied,
        )

    def map_payment(
        self,
        row: ExtractRow,
        keys: ResolvedKeys,
        enrichment: Optional[CardEnrichment] = None,
        transaction_id: Optional[int] = None,
    ) -> PaymentFact:
        n = row.row_number
        values, _ = self.line_values(row)
        enrichment = enrichment or CardEnrichment(source="extract")
        employee_name = enrichment.employee_name or _driver_name(row)

        return PaymentFact(
            transaction_id=transaction_id,
            trans_datetime=self.start_timestamp(row),
            trans_number=parse_int(row.transaction_number, "Transaction_Number", n),
            terminal_id=keys.terminal_id,
            article_id=keys.article_id,
            article_code=text_or_none(row.article_code),
            article_description=text_or_none(row.article_description),
            quantity=values["quantity"],
            unit_price_sold=values["sell_unit_price"],
            amount=values["sell_amount"],
            amount_net=round_money(parse_decimal_nullable(
                row.net_total, "Transaction_NetSellTotalPrice_Amount", n)),
            amount_tax=round_money(parse_decimal_nullable(
                row.tax_total, "Transaction_SellTaxAmount_Amount", n)),
            tax_rate=parse_decimal(row.tax_rate, "TransactionLineItem_TaxRate_Value", n),
            currency=text_or_none(row.currency),
            device_address=parse_int_nullable(row.dispenser_number,
                                              "TransactionLineItem_DispenserNumber", n),
            sub_device_address=parse_int_nullable(row.nozzle_number,
                                                  "TransactionLineItem_NozzleNumber", n),
            station_code=text_or_none(row.station_code),
            terminal_number=text_or_none(row.terminal_number),
            mandator_id=keys.mandator_id,
            mandator_number=keys.mandator_number,
            mandator_description=keys.mandator_description,
            contract_id=keys.contract_id,
            contract_number=text_or_none(row.contract_number),
            card_pan=enrichment.card_pan or text_or_none(row.card_one_pan),
            card_number=enrichment.card_number or text_or_none(row.card_one_number),
            card_holder=enrichment.card_holder or text_or_none(row.card_one_holder),
            card_pan2=text_or_none(row.card_two_pan),
            card_number2=text_or_none(row.card_two_number),
            card_holder2=text_or_none(row.card_two_holder),
            card_id=enrichment.card_id or keys.card_id,
            card_id2=keys.card_id2,
            customer_number=text_or_none(row.customer_number),
            customer_name=keys.customer_name,
            customer_id=keys.customer_id,
            employee_number=enrichment.employee_number or text_or_none(row.driver_number),
            employee_name=employee_name,
            vehicle_license_plate=(enrichment.vehicle_license_plate
                                   or text_or_none(row.vehicle_license_plate)),
            vehicle_id=enrichment.vehicle_id or keys.vehicle_id,
            mileage=parse_mileage(row.mileage, n),
            tender_code=self.tender_policy.resolve(row),
            tank_id=keys.tank_id,
            dispenser_number=text_or_none(row.dispenser_number),
            nozzle_number=text_or_none(row.nozzle_number),
            fiscal_doc_type=text_or_none(row.fiscal_document_type),
            fiscal_amount=parse_decimal_nullable(
                row.fiscal_amount, "Transaction_AdditionalProperties_Fiscalization_Amount", n),
            fiscal_discount=parse_decimal_nullable(
                row.fiscal_discount, "Transaction_AdditionalProperties_Fiscalization_Discount", n),
            fiscal_tax_amount=parse_decimal_nullable(
                row.fiscal_tax_amount, "Transaction_AdditionalProperties_Fiscalization_TaxAmount", n),
            payment_type=self.payment_type,
            enrichment_source=enrichment.source,
        )


def _driver_name(row: ExtractRow) -> Optional[str]:
    name = f"{row.driver_first_name} {row.driver_last_name}".strip()
    return name or None
