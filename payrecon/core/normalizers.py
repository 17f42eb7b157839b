# payrecon/core/normalizers.py

"""
Row normalization for every payment source.

Turns one already-tokenized row (header -> value) into an ImportRow, or a
RowError when the row cannot be used. Pure: never touches storage.
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import re

from payrecon.models import ImportRow, RowError, PaymentStatus

SPREADSHEET_EPOCH = datetime(1899, 12, 30)
INLINE_SOURCE = "inline"

NEGATIVE_STATUSES = ("refunded", "void", "chargeback")

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_SERVER_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}\s+[+-]\d{4}$")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")
_THOUSANDS_COMMA = re.compile(r"^-?\d{1,3},\d{3}$")

TEXT_DATE_FORMATS = [
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%Y/%m/%d",
]


# ============================================
# Headers & column maps
# ============================================

def normalize_header(header: Any) -> str:
    """
    Normalize a column header for lookup.

    - Strip BOM / zero-width characters
    - Collapse whitespace
    - Lowercase
    """
    if header is None:
        return ""
    h = _ZERO_WIDTH.sub("", str(header))
    h = re.sub(r"\s+", " ", h).strip()
    return h.lower()


def build_column_map(raw_map: dict[str, str]) -> dict[str, str]:
    """Key a readable column map by normalized header."""
    return {normalize_header(k): v for k, v in raw_map.items()}


# bePaid statement export (cards and ERIP). Only the canonical fields are
# interpreted; every other column stays in raw_fields.
STATEMENT_COLUMN_MAP = build_column_map({
    "UID": "uid",
    "Статус": "status",
    "Status": "status",
    "Сумма": "amount",
    "Amount": "amount",
    "Валюта": "currency",
    "Currency": "currency",
    "Тип транзакции": "transaction_type",
    "Transaction type": "transaction_type",
    "Дата оплаты": "paid_at",
    "Paid at": "paid_at",
    "Дата создания": "created_at",
    "Created at": "created_at",
})

# Legacy staging queue rows, as read from the queue table.
QUEUE_COLUMN_MAP = build_column_map({
    "bepaid_uid": "uid",
    "amount": "amount",
    "currency": "currency",
    "status_normalized": "status",
    "transaction_type": "transaction_type",
    "paid_at": "paid_at",
    "created_at": "created_at",
})

# Transactions delivered by the provider webhook/API sync.
PROVIDER_SYNC_COLUMN_MAP = build_column_map({
    "uid": "uid",
    "amount": "amount",
    "currency": "currency",
    "status": "status",
    "type": "transaction_type",
    "transaction_type": "transaction_type",
    "paid_at": "paid_at",
    "created_at": "created_at",
})


# ============================================
# Field parsers
# ============================================

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a money amount.

    Handles:
    - ints, floats, Decimals
    - "800.00", "800,00", "1 234,56", "1,234.56", "1.234,56"
    - currency symbols and (non-breaking) spaces

    A lone comma followed by exactly three digits is a thousands separator
    ("1,234" is 1234); a lone dot is always decimal ("1.234" is 1.234).

    Returns None for blank input, raises ValueError when unparsable.
    """
    if _is_blank(value):
        return None

    if isinstance(value, bool):
        raise ValueError(f"not an amount: {value!r}")

    if isinstance(value, (int, Decimal)):
        return Decimal(value)

    if isinstance(value, float):
        return Decimal(str(value))

    cleaned = re.sub(r"[^\d,.\-]", "", str(value))
    if not re.search(r"\d", cleaned):
        raise ValueError(f"not an amount: {value!r}")

    if "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") == 1 and _THOUSANDS_COMMA.match(cleaned):
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") == 1:
        cleaned = cleaned.replace(",", ".")
    elif cleaned.count(",") > 1:
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"not an amount: {value!r}")


def parse_timestamp(value: Any, default_tz: tzinfo) -> Optional[datetime]:
    """
    Parse a payment timestamp.

    Handles, in order:
    - datetime / date objects
    - numbers: spreadsheet serials (days since 1899-12-30) or Unix seconds
    - "2026-01-06 09:58:06 +0300" (provider export)
    - ISO 8601
    - DD.MM.YYYY [HH:MM[:SS]], YYYY-MM-DD, DD/MM/YYYY, YYYY/MM/DD

    Naive results get default_tz. Returns None for blank input, raises
    ValueError when nothing parses.
    """
    if _is_blank(value):
        return None

    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        parsed = _from_number(float(value))
    elif isinstance(value, str):
        parsed = _from_text(value.strip())

    if parsed is None:
        raise ValueError(f"unrecognized date: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def _from_number(number: float) -> Optional[datetime]:
    if 0 < number < 100000:
        return SPREADSHEET_EPOCH + timedelta(days=number)
    if number >= 1_000_000_000:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    return None


def _from_text(text: str) -> Optional[datetime]:
    if _NUMERIC.match(text):
        return _from_number(float(text))

    if _SERVER_DATE.match(text):
        try:
            return datetime.strptime(text, "%Y-%m-%d %H:%M:%S %z")
        except ValueError:
            pass

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass

    for fmt in TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    return None


def normalize_currency(value: Any) -> Optional[str]:
    """Three-letter uppercase currency code, None when blank."""
    if _is_blank(value):
        return None
    code = str(value).strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", code):
        raise ValueError(f"invalid currency: {value!r}")
    return code


def normalize_status(status: Any, transaction_type: Any = None) -> PaymentStatus:
    """
    Map a provider/localized status onto PaymentStatus.

    The transaction type wins over a successful (or blank) status:
    a successful refund is "refunded", a successful cancellation is "void".
    """
    s = "" if status is None else str(status).strip().lower()
    t = "" if transaction_type is None else str(transaction_type).strip().lower()

    base = _status_from_text(s) if s else "unknown"

    if base in ("successful", "unknown"):
        if "возврат" in t or "refund" in t:
            return "refunded"
        if "отмен" in t or "cancel" in t or "void" in t:
            return "void"
        if "chargeback" in t or "чарджб" in t:
            return "chargeback"

    return base


def _status_from_text(s: str) -> PaymentStatus:
    # "неуспеш" must be checked before "успеш"
    if "неуспеш" in s or s in ("failed", "error", "declined", "expired", "ошибка"):
        return "failed"
    if "успеш" in s or s in ("successful", "succeeded", "success", "completed", "paid"):
        return "successful"
    if "возврат" in s or s in ("refunded", "refund"):
        return "refunded"
    if "отмен" in s or s in ("void", "voided", "cancelled", "canceled"):
        return "void"
    if "чарджб" in s or s == "chargeback":
        return "chargeback"
    if "обработ" in s or "ожида" in s or s in ("pending", "processing", "incomplete"):
        return "pending"
    return "unknown"


def signed_amount(amount: Decimal, status: str) -> Decimal:
    """Refunds, voids and chargebacks are negative in the ledger."""
    if status in NEGATIVE_STATUSES and amount > 0:
        return -amount
    return amount


# ============================================
# Row normalization
# ============================================

def normalize_row(
    raw: dict[str, Any],
    column_map: dict[str, str],
    row_number: int,
    source_file: Optional[str] = None,
    default_tz: tzinfo = timezone(timedelta(hours=3)),
) -> ImportRow | RowError:
    """
    Normalize one tokenized row.

    Unmapped columns are kept verbatim in raw_fields; they never fail a row.
    A missing currency is left unset; the default currency is applied when
    a ledger row is created.
    """
    fields: dict[str, Any] = {}
    raw_strings: dict[str, str] = {}

    for header, value in raw.items():
        raw_strings[str(header)] = "" if value is None else str(value)
        field = column_map.get(normalize_header(header))
        if field and field not in fields and not _is_blank(value):
            fields[field] = value

    def error(reason: str) -> RowError:
        return RowError(row=row_number, file=source_file, reason=reason)

    uid = str(fields.get("uid", "")).strip()
    if not uid:
        return error("missing_uid")

    try:
        amount = parse_amount(fields.get("amount"))
    except ValueError:
        return error("invalid_amount")
    if amount is None:
        return error("missing_amount")

    try:
        paid_at = parse_timestamp(fields.get("paid_at"), default_tz)
        if paid_at is None:
            paid_at = parse_timestamp(fields.get("created_at"), default_tz)
    except ValueError:
        return error("invalid_date")

    try:
        currency = normalize_currency(fields.get("currency"))
    except ValueError:
        return error("invalid_currency")

    transaction_type = str(fields.get("transaction_type", "")).strip()
    status = normalize_status(fields.get("status"), transaction_type)

    # Only supplied values are passed, so the merger can tell "absent" apart
    # from a default.
    supplied: dict[str, Any] = {}
    if currency is not None:
        supplied["currency"] = currency
    if transaction_type:
        supplied["transaction_type"] = transaction_type
    if status != "unknown":
        supplied["status"] = status
    if paid_at is not None:
        supplied["paid_at"] = paid_at

    return ImportRow(
        uid=uid,
        amount=signed_amount(amount, status),
        raw_fields={source_file or INLINE_SOURCE: raw_strings},
        source_file=source_file,
        row_number=row_number,
        **supplied,
    )
