# payrecon/core/dedup.py

"""
Deduplication of normalized rows by uid.

Merge policy: rows are folded in the order they are given (batches in upload
order, rows in file order). A later row's explicitly supplied, non-null fields
overwrite the earlier row's; raw_fields is the union keyed by source name.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from payrecon.core.normalizers import normalize_header, parse_amount, signed_amount
from payrecon.models import ImportRow, RowBatch, TotalsExpectation

logger = logging.getLogger(__name__)

TOTALS_NAME_MARKERS = ("total", "итог", "summary")

TOTALS_COUNT_HEADERS = {
    "count",
    "transactions",
    "transaction count",
    "количество",
    "кол-во",
    "количество транзакций",
}
TOTALS_AMOUNT_HEADERS = {
    "amount",
    "total",
    "total amount",
    "сумма",
    "итого",
    "общая сумма",
}

_NEVER_MERGED = ("uid", "raw_fields")


@dataclass
class MergeResult:
    """Deduplicated rows keyed by uid."""

    rows: dict[str, ImportRow] = field(default_factory=dict)
    valid_rows: int = 0
    duplicates_merged: int = 0
    cross_source_uids: int = 0

    @property
    def uids_unique(self) -> int:
        return len(self.rows)

    @property
    def total_amount(self) -> Decimal:
        return sum((r.amount for r in self.rows.values()), Decimal("0"))


def merge_rows(rows: Iterable[ImportRow]) -> MergeResult:
    """Collapse rows sharing a uid, later row wins per field."""
    result = MergeResult()
    sources: dict[str, set[str]] = {}

    for row in rows:
        result.valid_rows += 1
        sources.setdefault(row.uid, set()).add(row.source_file or "")

        existing = result.rows.get(row.uid)
        if existing is None:
            result.rows[row.uid] = row
            continue

        updates = {
            name: getattr(row, name)
            for name in row.model_fields_set
            if name not in _NEVER_MERGED and getattr(row, name) is not None
        }
        updates["raw_fields"] = {**existing.raw_fields, **row.raw_fields}
        # The sign follows the merged status, not the row the amount came from
        updates["amount"] = signed_amount(
            updates.get("amount", existing.amount),
            updates.get("status", existing.status),
        )
        result.rows[row.uid] = existing.model_copy(update=updates)

    result.duplicates_merged = result.valid_rows - len(result.rows)
    result.cross_source_uids = sum(1 for s in sources.values() if len(s) > 1)
    return result


# ============================================
# Totals (control) files
# ============================================

def is_totals_file(name: Optional[str]) -> bool:
    """A control-total file is recognized by its name."""
    if not name:
        return False
    lower = name.lower()
    return any(marker in lower for marker in TOTALS_NAME_MARKERS)


def parse_totals_batch(batch: RowBatch) -> TotalsExpectation:
    """
    Read expected count and amount from a totals file.

    Values are summed across rows (one row per currency or payment method).
    Cells that cannot be read are ignored; totals only feed a comparison.
    """
    count: Optional[int] = None
    amount: Optional[Decimal] = None

    for row in batch.rows:
        for header, value in row.items():
            h = normalize_header(header)
            if h not in TOTALS_COUNT_HEADERS and h not in TOTALS_AMOUNT_HEADERS:
                continue
            try:
                parsed = parse_amount(value)
            except ValueError:
                logger.debug(f"Ignoring unreadable totals cell {header!r} in {batch.name}")
                continue
            if parsed is None:
                continue
            if h in TOTALS_COUNT_HEADERS:
                count = (count or 0) + int(parsed)
            else:
                amount = (amount or Decimal("0")) + parsed

    return TotalsExpectation(
        expected_count=count,
        expected_amount=amount,
        source_file=batch.name,
    )


def combine_totals(
    current: Optional[TotalsExpectation],
    new: TotalsExpectation,
) -> TotalsExpectation:
    """Accumulate several totals files into one expectation."""
    if current is None:
        return new

    def _add(a, b):
        if a is None:
            return b
        if b is None:
            return a
        return a + b

    return TotalsExpectation(
        expected_count=_add(current.expected_count, new.expected_count),
        expected_amount=_add(current.expected_amount, new.expected_amount),
        source_file=f"{current.source_file}, {new.source_file}",
    )
