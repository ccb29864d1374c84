"""
Statement Ingestion

Turns externally supplied bank statement rows into normalized entries:
- Rows missing date, description or amount are skipped
- Rows whose amount or date does not parse are skipped
- Sign decides the type (>= 0 income, < 0 expense); stored amount is absolute

Skipped rows are counted, not reported individually. Only "no valid rows at
all" fails the import.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Optional

from database.reconciliation_models import EntryType
from reconciliation.balance import CENT, MAX_AMOUNT
from reconciliation.errors import NoValidEntriesError

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d")

_AMOUNT_STRIP = re.compile(r"[\s$,]")


@dataclass(frozen=True)
class NormalizedStatementEntry:
    date: date
    description: str
    amount: Decimal
    type: EntryType


@dataclass
class StatementImportResult:
    entries: List[NormalizedStatementEntry] = field(default_factory=list)
    skipped_count: int = 0


def parse_amount(raw: Any) -> Optional[Decimal]:
    """
    Parse a signed decimal amount; '(4.50)' is negative.

    None if unparsable, or if the magnitude does not fit a stored amount.
    """
    if raw is None:
        return None
    if isinstance(raw, (int, Decimal)) and not isinstance(raw, bool):
        value = Decimal(raw)
    elif isinstance(raw, float):
        value = Decimal(str(raw))
    else:
        text = _AMOUNT_STRIP.sub("", str(raw))
        negative = text.startswith("(") and text.endswith(")")
        if negative:
            text = text[1:-1]
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
        if negative:
            value = -value

    if not value.is_finite():
        return None
    try:
        value = value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    if abs(value) > MAX_AMOUNT:
        return None
    return value


def parse_statement_date(raw: Any) -> Optional[date]:
    """Parse ISO dates, ISO datetimes and US-style dates. None if unparsable."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if raw is None:
        return None

    text = str(raw).strip()
    if not text:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _get(row: Mapping[str, Any], key: str) -> Any:
    # Column names are matched case-insensitively
    for k, v in row.items():
        if k is not None and str(k).strip().lower() == key:
            return v
    return None


def normalize_statement_row(row: Mapping[str, Any]) -> Optional[NormalizedStatementEntry]:
    """Normalize one raw row, or None when it must be skipped."""
    raw_date = _get(row, "date")
    raw_description = _get(row, "description")
    raw_amount = _get(row, "amount")

    if raw_date in (None, "") or raw_amount in (None, ""):
        return None

    description = str(raw_description).strip() if raw_description is not None else ""
    if not description:
        return None

    amount = parse_amount(raw_amount)
    entry_date = parse_statement_date(raw_date)
    if amount is None or entry_date is None:
        return None

    return NormalizedStatementEntry(
        date=entry_date,
        description=description,
        amount=abs(amount),
        type=EntryType.INCOME if amount >= 0 else EntryType.EXPENSE,
    )


def normalize_statement_rows(rows: Iterable[Mapping[str, Any]]) -> StatementImportResult:
    """
    Normalize raw statement rows.

    Raises:
        NoValidEntriesError: no row survived normalization
    """
    result = StatementImportResult()

    for row in rows:
        entry = normalize_statement_row(row) if isinstance(row, Mapping) else None
        if entry is None:
            result.skipped_count += 1
        else:
            result.entries.append(entry)

    if not result.entries:
        raise NoValidEntriesError(skipped_count=result.skipped_count)

    return result


def parse_statement_csv(file_content: str) -> List[Dict[str, str]]:
    """
    Parse statement CSV content into row dictionaries.

    The first line is the header and must name date, description and amount
    columns (any case, any order).
    """
    reader = csv.DictReader(io.StringIO(file_content.lstrip("\ufeff")))
    return [row for row in reader if any((v or "").strip() for v in row.values() if isinstance(v, str))]
