import csv
import math
import re
from datetime import date, datetime
from io import StringIO
from typing import Optional, Sequence

from models import Transaction
from schemas import StatementRow

DATE_HEADERS = ("date",)
DESCRIPTION_HEADERS = ("description",)
AMOUNT_HEADERS = ("amount", "debit")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%B %d %Y",
)

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_LEADING_NUMBER = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValueError(f"Invalid date: {value}") from None


def parse_amount(value: str) -> float:
    """Read a statement amount as a non-negative magnitude.

    Everything but digits, ``.`` and ``-`` is dropped first, so currency
    symbols, thousands separators and spaces are tolerated. The longest
    leading number wins: ``"1.234.56"`` reads as ``1.234``.
    """
    cleaned = _NON_NUMERIC.sub("", value)
    match = _LEADING_NUMBER.match(cleaned)
    if not match:
        raise ValueError(f"Invalid amount: {value}")
    amount = abs(float(match.group(0)))
    if not math.isfinite(amount):
        raise ValueError(f"Invalid amount: {value}")
    return amount


def _pick(row: dict[str, str], headers: Sequence[str]) -> Optional[str]:
    for header in headers:
        raw = row.get(header)
        if raw is not None and raw.strip():
            return raw.strip()
    return None


def _has_values(cells: Sequence[str]) -> bool:
    return any(cell.strip() for cell in cells)


def _to_row(fieldnames: Sequence[str], cells: Sequence[str]) -> dict[str, str]:
    # Cells beyond the header are ignored; missing trailing cells stay absent.
    row: dict[str, str] = {}
    for name, value in zip(fieldnames, cells):
        if name and name not in row:
            row[name] = value
    return row


def parse_statement(content: str) -> tuple[list[StatementRow], list[str]]:
    """Parse a delimited bank statement export.

    Rows without a date or an amount are skipped silently. Rows where either is
    present but malformed produce one error message each and parsing carries
    on, so the caller sees every bad row in a single pass. Record boundaries
    come from the csv module, so quoted cells may span lines.
    """
    reader = csv.reader(StringIO(content.lstrip("\ufeff"), newline=""))
    header = next((cells for cells in reader if _has_values(cells)), None)
    if header is None:
        return [], []
    fieldnames = [cell.strip().lower() for cell in header]

    rows: list[StatementRow] = []
    errors: list[str] = []
    for cells in reader:
        if not _has_values(cells):
            continue
        row = _to_row(fieldnames, cells)
        date_raw = _pick(row, DATE_HEADERS)
        amount_raw = _pick(row, AMOUNT_HEADERS)
        if not date_raw or not amount_raw:
            continue
        description = _pick(row, DESCRIPTION_HEADERS) or ""
        try:
            rows.append(
                StatementRow(
                    date=parse_date(date_raw),
                    description=description,
                    amount=parse_amount(amount_raw),
                )
            )
        except ValueError as exc:
            errors.append(str(exc))
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Description", "Amount", "Bucket"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description or ""),
                f"{txn.amount:.2f}",
                sanitize_csv_value(txn.bucket.name if txn.bucket else ""),
            ]
        )
    return output.getvalue()
