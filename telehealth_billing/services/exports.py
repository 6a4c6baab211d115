"""
CSV / JSON serialization for analytics reports and billing record exports.

JSON keeps Decimals as strings so amounts survive a round trip exactly;
CSV follows the section,key,value layout used for summary downloads.
"""
from __future__ import annotations

import csv
import dataclasses
import enum
import io
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List

from telehealth_billing.utils.helpers import utcnow

from .errors import ValidationError

SUPPORTED_FORMATS = ("csv", "json")
CONTENT_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "json": "application/json",
}

RECORD_COLUMNS = [
    "id",
    "invoice_number",
    "user_id",
    "subscription_id",
    "type",
    "status",
    "amount",
    "tax_amount",
    "shipping_amount",
    "total_amount",
    "amount_paid",
    "currency",
    "payment_method",
    "transaction_id",
    "billing_date",
    "due_date",
    "paid_at",
    "created_date",
]


@dataclass(frozen=True)
class ExportFile:
    content: bytes
    filename: str
    content_type: str


def normalize_format(fmt: str | None) -> str:
    value = (fmt or "").strip().lower()
    if value not in SUPPORTED_FORMATS:
        raise ValidationError(f"Unsupported export format: {fmt!r} (use csv or json)")
    return value


def to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _scalar(value: Any) -> str:
    value = to_jsonable(value)
    return "" if value is None else str(value)


def _report_rows(report: Any) -> List[List[str]]:
    """Flatten a report into (section, key, value) rows; list items are keyed by their first field."""
    rows: List[List[str]] = []

    def walk(section: str, prefix: str, obj: Any) -> None:
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            key = f"{prefix}{f.name}"
            if dataclasses.is_dataclass(value):
                walk(section, f"{key}.", value)
            elif isinstance(value, list):
                for item in value:
                    if not dataclasses.is_dataclass(item):
                        rows.append([section, key, _scalar(item)])
                        continue
                    item_fields = dataclasses.fields(item)
                    label = _scalar(getattr(item, item_fields[0].name))
                    for sub in item_fields[1:]:
                        rows.append([section, f"{key}[{label}].{sub.name}", _scalar(getattr(item, sub.name))])
            else:
                rows.append([section, key, _scalar(value)])

    for f in dataclasses.fields(report):
        value = getattr(report, f.name)
        if dataclasses.is_dataclass(value):
            walk(f.name, "", value)
        else:
            rows.append(["report", f.name, _scalar(value)])
    return rows


def export_report(report: Any, fmt: str) -> ExportFile:
    fmt = normalize_format(fmt)
    stamp = utcnow().strftime("%Y%m%d")
    filename = f"analytics_{stamp}.{fmt}"

    if fmt == "json":
        body = json.dumps(to_jsonable(report), indent=2, sort_keys=True)
    else:
        buf = io.StringIO(newline="")
        w = csv.writer(buf)
        w.writerow(["section", "key", "value"])
        w.writerows(_report_rows(report))
        body = buf.getvalue()
        buf.close()
    return ExportFile(content=body.encode("utf-8"), filename=filename, content_type=CONTENT_TYPES[fmt])


def export_records(records: Iterable[Any], fmt: str) -> ExportFile:
    fmt = normalize_format(fmt)
    stamp = utcnow().strftime("%Y%m%d")
    filename = f"billing_records_{stamp}.{fmt}"
    rows = [r.to_dict() for r in records]

    if fmt == "json":
        body = json.dumps([{c: to_jsonable(row.get(c)) for c in RECORD_COLUMNS} for row in rows], indent=2)
    else:
        buf = io.StringIO(newline="")
        w = csv.writer(buf)
        w.writerow(RECORD_COLUMNS)
        for row in rows:
            w.writerow([_scalar(row.get(c)) for c in RECORD_COLUMNS])
        body = buf.getvalue()
        buf.close()
    return ExportFile(content=body.encode("utf-8"), filename=filename, content_type=CONTENT_TYPES[fmt])
