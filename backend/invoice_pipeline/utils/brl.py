"""Brazilian number and date notation helpers ("1.234,56", "15/03/2024")."""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any

_THOUSANDS_ONLY = re.compile(r"^-?\d{1,3}(\.\d{3})+$")
_STRIP = re.compile(r"(?i)r\$|kwh|kw|kvarh|%|\s")
_BR_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_MONTH_YEAR = re.compile(r"^(\d{1,2})[/-](\d{4})$")

_MONTH_NAMES = {
    "JAN": 1,
    "FEV": 2,
    "MAR": 3,
    "ABR": 4,
    "MAI": 5,
    "JUN": 6,
    "JUL": 7,
    "AGO": 8,
    "SET": 9,
    "OUT": 10,
    "NOV": 11,
    "DEZ": 12,
}


def parse_brl_number(value: Any) -> float | None:
    """Parse a number written either in Brazilian or plain notation.

    ``"1.234,56"`` -> 1234.56, ``"1234,5"`` -> 1234.5, ``"1.250"`` -> 1250.0,
    ``"R$ 890,45"`` -> 890.45. Returns ``None`` for blanks, garbage and
    non-finite values (``"NaN"``, ``"inf"``).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = _STRIP.sub("", str(value))
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif _THOUSANDS_ONLY.match(text):
        text = text.replace(".", "")
    try:
        parsed = float(text)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_br_date(value: Any) -> date | None:
    """Accept ISO dates, ``dd/mm/yyyy`` and ``dd/mm/yy``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    match = _BR_DATE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        return date(year, month, day)
    return date.fromisoformat(text[:10])


def normalize_reference_month(value: Any) -> str | None:
    """Normalize ``03/2024``, ``MAR/2024`` or ``2024-03`` to ``YYYY-MM``."""
    if value is None:
        return None
    text = str(value).strip().upper()
    if not text:
        return None
    match = _MONTH_YEAR.match(text)
    if match:
        return f"{int(match.group(2)):04d}-{int(match.group(1)):02d}"
    parts = re.split(r"[/\-\s]+", text)
    if len(parts) == 2 and parts[0][:3] in _MONTH_NAMES and parts[1].isdigit():
        return f"{int(parts[1]):04d}-{_MONTH_NAMES[parts[0][:3]]:02d}"
    return text
