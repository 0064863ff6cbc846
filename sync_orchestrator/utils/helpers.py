"""
Helper utilities
"""
import hashlib
import json
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as date_parser


def hash_data(data: Any) -> str:
    """Create hash of data for caching/deduplication"""
    data_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def parse_date(value: Any) -> Optional[date]:
    """Parse an upstream date or timestamp into a date, None if empty or unparseable"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        return None


def to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
