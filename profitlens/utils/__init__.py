"""
Utility Module
"""
from .dates import DateRange, parse_iso_date, ms_to_date_string
from .money import safe_number, safe_divide, round_money, percentage_change

__all__ = [
    "DateRange",
    "parse_iso_date",
    "ms_to_date_string",
    "safe_number",
    "safe_divide",
    "round_money",
    "percentage_change",
]
