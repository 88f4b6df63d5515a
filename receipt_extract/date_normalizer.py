#!/usr/bin/env python3
"""
Date Normalization Module
Finds the transaction date printed on a receipt.

Date placement varies between merchants (header, footer, next to the
cashier id), so the whole line sequence is scanned; the first candidate that
parses with one of the profile's date formats wins.
"""

import re
import logging
from datetime import date, datetime
from typing import Any, Iterable, Optional, Pattern, Sequence

logger = logging.getLogger(__name__)

DEFAULT_DATE_PATTERN = re.compile(r'(?P<date>\d{4}-\d{2}-\d{2}|\d{1,2}[./]\d{1,2}[./]\d{2,4})')

DEFAULT_DATE_FORMATS = (
    '%d.%m.%Y',      # 24.03.2025
    '%d.%m.%y',      # 24.03.25
    '%Y-%m-%d',      # 2025-03-24
    '%d/%m/%Y',      # 24/03/2025
    '%d/%m/%y',      # 24/03/25
)


def parse_date_value(date_value: Any, date_formats: Sequence[str] = DEFAULT_DATE_FORMATS) -> Optional[date]:
    """
    Parse a date value into a calendar date
    
    Args:
        date_value: String, date or datetime
        date_formats: strptime formats tried in order
        
    Returns:
        date or None if the value is not a valid date
    """
    if not date_value:
        return None
    
    if isinstance(date_value, datetime):
        return date_value.date()
    if isinstance(date_value, date):
        return date_value
    
    date_str = str(date_value).strip()
    if not date_str:
        return None
    
    for fmt in date_formats:
        try:
            return datetime.strptime(date_str, fmt).date()
        except ValueError:
            continue
    
    logger.debug(f"Could not parse date string: {date_str}")
    return None


def find_receipt_date(lines: Iterable[str], date_pattern: Optional[Pattern] = None,
                      date_formats: Sequence[str] = ()) -> Optional[date]:
    """
    Find the first parseable date in the receipt lines
    
    Args:
        lines: Receipt text lines (full sequence, not state-gated)
        date_pattern: Regex with a 'date' group (or whole match) locating candidates
        date_formats: strptime formats for the candidates
        
    Returns:
        First valid date, or None
    """
    pattern = date_pattern or DEFAULT_DATE_PATTERN
    formats = tuple(date_formats) or DEFAULT_DATE_FORMATS
    
    for line in lines:
        for match in pattern.finditer(line):
            candidate = match.group('date') if 'date' in pattern.groupindex else match.group(0)
            parsed = parse_date_value(candidate, formats)
            if parsed:
                logger.debug(f"Found receipt date {parsed.isoformat()} in line: {line!r}")
                return parsed
    
    return None
