#!/usr/bin/env python3
"""
Name Hygiene Module
Cleans product descriptions captured from receipt lines and repairs
common OCR confusions in recognized text before it is parsed.

- Strips leading article numbers / EANs (6-13 digits)
- Strips trailing currency markers and tax asterisks
- Removes quantity / weight annotations once they have been extracted
- Collapses whitespace
- Reads O / l / I as digits inside price tokens ("1O,99" -> "10,99")
- Drops isolated noise characters
"""

import re
import logging
from typing import Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

LEADING_CODE = re.compile(r'^\d{6,13}\s+')
TRAILING_NOISE = re.compile(r'(?:\s+(?:EUR|€|\*))+\s*$')
TRAILING_SEPARATORS = re.compile(r'[\s\-:=.,×@]+$')
WHITESPACE = re.compile(r'\s+')
# Price-shaped token with at least one real digit before the separator
PRICE_TOKEN = re.compile(r'(?<!\w)(?=[\dOlI]*\d)[\dOlI]{1,4}[.,][\dOlI]{2}(?!\w)')
PRICE_CONFUSIONS = str.maketrans({'O': '0', 'l': '1', 'I': '1'})
# Lone symbol surrounded by whitespace; symbols used by receipt patterns survive
ISOLATED_NOISE = re.compile(r'(?<!\S)[^\w\s€.,\-/()*=@%:](?!\S)')


def split_article_number(name: str) -> Tuple[str, Optional[str]]:
    """
    Split a leading article number off a description
    
    Returns:
        Tuple of (remaining name, article number or None)
    """
    match = LEADING_CODE.match(name or '')
    if not match:
        return name, None
    return name[match.end():], match.group(0).strip()


def remove_annotation(name: str, pattern: Optional[Pattern]) -> str:
    """Remove the first match of an annotation pattern (quantity, weight) from a name"""
    if not name or pattern is None:
        return name
    return pattern.sub(' ', name, count=1)


def clean_product_name(name: str) -> str:
    """
    Normalize a product description
    
    Args:
        name: Raw description captured by a product pattern
        
    Returns:
        Cleaned name (may be empty when nothing but noise remained)
    """
    if not name:
        return ''
    
    cleaned = WHITESPACE.sub(' ', name).strip()
    cleaned = TRAILING_NOISE.sub('', cleaned)
    cleaned = TRAILING_SEPARATORS.sub('', cleaned)
    return cleaned.strip()


def fix_price_confusions(text: str) -> str:
    """Replace letters misread for digits inside price tokens"""
    if not text:
        return text
    return PRICE_TOKEN.sub(lambda m: m.group(0).translate(PRICE_CONFUSIONS), text)


def strip_isolated_noise(text: str) -> str:
    """Remove stray symbols that stand alone between spaces (inner spacing is kept)"""
    if not text:
        return text
    return ISOLATED_NOISE.sub('', text).strip()
