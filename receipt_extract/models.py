#!/usr/bin/env python3
"""
Receipt Data Model
Immutable records passed between the pipeline stages.

TextFragment -> ReconstructedLine -> MerchantMatch -> ParsedReceipt -> ConfidenceResult

Everything except MerchantProfile is created fresh per pipeline invocation.
Prices are Decimal quantized to cents; currency is not modelled.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Pattern, Tuple

CENT = Decimal('0.01')
PRICE_CEILING = Decimal('1000.00')

PRICE_LOCATIONS = ('same_line', 'next_line', 'separate_column')

COLUMN_DESCRIPTION = 'description'
COLUMN_PRICE = 'price'


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a receipt amount ("2,50", "1.29", "-0,50", "3,79 EUR") into a Decimal

    Returns:
        Decimal quantized to cents or None if the value holds no amount
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    if isinstance(value, (int, float)):
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    text = str(value).strip()
    match = re.search(r'-?\d+(?:[.,]\d+)?', text)
    if not match:
        return None
    try:
        return Decimal(match.group(0).replace(',', '.')).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


@dataclass(frozen=True)
class TextFragment:
    """One piece of recognized text with its normalized bounding box (top-left origin)"""
    text: str
    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2.0

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2.0

    @property
    def right(self) -> float:
        return self.x + self.width


@dataclass(frozen=True)
class ReconstructedLine:
    """Fragments of one visual row (or one column segment of a row)"""
    row_index: int
    fragments: Tuple[TextFragment, ...]
    column: Optional[str] = None

    @property
    def text(self) -> str:
        return ' '.join(f.text.strip() for f in self.fragments if f.text.strip())

    @classmethod
    def from_text(cls, text: str, row_index: int, column: Optional[str] = None) -> 'ReconstructedLine':
        """Build a line from plain text (used for pre-split text input)"""
        fragment = TextFragment(text=text, x=0.0, y=0.0, width=1.0, height=0.0)
        return cls(row_index=row_index, fragments=(fragment,), column=column)


@dataclass(frozen=True)
class FooterSignal:
    """Footer keyword (or all-of keyword group) with its partial detection score"""
    tokens: Tuple[str, ...]
    score: float

    def matches(self, line_upper: str) -> bool:
        return all(token in line_upper for token in self.tokens)


@dataclass(frozen=True)
class MerchantProfile:
    """
    Declarative extraction configuration for one merchant.

    Built once by MerchantProfileRegistry from YAML and never mutated.
    A profile with is_generic=True carries no merchant identity.
    """
    name: str
    name_variants: Tuple[str, ...]
    product_pattern: Pattern
    total_pattern: Optional[Pattern]
    date_pattern: Optional[Pattern]
    date_formats: Tuple[str, ...]
    price_only_pattern: Optional[Pattern]
    price_location: str = 'same_line'
    has_article_numbers: bool = False
    is_multi_line_product: bool = False
    article_number_pattern: Optional[Pattern] = None
    quantity_patterns: Tuple[Pattern, ...] = ()
    weight_patterns: Tuple[Pattern, ...] = ()
    header_markers: Tuple[Pattern, ...] = ()
    start_markers: Tuple[Pattern, ...] = ()
    end_markers: Tuple[Pattern, ...] = ()
    ignore_markers: Tuple[Pattern, ...] = ()
    footer_signals: Tuple[FooterSignal, ...] = ()
    structure_low: int = 2
    structure_high: int = 5
    structure_mid_score: float = 0.6
    structure_keywords: Tuple[Pattern, ...] = ()
    structure_keyword_score: float = 0.0
    total_lookahead: int = 2
    min_name_length: int = 2
    is_generic: bool = False

    @property
    def merchant_name(self) -> Optional[str]:
        return None if self.is_generic else self.name

    def annotation_patterns(self, weight_first: bool = False) -> List[Tuple[str, Pattern]]:
        """(kind, pattern) pairs for the quantity and weight sub-patterns, in lookup order"""
        quantity = [('quantity', p) for p in self.quantity_patterns]
        weight = [('weight', p) for p in self.weight_patterns]
        return weight + quantity if weight_first else quantity + weight


@dataclass(frozen=True)
class MerchantMatch:
    """Winning profile with overall detection confidence and raw signal scores"""
    profile: MerchantProfile
    confidence: float
    signals: Dict[str, float] = field(default_factory=dict)

    @property
    def merchant_name(self) -> str:
        return self.profile.name


@dataclass(frozen=True)
class ExtractedProduct:
    """
    One purchased line item.

    price is the amount charged for the line; unit_price is set when a
    quantity or weight annotation was recognized.
    """
    name: str
    price: Decimal
    quantity: Optional[Decimal] = None
    weight: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    article_number: Optional[str] = None
    raw_line: str = ''

    @property
    def exceeds_ceiling(self) -> bool:
        return self.price >= PRICE_CEILING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'price': float(self.price),
            'quantity': float(self.quantity) if self.quantity is not None else None,
            'weight': float(self.weight) if self.weight is not None else None,
            'unit_price': float(self.unit_price) if self.unit_price is not None else None,
            'article_number': self.article_number,
            'raw_line': self.raw_line,
        }


@dataclass(frozen=True)
class ParsedReceipt:
    """Extraction result; total is what the receipt printed, never the product sum"""
    merchant_name: Optional[str]
    products: Tuple[ExtractedProduct, ...] = ()
    total: Optional[Decimal] = None
    transaction_date: Optional[date] = None

    @property
    def product_sum(self) -> Decimal:
        return sum((p.price for p in self.products), Decimal('0.00'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'merchant_name': self.merchant_name,
            'products': [p.to_dict() for p in self.products],
            'total': float(self.total) if self.total is not None else None,
            'product_sum': float(self.product_sum),
            'transaction_date': self.transaction_date.isoformat() if self.transaction_date else None,
        }


@dataclass(frozen=True)
class ConfidenceResult:
    """Seven-factor quality score, its rating and the issues found"""
    overall: float
    factors: Dict[str, float]
    rating: str
    issues: Tuple[str, ...] = ()

    @property
    def needs_review(self) -> bool:
        return self.rating != 'high'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overall': self.overall,
            'rating': self.rating,
            'factors': dict(self.factors),
            'issues': list(self.issues),
            'needs_review': self.needs_review,
        }


@dataclass(frozen=True)
class CategoryPrediction:
    """Storage category suggested for a product name"""
    category: str
    confidence: float


@dataclass(frozen=True)
class ReceiptResult:
    """Combined pipeline output handed to the caller"""
    receipt: ParsedReceipt
    confidence: ConfidenceResult
    match: Optional[MerchantMatch] = None
    lines: Tuple[ReconstructedLine, ...] = ()
    categories: Tuple[CategoryPrediction, ...] = ()
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        products: List[Dict[str, Any]] = []
        for index, product in enumerate(self.receipt.products):
            item = product.to_dict()
            if index < len(self.categories):
                item['storage_category'] = self.categories[index].category
                item['storage_confidence'] = self.categories[index].confidence
            products.append(item)

        data = self.receipt.to_dict()
        data['products'] = products
        data['source'] = self.source
        data['detection'] = {
            'merchant': self.match.merchant_name if self.match else None,
            'confidence': self.match.confidence if self.match else 0.0,
            'signals': dict(self.match.signals) if self.match else {},
        }
        data['confidence'] = self.confidence.to_dict()
        data['lines'] = [line.text for line in self.lines]
        return data
