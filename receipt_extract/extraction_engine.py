#!/usr/bin/env python3
"""
Pattern Extraction Engine - Generic profile-driven receipt parsing

One state machine for every merchant. All patterns, markers and layout flags
come from the MerchantProfile; there is no merchant-specific code here.

    HEADER   -> PRODUCTS  first start marker, or first product-shaped line
    HEADER   -> FOOTER    a total line before any product (degenerate receipts)
    PRODUCTS -> FOOTER    first end marker (or total line)

Products are captured in one of three price-location modes:
    same_line        one regex match per line
    next_line        description line, price on the following line
    separate_column  description and price columns of the same row

The total is what the receipt printed; it is never derived from the products.
Unmatched lines are skipped; the engine never raises on receipt content.

Python = engine; YAML = business logic.
"""

import re
import logging
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional, Sequence, Tuple, Union

from .date_normalizer import find_receipt_date
from .models import (
    CENT,
    COLUMN_DESCRIPTION,
    COLUMN_PRICE,
    ExtractedProduct,
    MerchantProfile,
    ParsedReceipt,
    ReconstructedLine,
    parse_amount,
)
from .name_hygiene import clean_product_name, remove_annotation, split_article_number

logger = logging.getLogger(__name__)

HEADER = 'HEADER'
PRODUCTS = 'PRODUCTS'
FOOTER = 'FOOTER'

LETTER = re.compile(r'[^\W\d_]')
WORD = re.compile(r'[^\W\d_]{2,}')
AMOUNT = re.compile(r'-?\d{1,4}[.,]\d{2}')
# Tokens that may surround a quantity / weight annotation without making it a product line
ANNOTATION_FILLER = re.compile(r'EUR|€|/\s*kg|\bkg\b|\bSTK\b|\bST\b|\bx\b|[=*@]|\b[AB]\b', re.IGNORECASE)


@dataclass
class _Row:
    """One visual row; description/price_text are set only for two-column rows"""
    index: int
    text: str
    description: Optional[str] = None
    price_text: Optional[str] = None

    @property
    def is_paired(self) -> bool:
        return bool(self.description) and bool(self.price_text)


@dataclass
class _Annotation:
    """Quantity or weight annotation recognized on a line"""
    quantity: Optional[Decimal] = None
    weight: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    amount: Optional[Decimal] = None

    @property
    def line_price(self) -> Optional[Decimal]:
        if self.amount is not None:
            return self.amount
        factor = self.quantity if self.quantity is not None else self.weight
        if factor is None or self.unit_price is None:
            return None
        return (factor * self.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class _Context:
    """Mutable per-extraction state (never shared between extract() calls)"""
    products: List[ExtractedProduct]
    pending_article: Optional[str] = None
    pending_description: Optional[str] = None


class PatternExtractionEngine:
    """
    Generic receipt parser driven by a MerchantProfile.

    Stateless between calls: safe to share across threads.
    """

    def __init__(self, registry=None):
        """
        Initialize extraction engine

        Args:
            registry: Optional MerchantProfileRegistry (provides the generic default profile)
        """
        self.registry = registry

    def extract(self, lines: Sequence[Union[ReconstructedLine, str]],
                profile: Optional[MerchantProfile] = None) -> ParsedReceipt:
        """
        Extract products, total and date from reconstructed lines

        Args:
            lines: Reconstructed lines (or plain text lines, one row each)
            profile: Merchant profile; None selects the registry's generic profile

        Returns:
            ParsedReceipt (possibly empty)
        """
        if profile is None:
            if self.registry is None:
                raise ValueError("extract() needs a profile when the engine has no registry")
            profile = self.registry.default_profile

        rows = self._build_rows(lines)
        if not rows:
            return ParsedReceipt(merchant_name=profile.merchant_name)

        ctx = _Context(products=[])
        total = None
        state = HEADER
        i = 0

        while i < len(rows):
            row = rows[i]
            text = row.text

            if state == HEADER:
                if self._matches_any(profile.header_markers, text):
                    i += 1
                elif self._starts_products(rows, i, profile):
                    logger.debug(f"[{profile.name}] HEADER -> PRODUCTS at row {row.index}: {text!r}")
                    state = PRODUCTS
                elif self._total_amount(text, profile) is not None:
                    logger.debug(f"[{profile.name}] HEADER -> FOOTER at row {row.index}: {text!r}")
                    state = FOOTER
                else:
                    i += 1

            elif state == PRODUCTS:
                if self._matches_any(profile.end_markers, text) or self._total_amount(text, profile) is not None:
                    logger.debug(f"[{profile.name}] PRODUCTS -> FOOTER at row {row.index}: {text!r}")
                    state = FOOTER
                elif self._matches_any(profile.ignore_markers, text):
                    i += 1
                else:
                    i += self._dispatch(rows, i, profile, ctx)

            else:
                total = self._find_total(rows, i, profile)
                break

        transaction_date = find_receipt_date([r.text for r in rows], profile.date_pattern, profile.date_formats)

        receipt = ParsedReceipt(
            merchant_name=profile.merchant_name,
            products=tuple(ctx.products),
            total=total,
            transaction_date=transaction_date,
        )
        logger.info(f"[{profile.name}] Extracted {len(receipt.products)} products, "
                    f"total={receipt.total}, date={receipt.transaction_date}")
        return receipt

    # ------------------------------------------------------------------
    # Row preparation
    # ------------------------------------------------------------------

    def _build_rows(self, lines: Sequence[Union[ReconstructedLine, str]]) -> List[_Row]:
        """Merge lines sharing a row index; plain strings become one row each"""
        grouped: List[Tuple[int, List[ReconstructedLine]]] = []

        for position, line in enumerate(lines):
            if isinstance(line, str):
                line = ReconstructedLine.from_text(line, row_index=position)
            if grouped and grouped[-1][0] == line.row_index and not isinstance(lines[position], str):
                grouped[-1][1].append(line)
            else:
                grouped.append((line.row_index, [line]))

        rows = []
        for row_index, parts in grouped:
            untagged = ' '.join(p.text for p in parts if p.column is None and p.text)
            description = ' '.join(p.text for p in parts if p.column == COLUMN_DESCRIPTION and p.text)
            price_text = ' '.join(p.text for p in parts if p.column == COLUMN_PRICE and p.text)
            text = ' '.join(t for t in (untagged, description, price_text) if t).strip()
            if not text:
                continue
            tagged = any(p.column is not None for p in parts)
            rows.append(_Row(
                index=row_index,
                text=text,
                description=description.strip() if tagged else None,
                price_text=price_text.strip() if tagged else None,
            ))
        return rows

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _matches_any(patterns, text: str) -> bool:
        return any(regex.search(text) for regex in patterns)

    def _starts_products(self, rows: List[_Row], i: int, profile: MerchantProfile) -> bool:
        """True when row i opens the product section"""
        row = rows[i]
        if self._matches_any(profile.start_markers, row.text):
            return True
        if profile.price_location == 'separate_column' and row.is_paired:
            return self._column_price(row, profile) is not None
        if profile.product_pattern.search(row.text):
            return True
        if profile.is_multi_line_product and i + 1 < len(rows) and self._mergeable(rows[i + 1], profile):
            return profile.product_pattern.search(f"{row.text} {rows[i + 1].text}") is not None
        return False

    # ------------------------------------------------------------------
    # Product extraction
    # ------------------------------------------------------------------

    def _dispatch(self, rows: List[_Row], i: int, profile: MerchantProfile, ctx: _Context) -> int:
        """Handle a candidate product row; returns the number of rows consumed"""
        row = rows[i]

        if self._is_article_line(row.text, profile):
            ctx.pending_article = row.text.strip()
            return 1

        if profile.price_location == 'next_line':
            return self._extract_next_line(rows, i, profile, ctx)
        if profile.price_location == 'separate_column' and row.is_paired:
            self._extract_column(row, profile, ctx)
            return 1
        return self._extract_same_line(rows, i, profile, ctx)

    def _extract_same_line(self, rows: List[_Row], i: int, profile: MerchantProfile, ctx: _Context) -> int:
        text = rows[i].text

        annotation = self._annotation_only(text, profile)
        if annotation is not None:
            self._apply_annotation_line(annotation, text, ctx, profile)
            return 1

        product = self._quantity_line_product(text, profile, ctx)
        if product is None:
            match = profile.product_pattern.search(text)
            if match:
                product = self._product_from_match(match, text, profile, ctx)
            elif profile.is_multi_line_product and i + 1 < len(rows) and self._mergeable(rows[i + 1], profile):
                merged = f"{text} {rows[i + 1].text}"
                match = profile.product_pattern.search(merged)
                if match:
                    product = self._product_from_match(match, merged, profile, ctx)
                    self._add_product(product, ctx)
                    return 2

        if product is not None:
            self._add_product(product, ctx)
        elif LETTER.search(text) and not AMOUNT.search(text):
            ctx.pending_description = text
        return 1

    def _extract_next_line(self, rows: List[_Row], i: int, profile: MerchantProfile, ctx: _Context) -> int:
        text = rows[i].text

        if self._annotation_only(text, profile) is not None or self._price_only(text, profile) is not None:
            logger.debug(f"[{profile.name}] Skipping orphan price/annotation line: {text!r}")
            return 1

        match = profile.product_pattern.search(text)
        if not match:
            return 1

        article = ctx.pending_article
        annotation = None
        j = i + 1
        while j < len(rows):
            following = rows[j].text
            if self._is_article_line(following, profile):
                article = article or following.strip()
                j += 1
                continue
            candidate = self._annotation_only(following, profile)
            if candidate is not None:
                annotation = candidate
                j += 1
                continue
            break

        price = None
        if j < len(rows) and not self._matches_any(profile.end_markers, rows[j].text):
            price = self._price_only(rows[j].text, profile)

        if price is None:
            logger.debug(f"[{profile.name}] No price line after {text!r}, dropping product")
            ctx.pending_article = None
            return 1

        name = self._group(match, 'name') or text
        product = self._make_product(name, price, profile, raw_line=f"{text} | {rows[j].text}",
                                     article=article, annotation=annotation)
        self._add_product(product, ctx)
        return j - i + 1

    def _extract_column(self, row: _Row, profile: MerchantProfile, ctx: _Context):
        price = self._column_price(row, profile)
        if price is None:
            return
        product = self._make_product(row.description, price, profile, raw_line=row.text,
                                     article=ctx.pending_article)
        self._add_product(product, ctx)

    def _column_price(self, row: _Row, profile: MerchantProfile) -> Optional[Decimal]:
        price = self._price_only(row.price_text or '', profile)
        if price is None:
            amounts = AMOUNT.findall(row.price_text or '')
            price = parse_amount(amounts[-1]) if amounts else None
        return price

    def _quantity_line_product(self, text: str, profile: MerchantProfile, ctx: _Context) -> Optional[ExtractedProduct]:
        """
        "Milch 2 x 1,50" (no explicit line amount) -> Milch, quantity 2, price 3.00
        """
        for kind, pattern in profile.annotation_patterns():
            match = pattern.search(text)
            if not match:
                continue
            annotation = self._annotation_from_match(match, kind)
            if annotation is None or annotation.amount is not None:
                continue
            if AMOUNT.search(text[match.end():]):
                continue  # explicit line amount follows: regular product line
            name = text[:match.start()]
            if not WORD.search(name):
                continue
            return self._make_product(name, annotation.line_price, profile, raw_line=text,
                                      article=ctx.pending_article, annotation=annotation)
        return None

    def _product_from_match(self, match, raw_line: str, profile: MerchantProfile, ctx: _Context) -> Optional[ExtractedProduct]:
        name = self._group(match, 'name')
        price = parse_amount(self._group(match, 'price'))
        if name is None or price is None:
            return None
        article = self._group(match, 'article') or ctx.pending_article
        return self._make_product(name, price, profile, raw_line=raw_line, article=article)

    def _make_product(self, name: str, price: Optional[Decimal], profile: MerchantProfile, raw_line: str,
                      article: Optional[str] = None,
                      annotation: Optional[_Annotation] = None) -> Optional[ExtractedProduct]:
        """Build an ExtractedProduct, applying quantity/weight sub-patterns to the name"""
        if price is None:
            return None
        if price < 0:
            logger.debug(f"[{profile.name}] Skipping negative amount line: {raw_line!r}")
            return None

        name, leading_article = split_article_number(name or '')
        article = article or leading_article

        if annotation is None:
            for kind, pattern in profile.annotation_patterns():
                match = pattern.search(name)
                if match:
                    annotation = self._annotation_from_match(match, kind)
                    name = remove_annotation(name, pattern)
                    break

        name = clean_product_name(name)
        if len(name) < profile.min_name_length or not WORD.search(name):
            logger.debug(f"[{profile.name}] Rejecting product without usable name: {raw_line!r}")
            return None

        return ExtractedProduct(
            name=name,
            price=price,
            quantity=annotation.quantity if annotation else None,
            weight=annotation.weight if annotation else None,
            unit_price=annotation.unit_price if annotation else None,
            article_number=article,
            raw_line=raw_line,
        )

    def _add_product(self, product: Optional[ExtractedProduct], ctx: _Context):
        ctx.pending_article = None
        ctx.pending_description = None
        if product is None:
            return
        ctx.products.append(product)
        logger.debug(f"Product: {product.name} = {product.price}")

    # ------------------------------------------------------------------
    # Quantity / weight annotations
    # ------------------------------------------------------------------

    def _annotation_only(self, text: str, profile: MerchantProfile) -> Optional[_Annotation]:
        """Annotation when the line holds a quantity/weight expression and no description"""
        for kind, pattern in profile.annotation_patterns(weight_first=True):
            match = pattern.search(text)
            if not match:
                continue
            rest = text[:match.start()] + ' ' + text[match.end():]
            trailing = AMOUNT.findall(rest)
            rest = ANNOTATION_FILLER.sub(' ', AMOUNT.sub(' ', rest))
            if WORD.search(rest):
                continue
            annotation = self._annotation_from_match(match, kind)
            if annotation is None:
                continue
            if annotation.amount is None and trailing:
                annotation.amount = parse_amount(trailing[-1])
            return annotation
        return None

    def _apply_annotation_line(self, annotation: _Annotation, text: str, ctx: _Context, profile: MerchantProfile):
        """A standalone quantity/weight line completes a pending description or annotates the last product"""
        if ctx.pending_description:
            product = self._make_product(ctx.pending_description, annotation.line_price, profile,
                                         raw_line=f"{ctx.pending_description} | {text}",
                                         article=ctx.pending_article, annotation=annotation)
            self._add_product(product, ctx)
            return

        if ctx.products:
            last = ctx.products[-1]
            if last.quantity is None and last.weight is None:
                ctx.products[-1] = replace(
                    last,
                    quantity=annotation.quantity,
                    weight=annotation.weight,
                    unit_price=annotation.unit_price,
                    raw_line=f"{last.raw_line} | {text}",
                )

    def _annotation_from_match(self, match, kind: str) -> Optional[_Annotation]:
        unit_price = parse_amount(self._group(match, 'unit_price'))
        amount = parse_amount(self._group(match, 'amount'))
        if kind == 'quantity':
            quantity = self._decimal(self._group(match, 'qty'))
            if quantity is None or quantity <= 0:
                return None
            return _Annotation(quantity=quantity, unit_price=unit_price, amount=amount)
        weight = self._decimal(self._group(match, 'weight'))
        if weight is None or weight <= 0:
            return None
        return _Annotation(weight=weight, unit_price=unit_price, amount=amount)

    # ------------------------------------------------------------------
    # Line classification helpers
    # ------------------------------------------------------------------

    def _is_article_line(self, text: str, profile: MerchantProfile) -> bool:
        if not profile.has_article_numbers or profile.article_number_pattern is None:
            return False
        return profile.article_number_pattern.fullmatch(text.strip()) is not None

    def _price_only(self, text: str, profile: MerchantProfile) -> Optional[Decimal]:
        if profile.price_only_pattern is None:
            return None
        match = profile.price_only_pattern.search(text)
        if not match:
            return None
        return parse_amount(self._group(match, 'price') or match.group(0))

    def _mergeable(self, row: _Row, profile: MerchantProfile) -> bool:
        """Second half of a multi-line product: a price-only line that is not an end or ignore line"""
        text = row.text
        if self._matches_any(profile.end_markers, text) or self._matches_any(profile.ignore_markers, text):
            return False
        return self._price_only(text, profile) is not None

    # ------------------------------------------------------------------
    # Total
    # ------------------------------------------------------------------

    def _total_amount(self, text: str, profile: MerchantProfile) -> Optional[Decimal]:
        if profile.total_pattern is None:
            return None
        match = profile.total_pattern.search(text)
        if not match:
            return None
        return parse_amount(self._group(match, 'amount') or match.group(match.lastindex or 0))

    def _find_total(self, rows: List[_Row], start: int, profile: MerchantProfile) -> Optional[Decimal]:
        """First total in the footer; an amount may sit on the lines after the keyword"""
        for k in range(start, len(rows)):
            amount = self._total_amount(rows[k].text, profile)
            if amount is not None:
                return amount

            merged = rows[k].text
            for j in range(k + 1, min(len(rows), k + 1 + profile.total_lookahead)):
                if self._price_only(rows[j].text, profile) is None:
                    continue
                merged = f"{merged} {rows[j].text}"
                amount = self._total_amount(merged, profile)
                if amount is not None:
                    return amount

        logger.debug(f"[{profile.name}] No total found in footer")
        return None

    # ------------------------------------------------------------------

    @staticmethod
    def _group(match, name: str) -> Optional[str]:
        if name not in match.re.groupindex:
            return None
        value = match.group(name)
        return value if value not in (None, '') else None

    @staticmethod
    def _decimal(value: Any) -> Optional[Decimal]:
        if value is None:
            return None
        try:
            return Decimal(str(value).replace(',', '.'))
        except ArithmeticError:
            return None
