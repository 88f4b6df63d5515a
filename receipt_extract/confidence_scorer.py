#!/usr/bin/env python3
"""
Confidence Scorer - Seven-factor quality score for an extracted receipt

    Factor              Weight
    total_consistency   0.25   printed total vs. product sum
    price_validity      0.18   share of products with 0 < price < ceiling
    store_detection     0.15   merchant detection confidence (0.3 when unknown)
    product_count       0.12   plausible number of products
    ocr_quality         0.12   1 - share of noise characters in the raw text
    name_quality        0.10   plausible mean product-name length
    date_validity       0.08   date within the last year, not in the future

Rating: overall >= 0.80 high, >= 0.50 medium, else low.
Issues are informational; a result is always produced.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from .models import ConfidenceResult, ParsedReceipt

logger = logging.getLogger(__name__)

FACTOR_WEIGHTS = {
    'total_consistency': 0.25,
    'price_validity': 0.18,
    'store_detection': 0.15,
    'product_count': 0.12,
    'ocr_quality': 0.12,
    'name_quality': 0.10,
    'date_validity': 0.08,
}

HIGH_THRESHOLD = 0.80
MEDIUM_THRESHOLD = 0.50

NOISE_ALLOWED = set('€$£¥.,-/()')


def noise_ratio(text: str) -> float:
    """
    Fraction of characters outside the allow-list
    (alphanumerics, whitespace, currency symbols and .,-/())
    """
    if not text:
        return 0.0
    noisy = sum(1 for ch in text if not (ch.isalnum() or ch.isspace() or ch in NOISE_ALLOWED))
    return min(noisy / len(text), 1.0)


def rating_for(overall: float) -> str:
    """Map an overall score to high / medium / low"""
    if overall >= HIGH_THRESHOLD:
        return 'high'
    if overall >= MEDIUM_THRESHOLD:
        return 'medium'
    return 'low'


class ConfidenceScorer:
    """Score how trustworthy a ParsedReceipt is"""

    def __init__(self, rule_loader=None):
        """
        Initialize scorer

        Args:
            rule_loader: Optional RuleLoader (reads the 'scoring' section of shared.yaml)
        """
        settings = rule_loader.get_scoring_settings() if rule_loader else {}
        self.price_ceiling = Decimal(str(settings.get('price_ceiling', '1000.00')))
        self.tolerance_ratio = Decimal(str(settings.get('total_tolerance_ratio', '0.15')))
        self.tolerance_floor = Decimal(str(settings.get('total_tolerance_floor', '0.50')))
        self.noise_issue_threshold = float(settings.get('noise_issue_threshold', 0.30))
        self.low_store_confidence = float(settings.get('low_store_confidence', 0.50))

    def score(self, receipt: ParsedReceipt, raw_line_count: int, noise: float,
              merchant_confidence: float, today: Optional[date] = None) -> ConfidenceResult:
        """
        Score an extraction result

        Args:
            receipt: Extraction result
            raw_line_count: Number of reconstructed text lines
            noise: Noise ratio of the raw text (see noise_ratio())
            merchant_confidence: Detection confidence of the chosen merchant
            today: Reference date (defaults to date.today())

        Returns:
            ConfidenceResult
        """
        today = today or date.today()
        issues: List[str] = []

        if raw_line_count <= 0:
            issues.append("No text recognized")

        factors = {
            'total_consistency': self._total_consistency(receipt, issues),
            'price_validity': self._price_validity(receipt, issues),
            'store_detection': self._store_detection(receipt, merchant_confidence, issues),
            'product_count': self._product_count(receipt, issues),
            'ocr_quality': self._ocr_quality(noise, issues),
            'name_quality': self._name_quality(receipt, issues),
            'date_validity': self._date_validity(receipt, today, issues),
        }

        overall = round(sum(factors[name] * weight for name, weight in FACTOR_WEIGHTS.items()), 4)
        rating = rating_for(overall)

        logger.debug(f"Confidence {overall:.3f} ({rating}) factors={factors}")
        if issues:
            logger.info(f"Receipt quality issues ({rating}): {'; '.join(issues)}")

        return ConfidenceResult(overall=overall, factors=factors, rating=rating, issues=tuple(issues))

    def total_tolerance(self, total: Decimal) -> Decimal:
        """Accepted gap between total and product sum: max(15% of total, 0.50)"""
        return max(abs(total) * self.tolerance_ratio, self.tolerance_floor)

    def _total_consistency(self, receipt: ParsedReceipt, issues: List[str]) -> float:
        total = receipt.total
        if total is None:
            issues.append("No total found")
            return 0.3
        if total == 0:
            issues.append("Total is 0.00")
            return 0.3

        product_sum = receipt.product_sum
        gap = abs(product_sum - total)
        tolerance = self.total_tolerance(total)

        if gap < tolerance:
            return 1.0

        issues.append(f"Total differs from sum by {gap:.2f} (total {total:.2f}, sum {product_sum:.2f})")
        if gap <= tolerance * 2:
            return 0.7
        return 0.4

    def _price_validity(self, receipt: ParsedReceipt, issues: List[str]) -> float:
        if not receipt.products:
            return 0.0
        valid = sum(1 for p in receipt.products if Decimal('0') < p.price < self.price_ceiling)
        invalid = len(receipt.products) - valid
        if invalid:
            issues.append(f"{invalid} product(s) with invalid prices")
        return valid / len(receipt.products)

    def _store_detection(self, receipt: ParsedReceipt, merchant_confidence: float, issues: List[str]) -> float:
        if not receipt.merchant_name:
            issues.append("Store not identified")
            return 0.3
        confidence = max(0.0, min(float(merchant_confidence), 1.0))
        if confidence < self.low_store_confidence:
            issues.append(f"Low store detection confidence ({confidence:.0%})")
        return confidence

    def _product_count(self, receipt: ParsedReceipt, issues: List[str]) -> float:
        count = len(receipt.products)
        if count == 0:
            issues.append("No products found")
            return 0.2
        if count == 1:
            issues.append("Only 1 product found - unusual for a receipt")
            return 0.6
        if count > 100:
            issues.append("Over 100 products - possible parsing error")
            return 0.4
        return 1.0

    def _ocr_quality(self, noise: float, issues: List[str]) -> float:
        noise = max(0.0, min(float(noise), 1.0))
        if noise > self.noise_issue_threshold:
            issues.append(f"High noise in OCR text ({noise:.0%} special chars)")
        return 1.0 - noise

    def _name_quality(self, receipt: ParsedReceipt, issues: List[str]) -> float:
        names = [p.name for p in receipt.products]
        mean_length = sum(len(n) for n in names) / len(names) if names else 0.0

        if mean_length <= 3:
            if names:
                issues.append("Product names too short")
            return 0.4
        if mean_length > 50:
            issues.append("Product names unusually long")
            return 0.6
        return 1.0

    def _date_validity(self, receipt: ParsedReceipt, today: date, issues: List[str]) -> float:
        receipt_date = receipt.transaction_date
        if receipt_date is None:
            issues.append("No transaction date found")
            return 0.5
        if receipt_date > today:
            issues.append("Receipt date is in the future")
            return 0.3
        if receipt_date < today - timedelta(days=365):
            issues.append("Receipt date is over 1 year old")
            return 0.5
        return 1.0
