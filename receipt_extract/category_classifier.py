#!/usr/bin/env python3
"""
Storage Category Classifier
Suggests where a purchased product is stored (fridge, freezer, pantry)
using keyword rules from 30_storage_categories.yaml.

The classifier is an optional collaborator of the pipeline: its output is
carried on the result but never influences the confidence score.
Corrections are forwarded to a one-way sink and never read back.
"""

import re
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from .models import CategoryPrediction

logger = logging.getLogger(__name__)


class InMemoryCorrectionSink:
    """Keeps the most recent corrections in a bounded buffer"""

    def __init__(self, max_buffered: int = 500):
        self._corrections: Deque[Dict[str, str]] = deque(maxlen=max_buffered)
        self._lock = threading.Lock()

    def record(self, product_name: str, assigned_category: str, predicted_category: str):
        with self._lock:
            self._corrections.append({
                'product_name': product_name,
                'assigned_category': assigned_category,
                'predicted_category': predicted_category,
            })
        logger.info(f"Category correction: '{product_name}' {predicted_category} -> {assigned_category}")

    def snapshot(self) -> List[Dict[str, str]]:
        """Copy of the buffered corrections (for export and tests)"""
        with self._lock:
            return list(self._corrections)


class StorageCategoryClassifier:
    """
    Rule-based storage category classifier.
    The longest matching keyword wins; on equal length the category listed first wins.
    """

    def __init__(self, rule_loader, correction_sink=None):
        """
        Initialize classifier with rule loader.

        Args:
            rule_loader: RuleLoader instance
            correction_sink: Object with record(name, assigned, predicted); defaults to InMemoryCorrectionSink
        """
        rules = rule_loader.get_storage_category_rules()

        self.unknown_category = rules.get('unknown_category', 'unknown')
        non_food = rules.get('non_food', {}) or {}
        self.non_food_confidence = float(non_food.get('confidence', 0.9))
        self.non_food_keywords = self._compile_keywords(non_food.get('keywords', []))

        # (category, confidence, keyword, regex) in declaration order
        self.keyword_rules: List[Tuple[str, float, str, Any]] = []
        for category in rules.get('categories', []) or []:
            category_id = category.get('id')
            if not category_id:
                continue
            confidence = float(category.get('confidence', 0.7))
            for keyword, regex in self._compile_keywords(category.get('keywords', [])):
                self.keyword_rules.append((category_id, confidence, keyword, regex))

        max_buffered = int((rules.get('corrections', {}) or {}).get('max_buffered', 500))
        self.correction_sink = correction_sink or InMemoryCorrectionSink(max_buffered=max_buffered)

        logger.info(f"StorageCategoryClassifier initialized with {len(self.keyword_rules)} keyword rules")

    @staticmethod
    def _compile_keywords(keywords) -> List[Tuple[str, Any]]:
        compiled = []
        for keyword in keywords or []:
            keyword = str(keyword).upper()
            escaped = re.escape(keyword)
            # Short keywords ("EI", "TK") only as whole words
            pattern = rf'\b{escaped}\b' if len(keyword) <= 3 else escaped
            compiled.append((keyword, re.compile(pattern, re.IGNORECASE)))
        return compiled

    def classify(self, product_name: str) -> CategoryPrediction:
        """
        Classify a product name.

        Args:
            product_name: Cleaned product name

        Returns:
            CategoryPrediction (unknown with confidence 0.0 when no keyword matches)
        """
        if not product_name or not product_name.strip():
            return CategoryPrediction(self.unknown_category, 0.0)

        for keyword, regex in self.non_food_keywords:
            if regex.search(product_name):
                logger.debug(f"'{product_name}' is non-food (keyword {keyword})")
                return CategoryPrediction(self.unknown_category, self.non_food_confidence)

        best: Optional[Tuple[str, float, str]] = None
        for category, confidence, keyword, regex in self.keyword_rules:
            if not regex.search(product_name):
                continue
            if best is None or len(keyword) > len(best[2]):
                best = (category, confidence, keyword)

        if best is None:
            return CategoryPrediction(self.unknown_category, 0.0)

        logger.debug(f"'{product_name}' -> {best[0]} (keyword {best[2]})")
        return CategoryPrediction(best[0], best[1])

    def category_names(self) -> List[str]:
        """Category ids in declaration order, unknown last"""
        names = []
        for category, _, _, _ in self.keyword_rules:
            if category not in names:
                names.append(category)
        names.append(self.unknown_category)
        return names

    def record_correction(self, product_name: str, assigned_category: str, predicted_category: str) -> None:
        """Forward a user correction to the feedback sink (fire and forget)"""
        self.correction_sink.record(product_name, assigned_category, predicted_category)
