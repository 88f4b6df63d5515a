#!/usr/bin/env python3
"""
Receipt Pipeline - reconstruct -> detect -> extract -> score

Services are constructed once (usually at process start) and passed in;
a ReceiptPipeline holds no per-receipt state, so one instance can process
receipts from several threads at once.
"""

import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from .confidence_scorer import ConfidenceScorer, noise_ratio
from .extraction_engine import PatternExtractionEngine
from .layout_reconstructor import LayoutReconstructor
from .merchant_detector import MerchantDetector
from .models import ReceiptResult, ReconstructedLine, TextFragment
from .multipass import FragmentPass, run_multipass
from .profile_registry import MerchantProfileRegistry

logger = logging.getLogger(__name__)


class ReceiptPipeline:
    """Turn recognized text fragments into a scored ReceiptResult"""

    def __init__(self, registry: MerchantProfileRegistry, classifier=None, scorer: Optional[ConfidenceScorer] = None,
                 reconstructor: Optional[LayoutReconstructor] = None, detector: Optional[MerchantDetector] = None,
                 engine: Optional[PatternExtractionEngine] = None):
        """
        Initialize pipeline

        Args:
            registry: Loaded MerchantProfileRegistry
            classifier: Optional storage category classifier (classify(name) -> CategoryPrediction)
            scorer: ConfidenceScorer (default thresholds when omitted)
            reconstructor: LayoutReconstructor (default thresholds when omitted)
            detector: MerchantDetector (built from the registry when omitted)
            engine: PatternExtractionEngine (built from the registry when omitted)
        """
        self.registry = registry
        self.classifier = classifier
        self.scorer = scorer or ConfidenceScorer()
        self.reconstructor = reconstructor or LayoutReconstructor()
        self.detector = detector or MerchantDetector(registry)
        self.engine = engine or PatternExtractionEngine(registry)

    @classmethod
    def from_rules(cls, rule_loader, classifier=None) -> 'ReceiptPipeline':
        """Build every service from one RuleLoader"""
        registry = MerchantProfileRegistry.from_rules(rule_loader)
        return cls(
            registry,
            classifier=classifier,
            scorer=ConfidenceScorer(rule_loader),
            reconstructor=LayoutReconstructor(rule_loader),
            detector=MerchantDetector(registry, rule_loader),
            engine=PatternExtractionEngine(registry),
        )

    def process_fragments(self, fragments: Iterable[TextFragment], source: Optional[str] = None) -> ReceiptResult:
        """
        Process the fragments of one OCR pass

        Args:
            fragments: Positioned text fragments (top-left origin)
            source: Optional label carried on the result (file name, pass name)

        Returns:
            ReceiptResult
        """
        lines = self.reconstructor.reconstruct(fragments)
        return self.process_lines(lines, source=source)

    def process_lines(self, lines: Sequence, source: Optional[str] = None) -> ReceiptResult:
        """
        Process already reconstructed lines (ReconstructedLine objects or plain strings)
        """
        lines = self._as_lines(lines)
        corrected = self._corrected_lines(lines)

        match = self.detector.detect(corrected)
        profile = match.profile if match else self.registry.default_profile
        receipt = self.engine.extract(corrected, profile)

        # Noise is measured on the text as recognized
        raw_text = '\n'.join(line.text for line in lines)
        confidence = self.scorer.score(
            receipt,
            raw_line_count=len(lines),
            noise=noise_ratio(raw_text),
            merchant_confidence=match.confidence if match else 0.0,
        )

        categories = ()
        if self.classifier is not None:
            categories = tuple(self.classifier.classify(p.name) for p in receipt.products)

        logger.info(f"{source or 'receipt'}: {receipt.merchant_name or 'unknown store'}, "
                    f"{len(receipt.products)} products, confidence {confidence.overall:.2f} ({confidence.rating})")

        return ReceiptResult(
            receipt=receipt,
            confidence=confidence,
            match=match,
            lines=tuple(lines),
            categories=categories,
            source=source,
        )

    def process_multipass(self, passes: Mapping[str, FragmentPass], timeout: Optional[float] = None,
                          max_workers: Optional[int] = None, source: Optional[str] = None) -> ReceiptResult:
        """
        Run several OCR passes concurrently and process the longest one

        A timeout propagates as concurrent.futures.TimeoutError.
        """
        selected = run_multipass(passes, max_workers=max_workers, timeout=timeout)
        label = source
        if selected.winner and source:
            label = f"{source} [{selected.winner}]"
        return self.process_fragments(selected.fragments, source=label or selected.winner)

    def _corrected_lines(self, lines: List[ReconstructedLine]) -> List[ReconstructedLine]:
        """Lines with OCR corrections applied; unchanged lines keep their fragments"""
        corrected = []
        for line in lines:
            text = self.detector.correct_text(line.text)
            if text == line.text:
                corrected.append(line)
            elif text:
                corrected.append(ReconstructedLine.from_text(text, row_index=line.row_index, column=line.column))
        return corrected

    @staticmethod
    def _as_lines(lines: Sequence) -> List[ReconstructedLine]:
        converted = []
        for index, line in enumerate(lines):
            if isinstance(line, ReconstructedLine):
                converted.append(line)
            elif str(line).strip():
                converted.append(ReconstructedLine.from_text(str(line), row_index=index))
        return converted
