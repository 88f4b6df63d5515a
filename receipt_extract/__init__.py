"""
Receipt Extraction
Turns positioned OCR text fragments into products, total, date, merchant and a confidence rating.
Uses rule-driven architecture: merchant profiles, detection tables and scoring constants live in YAML.
"""

from .main import process_files
from .rule_loader import RuleLoader
from .models import (
    TextFragment,
    ReconstructedLine,
    MerchantProfile,
    MerchantMatch,
    ExtractedProduct,
    ParsedReceipt,
    ConfidenceResult,
    CategoryPrediction,
    ReceiptResult,
)
from .layout_reconstructor import LayoutReconstructor
from .profile_registry import MerchantProfileRegistry, ProfileConfigError
from .merchant_detector import MerchantDetector
from .extraction_engine import PatternExtractionEngine
from .confidence_scorer import ConfidenceScorer
from .category_classifier import StorageCategoryClassifier, InMemoryCorrectionSink
from .multipass import run_multipass, MultiPassResult
from .fragment_loader import load_fragments
from .pipeline import ReceiptPipeline

__all__ = [
    'process_files',
    'RuleLoader',
    'TextFragment',
    'ReconstructedLine',
    'MerchantProfile',
    'MerchantMatch',
    'ExtractedProduct',
    'ParsedReceipt',
    'ConfidenceResult',
    'CategoryPrediction',
    'ReceiptResult',
    'LayoutReconstructor',
    'MerchantProfileRegistry',
    'ProfileConfigError',
    'MerchantDetector',
    'PatternExtractionEngine',
    'ConfidenceScorer',
    'StorageCategoryClassifier',
    'InMemoryCorrectionSink',
    'run_multipass',
    'MultiPassResult',
    'load_fragments',
    'ReceiptPipeline',
]
