#!/usr/bin/env python3
"""
Configuration file for the Receipt Extraction Project
Edit these values according to your setup
"""

# Rule files (Rule-Driven Architecture)
# Uses rule files from receipt_rules/ directory:
# - shared.yaml: layout thresholds, scoring constants, profile defaults
# - 10_merchant_detection.yaml: OCR confusion table and keyword corrections
# - 2*_merchant_profiles_*.yaml: merchant profiles (registration order = file order)
# - 30_storage_categories.yaml: storage category keywords
# - 90_generic_profile.yaml: fallback profile without merchant identity
RULES_DIR = 'receipt_rules'

# Input / output
INPUT_DIR = 'data/fragments'          # Input: fragment JSON files (or images with --ocr)
OUTPUT_DIR = 'data/receipt_output'    # Output: timestamped result folders

# Logging
LOG_DIR = 'logs'
LOG_LEVEL = 'INFO'

# Processing
USE_THREADS = False     # Process files in parallel
MAX_WORKERS = 4         # Thread pool size for file-level parallelism

# Multi-pass OCR (only used with --ocr)
# Passes run concurrently; the pass with the longest recognized text wins,
# ties go to the pass listed first
MULTIPASS_PASSES = ['standard', 'enhanced_contrast', 'inverted']
MULTIPASS_TIMEOUT = 120           # Seconds for all passes of one image
TESSERACT_LANG = 'deu+fra'

# Excel review export
EXPORT_EXCEL = False
