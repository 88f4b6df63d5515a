#!/usr/bin/env python3
"""
Receipt Extraction Main Entry Point - Rule-Driven Receipt Extraction

Turns recognized receipt text into products, total, date, merchant and a
confidence rating.

EXPLICIT RULE EXECUTION ORDER (enforced in code, not by filename):

1. AT STARTUP (once per run):
   a. shared.yaml - layout thresholds, scoring constants, profile defaults
   b. 2*_merchant_profiles_*.yaml - merchant profiles, registered in file order
   c. 90_generic_profile.yaml - fallback profile (no merchant identity)
   d. 10_merchant_detection.yaml - OCR confusion table, keyword corrections
   e. 30_storage_categories.yaml - storage category keywords

2. PER RECEIPT:
   a. Layout reconstruction (rows, optional description/price columns)
   b. Merchant detection (name / structure / footer signals)
   c. Pattern extraction with the detected profile (generic profile if none)
   d. Confidence scoring (seven factors -> high / medium / low)
   e. Storage category suggestion per product

Inputs are fragment JSON files, or receipt images when --ocr is given
(multi-pass Tesseract: standard, enhanced contrast, inverted).

See receipt_rules/ for the rule documentation.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import List, Optional, Tuple

import config

from .category_classifier import StorageCategoryClassifier
from .fragment_loader import load_fragments
from .logger import setup_logger
from .models import ReceiptResult
from .pipeline import ReceiptPipeline
from .rule_loader import RuleLoader
from .standardized_output import create_standardized_output

logger = logging.getLogger(__name__)

FRAGMENT_SUFFIXES = ('.json',)
IMAGE_SUFFIXES = ('.png', '.jpg', '.jpeg', '.tif', '.tiff', '.bmp')


def find_input_files(input_path: Path, ocr: bool = False) -> List[Path]:
    """
    Collect input files (a single file or every matching file below a directory)

    Args:
        input_path: File or directory
        ocr: Look for images instead of fragment JSON files

    Returns:
        Sorted list of files
    """
    suffixes = IMAGE_SUFFIXES if ocr else FRAGMENT_SUFFIXES
    if input_path.is_file():
        return [input_path]
    return sorted(p for p in input_path.glob('**/*') if p.is_file() and p.suffix.lower() in suffixes)


def process_file(file_path: Path, pipeline: ReceiptPipeline, ocr: bool = False,
                 multipass_timeout: Optional[float] = None) -> ReceiptResult:
    """Run one input file through the pipeline"""
    if ocr:
        from .ocr_adapter import TesseractFragmentSource, build_passes, load_image
        image = load_image(file_path)
        passes = build_passes(image, TesseractFragmentSource(lang=config.TESSERACT_LANG))
        passes = {name: run for name, run in passes.items() if name in config.MULTIPASS_PASSES}
        return pipeline.process_multipass(passes, timeout=multipass_timeout, source=file_path.name)

    fragments = load_fragments(file_path)
    return pipeline.process_fragments(fragments, source=file_path.name)


def process_files(
    input_path: Path,
    output_base_dir: Path,
    rules_dir: Path,
    use_threads: bool = False,
    max_workers: int = 4,
    ocr: bool = False,
    excel: bool = False,
    log_level: str = 'INFO',
    multipass_timeout: Optional[float] = None,
) -> Tuple[List[ReceiptResult], Optional[Path]]:
    """
    Main processing function

    Args:
        input_path: Input file or directory
        output_base_dir: Base output directory (a timestamped folder is created inside)
        rules_dir: Directory containing rule YAML files
        use_threads: If True, process files in parallel using ThreadPoolExecutor
        max_workers: Maximum number of parallel workers
        ocr: Inputs are images; run multi-pass OCR first
        excel: Also write an Excel review workbook
        log_level: Logging level
        multipass_timeout: Seconds allowed for all OCR passes of one image

    Returns:
        (results in input order, output directory or None when nothing was processed)

    Note:
        ThreadPoolExecutor is used for file-level parallelism only.
        The pipeline services are built once and shared read-only by all workers.
    """
    setup_logger(log_level=log_level, log_dir=output_base_dir / 'logs')

    rule_loader = RuleLoader(rules_dir)
    classifier = StorageCategoryClassifier(rule_loader)
    pipeline = ReceiptPipeline.from_rules(rule_loader, classifier=classifier)

    files = find_input_files(input_path, ocr=ocr)
    logger.info(f"Found {len(files)} input files in {input_path}")
    if not files:
        logger.warning("No input files found")
        return [], None

    results: List[Optional[ReceiptResult]] = [None] * len(files)
    failed = 0

    def run(index: int, file_path: Path) -> Tuple[int, ReceiptResult]:
        return index, process_file(file_path, pipeline, ocr=ocr, multipass_timeout=multipass_timeout)

    if use_threads and len(files) > 1:
        logger.info(f"Using parallel processing with {max_workers} workers for {len(files)} files")
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(run, i, f): f for i, f in enumerate(files)}
            for future in as_completed(futures):
                file_path = futures[future]
                try:
                    index, result = future.result()
                    results[index] = result
                except Exception as e:
                    failed += 1
                    logger.error(f"Error processing {file_path.name}: {e}", exc_info=True)
    else:
        if use_threads:
            logger.debug("Only 1 file to process, using sequential processing")
        for i, file_path in enumerate(files):
            try:
                results[i] = run(i, file_path)[1]
            except Exception as e:
                failed += 1
                logger.error(f"Error processing {file_path.name}: {e}", exc_info=True)

    processed = [r for r in results if r is not None]
    logger.info(f"Processed {len(processed)} receipts ({failed} failed)")
    if not processed:
        return [], None

    output_dir = create_standardized_output(
        processed,
        output_base_dir,
        excel=excel,
        category_options=classifier.category_names(),
    )
    return processed, output_dir


def default_rules_dir() -> Path:
    """Rule files next to the package (repository root, or site-packages once installed)"""
    return Path(__file__).resolve().parent.parent / config.RULES_DIR


def main() -> None:
    """Main entry point for receipt extraction"""
    import argparse

    parser = argparse.ArgumentParser(
        description='Extract products, total, date and merchant from recognized receipt text',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        'input',
        type=str,
        help='Fragment JSON file or directory (images with --ocr)'
    )
    parser.add_argument(
        'output_dir',
        type=str,
        nargs='?',
        default=config.OUTPUT_DIR,
        help=f'Output directory (default: {config.OUTPUT_DIR})'
    )
    parser.add_argument(
        '--rules-dir',
        type=str,
        default=None,
        help=f'Directory containing rule YAML files (default: {config.RULES_DIR} next to the package)'
    )
    parser.add_argument(
        '--use-threads',
        action='store_true',
        help='Process files in parallel using ThreadPoolExecutor (default: False)'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=config.MAX_WORKERS,
        help=f'Maximum number of parallel workers (default: {config.MAX_WORKERS})'
    )
    parser.add_argument(
        '--excel',
        action='store_true',
        help='Also write an Excel review workbook'
    )
    parser.add_argument(
        '--ocr',
        action='store_true',
        help='Inputs are receipt images; run multi-pass Tesseract OCR first'
    )
    parser.add_argument(
        '--multipass-timeout',
        type=float,
        default=config.MULTIPASS_TIMEOUT,
        help=f'Seconds allowed for all OCR passes of one image (default: {config.MULTIPASS_TIMEOUT})'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=config.LOG_LEVEL,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )

    args = parser.parse_args()

    input_path = Path(args.input)
    output_dir = Path(args.output_dir)
    rules_dir = Path(args.rules_dir) if args.rules_dir else default_rules_dir()
    if not (rules_dir / 'shared.yaml').exists():
        parser.error(f"No rule files found in {rules_dir} (pass --rules-dir)")

    logger.info(f"Input: {input_path}")
    logger.info(f"Output directory: {output_dir}")
    logger.info(f"Rules directory: {rules_dir}")
    logger.info(f"Use threads: {args.use_threads}")

    process_files(
        input_path,
        output_dir,
        rules_dir,
        use_threads=args.use_threads or config.USE_THREADS,
        max_workers=args.max_workers,
        ocr=args.ocr,
        excel=args.excel or config.EXPORT_EXCEL,
        log_level=args.log_level,
        multipass_timeout=args.multipass_timeout,
    )


if __name__ == "__main__":
    main()
