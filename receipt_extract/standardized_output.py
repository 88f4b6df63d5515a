#!/usr/bin/env python3
"""
Standardized Output Module
Creates timestamped folders and writes receipt results as CSV / Excel / JSON

    <output>/receipts_<YYYYmmdd_HHMM>/
        tables/products.csv       one row per extracted product
        tables/receipts.csv       one summary row per receipt
        tables/needs_review.csv   receipts rated below 'high'
        tables/review.xlsx        all tables as sheets (optional)
        results.json              full ReceiptResult dictionaries
        manifest.json             counters and thresholds
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .models import ReceiptResult

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = [
    'line_id', 'source_file', 'merchant', 'txn_date',
    'product_name', 'article_number', 'quantity', 'weight', 'unit_price', 'price',
    'storage_category', 'storage_confidence', 'receipt_confidence', 'rating', 'raw_line',
]

RECEIPT_COLUMNS = [
    'source_file', 'merchant', 'detection_confidence', 'txn_date',
    'product_count', 'product_sum', 'total', 'confidence', 'rating', 'needs_review', 'issues',
]


def _receipt_id(index: int, result: ReceiptResult) -> str:
    stem = Path(result.source).stem if result.source else 'receipt'
    return f"{stem}_{index:03d}"


def transform_result_to_lines(index: int, result: ReceiptResult) -> List[Dict[str, Any]]:
    """Flatten one ReceiptResult into product rows"""
    receipt = result.receipt
    receipt_id = _receipt_id(index, result)
    txn_date = receipt.transaction_date.isoformat() if receipt.transaction_date else ''

    lines = []
    for line_index, product in enumerate(receipt.products):
        category = result.categories[line_index] if line_index < len(result.categories) else None
        lines.append({
            'line_id': f"{receipt_id}_{line_index + 1:03d}",
            'source_file': result.source or '',
            'merchant': receipt.merchant_name or '',
            'txn_date': txn_date,
            'product_name': product.name,
            'article_number': product.article_number or '',
            'quantity': float(product.quantity) if product.quantity is not None else None,
            'weight': float(product.weight) if product.weight is not None else None,
            'unit_price': float(product.unit_price) if product.unit_price is not None else None,
            'price': float(product.price),
            'storage_category': category.category if category else '',
            'storage_confidence': category.confidence if category else None,
            'receipt_confidence': result.confidence.overall,
            'rating': result.confidence.rating,
            'raw_line': product.raw_line,
        })
    return lines


def transform_result_to_summary(result: ReceiptResult) -> Dict[str, Any]:
    """One summary row per receipt"""
    receipt = result.receipt
    return {
        'source_file': result.source or '',
        'merchant': receipt.merchant_name or '',
        'detection_confidence': result.match.confidence if result.match else 0.0,
        'txn_date': receipt.transaction_date.isoformat() if receipt.transaction_date else '',
        'product_count': len(receipt.products),
        'product_sum': float(receipt.product_sum),
        'total': float(receipt.total) if receipt.total is not None else None,
        'confidence': result.confidence.overall,
        'rating': result.confidence.rating,
        'needs_review': result.confidence.needs_review,
        'issues': '; '.join(result.confidence.issues),
    }


def build_dataframes(results: Sequence[ReceiptResult]):
    """
    Build the product and receipt tables

    Returns:
        (products_df, receipts_df) with fixed column order
    """
    product_rows: List[Dict[str, Any]] = []
    for index, result in enumerate(results, 1):
        product_rows.extend(transform_result_to_lines(index, result))

    products_df = pd.DataFrame(product_rows)
    for col in PRODUCT_COLUMNS:
        if col not in products_df.columns:
            products_df[col] = ''
    products_df = products_df[PRODUCT_COLUMNS]

    receipts_df = pd.DataFrame([transform_result_to_summary(r) for r in results])
    for col in RECEIPT_COLUMNS:
        if col not in receipts_df.columns:
            receipts_df[col] = ''
    receipts_df = receipts_df[RECEIPT_COLUMNS]

    return products_df, receipts_df


def create_standardized_output(results: Sequence[ReceiptResult], output_base_dir: Path,
                               excel: bool = False, category_options: Optional[List[str]] = None) -> Path:
    """
    Create standardized output in a timestamped folder

    Args:
        results: Pipeline results
        output_base_dir: Base output directory
        excel: Also write tables/review.xlsx
        category_options: Storage categories offered as a dropdown in the Excel export

    Returns:
        Path to the timestamped output directory
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M')
    output_dir = Path(output_base_dir) / f'receipts_{timestamp}'
    tables_dir = output_dir / 'tables'
    tables_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"Creating standardized output in: {output_dir}")

    products_df, receipts_df = build_dataframes(results)

    products_file = tables_dir / 'products.csv'
    products_df.to_csv(products_file, index=False)
    logger.info(f"Created {products_file} with {len(products_df)} lines")

    receipts_file = tables_dir / 'receipts.csv'
    receipts_df.to_csv(receipts_file, index=False)
    logger.info(f"Created {receipts_file} with {len(receipts_df)} receipts")

    needs_review = receipts_df[receipts_df['needs_review'].astype(bool)]
    if len(needs_review) > 0:
        review_file = tables_dir / 'needs_review.csv'
        needs_review.to_csv(review_file, index=False)
        logger.info(f"Created {review_file} with {len(needs_review)} receipts needing review")

    results_file = output_dir / 'results.json'
    with open(results_file, 'w', encoding='utf-8') as f:
        json.dump([r.to_dict() for r in results], f, indent=2, ensure_ascii=False)
    logger.info(f"Created {results_file}")

    ratings = receipts_df['rating'].value_counts().to_dict() if len(receipts_df) else {}
    manifest = {
        'created_at': datetime.now().isoformat(),
        'counters': {
            'receipts': len(receipts_df),
            'products': len(products_df),
            'needs_review': len(needs_review),
            'high': int(ratings.get('high', 0)),
            'medium': int(ratings.get('medium', 0)),
            'low': int(ratings.get('low', 0)),
        },
    }
    manifest_file = output_dir / 'manifest.json'
    with open(manifest_file, 'w', encoding='utf-8') as f:
        json.dump(manifest, f, indent=2)
    logger.info(f"Created {manifest_file}")

    if excel:
        excel_file = _create_excel_export(products_df, receipts_df, needs_review, tables_dir, category_options)
        logger.info(f"Created Excel export: {excel_file}")

    logger.info(f"✅ Standardized output complete: {output_dir}")
    return output_dir


def _create_excel_export(products_df: pd.DataFrame, receipts_df: pd.DataFrame, needs_review: pd.DataFrame,
                         tables_dir: Path, category_options: Optional[List[str]] = None) -> Path:
    """Create Excel export with one sheet per table for human review"""
    excel_file = tables_dir / 'review.xlsx'

    with pd.ExcelWriter(excel_file, engine='openpyxl') as writer:
        products_df.to_excel(writer, sheet_name='Products', index=False)
        receipts_df.to_excel(writer, sheet_name='Receipts', index=False)
        if len(needs_review) > 0:
            needs_review.to_excel(writer, sheet_name='Needs Review', index=False)
        else:
            pd.DataFrame(columns=receipts_df.columns).to_excel(writer, sheet_name='Needs Review', index=False)
        if category_options:
            pd.DataFrame({'Storage Categories': category_options}).to_excel(
                writer, sheet_name='Storage_Categories', index=False)

    _apply_excel_enhancements(excel_file, len(products_df), bool(category_options))
    return excel_file


def _apply_excel_enhancements(excel_file: Path, product_rows: int, has_categories: bool):
    """Storage category dropdown on the Products sheet and readable column widths"""
    from openpyxl import load_workbook
    from openpyxl.utils import get_column_letter
    from openpyxl.worksheet.datavalidation import DataValidation

    wb = load_workbook(excel_file)

    products = wb['Products']
    if has_categories and product_rows > 0:
        category_col = PRODUCT_COLUMNS.index('storage_category') + 1
        col_letter = get_column_letter(category_col)
        category_count = wb['Storage_Categories'].max_row
        validation = DataValidation(
            type='list',
            formula1=f"=Storage_Categories!$A$2:$A${category_count}",
            allow_blank=True,
        )
        products.add_data_validation(validation)
        validation.add(f"{col_letter}2:{col_letter}{product_rows + 1}")

    for ws in wb.worksheets:
        for col_idx, column in enumerate(ws.iter_cols(min_row=1, max_row=min(ws.max_row, 200)), 1):
            width = max((len(str(cell.value)) for cell in column if cell.value is not None), default=8)
            ws.column_dimensions[get_column_letter(col_idx)].width = min(width + 2, 60)

    wb.save(excel_file)
