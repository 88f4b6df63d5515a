#!/usr/bin/env python3
"""
End-to-end pipeline tests
Fragments -> lines -> merchant -> products/total/date -> confidence -> categories
"""
import json
import pytest
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from receipt_extract.category_classifier import StorageCategoryClassifier
from receipt_extract.main import default_rules_dir, find_input_files, main, process_files
from receipt_extract.models import TextFragment
from receipt_extract.pipeline import ReceiptPipeline
from receipt_extract.rule_loader import RuleLoader

RULES_DIR = Path(__file__).parent.parent / 'receipt_rules'

LIDL_LINES = [
    'LIDL',
    'Musterstraße 1',
    'Bio Milch 1,29 A',
    'Brot 0,99 A',
    'Butter 1,99 A',
    'Eier 2,49 A',
    'Käse 3,19 A',
    'Äpfel 2,00 A',
    'SUMME 11,95',
    '24.03.2025',
]


def line_fragments(texts):
    """One full-width fragment per receipt line"""
    return [
        TextFragment(text=text, x=0.05, y=0.02 + 0.05 * k, width=0.8, height=0.03, confidence=0.9)
        for k, text in enumerate(texts)
    ]


def fragment_document(texts):
    return {
        'origin': 'top_left',
        'fragments': [
            {'text': f.text, 'box': [f.x, f.y, f.width, f.height], 'confidence': f.confidence}
            for f in line_fragments(texts)
        ],
    }


@pytest.fixture(scope='module')
def pipeline():
    rule_loader = RuleLoader(RULES_DIR)
    return ReceiptPipeline.from_rules(rule_loader, classifier=StorageCategoryClassifier(rule_loader))


class TestReceiptPipeline:
    """Test ReceiptPipeline end to end with the YAML rules"""

    def test_lidl_receipt_from_fragments(self, pipeline):
        result = pipeline.process_fragments(line_fragments(LIDL_LINES), source='lidl.json')
        receipt = result.receipt

        assert receipt.merchant_name == 'LIDL'
        assert [p.name for p in receipt.products] == ['Bio Milch', 'Brot', 'Butter', 'Eier', 'Käse', 'Äpfel']
        assert receipt.total == Decimal('11.95')
        assert receipt.product_sum == Decimal('11.95')
        assert receipt.transaction_date == date(2025, 3, 24)

        assert result.match.merchant_name == 'LIDL'
        assert result.match.confidence == pytest.approx(0.77)
        assert result.confidence.factors['total_consistency'] == 1.0
        assert result.confidence.rating == 'high'
        assert result.source == 'lidl.json'
        assert [line.text for line in result.lines] == LIDL_LINES

    def test_categories_attached_per_product(self, pipeline):
        result = pipeline.process_lines(LIDL_LINES)
        assert len(result.categories) == len(result.receipt.products)
        assert result.categories[0].category == 'fridge'
        assert result.categories[1].category == 'pantry'

    def test_plain_text_lines(self, pipeline):
        result = pipeline.process_lines(['ALDI SÜD', 'Bio Apfelmus', '605084', '2,50', 'Betrag 2,50 EUR', ''])

        assert result.receipt.merchant_name == 'ALDI'
        assert [p.article_number for p in result.receipt.products] == ['605084']
        assert result.receipt.total == Decimal('2.50')
        assert len(result.lines) == 5

    def test_unknown_merchant_uses_generic_profile(self, pipeline):
        result = pipeline.process_lines(['Brot 0,99', 'Milch 1,29'])

        assert result.match is None
        assert result.receipt.merchant_name is None
        assert [p.name for p in result.receipt.products] == ['Brot', 'Milch']
        assert result.confidence.factors['store_detection'] == 0.3
        assert "Store not identified" in result.confidence.issues

    def test_keyword_misread_corrected_before_extraction(self, pipeline):
        lines = ['LIDL', 'Milch 1,29', 'Brot 0,99', '5UMME 2,28']
        result = pipeline.process_lines(lines)

        assert result.receipt.merchant_name == 'LIDL'
        assert result.receipt.total == Decimal('2.28')
        assert result.confidence.factors['total_consistency'] == 1.0
        # The result keeps the lines as recognized
        assert [line.text for line in result.lines] == lines

    def test_total_misread_with_generic_profile(self, pipeline):
        result = pipeline.process_lines(['Milch 1,29', 'Brot 0,99', 'T0TAL 2,28'])

        assert result.match is None
        assert [p.name for p in result.receipt.products] == ['Milch', 'Brot']
        assert result.receipt.total == Decimal('2.28')

    def test_letter_in_price_corrected(self, pipeline):
        result = pipeline.process_lines(['LIDL', 'Milch 1O,99', 'Brot 0,99', 'SUMME 11,98'])

        assert [p.name for p in result.receipt.products] == ['Milch', 'Brot']
        assert result.receipt.products[0].price == Decimal('10.99')
        assert result.confidence.factors['total_consistency'] == 1.0

    def test_noise_measured_on_raw_text(self, pipeline):
        result = pipeline.process_lines(['LIDL', 'Milch 1,29 #', 'Brot 0,99', 'SUMME 2,28'])

        assert [p.name for p in result.receipt.products] == ['Milch', 'Brot']
        assert result.confidence.factors['ocr_quality'] < 1.0

    def test_empty_input_rates_low(self, pipeline):
        result = pipeline.process_fragments([])

        assert result.receipt.products == ()
        assert result.receipt.total is None
        assert result.confidence.rating == 'low'
        assert "No text recognized" in result.confidence.issues

    def test_without_classifier_no_categories(self):
        rule_loader = RuleLoader(RULES_DIR)
        pipeline = ReceiptPipeline.from_rules(rule_loader)
        result = pipeline.process_lines(LIDL_LINES)
        assert result.categories == ()

    def test_result_is_json_serializable(self, pipeline):
        data = pipeline.process_lines(LIDL_LINES, source='lidl.json').to_dict()
        restored = json.loads(json.dumps(data))

        assert restored['merchant_name'] == 'LIDL'
        assert restored['total'] == 11.95
        assert restored['transaction_date'] == '2025-03-24'
        assert restored['detection']['merchant'] == 'LIDL'
        assert restored['products'][0]['storage_category'] == 'fridge'
        assert restored['confidence']['rating'] == 'high'

    def test_multipass_picks_longest_pass(self, pipeline):
        passes = {
            'standard': lambda: line_fragments(['LIDL', 'Bio Milch 1,29 A']),
            'enhanced_contrast': lambda: line_fragments(LIDL_LINES),
            'inverted': lambda: [],
        }
        result = pipeline.process_multipass(passes, timeout=10, source='scan.jpg')

        assert result.source == 'scan.jpg [enhanced_contrast]'
        assert result.receipt.merchant_name == 'LIDL'
        assert len(result.receipt.products) == 6

    def test_multipass_all_failed(self, pipeline):
        def broken():
            raise RuntimeError("no text layer")

        result = pipeline.process_multipass({'standard': broken}, source='scan.jpg')
        assert result.source == 'scan.jpg'
        assert result.receipt.products == ()
        assert result.confidence.rating == 'low'


class TestProcessFiles:
    """Test the batch entry point on fragment JSON files"""

    def _write_inputs(self, input_dir):
        input_dir.mkdir()
        (input_dir / 'lidl.json').write_text(json.dumps(fragment_document(LIDL_LINES)), encoding='utf-8')
        (input_dir / 'unknown.json').write_text(
            json.dumps(fragment_document(['Brot 0,99', 'Milch 1,29'])), encoding='utf-8')
        (input_dir / 'broken.json').write_text('{"fragments": [{"text": "x"}]}', encoding='utf-8')
        (input_dir / 'notes.txt').write_text('ignored', encoding='utf-8')

    def test_find_input_files(self, tmp_path):
        self._write_inputs(tmp_path / 'in')
        names = [p.name for p in find_input_files(tmp_path / 'in')]
        assert names == ['broken.json', 'lidl.json', 'unknown.json']
        assert find_input_files(tmp_path / 'in', ocr=True) == []

    @pytest.mark.parametrize("use_threads", [False, True])
    def test_process_files(self, tmp_path, use_threads):
        self._write_inputs(tmp_path / 'in')

        results, output_dir = process_files(
            tmp_path / 'in', tmp_path / 'out', RULES_DIR, use_threads=use_threads, max_workers=2)

        # broken.json is logged and skipped
        assert [r.source for r in results] == ['lidl.json', 'unknown.json']
        assert results[0].receipt.merchant_name == 'LIDL'
        assert (output_dir / 'tables' / 'products.csv').exists()
        assert (output_dir / 'manifest.json').exists()

    def test_no_inputs(self, tmp_path):
        (tmp_path / 'in').mkdir()
        results, output_dir = process_files(tmp_path / 'in', tmp_path / 'out', RULES_DIR)
        assert results == []
        assert output_dir is None

    def test_default_rules_dir(self):
        assert (default_rules_dir() / 'shared.yaml').exists()
        assert default_rules_dir().resolve() == RULES_DIR.resolve()

    def test_main_rejects_missing_rules(self, tmp_path):
        argv = ['receipt-extract', str(tmp_path), str(tmp_path / 'out'), '--rules-dir', str(tmp_path / 'nowhere')]
        with patch('sys.argv', argv):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 2
        assert not (tmp_path / 'out').exists()
