#!/usr/bin/env python3
"""
Layout Reconstruction Tests
Row grouping, reading order and description/price column detection.
"""

import os
import random
import unittest
from pathlib import Path

TEST_DIR = Path(__file__).parent
PROJECT_ROOT = TEST_DIR.parent
os.chdir(PROJECT_ROOT)

from receipt_extract.layout_reconstructor import LayoutReconstructor
from receipt_extract.models import COLUMN_DESCRIPTION, COLUMN_PRICE, TextFragment
from receipt_extract.rule_loader import RuleLoader


def fragment(text, x, y, width=0.3, height=0.02):
    return TextFragment(text=text, x=x, y=y, width=width, height=height, confidence=0.9)


def two_column_receipt():
    """Header spanning the page, then five rows of description + far-right price"""
    fragments = [fragment('LIDL Musterstadt', 0.30, 0.02, width=0.40)]
    items = [('Bio Milch', '1,29'), ('Brot', '0,99'), ('Butter', '1,99'), ('Eier', '2,49'), ('Käse', '3,19')]
    for k, (name, price) in enumerate(items):
        y = 0.10 + 0.05 * k
        fragments.append(fragment(name, 0.05, y, width=0.40))
        fragments.append(fragment(price, 0.801, y, width=0.12))
    return fragments


class TestLayoutReconstructor(unittest.TestCase):
    """Test LayoutReconstructor"""

    @classmethod
    def setUpClass(cls):
        """Set up test fixtures"""
        cls.rule_loader = RuleLoader(PROJECT_ROOT / 'receipt_rules')
        cls.reconstructor = LayoutReconstructor(cls.rule_loader)

    def test_settings_from_shared_yaml(self):
        self.assertEqual(self.reconstructor.row_threshold_factor, 0.5)
        self.assertEqual(self.reconstructor.histogram_bins, 200)

    def test_overrides_win_over_yaml(self):
        reconstructor = LayoutReconstructor(self.rule_loader, row_threshold_factor=0.8)
        self.assertEqual(reconstructor.row_threshold_factor, 0.8)

    def test_empty_input(self):
        """No fragments -> no lines (never raises)"""
        self.assertEqual(self.reconstructor.reconstruct([]), [])
        self.assertEqual(self.reconstructor.reconstruct([fragment('   ', 0.1, 0.1)]), [])

    def test_single_fragment_single_line(self):
        """A single fragment yields exactly one line with exactly its text"""
        lines = self.reconstructor.reconstruct([fragment('SUMME 3,79', 0.1, 0.5)])
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].text, 'SUMME 3,79')
        self.assertIsNone(lines[0].column)

    def test_rows_grouped_and_ordered_left_to_right(self):
        fragments = [
            fragment('1,29', 0.55, 0.101, width=0.2),
            fragment('Milch', 0.05, 0.10, width=0.2),
            fragment('Brot', 0.05, 0.15, width=0.2),
        ]
        lines = self.reconstructor.reconstruct(fragments)
        self.assertEqual([line.text for line in lines], ['Milch 1,29', 'Brot'])
        self.assertEqual([line.row_index for line in lines], [0, 1])

    def test_slight_skew_stays_in_one_row(self):
        """Fragments of one row whose centers differ by less than half the median height share a row"""
        fragments = [fragment('Butter', 0.05, 0.300, width=0.2), fragment('1,99', 0.55, 0.308, width=0.2)]
        lines = self.reconstructor.reconstruct(fragments)
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].text, 'Butter 1,99')

    def test_row_indices_non_decreasing_for_shuffled_input(self):
        """Reading order does not depend on fragment input order"""
        fragments = [fragment(f'Line {k}', 0.05 + 0.01 * (k % 3), 0.04 * k, width=0.2) for k in range(20)]
        shuffled = fragments[:]
        random.Random(42).shuffle(shuffled)

        lines = self.reconstructor.reconstruct(shuffled)
        indices = [line.row_index for line in lines]
        self.assertEqual(indices, sorted(indices))
        self.assertEqual([line.text for line in lines], [f'Line {k}' for k in range(20)])

    def test_column_split_detected(self):
        split = self.reconstructor.detect_column_split(two_column_receipt())
        self.assertIsNotNone(split)
        self.assertGreater(split, 0.45)
        self.assertLess(split, 0.801)

    def test_two_column_lines_tagged(self):
        """Each row yields a description line and a price line with the same row index"""
        lines = self.reconstructor.reconstruct(two_column_receipt())

        self.assertEqual(len(lines), 11)
        self.assertEqual(lines[0].text, 'LIDL Musterstadt')
        self.assertEqual(lines[0].column, COLUMN_DESCRIPTION)

        first_row = [line for line in lines if line.row_index == 1]
        self.assertEqual([(l.column, l.text) for l in first_row],
                         [(COLUMN_DESCRIPTION, 'Bio Milch'), (COLUMN_PRICE, '1,29')])

    def test_single_column_not_split(self):
        fragments = [fragment(f'Artikel {k} 1,{k}9', 0.05, 0.05 * k, width=0.6) for k in range(8)]
        self.assertIsNone(self.reconstructor.detect_column_split(fragments))
        lines = self.reconstructor.reconstruct(fragments)
        self.assertTrue(all(line.column is None for line in lines))

    def test_too_few_fragments_not_split(self):
        fragments = [fragment('Milch', 0.05, 0.1, width=0.2), fragment('1,29', 0.8, 0.1, width=0.1)]
        self.assertIsNone(self.reconstructor.detect_column_split(fragments))


if __name__ == '__main__':
    unittest.main()
