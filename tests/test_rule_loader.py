#!/usr/bin/env python3
"""
Rule loader tests: cached fast path (hot-reload OFF by default)
Tests that hot-reload is disabled by default and can be toggled via environment variable,
and that merchant profiles are merged with shared.yaml defaults.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

# Setup path
TEST_DIR = Path(__file__).parent
PROJECT_ROOT = TEST_DIR.parent
os.chdir(PROJECT_ROOT)

from receipt_extract.rule_loader import RuleLoader


class TestRuleLoader(unittest.TestCase):
    """Test RuleLoader caching, hot-reload and profile merging"""

    @classmethod
    def setUpClass(cls):
        """Set up test fixtures"""
        cls.rules_dir = PROJECT_ROOT / 'receipt_rules'

    def test_hot_reload_default_off(self):
        """Test that hot-reload is OFF by default"""
        original_env = os.environ.pop('RECEIPTS_HOT_RELOAD', None)
        try:
            loader = RuleLoader(self.rules_dir)
            self.assertFalse(loader._enable_hot_reload, "Hot-reload should be OFF by default")
            self.assertIsNone(loader._file_checksums, "File checksums should not be tracked when hot-reload is OFF")
        finally:
            if original_env is not None:
                os.environ['RECEIPTS_HOT_RELOAD'] = original_env

    def test_hot_reload_explicit_on(self):
        """Test that hot-reload can be explicitly enabled"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=True)
        self.assertTrue(loader._enable_hot_reload, "Hot-reload should be ON when explicitly enabled")
        self.assertIsNotNone(loader._file_checksums, "File checksums should be tracked when hot-reload is ON")
        self.assertIsInstance(loader._file_checksums, dict)

    def test_hot_reload_env_variable(self):
        """Test that RECEIPTS_HOT_RELOAD=1 enables hot-reload"""
        original_env = os.environ.get('RECEIPTS_HOT_RELOAD')

        try:
            os.environ['RECEIPTS_HOT_RELOAD'] = '1'
            loader_on = RuleLoader(self.rules_dir)
            self.assertTrue(loader_on._enable_hot_reload, "Hot-reload should be ON when RECEIPTS_HOT_RELOAD=1")

            os.environ['RECEIPTS_HOT_RELOAD'] = '0'
            loader_off = RuleLoader(self.rules_dir)
            self.assertFalse(loader_off._enable_hot_reload, "Hot-reload should be OFF when RECEIPTS_HOT_RELOAD=0")

            del os.environ['RECEIPTS_HOT_RELOAD']
            loader_default = RuleLoader(self.rules_dir)
            self.assertFalse(loader_default._enable_hot_reload, "Hot-reload should be OFF when env var unset")
        finally:
            if original_env:
                os.environ['RECEIPTS_HOT_RELOAD'] = original_env
            elif 'RECEIPTS_HOT_RELOAD' in os.environ:
                del os.environ['RECEIPTS_HOT_RELOAD']

    def test_no_duplicate_reads_hot_reload_off(self):
        """Test that files are read only once when hot-reload is OFF"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=False)

        loader.reset_file_read_count()
        shared1 = loader._load_shared_rules()
        first_read_count = loader.get_file_read_count()

        self.assertGreater(first_read_count, 0, "Should have read at least one file")

        shared2 = loader._load_shared_rules()
        second_read_count = loader.get_file_read_count()

        self.assertEqual(second_read_count, first_read_count,
                         "Should not re-read files when hot-reload is OFF")
        self.assertEqual(shared1, shared2, "Cached rules should match original")

    def test_no_duplicate_reads_profile_rules(self):
        """Test that merchant profile files are cached when hot-reload is OFF"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=False)

        loader.reset_file_read_count()
        profiles1 = loader.get_merchant_profile_rules()
        first_read_count = loader.get_file_read_count()

        self.assertGreater(len(profiles1), 0, "Should have loaded merchant profiles")
        self.assertGreater(first_read_count, 0, "Should have read at least one file")

        profiles2 = loader.get_merchant_profile_rules()
        second_read_count = loader.get_file_read_count()

        self.assertEqual(second_read_count, first_read_count,
                         "Should not re-read profile files when hot-reload is OFF")
        self.assertEqual(profiles1, profiles2, "Cached profiles should match original")

    def test_reload_works_when_hot_reload_on(self):
        """Test that hot-reload detects changes when ON"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=True)

        shared_file = self.rules_dir / 'shared.yaml'
        should_reload_first = loader._should_reload_file('shared.yaml', shared_file)
        self.assertTrue(should_reload_first, "First load should reload")

        loader._load_shared_rules()

        should_reload_second = loader._should_reload_file('shared.yaml', shared_file)
        self.assertFalse(should_reload_second, "Second load should not reload if file unchanged")

    def test_hot_reload_picks_up_modified_file(self):
        """Test that a modified rule file is re-read when hot-reload is ON"""
        tmp_dir = Path(tempfile.mkdtemp())
        try:
            shutil.copy(self.rules_dir / 'shared.yaml', tmp_dir / 'shared.yaml')
            loader = RuleLoader(tmp_dir, enable_hot_reload=True)
            self.assertEqual(loader.get_scoring_settings()['price_ceiling'], 1000.0)

            shared_file = tmp_dir / 'shared.yaml'
            content = shared_file.read_text(encoding='utf-8')
            shared_file.write_text(content.replace('price_ceiling: 1000.00', 'price_ceiling: 500.00'), encoding='utf-8')

            self.assertEqual(loader.get_scoring_settings()['price_ceiling'], 500.0,
                             "Modified shared.yaml should be reloaded")
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def test_fast_path_no_checksum_calculation(self):
        """Test that fast-path doesn't calculate checksums when hot-reload is OFF"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=False)

        loader.get_merchant_profile_rules()
        loader.get_detection_settings()
        loader._load_shared_rules()

        self.assertIsNone(loader._file_checksums,
                          "Checksums should not be calculated when hot-reload is OFF")

    def test_file_read_counter(self):
        """Test that file read counter tracks I/O operations"""
        loader = RuleLoader(self.rules_dir, enable_hot_reload=False)

        initial_count = loader.get_file_read_count()
        self.assertEqual(initial_count, 0, "Initial read count should be 0")

        loader._load_shared_rules()
        after_shared = loader.get_file_read_count()
        self.assertGreater(after_shared, 0, "Should have read shared.yaml")

        loader.get_detection_settings()
        after_detection = loader.get_file_read_count()
        self.assertGreater(after_detection, after_shared, "Should have read 10_merchant_detection.yaml")

        loader.reset_file_read_count()
        self.assertEqual(loader.get_file_read_count(), 0, "Counter should reset to 0")

    def test_profile_defaults_merged(self):
        """Profiles inherit shared.yaml defaults unless they override them"""
        loader = RuleLoader(self.rules_dir)
        profiles = {p['name']: p for p in loader.get_merchant_profile_rules()}
        defaults = loader.get_profile_defaults()

        self.assertIn('ALDI', profiles)
        self.assertEqual(profiles['ALDI']['price_location'], 'next_line')
        self.assertEqual(profiles['LIDL']['price_location'], 'same_line')
        self.assertEqual(profiles['LIDL']['date_formats'], defaults['date_formats'])
        self.assertEqual(profiles['LIDL']['ignore_markers'], defaults['ignore_markers'])

    def test_profile_files_in_registration_order(self):
        """Merchant profile files are registered in file name order"""
        loader = RuleLoader(self.rules_dir)
        names = [p.name for p in loader.get_profile_files()]
        self.assertEqual(names, sorted(names))
        self.assertTrue(all(name.startswith('2') for name in names))

        profile_names = [p['name'] for p in loader.get_merchant_profile_rules()]
        self.assertLess(profile_names.index('ALDI'), profile_names.index('CARREFOUR'))

    def test_missing_rules_dir_degrades_to_empty(self):
        """A missing rules directory yields empty settings instead of raising"""
        loader = RuleLoader(PROJECT_ROOT / 'does_not_exist')
        self.assertEqual(loader.get_scoring_settings(), {})
        self.assertEqual(loader.get_merchant_profile_rules(), [])
        self.assertEqual(loader.load_rule_file_by_name('10_merchant_detection.yaml'), {})


if __name__ == '__main__':
    unittest.main()
