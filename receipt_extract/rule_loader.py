#!/usr/bin/env python3
"""
Rule Loader - Load YAML rules from receipt_rules directory
Merges shared.yaml profile defaults under every merchant profile.

Files:
    shared.yaml                      layout / detection / scoring settings, profile defaults
    10_merchant_detection.yaml       OCR confusion table and keyword corrections
    2*_merchant_profiles_*.yaml      merchant profiles (file order = registration order)
    90_generic_profile.yaml          fallback profile without merchant identity
    30_storage_categories.yaml       storage category keywords
"""

import os
import yaml
import logging
import hashlib
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

HOT_RELOAD_ENV = 'RECEIPTS_HOT_RELOAD'
PROFILE_FILE_GLOB = '2*_merchant_profiles*.yaml'


class RuleLoader:
    """Load and parse YAML rules, merging shared.yaml defaults into merchant profiles"""
    
    def __init__(self, rules_dir: Path, enable_hot_reload: Optional[bool] = None):
        """
        Initialize rule loader with rules directory
        
        Args:
            rules_dir: Path to receipt_rules directory
            enable_hot_reload: Enable checksum-based hot-reload. When None, the
                              RECEIPTS_HOT_RELOAD environment variable decides (default: off)
        """
        if enable_hot_reload is None:
            enable_hot_reload = os.environ.get(HOT_RELOAD_ENV, '0').strip().lower() in ('1', 'true', 'yes', 'on')
        
        self.rules_dir = Path(rules_dir)
        self._rules_cache = {}
        self._file_checksums = {} if enable_hot_reload else None  # Only track when enabled
        self._enable_hot_reload = enable_hot_reload
        self._shared_rules = None  # Cache shared.yaml
        self._file_read_count = 0
    
    def _calculate_file_checksum(self, file_path: Path) -> str:
        """Calculate MD5 checksum for a file"""
        try:
            with open(file_path, 'rb') as f:
                return hashlib.md5(f.read()).hexdigest()
        except OSError as e:
            logger.warning(f"Error calculating checksum for {file_path}: {e}")
            return ''
    
    def _should_reload_file(self, filename: str, rule_file: Path) -> bool:
        """Check if a rule file should be reloaded based on checksum"""
        # Fast path: when hot-reload is disabled, only check cache
        if not self._enable_hot_reload:
            return filename not in self._rules_cache
        
        if not rule_file.exists():
            return False
        
        current_checksum = self._calculate_file_checksum(rule_file)
        cached_checksum = self._file_checksums.get(filename)
        
        if current_checksum != cached_checksum:
            if cached_checksum:
                logger.debug(f"Rule file {filename} modified, reloading...")
            return True
        
        return False
    
    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """Load a YAML file directly"""
        self._file_read_count += 1
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading YAML file {file_path}: {e}")
            return {}
    
    def _load_shared_rules(self) -> Dict[str, Any]:
        """Load shared.yaml rules"""
        shared_file = self.rules_dir / 'shared.yaml'
        if self._should_reload_file('shared.yaml', shared_file):
            if shared_file.exists():
                self._shared_rules = self._load_yaml_file(shared_file)
                if self._enable_hot_reload:
                    self._file_checksums['shared.yaml'] = self._calculate_file_checksum(shared_file)
                logger.debug("Loaded shared.yaml")
            else:
                self._shared_rules = {}
                logger.warning(f"shared.yaml not found in {self.rules_dir}")
            self._rules_cache['shared.yaml'] = self._shared_rules
        return self._shared_rules if self._shared_rules is not None else {}
    
    def _merge_rules(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries
        override takes precedence over base
        """
        result = base.copy()
        
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_rules(result[key], value)
            else:
                result[key] = value
        
        return result
    
    def load_rule_file_by_name(self, filename: str) -> Dict[str, Any]:
        """
        Load a specific rule file by filename (e.g., '10_merchant_detection.yaml')
        
        Args:
            filename: Rule file name
            
        Returns:
            Rule dictionary or empty dict if not found
        """
        rule_file = self.rules_dir / filename
        
        if not rule_file.exists():
            logger.warning(f"Rule file not found: {rule_file}")
            return {}
        
        if self._should_reload_file(filename, rule_file):
            rules = self._load_yaml_file(rule_file)
            self._rules_cache[filename] = rules or {}
            if self._enable_hot_reload:
                self._file_checksums[filename] = self._calculate_file_checksum(rule_file)
            logger.debug(f"Loaded rule file: {filename}")
        
        return self._rules_cache.get(filename, {})
    
    def get_layout_settings(self) -> Dict[str, Any]:
        """Get layout reconstruction thresholds from shared.yaml"""
        return self._load_shared_rules().get('layout', {})
    
    def get_detection_settings(self) -> Dict[str, Any]:
        """Get merchant detection settings (shared.yaml + 10_merchant_detection.yaml)"""
        shared = self._load_shared_rules().get('detection', {})
        detection = self.load_rule_file_by_name('10_merchant_detection.yaml').get('merchant_detection', {})
        return self._merge_rules(shared, detection)
    
    def get_scoring_settings(self) -> Dict[str, Any]:
        """Get confidence scoring constants from shared.yaml"""
        return self._load_shared_rules().get('scoring', {})
    
    def get_profile_defaults(self) -> Dict[str, Any]:
        """Get profile defaults from shared.yaml (merged under every profile)"""
        return self._load_shared_rules().get('profile_defaults', {})
    
    def get_profile_files(self) -> List[Path]:
        """Merchant profile files in registration order"""
        return sorted(self.rules_dir.glob(PROFILE_FILE_GLOB), key=lambda p: p.name)
    
    def get_merchant_profile_rules(self) -> List[Dict[str, Any]]:
        """
        Get all merchant profile definitions merged with profile defaults
        
        Returns:
            List of profile dictionaries in registration order
        """
        defaults = self.get_profile_defaults()
        profiles = []
        
        for profile_file in self.get_profile_files():
            rules = self.load_rule_file_by_name(profile_file.name)
            entries = rules.get('merchant_profiles', []) or []
            for entry in entries:
                if not isinstance(entry, dict):
                    logger.warning(f"Skipping non-mapping profile entry in {profile_file.name}: {entry!r}")
                    continue
                profiles.append(self._merge_rules(defaults, entry))
            logger.debug(f"Loaded {len(entries)} merchant profiles from {profile_file.name}")
        
        return profiles
    
    def get_generic_profile_rules(self) -> Dict[str, Any]:
        """Get the generic (no merchant) profile merged with profile defaults"""
        rules = self.load_rule_file_by_name('90_generic_profile.yaml')
        return self._merge_rules(self.get_profile_defaults(), rules.get('generic_profile', {}) or {})
    
    def get_storage_category_rules(self) -> Dict[str, Any]:
        """Get storage category keywords from 30_storage_categories.yaml"""
        rules = self.load_rule_file_by_name('30_storage_categories.yaml')
        return rules.get('storage_categories', {})
    
    def get_file_read_count(self) -> int:
        """Number of physical YAML reads since the last reset"""
        return self._file_read_count
    
    def reset_file_read_count(self):
        """Reset the physical YAML read counter"""
        self._file_read_count = 0
    
    def clear_cache(self):
        """Clear the rules cache"""
        logger.debug("Clearing rules cache")
        self._rules_cache.clear()
        if self._file_checksums is not None:
            self._file_checksums.clear()
        self._shared_rules = None
