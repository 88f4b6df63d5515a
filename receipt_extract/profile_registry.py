#!/usr/bin/env python3
"""
Merchant Profile Registry - Immutable set of merchant extraction profiles

Profiles are data, not code: each YAML entry in receipt_rules/2*_merchant_profiles*.yaml
becomes one frozen MerchantProfile with its regexes compiled once.
Adding a merchant means appending a YAML entry (or calling with_profile()),
never mutating an existing profile.
"""

import re
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .models import FooterSignal, MerchantProfile, PRICE_LOCATIONS

logger = logging.getLogger(__name__)


class ProfileConfigError(ValueError):
    """Raised when a merchant profile definition cannot be turned into a MerchantProfile"""


def _compile(pattern: Optional[str], field_name: str, profile_name: str):
    if pattern is None or pattern == '':
        return None
    try:
        return re.compile(str(pattern), re.IGNORECASE)
    except re.error as e:
        raise ProfileConfigError(f"Profile {profile_name}: invalid regex in {field_name}: {e}") from e


def _compile_list(patterns: Optional[Iterable[str]], field_name: str, profile_name: str) -> Tuple:
    compiled = []
    for pattern in patterns or []:
        regex = _compile(pattern, field_name, profile_name)
        if regex is not None:
            compiled.append(regex)
    return tuple(compiled)


def _as_list(value) -> List[Any]:
    """A pattern field holds one regex or a list of alternatives"""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _footer_signals(entries: Optional[List[Any]], profile_name: str) -> Tuple[FooterSignal, ...]:
    signals = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            raise ProfileConfigError(f"Profile {profile_name}: footer signal must be a mapping, got {entry!r}")
        if 'all' in entry:
            tokens = tuple(str(t).upper() for t in entry['all'])
        elif 'keyword' in entry:
            tokens = (str(entry['keyword']).upper(),)
        else:
            raise ProfileConfigError(f"Profile {profile_name}: footer signal needs 'keyword' or 'all'")
        signals.append(FooterSignal(tokens=tokens, score=float(entry.get('score', 0.0))))
    return tuple(signals)


def build_profile(rules: Dict[str, Any], is_generic: bool = False) -> MerchantProfile:
    """
    Build a MerchantProfile from a merged YAML profile dictionary
    
    Args:
        rules: Profile dictionary (profile defaults already merged in)
        is_generic: True for the fallback profile without merchant identity
        
    Returns:
        Frozen MerchantProfile
        
    Raises:
        ProfileConfigError: missing name/product pattern, bad regex or unknown price location
    """
    name = str(rules.get('name') or '').strip()
    if not name:
        raise ProfileConfigError(f"Merchant profile without a name: {sorted(rules.keys())}")
    
    if not rules.get('product_pattern'):
        raise ProfileConfigError(f"Profile {name}: product_pattern is required")
    
    price_location = rules.get('price_location', 'same_line')
    if price_location not in PRICE_LOCATIONS:
        raise ProfileConfigError(f"Profile {name}: unknown price_location {price_location!r} "
                                 f"(expected one of {', '.join(PRICE_LOCATIONS)})")
    
    has_article_numbers = bool(rules.get('has_article_numbers', False))
    article_pattern = _compile(rules.get('article_number_pattern'), 'article_number_pattern', name)
    if has_article_numbers and article_pattern is None:
        raise ProfileConfigError(f"Profile {name}: has_article_numbers requires article_number_pattern")
    
    structure = rules.get('structure', {}) or {}
    structure_keywords = rules.get('structure_keywords', {}) or {}
    
    return MerchantProfile(
        name=name,
        name_variants=tuple(str(v).upper() for v in rules.get('name_variants', []) or []),
        product_pattern=_compile(rules['product_pattern'], 'product_pattern', name),
        total_pattern=_compile(rules.get('total_pattern'), 'total_pattern', name),
        date_pattern=_compile(rules.get('date_pattern'), 'date_pattern', name),
        date_formats=tuple(rules.get('date_formats', []) or []),
        price_only_pattern=_compile(rules.get('price_only_pattern'), 'price_only_pattern', name),
        price_location=price_location,
        has_article_numbers=has_article_numbers,
        is_multi_line_product=bool(rules.get('is_multi_line_product', False)),
        article_number_pattern=article_pattern,
        quantity_patterns=_compile_list(_as_list(rules.get('quantity_pattern')), 'quantity_pattern', name),
        weight_patterns=_compile_list(_as_list(rules.get('weight_pattern')), 'weight_pattern', name),
        header_markers=_compile_list(rules.get('header_markers'), 'header_markers', name),
        start_markers=_compile_list(rules.get('start_markers'), 'start_markers', name),
        end_markers=_compile_list(rules.get('end_markers'), 'end_markers', name),
        ignore_markers=_compile_list(rules.get('ignore_markers'), 'ignore_markers', name),
        footer_signals=_footer_signals(rules.get('footer_signals'), name),
        structure_low=int(structure.get('low', 2)),
        structure_high=int(structure.get('high', 5)),
        structure_mid_score=float(structure.get('mid_score', 0.6)),
        structure_keywords=_compile_list(structure_keywords.get('patterns'), 'structure_keywords', name),
        structure_keyword_score=float(structure_keywords.get('score', 0.0)),
        total_lookahead=int(rules.get('total_lookahead', 2)),
        min_name_length=int(rules.get('min_name_length', 2)),
        is_generic=is_generic,
    )


class MerchantProfileRegistry:
    """
    Read-only, ordered collection of merchant profiles plus the generic fallback.
    
    Safe for unsynchronized concurrent reads: nothing is mutated after __init__.
    """
    
    def __init__(self, profiles: Iterable[MerchantProfile], default_profile: MerchantProfile):
        """
        Initialize registry
        
        Args:
            profiles: Merchant profiles in registration order
            default_profile: Generic profile used when no merchant is detected
        """
        ordered = tuple(profiles)
        by_name = {}
        for profile in ordered:
            key = profile.name.upper()
            if key in by_name:
                raise ProfileConfigError(f"Duplicate merchant profile: {profile.name}")
            by_name[key] = profile
        
        self._profiles = ordered
        self._by_name = MappingProxyType(by_name)
        self._default_profile = default_profile
    
    @classmethod
    def from_rules(cls, rule_loader) -> 'MerchantProfileRegistry':
        """
        Build the registry from YAML rules
        
        Args:
            rule_loader: RuleLoader instance
            
        Returns:
            MerchantProfileRegistry
        """
        profiles = [build_profile(rules) for rules in rule_loader.get_merchant_profile_rules()]
        default_profile = build_profile(rule_loader.get_generic_profile_rules(), is_generic=True)
        
        registry = cls(profiles, default_profile)
        logger.info(f"MerchantProfileRegistry loaded {len(profiles)} profiles: {', '.join(registry.names())}")
        return registry
    
    def with_profile(self, profile: MerchantProfile) -> 'MerchantProfileRegistry':
        """Return a new registry with profile appended (this registry is unchanged)"""
        return MerchantProfileRegistry(self._profiles + (profile,), self._default_profile)
    
    @property
    def profiles(self) -> Tuple[MerchantProfile, ...]:
        return self._profiles
    
    @property
    def default_profile(self) -> MerchantProfile:
        return self._default_profile
    
    def get(self, name: str) -> Optional[MerchantProfile]:
        """Look up a profile by name (case-insensitive)"""
        if not name:
            return None
        return self._by_name.get(name.upper())
    
    def names(self) -> List[str]:
        return [p.name for p in self._profiles]
    
    def __len__(self) -> int:
        return len(self._profiles)
    
    def __iter__(self) -> Iterator[MerchantProfile]:
        return iter(self._profiles)
    
    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.upper() in self._by_name
