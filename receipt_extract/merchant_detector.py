#!/usr/bin/env python3
"""
Merchant Detection - Score every merchant profile against reconstructed receipt text

Three signals per profile, combined with fixed weights:
    name       0.50  name variants (tolerating OCR character confusions)
    structure  0.30  structural markers implied by the profile flags
    pattern    0.20  footer / total keywords in the trailing lines

A profile is a candidate only when its weighted score exceeds 0.30.
The best candidate wins; on equal scores the profile registered first wins.
"""

import re
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .models import MerchantMatch, MerchantProfile, ReconstructedLine
from .name_hygiene import fix_price_confusions, strip_isolated_noise

logger = logging.getLogger(__name__)

NAME_WEIGHT = 0.50
STRUCTURE_WEIGHT = 0.30
PATTERN_WEIGHT = 0.20
CANDIDATE_THRESHOLD = 0.30

NAME_STRONG_SCORE = 1.0
NAME_SINGLE_SCORE = 0.7
NAME_CONFUSED_SCORE = 0.5

# Standalone numeric code line (article number / EAN) on a receipt
NUMERIC_CODE_LINE = re.compile(r'^\d{6,13}$')


def line_texts(lines: Iterable[Union[ReconstructedLine, str]]) -> List[str]:
    """Plain text of lines (accepts ReconstructedLine objects or strings)"""
    texts = []
    for line in lines:
        text = line if isinstance(line, str) else line.text
        text = text.strip()
        if text:
            texts.append(text)
    return texts


class MerchantDetector:
    """Detect the merchant profile that produced a receipt"""
    
    def __init__(self, registry, rule_loader=None, confusions: Optional[Sequence[Tuple[str, str]]] = None,
                 footer_window: Optional[int] = None):
        """
        Initialize merchant detector
        
        Args:
            registry: MerchantProfileRegistry
            rule_loader: Optional RuleLoader (confusion table, corrections, footer window)
            confusions: Explicit [canonical, misread] pairs (win over YAML)
            footer_window: Number of trailing lines scanned for footer keywords
        """
        settings = rule_loader.get_detection_settings() if rule_loader else {}
        
        self.registry = registry
        pairs = confusions if confusions is not None else settings.get('confusions', [])
        self.confusions = tuple((str(a).upper(), str(b).upper()) for a, b in pairs)
        self.footer_window = int(footer_window or settings.get('footer_window', 15))
        self.corrections = {str(k).upper(): str(v) for k, v in (settings.get('corrections', {}) or {}).items()}
        self._correction_regex = None
        if self.corrections:
            alternatives = '|'.join(re.escape(k) for k in sorted(self.corrections, key=len, reverse=True))
            self._correction_regex = re.compile(rf'(?<![A-Z0-9])({alternatives})(?![A-Z0-9])', re.IGNORECASE)
        
        # Variant spellings are derived once per profile (profiles are immutable)
        self._variant_cache: Dict[str, Dict[str, Set[str]]] = {}
        for profile in registry.profiles:
            self._variant_cache[profile.name] = self._expand_variants(profile.name_variants)
    
    def detect(self, lines: Sequence[Union[ReconstructedLine, str]],
               profiles: Optional[Iterable[MerchantProfile]] = None) -> Optional[MerchantMatch]:
        """
        Pick the best merchant profile for the receipt lines
        
        Args:
            lines: Reconstructed lines (or plain text lines)
            profiles: Profiles to consider (defaults to the registry, in registration order)
            
        Returns:
            MerchantMatch, or None when no profile scores above the candidate threshold
        """
        texts = line_texts(lines)
        if not texts:
            return None
        
        candidates = list(profiles) if profiles is not None else list(self.registry.profiles)
        best: Optional[MerchantMatch] = None
        
        for profile in candidates:
            match = self.score_profile(texts, profile)
            logger.debug(f"{profile.name}: total={match.confidence:.3f} "
                         f"name={match.signals['name']:.2f} structure={match.signals['structure']:.2f} "
                         f"pattern={match.signals['pattern']:.2f}")
            
            if match.confidence <= CANDIDATE_THRESHOLD:
                continue
            # Strictly greater: the earlier profile keeps ties
            if best is None or match.confidence > best.confidence:
                best = match
        
        if best:
            logger.info(f"Detected merchant {best.merchant_name} (confidence {best.confidence:.2f})")
        else:
            logger.info("No merchant profile above detection threshold")
        return best
    
    def score_profile(self, texts: Sequence[str], profile: MerchantProfile) -> MerchantMatch:
        """
        Compute the weighted detection score of one profile
        
        Args:
            texts: Plain receipt lines
            profile: Profile to score
            
        Returns:
            MerchantMatch with the weighted confidence and raw per-signal scores
        """
        name_score = self.name_signal(texts, profile)
        structure_score = self.structure_signal(texts, profile)
        pattern_score = self.pattern_signal(texts, profile)
        
        total = (name_score * NAME_WEIGHT
                 + structure_score * STRUCTURE_WEIGHT
                 + pattern_score * PATTERN_WEIGHT)
        
        return MerchantMatch(
            profile=profile,
            confidence=round(min(total, 1.0), 4),
            signals={'name': name_score, 'structure': structure_score, 'pattern': pattern_score},
        )
    
    def name_signal(self, texts: Sequence[str], profile: MerchantProfile) -> float:
        """
        Fuzzy name containment
        
        1.0 for a multi-token variant or two distinct variants, 0.7 for one
        exact single-token variant, 0.5 when only an OCR-confused spelling matched.
        """
        if not profile.name_variants:
            return 0.0
        
        haystack = self.correct_common_errors('\n'.join(texts)).upper()
        variants = self._variant_cache.get(profile.name)
        if variants is None:
            variants = self._expand_variants(profile.name_variants)
        
        # Evidence is keyed by the text actually found, so two variants that
        # match the same spelling ("LIDL" read as "L1DL") count once
        evidence: Dict[str, Tuple[str, bool]] = {}
        for variant, spellings in variants.items():
            if self._contains(haystack, variant):
                evidence.setdefault(variant, (variant, True))
                continue
            for spelling in sorted(spellings):
                if self._contains(haystack, spelling):
                    evidence.setdefault(spelling, (variant, False))
                    break

        if not evidence:
            return 0.0
        if len(evidence) >= 2:
            return NAME_STRONG_SCORE
        variant, exact = next(iter(evidence.values()))
        if exact and ' ' in variant:
            return NAME_STRONG_SCORE
        return NAME_SINGLE_SCORE if exact else NAME_CONFUSED_SCORE
    
    def structure_signal(self, texts: Sequence[str], profile: MerchantProfile) -> float:
        """
        Count structural markers implied by the profile flags
        
        Article-number profiles count article-number lines; the others count
        product-shaped lines and reach the top tier only without standalone code lines.
        """
        if profile.has_article_numbers and profile.article_number_pattern is not None:
            count = sum(1 for text in texts if profile.article_number_pattern.search(text))
            full_tier_allowed = True
        else:
            count = sum(1 for text in texts if profile.product_pattern.search(text))
            full_tier_allowed = not any(NUMERIC_CODE_LINE.match(text) for text in texts)
        
        if count > profile.structure_high and full_tier_allowed:
            score = 1.0
        elif count > profile.structure_low:
            score = profile.structure_mid_score
        else:
            score = 0.0
        
        if profile.structure_keywords and profile.structure_keyword_score > score:
            if any(regex.search(text) for regex in profile.structure_keywords for text in texts):
                score = profile.structure_keyword_score
        
        return score
    
    def pattern_signal(self, texts: Sequence[str], profile: MerchantProfile) -> float:
        """Additive footer keyword score over the trailing lines, capped at 1.0"""
        if not profile.footer_signals:
            return 0.0
        
        footer = [text.upper() for text in texts[-self.footer_window:]]
        score = 0.0
        for signal in profile.footer_signals:
            if any(signal.matches(line) for line in footer):
                score += signal.score
        return min(score, 1.0)
    
    def correct_common_errors(self, text: str) -> str:
        """Replace well-known OCR misspellings of store and total keywords"""
        if not self._correction_regex or not text:
            return text
        return self._correction_regex.sub(lambda m: self.corrections[m.group(1).upper()], text)
    
    def correct_text(self, text: str) -> str:
        """
        Repair a recognized line before it is parsed
        
        Keyword corrections ("5UMME" -> "SUMME"), letters read inside prices
        ("1O,99" -> "10,99") and isolated noise symbols.
        """
        corrected = self.correct_common_errors(text)
        corrected = fix_price_confusions(corrected)
        return strip_isolated_noise(corrected)
    
    def _expand_variants(self, variants: Iterable[str]) -> Dict[str, Set[str]]:
        """
        Map each variant to its OCR-confused spellings
        
        For every [canonical, misread] pair, a spelling replaces either one
        occurrence or every occurrence of canonical with misread.
        """
        expanded = {}
        for variant in variants:
            spellings = set()
            for canonical, misread in self.confusions:
                start = variant.find(canonical)
                while start != -1:
                    spellings.add(variant[:start] + misread + variant[start + len(canonical):])
                    start = variant.find(canonical, start + 1)
                if canonical in variant:
                    spellings.add(variant.replace(canonical, misread))
            spellings.discard(variant)
            expanded[variant] = spellings
        return expanded
    
    @staticmethod
    def _contains(haystack: str, needle: str) -> bool:
        if not needle or needle not in haystack:
            return False
        return re.search(rf'(?<![A-Z0-9]){re.escape(needle)}(?![A-Z0-9])', haystack) is not None
