#!/usr/bin/env python3
"""
OCR Adapter - Tesseract word boxes -> TextFragment

Bridges Pillow + pytesseract to the pipeline input format:
- image_to_data() word boxes grouped by Tesseract line
- a line is split into separate fragments at wide horizontal gaps,
  so a far-right price column stays its own fragment
- boxes normalized to [0, 1] with a top-left origin
"""

import logging
from typing import Any, Dict, List, Optional

import pytesseract
from PIL import Image, ImageEnhance, ImageOps

from .models import TextFragment

logger = logging.getLogger(__name__)

DEFAULT_TESSERACT_CONFIG = '--oem 3 --psm 6'


class TesseractFragmentSource:
    """Recognize an image with Tesseract and return positioned fragments"""

    def __init__(self, lang: str = 'deu+fra', config: str = DEFAULT_TESSERACT_CONFIG,
                 gap_factor: float = 1.5, min_confidence: float = 0.0):
        """
        Args:
            lang: Tesseract language codes
            config: Extra Tesseract CLI options
            gap_factor: Split a line where the gap between words exceeds gap_factor x word height
            min_confidence: Drop words below this recognition confidence (0-1)
        """
        self.lang = lang
        self.config = config
        self.gap_factor = gap_factor
        self.min_confidence = min_confidence

    def __call__(self, image: Image.Image) -> List[TextFragment]:
        return self.recognize(image)

    def recognize(self, image: Image.Image) -> List[TextFragment]:
        data = pytesseract.image_to_data(image, lang=self.lang, config=self.config,
                                         output_type=pytesseract.Output.DICT)
        fragments = self.fragments_from_data(data, image.size)
        logger.debug(f"Tesseract returned {len(fragments)} fragments")
        return fragments

    def fragments_from_data(self, data: Dict[str, List[Any]], image_size) -> List[TextFragment]:
        """
        Convert an image_to_data dictionary into normalized fragments

        Args:
            data: pytesseract Output.DICT result
            image_size: (width, height) in pixels

        Returns:
            List of TextFragment
        """
        img_width, img_height = image_size
        if not img_width or not img_height:
            return []

        # Words grouped per Tesseract line, in recognition order
        lines: Dict[tuple, List[Dict[str, Any]]] = {}
        for i, text in enumerate(data.get('text', [])):
            text = (text or '').strip()
            if not text:
                continue
            confidence = self._confidence(data['conf'][i])
            if confidence is None or confidence < self.min_confidence:
                continue
            key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
            lines.setdefault(key, []).append({
                'text': text,
                'left': int(data['left'][i]),
                'top': int(data['top'][i]),
                'width': int(data['width'][i]),
                'height': int(data['height'][i]),
                'conf': confidence,
            })

        fragments: List[TextFragment] = []
        for words in lines.values():
            words.sort(key=lambda w: w['left'])
            for group in self._split_at_gaps(words):
                fragments.append(self._merge(group, img_width, img_height))
        return fragments

    def _split_at_gaps(self, words: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
        groups = [[words[0]]]
        for word in words[1:]:
            previous = groups[-1][-1]
            gap = word['left'] - (previous['left'] + previous['width'])
            height = max(previous['height'], word['height'], 1)
            if gap > self.gap_factor * height:
                groups.append([word])
            else:
                groups[-1].append(word)
        return groups

    @staticmethod
    def _merge(words: List[Dict[str, Any]], img_width: int, img_height: int) -> TextFragment:
        left = min(w['left'] for w in words)
        top = min(w['top'] for w in words)
        right = max(w['left'] + w['width'] for w in words)
        bottom = max(w['top'] + w['height'] for w in words)
        return TextFragment(
            text=' '.join(w['text'] for w in words),
            x=left / img_width,
            y=top / img_height,
            width=(right - left) / img_width,
            height=(bottom - top) / img_height,
            confidence=sum(w['conf'] for w in words) / len(words),
        )

    @staticmethod
    def _confidence(raw) -> Optional[float]:
        # Tesseract reports -1 for non-word boxes
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        if value < 0:
            return None
        return min(value / 100.0, 1.0)


def enhance_contrast(image: Image.Image, contrast: float = 2.5, brightness: float = 1.15) -> Image.Image:
    """Grayscale, stronger contrast and slightly brighter (faded thermal paper)"""
    img = image.convert('L')
    img = ImageEnhance.Contrast(img).enhance(contrast)
    img = ImageEnhance.Brightness(img).enhance(brightness)
    return img


def invert(image: Image.Image) -> Image.Image:
    """Inverted grayscale (light text on dark background)"""
    return ImageOps.invert(image.convert('L'))


def build_passes(image: Image.Image, source: Optional[TesseractFragmentSource] = None):
    """
    Recognition passes for run_multipass(), in tie-break order

    Args:
        image: Source image (already cropped and deskewed by the caller)
        source: Fragment source (default: TesseractFragmentSource())

    Returns:
        Dict of pass name -> zero-argument callable
    """
    source = source or TesseractFragmentSource()
    return {
        'standard': lambda: source(image),
        'enhanced_contrast': lambda: source(enhance_contrast(image)),
        'inverted': lambda: source(invert(image)),
    }


def load_image(path) -> Image.Image:
    """Open an image file and apply its EXIF orientation"""
    with Image.open(path) as img:
        img = ImageOps.exif_transpose(img)
        return img.convert('RGB')
