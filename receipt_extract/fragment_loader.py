#!/usr/bin/env python3
"""
Fragment Loader - Read recognized text fragments from a JSON document

Format:
    {
      "origin": "top_left" | "bottom_left",
      "fragments": [
        {"text": "MILCH 1,09", "box": [x, y, width, height], "confidence": 0.93},
        ...
      ]
    }

Boxes are normalized to [0, 1]. Bottom-left boxes (e.g. Vision-style output)
are flipped to the top-left origin used by LayoutReconstructor.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from .models import TextFragment

logger = logging.getLogger(__name__)

ORIGINS = ('top_left', 'bottom_left')


class FragmentFormatError(ValueError):
    """Fragment document cannot be interpreted"""


def fragments_from_dict(document: Union[Dict[str, Any], List[Any]]) -> List[TextFragment]:
    """
    Convert a parsed fragment document into TextFragments

    A bare list is accepted as fragments with top-left origin.
    """
    if isinstance(document, list):
        origin, entries = 'top_left', document
    else:
        origin = document.get('origin', 'top_left')
        entries = document.get('fragments', [])

    if origin not in ORIGINS:
        raise FragmentFormatError(f"Unknown origin '{origin}' (expected one of {', '.join(ORIGINS)})")

    fragments = []
    for index, entry in enumerate(entries):
        text = str(entry.get('text', ''))
        box = entry.get('box')
        if not box or len(box) != 4:
            raise FragmentFormatError(f"Fragment {index} has no [x, y, width, height] box")
        try:
            x, y, width, height = (float(v) for v in box)
            confidence = float(entry.get('confidence', 1.0))
        except (TypeError, ValueError) as e:
            raise FragmentFormatError(f"Fragment {index} has non-numeric geometry: {e}") from e

        if origin == 'bottom_left':
            y = 1.0 - y - height

        fragments.append(TextFragment(text=text, x=x, y=y, width=width, height=height, confidence=confidence))

    return fragments


def load_fragments(path: Union[str, Path]) -> List[TextFragment]:
    """
    Load fragments from a JSON file

    Args:
        path: Path to the fragment JSON document

    Returns:
        List of TextFragment in file order
    """
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        document = json.load(f)

    fragments = fragments_from_dict(document)
    logger.debug(f"Loaded {len(fragments)} fragments from {path.name}")
    return fragments
