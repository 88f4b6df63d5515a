#!/usr/bin/env python3
"""
Multi-pass OCR fan-out

Runs several independent recognition passes (e.g. standard, enhanced contrast,
inverted) concurrently on the same source and keeps the single pass whose
recognized text is longest. Passes are never combined.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

from .models import TextFragment

logger = logging.getLogger(__name__)

FragmentPass = Callable[[], Sequence[TextFragment]]


@dataclass(frozen=True)
class MultiPassResult:
    """Winning pass with its fragments and the text length of every successful pass"""
    winner: Optional[str]
    fragments: Tuple[TextFragment, ...] = ()
    text_lengths: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def text_length(fragments: Sequence[TextFragment]) -> int:
    """Total number of non-blank characters in a pass"""
    return sum(len(f.text.strip()) for f in fragments)


def run_multipass(passes: Mapping[str, FragmentPass], max_workers: Optional[int] = None,
                  timeout: Optional[float] = None) -> MultiPassResult:
    """
    Run recognition passes in parallel and pick the longest one

    Args:
        passes: Ordered mapping of pass name -> callable returning fragments
        max_workers: Thread pool size (default: one thread per pass)
        timeout: Seconds to wait for all passes; concurrent.futures.TimeoutError propagates

    Returns:
        MultiPassResult (winner None and no fragments when every pass failed)
    """
    if not passes:
        return MultiPassResult(winner=None)

    order = list(passes)
    results: Dict[str, Tuple[TextFragment, ...]] = {}
    failures: Dict[str, str] = {}

    executor = ThreadPoolExecutor(max_workers=max_workers or len(order))
    try:
        futures = {executor.submit(passes[name]): name for name in order}
        for future in as_completed(futures, timeout=timeout):
            name = futures[future]
            try:
                results[name] = tuple(future.result() or ())
            except Exception as e:
                # One failing pass must not cost the others
                logger.warning(f"OCR pass '{name}' failed: {e}")
                failures[name] = str(e)
    finally:
        # Do not block on passes still running after a timeout
        executor.shutdown(wait=False, cancel_futures=True)

    lengths = {name: text_length(results[name]) for name in order if name in results}
    if not lengths:
        logger.warning("All OCR passes failed")
        return MultiPassResult(winner=None, failures=failures)

    winner: Optional[str] = None
    for name in order:
        # Strictly greater: the pass declared first keeps ties
        if name in lengths and (winner is None or lengths[name] > lengths[winner]):
            winner = name

    logger.info(f"OCR pass '{winner}' selected ({lengths[winner]} chars; "
                f"{', '.join(f'{n}={l}' for n, l in lengths.items())})")
    return MultiPassResult(winner=winner, fragments=results[winner], text_lengths=lengths, failures=failures)

