#!/usr/bin/env python3
"""
Layout Reconstructor - Rebuild reading order from positioned OCR fragments

1. Column detection: project fragment x-ranges onto a histogram of the X axis and
   look for the widest empty (or nearly empty) band with enough fragments on each side.
2. Row grouping: fragments whose vertical centers differ by less than
   row_threshold_factor * median fragment height share a row.
3. Within a row fragments are ordered left to right; in column mode each row
   yields one line per column (description, price).

Coordinates are normalized [0, 1] with a top-left origin.
Never raises on degenerate input: no fragments -> no lines.
"""

import logging
from typing import Iterable, List, Optional, Sequence

import numpy as np

from .models import COLUMN_DESCRIPTION, COLUMN_PRICE, ReconstructedLine, TextFragment

logger = logging.getLogger(__name__)


class LayoutReconstructor:
    """Turn an unordered set of TextFragments into ordered ReconstructedLines"""
    
    def __init__(self, rule_loader=None, **overrides):
        """
        Initialize layout reconstructor
        
        Args:
            rule_loader: Optional RuleLoader (reads the 'layout' section of shared.yaml)
            **overrides: Explicit threshold values (win over shared.yaml)
        """
        settings = dict(rule_loader.get_layout_settings()) if rule_loader else {}
        settings.update(overrides)
        
        self.row_threshold_factor = float(settings.get('row_threshold_factor', 0.5))
        self.column_min_fraction = float(settings.get('column_min_fraction', 0.2))
        self.column_min_gap = float(settings.get('column_min_gap', 0.04))
        self.column_max_crossing_fraction = float(settings.get('column_max_crossing_fraction', 0.1))
        self.column_min_fragments = int(settings.get('column_min_fragments', 4))
        self.histogram_bins = int(settings.get('histogram_bins', 200))
    
    def reconstruct(self, fragments: Iterable[TextFragment]) -> List[ReconstructedLine]:
        """
        Reconstruct ordered lines from fragments
        
        Args:
            fragments: Fragments of one OCR pass (any order)
            
        Returns:
            Lines ordered top to bottom (row index non-decreasing)
        """
        usable = [f for f in fragments if f.text and f.text.strip()]
        if not usable:
            logger.debug("No usable fragments, nothing to reconstruct")
            return []
        
        split_x = self.detect_column_split(usable)
        rows = self.group_rows(usable)
        
        lines = []
        for row_index, row in enumerate(rows):
            row = sorted(row, key=lambda f: (f.x, f.center_y, f.text))
            if split_x is None:
                lines.append(ReconstructedLine(row_index=row_index, fragments=tuple(row)))
                continue
            
            description = tuple(f for f in row if f.center_x < split_x)
            price = tuple(f for f in row if f.center_x >= split_x)
            if description:
                lines.append(ReconstructedLine(row_index=row_index, fragments=description, column=COLUMN_DESCRIPTION))
            if price:
                lines.append(ReconstructedLine(row_index=row_index, fragments=price, column=COLUMN_PRICE))
        
        logger.debug(f"Reconstructed {len(lines)} lines from {len(usable)} fragments "
                     f"({len(rows)} rows, {'two-column' if split_x is not None else 'single-column'})")
        return lines
    
    def group_rows(self, fragments: Sequence[TextFragment]) -> List[List[TextFragment]]:
        """
        Group fragments into rows using an adaptive vertical threshold
        
        The threshold is row_threshold_factor * median fragment height; a fragment
        joins the current row when its center is within the threshold of the
        row's mean center.
        """
        if not fragments:
            return []
        
        heights = np.array([max(f.height, 0.0) for f in fragments], dtype=float)
        threshold = self.row_threshold_factor * float(np.median(heights))
        
        ordered = sorted(fragments, key=lambda f: (f.center_y, f.x, f.text))
        rows: List[List[TextFragment]] = []
        current: List[TextFragment] = []
        anchor = 0.0
        
        for fragment in ordered:
            if current and abs(fragment.center_y - anchor) < threshold:
                current.append(fragment)
                anchor = float(np.mean([f.center_y for f in current]))
            else:
                if current:
                    rows.append(current)
                current = [fragment]
                anchor = fragment.center_y
        
        if current:
            rows.append(current)
        
        return rows
    
    def detect_column_split(self, fragments: Sequence[TextFragment]) -> Optional[float]:
        """
        Find the x position separating a description column from a price column
        
        Returns:
            Split x coordinate, or None for single-column layouts
        """
        count = len(fragments)
        if count < self.column_min_fragments:
            return None
        
        starts = np.clip(np.array([f.x for f in fragments], dtype=float), 0.0, 1.0)
        ends = np.clip(np.array([f.right for f in fragments], dtype=float), 0.0, 1.0)
        edges = np.linspace(0.0, 1.0, self.histogram_bins + 1)
        
        # Fragment i covers bin b when its range overlaps [edges[b], edges[b+1])
        coverage = ((starts[:, None] < edges[None, 1:]) & (ends[:, None] > edges[None, :-1])).sum(axis=0)
        occupied = np.nonzero(coverage > 0)[0]
        if occupied.size == 0:
            return None
        
        first, last = int(occupied[0]), int(occupied[-1])
        allowed = int(np.floor(self.column_max_crossing_fraction * count))
        open_bins = coverage[first:last + 1] <= allowed
        
        padded = np.concatenate(([False], open_bins, [False])).astype(int)
        transitions = np.diff(padded)
        run_starts = np.nonzero(transitions == 1)[0]
        run_ends = np.nonzero(transitions == -1)[0]
        
        min_side = max(1, int(np.ceil(self.column_min_fraction * count)))
        best_split = None
        best_width = 0.0
        
        for run_start, run_end in zip(run_starts, run_ends):
            gap_left = float(edges[first + run_start])
            gap_right = float(edges[first + run_end])
            width = gap_right - gap_left
            if width < self.column_min_gap or width <= best_width:
                continue
            
            left_count = int(np.sum(ends <= gap_left))
            right_count = int(np.sum(starts >= gap_right))
            if left_count < min_side or right_count < min_side:
                continue
            
            best_width = width
            best_split = (gap_left + gap_right) / 2.0
        
        if best_split is not None:
            logger.debug(f"Column split at x={best_split:.3f} (gap width {best_width:.3f})")
        return best_split
