#!/usr/bin/env python3
"""
Unit tests for the fragment JSON loader
"""
import json
import pytest

from receipt_extract.fragment_loader import FragmentFormatError, fragments_from_dict, load_fragments


class TestFragmentLoader:
    """Test fragment document parsing"""

    def test_top_left_document(self):
        fragments = fragments_from_dict({
            'origin': 'top_left',
            'fragments': [{'text': 'MILCH 1,09', 'box': [0.1, 0.2, 0.5, 0.03], 'confidence': 0.93}],
        })
        assert len(fragments) == 1
        assert fragments[0].text == 'MILCH 1,09'
        assert (fragments[0].x, fragments[0].y) == (0.1, 0.2)
        assert fragments[0].confidence == 0.93

    def test_bottom_left_origin_flipped(self):
        fragments = fragments_from_dict({
            'origin': 'bottom_left',
            'fragments': [
                {'text': 'LIDL', 'box': [0.3, 0.9, 0.4, 0.05]},
                {'text': 'SUMME 1,29', 'box': [0.1, 0.1, 0.6, 0.05]},
            ],
        })
        assert fragments[0].y == pytest.approx(0.05)
        assert fragments[1].y == pytest.approx(0.85)
        assert fragments[0].y < fragments[1].y

    def test_bare_list(self):
        fragments = fragments_from_dict([{'text': 'Brot', 'box': [0, 0, 0.2, 0.02]}])
        assert fragments[0].text == 'Brot'
        assert fragments[0].confidence == 1.0

    def test_missing_box(self):
        with pytest.raises(FragmentFormatError):
            fragments_from_dict([{'text': 'Brot'}])

    def test_non_numeric_box(self):
        with pytest.raises(FragmentFormatError):
            fragments_from_dict([{'text': 'Brot', 'box': ['a', 0, 0.2, 0.02]}])

    def test_unknown_origin(self):
        with pytest.raises(FragmentFormatError, match='Unknown origin'):
            fragments_from_dict({'origin': 'center', 'fragments': []})

    def test_load_from_file(self, tmp_path):
        path = tmp_path / 'receipt.json'
        path.write_text(json.dumps({
            'fragments': [
                {'text': 'LIDL', 'box': [0.3, 0.02, 0.4, 0.03]},
                {'text': 'Bio Milch 1,29', 'box': [0.05, 0.1, 0.9, 0.03]},
            ],
        }), encoding='utf-8')

        fragments = load_fragments(path)
        assert [f.text for f in fragments] == ['LIDL', 'Bio Milch 1,29']
