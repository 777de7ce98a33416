import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from similarity import (
    bigram_similarity,
    edit_distance_ratio,
    group_duplicate_labels,
    name_similarity,
    pick_canonical_label,
)


def test_bigram_boundaries():
    assert bigram_similarity("abc", "abc") == 1.0
    assert bigram_similarity("", "abc") == 0.0
    assert bigram_similarity(None, "abc") == 0.0
    # 2文字は完全一致のみ
    assert bigram_similarity("ab", "ab") == 1.0
    assert bigram_similarity("ab", "ac") == 0.0
    assert bigram_similarity("a", "b") == 0.0


def test_bigram_dice_value():
    assert bigram_similarity("night", "nacht") == pytest.approx(0.25)


def test_bigram_multiset_consumed_once():
    # "aaaa" の aa×3 に対して "aa" は1回しか一致しない
    assert bigram_similarity("aaaa", "aa") == pytest.approx(0.5)


def test_edit_distance_ratio():
    assert edit_distance_ratio("kitten", "sitting") == pytest.approx(1 - 3 / 7)
    assert edit_distance_ratio("", "") == 0.0
    assert edit_distance_ratio("Same", "same") == 1.0


def test_name_similarity_rules():
    assert name_similarity("John Smith", "john smith") == 1.0
    assert name_similarity("", "john") == 0.0
    assert name_similarity("Acme Corp", "Acme Corporation Ltd") == 0.90
    assert name_similarity("Smith John", "John A Smith") == 0.85
    assert name_similarity("Mc Donald", "McDonald") == 0.95


def test_name_similarity_falls_back_to_edit_distance():
    score = name_similarity("Jonathan", "Jonatan")
    assert 0.0 < score < 0.9
    assert score == pytest.approx(edit_distance_ratio("Jonathan", "Jonatan"))


def test_group_duplicate_labels_by_dedup_key():
    groups = group_duplicate_labels(["Course A - 1st payment", "Course A", "Other thing"])
    assert groups == [["Course A - 1st payment", "Course A"]]


def test_group_duplicate_labels_with_threshold():
    labels = ["Implantology Course", "Implantology Courses", "Ortho"]
    assert group_duplicate_labels(labels) == []
    assert group_duplicate_labels(labels, threshold=0.9) == [["Implantology Course", "Implantology Courses"]]


def test_pick_canonical_label():
    assert pick_canonical_label(["Course  A", "Course A"]) == "Course A"
    assert pick_canonical_label(["Course A", "Course A Full"]) == "Course A Full"
