"""
文字列類似度
スコアはすべて 0.0〜1.0 で統一
"""

from collections import Counter
from typing import Dict, List, Optional

from rapidfuzz.distance import Levenshtein

from normalizer import normalize_name, normalize_name_for_dedup


def _bigrams(s: str) -> Counter:
    return Counter(s[i:i + 2] for i in range(len(s) - 1))


def bigram_similarity(a: Optional[str], b: Optional[str]) -> float:
    """バイグラムの Dice 係数（各バイグラムは1回だけ消費）"""
    na = normalize_name(a)
    nb = normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    if len(na) < 2 or len(nb) < 2:
        return 0.0
    matches = sum((_bigrams(na) & _bigrams(nb)).values())
    total = (len(na) - 1) + (len(nb) - 1)
    return (2.0 * matches) / total if total > 0 else 0.0


def edit_distance_ratio(a: Optional[str], b: Optional[str]) -> float:
    """Levenshtein 距離を長い方の文字数で割った類似度"""
    na = normalize_name(a)
    nb = normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    longest = max(len(na), len(nb))
    return 1.0 - Levenshtein.distance(na, nb) / longest


def _significant_words(s: str) -> List[str]:
    return [w for w in s.split(" ") if len(w) > 2]


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    """エンティティ同一性判定用の複合類似度

    略称・前後の付加語・空白の揺れを順にチェックし、
    どれにも当たらなければ編集距離にフォールバックする。
    """
    na = normalize_name(a)
    nb = normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0

    shorter, longer = (na, nb) if len(na) <= len(nb) else (nb, na)

    # 部分文字列（短い方が長い方の40%以上）
    if shorter in longer and len(shorter) >= 0.4 * len(longer):
        return 0.90

    # 短い方の主要単語がすべて長い方の単語に含まれる
    short_words = _significant_words(shorter)
    long_words = longer.split(" ")
    if short_words and all(any(sw in lw for lw in long_words) for sw in short_words):
        return 0.85

    # 空白の揺れ
    sa = shorter.replace(" ", "")
    sb = longer.replace(" ", "")
    if sa == sb:
        return 0.95
    if sa and sb and (sa in sb or sb in sa):
        return 0.85

    return edit_distance_ratio(na, nb)


def group_duplicate_labels(labels: List[str], threshold: Optional[float] = None) -> List[List[str]]:
    """同一とみなせるラベルをグループ化（2件以上のグループのみ返す）

    基本は重複判定用正規化キーの完全一致。threshold 指定時は
    4文字以上のラベルに限り name_similarity でも統合する。
    """
    keys: Dict[str, str] = {}
    for label in labels:
        if label and label not in keys:
            keys[label] = normalize_name_for_dedup(label)

    groups: List[List[str]] = []
    used = set()
    items = list(keys.items())
    for i, (label, key) in enumerate(items):
        if label in used or not key:
            continue
        group = [label]
        used.add(label)
        for other, other_key in items[i + 1:]:
            if other in used or not other_key:
                continue
            same = key == other_key
            if not same and threshold is not None and len(key) >= 4 and len(other_key) >= 4:
                same = name_similarity(key, other_key) >= threshold
            if same:
                group.append(other)
                used.add(other)
        if len(group) > 1:
            groups.append(group)
    return groups


def pick_canonical_label(group: List[str]) -> str:
    """二重スペースが少なく、より長いラベルを正式名として選ぶ"""
    best = group[0]
    for label in group[1:]:
        if label.count("  ") < best.count("  "):
            best = label
        elif label.count("  ") == best.count("  ") and len(label) > len(best):
            best = label
    return best
