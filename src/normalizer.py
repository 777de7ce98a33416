"""
顧客名・メールアドレスの正規化
比較用キーを作る純粋関数群（例外を出さず、空入力は空文字を返す）
"""

import re
import unicodedata
from typing import Optional


_MONTHS = (
    "january|february|march|april|may|june|july|august|september|october|november|december"
)

# 表示用にしか使われない番号・日付・分割回数などのノイズ
# （ラベル同一性の判定専用。取引照合では使わない）
_DEDUP_NOISE_PATTERNS = [
    re.compile(r"\b\d+\s*instal{1,2}ments?\b"),
    re.compile(r"\bdoctor\s*\d*\b"),
    re.compile(rf"\b({_MONTHS})\s*\d{{4}}\b"),
    re.compile(r"\br\d{4}\s*\d{4}\b"),
    re.compile(r"\b\d+\s*units?\b"),
    re.compile(r"\blevel\s*\d+\b"),
    re.compile(r"\b(upper|lower)\b"),
    re.compile(r"\bzone\s*[a-z]\b"),
    re.compile(r"\b(1st|2nd|3rd|4th)\s*payment\b"),
]

# 請求書・クレジットノート番号（#ABC-123 形式）は記号除去前に落とす
_REFERENCE_CODE = re.compile(r"#[a-z0-9-]+")


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(raw: Optional[str]) -> str:
    """小文字化・アクセント除去・記号除去・空白の正規化"""
    if not raw:
        return ""
    s = _strip_accents(str(raw).lower())
    s = re.sub(r"[^\w\s]|_", "", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def normalize_name_for_dedup(raw: Optional[str]) -> str:
    """ラベル（商品名・取引先名など）の重複判定用の正規化

    分割回数・月年・請求書番号・レベル/ゾーン等の表示用ノイズも除去する。
    """
    if not raw:
        return ""
    s = _strip_accents(str(raw).lower())
    s = _REFERENCE_CODE.sub(" ", s)
    s = normalize_name(s)
    for pattern in _DEDUP_NOISE_PATTERNS:
        s = pattern.sub(" ", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def normalize_email(raw: Optional[str]) -> str:
    """小文字化・空白除去・+エイリアス除去・連続ドットの圧縮"""
    if not raw:
        return ""
    s = re.sub(r"\s+", "", str(raw).lower())
    s = re.sub(r"\+[^@]*@", "@", s)
    s = re.sub(r"\.{2,}", ".", s)
    return s


def email_domain(raw: Optional[str]) -> str:
    email = normalize_email(raw)
    parts = email.split("@")
    if len(parts) != 2 or not parts[0]:
        return ""
    return parts[1]


def normalize_reference(raw: Optional[str]) -> str:
    """注文ID・請求書番号の比較用キー（大文字小文字・前後空白を無視）"""
    if raw is None:
        return ""
    return str(raw).strip().lower()
