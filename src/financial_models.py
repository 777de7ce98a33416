from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional


# 照合済みとみなす注記キー
MATCH_ANNOTATION_KEYS = ("matched_invoice_number", "matched_order_id", "matched_target_id")


def parse_decimal(value: Any) -> Optional[Decimal]:
    """数値・文字列を Decimal に変換。変換できなければ None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        return Decimal(text)
    except (InvalidOperation, ValueError):
        return None


def parse_date(value: Any) -> Optional[date]:
    """YYYY-MM-DD / YYYY/MM/DD / ISO日時を date に変換"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()[:10]
    for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class AttributeBag:
    """custom_data（任意JSON）の型付きラッパー

    変更は merged() によるマージのみ。無関係なキーは常に保持される。
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def get_string(self, *keys: str) -> str:
        """最初に値が入っているキーの文字列を返す（なければ空文字）"""
        for key in keys:
            value = self._data.get(key)
            if value is None:
                continue
            text = str(value).strip()
            if text:
                return text
        return ""

    def get_decimal(self, key: str) -> Optional[Decimal]:
        return parse_decimal(self._data.get(key))

    def get_string_list(self, key: str) -> List[str]:
        value = self._data.get(key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value if v is not None and str(v).strip()]
        text = str(value).strip()
        return [text] if text else []

    def has(self, key: str) -> bool:
        value = self._data.get(key)
        return value is not None and str(value).strip() != ""

    def merged(self, patch: Dict[str, Any]) -> "AttributeBag":
        data = dict(self._data)
        data.update(patch or {})
        return AttributeBag(data)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __eq__(self, other) -> bool:
        return isinstance(other, AttributeBag) and self._data == other._data

    def __repr__(self) -> str:
        return f"AttributeBag({self._data!r})"


@dataclass
class FinancialRecord:
    id: str
    date: Optional[date]
    amount: Optional[Decimal]
    description: str = ""
    attributes: AttributeBag = field(default_factory=AttributeBag)
    source: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FinancialRecord":
        """ストアの行（id, date, amount, description, custom_data, source）から生成"""
        return cls(
            id=str(row.get("id")),
            date=parse_date(row.get("date")),
            amount=parse_decimal(row.get("amount")),
            description=row.get("description") or "",
            attributes=AttributeBag(row.get("custom_data") or {}),
            source=row.get("source") or "",
        )

    @property
    def matched(self) -> bool:
        return any(self.attributes.has(k) for k in MATCH_ANNOTATION_KEYS)

    @property
    def abs_amount(self) -> Optional[Decimal]:
        return abs(self.amount) if self.amount is not None else None


@dataclass
class MatchCandidate:
    target: FinancialRecord
    strategy: str
    confidence: float
    classification: str = ""
    score: float = 0.0
    amount_diff: Optional[Decimal] = None
    date_diff: Optional[int] = None


@dataclass
class MatchPatch:
    record_id: str
    collection: str
    fields: Dict[str, Any]
    target_id: Optional[str] = None


@dataclass
class WriteFailure:
    record_id: str
    reason: str


@dataclass
class WriteReport:
    label: str
    attempted: int = 0
    succeeded: int = 0
    failures: List[WriteFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    def first_failures(self, limit: int = 10) -> List[WriteFailure]:
        return self.failures[:limit]


@dataclass
class FetchResult:
    collection: str
    records: List[FinancialRecord]
    complete: bool = True
    error: Optional[str] = None
