"""
照合対象（請求書・注文）側のインデックス
"""

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from financial_models import FinancialRecord
from normalizer import normalize_email, normalize_name, normalize_reference


NAME_KEYS = ("customer_name", "billing_name", "customer_company")
EMAIL_KEYS = ("customer_email", "email")
INVOICE_KEYS = ("invoice_number",)
ORDER_KEYS = ("order_number", "order_id")
CLASSIFICATION_KEYS = ("financial_account_code",)

# 照合済みの対象に付与される注記
TARGET_CLAIM_KEY = "matched_source_id"


def name_key(record: FinancialRecord) -> str:
    return normalize_name(record.attributes.get_string(*NAME_KEYS))


def email_key(record: FinancialRecord) -> str:
    return normalize_email(record.attributes.get_string(*EMAIL_KEYS))


def classification_of(record: FinancialRecord) -> str:
    return record.attributes.get_string(*CLASSIFICATION_KEYS)


def invoice_classification_map(invoices: Iterable[FinancialRecord]) -> Dict[str, str]:
    """正規化請求書番号 → 分類コード（照合済みの請求書も含む）"""
    mapping: Dict[str, str] = {}
    for inv in invoices:
        number = normalize_reference(inv.attributes.get_string(*INVOICE_KEYS))
        code = classification_of(inv)
        if number and code:
            mapping[number] = code
    return mapping


def amount_bucket(amount: Optional[Decimal]) -> Optional[int]:
    if amount is None:
        return None
    return int(abs(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TargetIndex:
    """外部ID・正規化顧客名・メール・金額バケットでの検索用インデックス"""

    def __init__(self):
        self.records: List[FinancialRecord] = []
        self.by_external_id: Dict[str, List[FinancialRecord]] = defaultdict(list)
        self.by_normalized_name: Dict[str, List[FinancialRecord]] = defaultdict(list)
        self.by_email: Dict[str, List[FinancialRecord]] = defaultdict(list)
        self.by_amount_bucket: Dict[int, List[FinancialRecord]] = defaultdict(list)
        self.invoice_references: List[Tuple[str, FinancialRecord]] = []
        self.excluded_matched = 0

    @classmethod
    def build(cls, targets: Iterable[FinancialRecord], exclude_matched: bool = True) -> "TargetIndex":
        index = cls()
        for record in targets:
            index._add(record, exclude_matched)
        return index

    def _add(self, record: FinancialRecord, exclude_matched: bool):
        attrs = record.attributes
        invoice = normalize_reference(attrs.get_string(*INVOICE_KEYS))
        if exclude_matched and attrs.has(TARGET_CLAIM_KEY):
            self.excluded_matched += 1
            return

        self.records.append(record)

        order = normalize_reference(attrs.get_string(*ORDER_KEYS))
        if invoice:
            self.by_external_id[invoice].append(record)
            self.invoice_references.append((invoice, record))
        if order and order != invoice:
            self.by_external_id[order].append(record)

        name = name_key(record)
        if name:
            self.by_normalized_name[name].append(record)

        email = email_key(record)
        if email:
            self.by_email[email].append(record)

        bucket = amount_bucket(record.amount)
        if bucket is not None and bucket > 0:
            self.by_amount_bucket[bucket].append(record)

    def lookup_external_id(self, reference: str) -> List[FinancialRecord]:
        return list(self.by_external_id.get(normalize_reference(reference), []))

    def invoices_containing(self, fragment: str) -> List[FinancialRecord]:
        """請求書番号に fragment を含む対象（請求書番号順）"""
        fragment = normalize_reference(fragment)
        if not fragment:
            return []
        hits = [(inv, rec) for inv, rec in self.invoice_references if fragment in inv]
        hits.sort(key=lambda x: (x[0], x[1].id))
        return [rec for _, rec in hits]

    def lookup_identity(self, name: str, email: str) -> List[FinancialRecord]:
        """名前キーまたはメールキーが一致する対象（重複なし）"""
        seen = set()
        out: List[FinancialRecord] = []
        for record in (self.by_normalized_name.get(name, []) if name else []) + \
                (self.by_email.get(email, []) if email else []):
            if record.id not in seen:
                seen.add(record.id)
                out.append(record)
        return out

    def candidates_near(self, amount: Optional[Decimal], spread: int = 1) -> List[FinancialRecord]:
        """丸め金額 ±spread のバケットを探索"""
        bucket = amount_bucket(amount)
        if bucket is None:
            return []
        out: List[FinancialRecord] = []
        for key in range(bucket - spread, bucket + spread + 1):
            out.extend(self.by_amount_bucket.get(key, []))
        return out

    def summary(self) -> str:
        return (f"{len(self.records)}件 (外部ID {len(self.by_external_id)}, 顧客名 {len(self.by_normalized_name)}, "
                f"メール {len(self.by_email)}, 金額バケット {len(self.by_amount_bucket)})")
