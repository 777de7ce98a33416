"""
チェーン解決: 銀行入金 → 決済トランザクション → 請求書 → P&L分類
照合結果の品質評価用（読み取り専用、書き込みなし）
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from financial_models import FinancialRecord
from index_builder import invoice_classification_map
from normalizer import normalize_reference


# pnl_line はチェーンより優先、pnl_fac はチェーンが無い場合のみ
DIRECT_LINE_KEY = "pnl_line"
DIRECT_FAC_KEY = "pnl_fac"

DIRECT = "direct"
FULL_CHAIN = "full_chain"
PARTIAL_CHAIN = "partial_chain"
NO_CHAIN = "no_chain"
CATEGORIES = (DIRECT, FULL_CHAIN, PARTIAL_CHAIN, NO_CHAIN)


@dataclass
class ChainLink:
    category: str
    classification: str = ""
    gateway_id: Optional[str] = None
    invoice_number: str = ""


@dataclass
class CoverageBucket:
    counts: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CATEGORIES})
    totals: Dict[str, Decimal] = field(default_factory=lambda: {c: Decimal("0") for c in CATEGORIES})

    def add(self, category: str, amount: Decimal):
        self.counts[category] += 1
        self.totals[category] += amount

    @property
    def inflows(self) -> int:
        return sum(self.counts.values())

    @property
    def classified(self) -> int:
        return self.counts[DIRECT] + self.counts[FULL_CHAIN]

    @property
    def coverage_pct(self) -> float:
        return (self.classified / self.inflows * 100.0) if self.inflows else 0.0


class ChainResolver:
    def __init__(self, gateways: Iterable[FinancialRecord], invoices: Iterable[FinancialRecord]):
        self.gateway_by_tx: Dict[str, FinancialRecord] = {}
        for gw in gateways:
            tx_id = gw.attributes.get_string("transaction_id")
            if tx_id:
                self.gateway_by_tx[tx_id] = gw

        self.invoice_to_classification = invoice_classification_map(invoices)

    def _gateway_classification(self, gw: FinancialRecord) -> str:
        code = gw.attributes.get_string("matched_invoice_fac")
        if code:
            return code
        number = normalize_reference(gw.attributes.get_string("matched_invoice_number"))
        return self.invoice_to_classification.get(number, "") if number else ""

    def resolve(self, bank: FinancialRecord) -> ChainLink:
        attrs = bank.attributes
        line = attrs.get_string(DIRECT_LINE_KEY)
        if line:
            return ChainLink(DIRECT, classification=line)

        tx_ids = attrs.get_string_list("transaction_ids")
        if not tx_ids:
            fac = attrs.get_string(DIRECT_FAC_KEY)
            return ChainLink(DIRECT, classification=fac) if fac else ChainLink(NO_CHAIN)

        first_linked = None
        for tx_id in tx_ids:
            gw = self.gateway_by_tx.get(tx_id)
            if gw is None:
                continue
            first_linked = first_linked or gw
            code = self._gateway_classification(gw)
            if code:
                return ChainLink(FULL_CHAIN, classification=code, gateway_id=gw.id,
                                 invoice_number=gw.attributes.get_string("matched_invoice_number"))
        return ChainLink(PARTIAL_CHAIN, gateway_id=first_linked.id if first_linked else None)

    def coverage(self, bank_records: Iterable[FinancialRecord]) -> Dict[str, CoverageBucket]:
        """銀行ソースごとの入金件数・金額をチェーン状態別に集計（入金のみ）"""
        report: Dict[str, CoverageBucket] = {}
        for bank in bank_records:
            if bank.amount is None or bank.amount <= 0:
                continue
            bucket = report.setdefault(bank.source or "unknown", CoverageBucket())
            bucket.add(self.resolve(bank).category, bank.amount)
        return report


def format_coverage(report: Dict[str, CoverageBucket]) -> List[str]:
    lines: List[str] = []
    for source, bucket in sorted(report.items()):
        lines.append(f"─── {source.upper()} ───")
        lines.append(f"  入金件数: {bucket.inflows}")
        lines.append(f"  ✓ フルチェーン (bank→gw→inv→P&L): {bucket.counts[FULL_CHAIN]} "
                     f"({bucket.totals[FULL_CHAIN]:,.2f})")
        lines.append(f"  ✓ 直接P&L分類: {bucket.counts[DIRECT]} ({bucket.totals[DIRECT]:,.2f})")
        lines.append(f"  ~ 部分チェーン (tx_idsあり、P&Lなし): {bucket.counts[PARTIAL_CHAIN]} "
                     f"({bucket.totals[PARTIAL_CHAIN]:,.2f})")
        lines.append(f"  ✗ チェーンなし: {bucket.counts[NO_CHAIN]} ({bucket.totals[NO_CHAIN]:,.2f})")
        lines.append(f"  P&Lカバレッジ: {bucket.classified}/{bucket.inflows} ({bucket.coverage_pct:.0f}%)")
    return lines
