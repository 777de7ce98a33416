"""
請求書に照合済みだが分類コード（FAC）が無い決済トランザクションの補完
顧客名 → メールドメイン → ソース内で最頻の分類、の順にフォールバックする
"""

from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from financial_models import FinancialRecord, MatchPatch
from index_builder import EMAIL_KEYS, NAME_KEYS, classification_of, invoice_classification_map
from normalizer import email_domain, normalize_name, normalize_reference


def _dominant(counter: Counter, min_count: int = 1) -> Optional[str]:
    if not counter:
        return None
    code, count = min(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return code if count >= min_count else None


class ClassificationFiller:
    def __init__(self, invoices: Iterable[FinancialRecord], min_domain_count: int = 2,
                 clock: Optional[Callable[[], datetime]] = None):
        self.min_domain_count = min_domain_count
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        invoices = list(invoices)
        self.invoice_to_classification = invoice_classification_map(invoices)
        self.by_customer: Dict[str, Counter] = defaultdict(Counter)
        self.by_domain: Dict[str, Counter] = defaultdict(Counter)

        for inv in invoices:
            attrs = inv.attributes
            code = classification_of(inv)
            if not code:
                continue
            name = normalize_name(attrs.get_string(*NAME_KEYS))
            if name:
                self.by_customer[name][code] += 1
            domain = email_domain(attrs.get_string(*EMAIL_KEYS))
            if domain:
                self.by_domain[domain][code] += 1

    def existing_classification(self, gw: FinancialRecord) -> str:
        code = gw.attributes.get_string("matched_invoice_fac")
        if code:
            return code
        number = normalize_reference(gw.attributes.get_string("matched_invoice_number"))
        return self.invoice_to_classification.get(number, "") if number else ""

    def source_dominant(self, gateways: Iterable[FinancialRecord]) -> Optional[str]:
        counter = Counter()
        for gw in gateways:
            code = self.existing_classification(gw)
            if code:
                counter[code] += 1
        return _dominant(counter)

    def fill(self, gateways: List[FinancialRecord]) -> List[MatchPatch]:
        """分類が無いトランザクションへの補完パッチを作る（ソース単位で最頻値を計算）"""
        by_source: Dict[str, List[FinancialRecord]] = defaultdict(list)
        for gw in gateways:
            by_source[gw.source].append(gw)

        filled_at = self.clock().isoformat()
        patches: List[MatchPatch] = []
        for source, rows in by_source.items():
            fallback = self.source_dominant(rows)
            for gw in rows:
                if self.existing_classification(gw):
                    continue
                code, origin = None, None
                name = normalize_name(gw.attributes.get_string(*NAME_KEYS))
                if name:
                    code, origin = _dominant(self.by_customer.get(name, Counter())), "customer-name"
                if not code:
                    domain = email_domain(gw.attributes.get_string(*EMAIL_KEYS))
                    if domain:
                        code = _dominant(self.by_domain.get(domain, Counter()), self.min_domain_count)
                        origin = "email-domain"
                if not code and fallback:
                    code, origin = fallback, "source-dominant"
                if code:
                    patches.append(MatchPatch(
                        record_id=gw.id,
                        collection=source,
                        fields={
                            "matched_invoice_fac": code,
                            "fac_fallback_source": origin,
                            "fac_fallback_at": filled_at,
                        },
                    ))
        return patches
