"""
銀行入金 → 決済ゲートウェイの振込（disbursement）の紐付け

振込レコードが持つ transaction_ids を銀行入金に書き戻し、
チェーン解決（銀行 → 決済 → 請求書）の入口を作る。
入金に disbursement_id があればそれで、無ければ金額+日付で探す。
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from financial_models import FinancialRecord, MatchPatch
from matching_engine import ClaimRegistry, record_key


DISBURSEMENT_ID_KEYS = ("disbursement_id", "id")

BY_ID = "disbursement-id"
BY_AMOUNT_DATE = "amount-date"


@dataclass
class Disbursement:
    id: str
    record: FinancialRecord
    transaction_ids: List[str]
    settlement_batch_id: str = ""


def _transaction_ids(record: FinancialRecord) -> List[str]:
    # 件数（数値）だけが入っている振込もあるため、リスト以外は空扱い
    raw = record.attributes.get("transaction_ids")
    if not isinstance(raw, list):
        return []
    return [str(v) for v in raw if v is not None and str(v).strip()]


@dataclass
class LinkResult:
    patches: List[MatchPatch] = field(default_factory=list)
    strategy_counts: Dict[str, int] = field(default_factory=dict)
    skipped: Counter = field(default_factory=Counter)
    already_linked: int = 0
    candidates: int = 0

    def summary_lines(self) -> List[str]:
        lines = [
            f"  対象入金（未紐付け）: {self.candidates}",
            f"  紐付け済み:           {self.already_linked}",
        ]
        for strategy in (BY_ID, BY_AMOUNT_DATE):
            lines.append(f"  {strategy:<22} {self.strategy_counts.get(strategy, 0)}")
        for reason, count in sorted(self.skipped.items()):
            lines.append(f"  ⏭️  {reason}: {count}")
        return lines


class DisbursementLinker:
    def __init__(self, disbursements: Iterable[FinancialRecord], cfg: dict,
                 clock: Optional[Callable[[], datetime]] = None):
        settings = cfg["disbursements"]
        self.amount_tolerance = Decimal(str(settings["amount_tolerance"]))
        self.date_window_days = settings["date_window_days"]
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.by_id: Dict[str, Disbursement] = {}
        for record in disbursements:
            disb_id = record.attributes.get_string(*DISBURSEMENT_ID_KEYS)
            if not disb_id:
                continue
            self.by_id[disb_id] = Disbursement(
                id=disb_id,
                record=record,
                transaction_ids=_transaction_ids(record),
                settlement_batch_id=record.attributes.get_string("settlement_batch_id"),
            )

    @staticmethod
    def needs_link(bank: FinancialRecord) -> bool:
        """入金で、まだ transaction_ids を持たないもの"""
        if bank.amount is None or bank.amount <= 0:
            return False
        return not bank.attributes.get_string_list("transaction_ids")

    def _nearest(self, bank: FinancialRecord, registry: ClaimRegistry) -> Optional[Disbursement]:
        if bank.date is None:
            return None
        best, best_key = None, None
        for disb in self.by_id.values():
            rec = disb.record
            if not disb.transaction_ids or registry.is_target_claimed(disb.id):
                continue
            if rec.amount is None or rec.date is None:
                continue
            diff = abs(rec.amount - bank.amount)
            days = abs((rec.date - bank.date).days)
            if diff > self.amount_tolerance or days > self.date_window_days:
                continue
            key = (diff, days, disb.id)
            if best_key is None or key < best_key:
                best, best_key = disb, key
        return best

    def _patch(self, bank: FinancialRecord, disb: Disbursement, strategy: str, linked_at: str) -> MatchPatch:
        fields = {
            "transaction_ids": list(disb.transaction_ids),
            "disbursement_id": disb.id,
            "payment_source": disb.record.source,
            "transaction_count": len(disb.transaction_ids),
            "backfilled_at": linked_at,
            "link_strategy": strategy,
        }
        if disb.settlement_batch_id:
            fields["settlement_batch_id"] = disb.settlement_batch_id
        return MatchPatch(record_id=bank.id, collection=bank.source, fields=fields, target_id=disb.id)

    def link(self, bank_records: Iterable[FinancialRecord]) -> LinkResult:
        banks = list(bank_records)
        registry = ClaimRegistry()
        result = LinkResult()
        linked_at = self.clock().isoformat()

        # 既に紐付いた振込は他の入金に使わせない
        for bank in banks:
            if bank.amount is not None and bank.amount > 0 and not self.needs_link(bank):
                result.already_linked += 1
                disb_id = bank.attributes.get_string("disbursement_id")
                if disb_id:
                    registry.try_claim(record_key(bank), disb_id)

        pending = [b for b in banks if self.needs_link(b)]
        result.candidates = len(pending)

        leftovers = []
        for bank in pending:
            disb = self.by_id.get(bank.attributes.get_string("disbursement_id"))
            if disb is not None and disb.transaction_ids and registry.try_claim(record_key(bank), disb.id):
                result.patches.append(self._patch(bank, disb, BY_ID, linked_at))
                result.strategy_counts[BY_ID] = result.strategy_counts.get(BY_ID, 0) + 1
            else:
                leftovers.append(bank)

        for bank in leftovers:
            disb = self._nearest(bank, registry)
            if disb is None or not registry.try_claim(record_key(bank), disb.id):
                if bank.attributes.get_string("disbursement_id"):
                    result.skipped["振込にトランザクションなし/未登録"] += 1
                else:
                    result.skipped["候補なし"] += 1
                continue
            result.patches.append(self._patch(bank, disb, BY_AMOUNT_DATE, linked_at))
            result.strategy_counts[BY_AMOUNT_DATE] = result.strategy_counts.get(BY_AMOUNT_DATE, 0) + 1

        return result
