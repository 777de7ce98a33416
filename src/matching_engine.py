#!/usr/bin/env python3
"""
入金・決済トランザクションと請求書/注文の照合エンジン
優先度の高い戦略から順に評価し、最初に候補を返した戦略で確定する
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from financial_models import FinancialRecord, MatchCandidate, MatchPatch
from index_builder import (
    NAME_KEYS,
    ORDER_KEYS,
    INVOICE_KEYS,
    EMAIL_KEYS,
    TARGET_CLAIM_KEY,
    TargetIndex,
    classification_of,
    email_key,
    name_key,
)
from normalizer import normalize_reference
from similarity import name_similarity


EXTERNAL_REF_KEYS = ("order_id", "transaction_id")


def record_key(record: FinancialRecord) -> str:
    return f"{record.source}/{record.id}" if record.source else record.id


def _days_between(a, b) -> Optional[int]:
    if a is None or b is None:
        return None
    return abs((a - b).days)


def _amount_diff(source: FinancialRecord, target: FinancialRecord) -> Optional[Decimal]:
    if source.amount is None or target.amount is None:
        return None
    return abs(abs(source.amount) - abs(target.amount))


def _same_direction(source: FinancialRecord, target: FinancialRecord) -> bool:
    """符号が分かる場合のみ入金/出金の向きを比較する"""
    if not source.amount or not target.amount:
        return True
    return (source.amount > 0) == (target.amount > 0)


class ClaimRegistry:
    """1回の実行内での消費状態（1対1照合の唯一の更新点）"""

    def __init__(self):
        self._by_source: Dict[str, str] = {}
        self._by_target: Dict[str, str] = {}

    def is_source_claimed(self, source_id: str) -> bool:
        return source_id in self._by_source

    def is_target_claimed(self, target_id: str) -> bool:
        return target_id in self._by_target

    def try_claim(self, source_id: str, target_id: str) -> bool:
        if source_id in self._by_source or target_id in self._by_target:
            return False
        self._by_source[source_id] = target_id
        self._by_target[target_id] = source_id
        return True

    def claims(self) -> Dict[str, str]:
        return dict(self._by_source)

    def __len__(self) -> int:
        return len(self._by_source)


class MatchContext:
    def __init__(self, index: TargetIndex, registry: ClaimRegistry, cfg: dict):
        self.index = index
        self.registry = registry
        self.cfg = cfg
        self.tolerances = cfg["tolerances"]
        self.weights = cfg["weights"]
        self.require_same_sign = cfg["matching"].get("require_same_sign", True)

    def available(self, source: FinancialRecord, targets: Iterable[FinancialRecord]) -> List[FinancialRecord]:
        """消費済み・向き違いの対象をスコア計算前に除外"""
        out = []
        for target in targets:
            if self.registry.is_target_claimed(target.id):
                continue
            if self.require_same_sign and not _same_direction(source, target):
                continue
            out.append(target)
        return out

    def score(self, source: FinancialRecord, target: FinancialRecord) -> float:
        """金額・日付・名前の近さの加重和（0〜1）"""
        amount_score = 0.0
        diff = _amount_diff(source, target)
        if diff is not None:
            base = max(abs(source.amount), abs(target.amount))
            amount_score = 1.0 if base == 0 else max(0.0, 1.0 - float(diff / base))

        date_score = 0.0
        days = _days_between(source.date, target.date)
        if days is not None:
            date_score = max(0.0, 1.0 - days / 30.0)

        name_score = name_similarity(
            source.attributes.get_string(*NAME_KEYS),
            target.attributes.get_string(*NAME_KEYS),
        )
        return (
            amount_score * self.weights.get("amount", 0.5)
            + date_score * self.weights.get("date", 0.3)
            + name_score * self.weights.get("name", 0.2)
        )

    def candidate(self, strategy: "MatchStrategy", source: FinancialRecord, target: FinancialRecord,
                  confidence: Optional[float] = None) -> MatchCandidate:
        return MatchCandidate(
            target=target,
            strategy=strategy.name,
            confidence=strategy.confidence if confidence is None else confidence,
            classification=classification_of(target),
            score=self.score(source, target),
            amount_diff=_amount_diff(source, target),
            date_diff=_days_between(source.date, target.date),
        )


def _best(candidates: List[MatchCandidate]) -> Optional[MatchCandidate]:
    """同点時: 金額差 → 日付差 → 対象ID の順で決定"""
    if not candidates:
        return None
    inf = Decimal("Infinity")
    return min(
        candidates,
        key=lambda c: (
            -round(c.score, 9),
            c.amount_diff if c.amount_diff is not None else inf,
            c.date_diff if c.date_diff is not None else 10 ** 9,
            c.target.id,
        ),
    )


class MatchStrategy:
    """照合戦略の共通インターフェース"""

    name = ""

    def __init__(self, cfg: dict):
        self.cfg = cfg
        self.confidence = float(cfg["confidence"].get(self.name, 0.0))

    def find(self, source: FinancialRecord, ctx: MatchContext) -> Optional[MatchCandidate]:
        raise NotImplementedError


class ExternalIdStrategy(MatchStrategy):
    """S1: 注文ID（またはその先頭断片）が請求書番号・注文番号に含まれる"""

    name = "external-id"

    def _fragments(self, reference: str) -> List[str]:
        min_len = self.cfg["tolerances"].get("min_reference_length", 5)
        fragments = [reference]
        first = reference.split("-")[0]
        if first and first != reference and len(first) >= min_len:
            fragments.append(first)
        return fragments

    def find(self, source, ctx):
        reference = normalize_reference(source.attributes.get_string(*EXTERNAL_REF_KEYS))
        if not reference:
            return None
        min_len = self.cfg["tolerances"].get("min_reference_length", 5)

        for fragment in self._fragments(reference):
            targets = ctx.available(source, ctx.index.lookup_external_id(fragment))
            if targets:
                return _best([ctx.candidate(self, source, t) for t in targets])

        for fragment in self._fragments(reference):
            if len(fragment) < min_len:
                continue
            targets = ctx.available(source, ctx.index.invoices_containing(fragment))
            if targets:
                return _best([ctx.candidate(self, source, t) for t in targets])
        return None


class IdentityAmountStrategy(MatchStrategy):
    """S2: 顧客名（またはメール）一致 + 金額が許容差以内"""

    name = "identity-amount"

    def tolerance(self, source: FinancialRecord) -> Decimal:
        tol = self.cfg["tolerances"]
        pct = Decimal(str(tol.get("amount_pct", 0.02)))
        floor = Decimal(str(tol.get("amount_min", 1.0)))
        return max(abs(source.amount) * pct, floor)

    def find(self, source, ctx):
        name, email = name_key(source), email_key(source)
        if (not name and not email) or source.amount is None:
            return None
        limit = self.tolerance(source)
        candidates = []
        for target in ctx.available(source, ctx.index.lookup_identity(name, email)):
            diff = _amount_diff(source, target)
            if diff is not None and diff <= limit:
                candidates.append(ctx.candidate(self, source, target))
        return _best(candidates)


class IdentityNearestDateStrategy(MatchStrategy):
    """S3: 顧客名（またはメール）一致、最も日付が近いもの（金額条件なし）"""

    name = "identity-nearest-date"

    def confidence_for(self, days: int) -> float:
        conf = self.cfg["confidence"]
        for max_days, value in conf.get("nearest_date_steps", []):
            if days <= max_days:
                return float(value)
        return float(conf.get("nearest_date_floor", 0.5))

    def find(self, source, ctx):
        name, email = name_key(source), email_key(source)
        if (not name and not email) or source.date is None:
            return None
        lookback = self.cfg["tolerances"].get("max_lookback_days", 365)
        candidates = []
        for target in ctx.available(source, ctx.index.lookup_identity(name, email)):
            days = _days_between(source.date, target.date)
            if days is None or days > lookback:
                continue
            candidates.append(ctx.candidate(self, source, target, self.confidence_for(days)))
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c.date_diff, -round(c.score, 9), c.target.id))


class AmountDateStrategy(MatchStrategy):
    """S4: 名前なし、金額（絶対許容差）+ 日付（±N日）。少額は対象外"""

    name = "amount-date"

    def find(self, source, ctx):
        tol = self.cfg["tolerances"]
        amount = source.abs_amount
        if amount is None or source.date is None:
            return None
        if amount < Decimal(str(tol.get("amount_min_threshold", 20))):
            return None
        limit = Decimal(str(tol.get("amount_abs", 0.5)))
        window = tol.get("amount_date_days", 5)
        candidates = []
        near = ctx.index.candidates_near(amount, tol.get("bucket_spread", 1))
        for target in ctx.available(source, near):
            diff = _amount_diff(source, target)
            days = _days_between(source.date, target.date)
            if diff is None or days is None:
                continue
            if diff <= limit and days <= window:
                candidates.append(ctx.candidate(self, source, target))
        return _best(candidates)


class IdentityClassificationStrategy(MatchStrategy):
    """S5: 顧客名（またはメール）のみ。最頻の分類コードを持つ対象のうち日付が最も近いもの"""

    name = "identity-classification"

    def find(self, source, ctx):
        name, email = name_key(source), email_key(source)
        if not name and not email:
            return None
        targets = [t for t in ctx.available(source, ctx.index.lookup_identity(name, email))
                   if classification_of(t)]
        if not targets:
            return None

        freq: Dict[str, int] = {}
        for t in targets:
            code = classification_of(t)
            freq[code] = freq.get(code, 0) + 1
        dominant = min(freq, key=lambda code: (-freq[code], code))

        candidates = [ctx.candidate(self, source, t) for t in targets if classification_of(t) == dominant]
        far = 10 ** 9
        return min(candidates, key=lambda c: (c.date_diff if c.date_diff is not None else far, c.target.id))


STRATEGY_ORDER = (
    ExternalIdStrategy,
    IdentityAmountStrategy,
    IdentityNearestDateStrategy,
    AmountDateStrategy,
    IdentityClassificationStrategy,
)


@dataclass
class MatchResult:
    matches: List[Tuple[FinancialRecord, MatchCandidate]] = field(default_factory=list)
    patches: List[MatchPatch] = field(default_factory=list)
    target_patches: List[MatchPatch] = field(default_factory=list)
    unmatched_sources: List[FinancialRecord] = field(default_factory=list)
    unmatched_targets: List[FinancialRecord] = field(default_factory=list)
    strategy_counts: Dict[str, int] = field(default_factory=dict)
    matched_value: Decimal = Decimal("0")
    skipped_already_matched: int = 0
    skipped_excluded_type: int = 0
    total_sources: int = 0

    def all_patches(self) -> List[MatchPatch]:
        return self.patches + self.target_patches

    def summary_lines(self) -> List[str]:
        lines = [
            f"  対象トランザクション: {self.total_sources}",
            f"  既に照合済み:         {self.skipped_already_matched}",
            f"  対象外の種別:         {self.skipped_excluded_type}",
        ]
        for strategy in STRATEGY_ORDER:
            lines.append(f"  {strategy.name:<24} {self.strategy_counts.get(strategy.name, 0)}")
        lines.append(f"  未照合（入金側）:     {len(self.unmatched_sources)}")
        lines.append(f"  未照合（請求書側）:   {len(self.unmatched_targets)}")
        lines.append(f"  照合金額合計:         {self.matched_value:,.2f}")
        return lines


def build_patch_fields(candidate: MatchCandidate, reconciled_at: str) -> Dict[str, object]:
    """書き戻し用パッチ（None の項目は含めず既存値を上書きしない）"""
    attrs = candidate.target.attributes
    fields = {
        "matched_target_id": candidate.target.id,
        "matched_invoice_number": attrs.get_string(*INVOICE_KEYS) or None,
        "matched_invoice_fac": candidate.classification or None,
        "matched_order_id": attrs.get_string(*ORDER_KEYS) or None,
        "matched_customer_name": attrs.get_string(*NAME_KEYS) or None,
        "matched_email": attrs.get_string(*EMAIL_KEYS) or None,
        "reconciliation_strategy": candidate.strategy,
        "reconciliation_confidence": round(candidate.confidence, 2),
        "reconciled_at": reconciled_at,
    }
    return {k: v for k, v in fields.items() if v is not None}


class MatchingEngine:
    """戦略カスケードによる照合エンジン"""

    def __init__(self, cfg: dict, strategies: Optional[List[MatchStrategy]] = None,
                 clock: Optional[Callable[[], datetime]] = None, verbose: bool = False):
        self.cfg = cfg
        self.strategies = strategies if strategies is not None else [s(cfg) for s in STRATEGY_ORDER]
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.verbose = verbose

    def build_index(self, targets: Iterable[FinancialRecord]) -> TargetIndex:
        exclude = self.cfg["matching"].get("exclude_matched_targets", True)
        return TargetIndex.build(targets, exclude_matched=exclude)

    def run(self, sources: Iterable[FinancialRecord],
            targets: Union[TargetIndex, Iterable[FinancialRecord]]) -> MatchResult:
        index = targets if isinstance(targets, TargetIndex) else self.build_index(targets)
        registry = ClaimRegistry()
        ctx = MatchContext(index, registry, self.cfg)
        reconciled_at = self.clock().isoformat()
        annotate = self.cfg["matching"].get("annotate_targets", True)
        skip_types = {str(t).lower() for t in self.cfg["matching"].get("skip_source_types") or []}
        result = MatchResult()

        sources = list(sources)
        # 前回までの照合先は、対象側の注記が無くてもこの実行では使わせない
        for source in sources:
            if source.matched:
                prior = source.attributes.get_string("matched_target_id")
                if prior:
                    registry.try_claim(record_key(source), prior)

        for source in sources:
            result.total_sources += 1
            if source.matched:
                result.skipped_already_matched += 1
                continue
            if source.attributes.get_string("type").lower() in skip_types:
                result.skipped_excluded_type += 1
                continue
            key = record_key(source)
            if registry.is_source_claimed(key):
                continue

            accepted = None
            for strategy in self.strategies:
                candidate = strategy.find(source, ctx)
                if candidate is not None and registry.try_claim(key, candidate.target.id):
                    accepted = candidate
                    break

            if accepted is None:
                result.unmatched_sources.append(source)
                continue

            result.matches.append((source, accepted))
            result.strategy_counts[accepted.strategy] = result.strategy_counts.get(accepted.strategy, 0) + 1
            result.matched_value += source.abs_amount or Decimal("0")
            result.patches.append(MatchPatch(
                record_id=source.id,
                collection=source.source,
                fields=build_patch_fields(accepted, reconciled_at),
                target_id=accepted.target.id,
            ))
            if annotate:
                result.target_patches.append(MatchPatch(
                    record_id=accepted.target.id,
                    collection=accepted.target.source,
                    fields={
                        TARGET_CLAIM_KEY: source.id,
                        "matched_source_collection": source.source,
                        "reconciliation_strategy": accepted.strategy,
                        "reconciled_at": reconciled_at,
                    },
                    target_id=source.id,
                ))
            if self.verbose:
                print(f"    ✅ {source.source}/{source.id} → {accepted.target.id} "
                      f"[{accepted.strategy} {accepted.confidence:.2f}] "
                      f"金額差={accepted.amount_diff} 日付差={accepted.date_diff}日 "
                      f"分類={accepted.classification or '-'}")

        result.unmatched_targets = [t for t in index.records if not registry.is_target_claimed(t.id)]
        return result
