#!/usr/bin/env python3
"""
照合エンジン CLI

  reconcile            決済トランザクション → 請求書/注文の照合と書き戻し
  coverage             銀行入金の P&L チェーンカバレッジ集計（読み取りのみ）
  fill-classification  照合済みだが分類コードが無い決済トランザクションの補完
  link-disbursements   銀行入金に振込（disbursement）の transaction_ids を補完

既定はドライラン。--apply を付けた場合のみ書き込む。
"""

import argparse
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional

from dotenv import load_dotenv

import run_store
from batch_writer import BatchWriter
from chain_resolver import ChainResolver, format_coverage
from classification_filler import ClassificationFiller
from config_loader import ConfigurationError, load_reconciliation_config
from disbursement_linker import DisbursementLinker
from environment_validator import EnvironmentValidator
from execution_lock import ExecutionLock, LockHeldError
from financial_models import FetchResult, FinancialRecord, WriteReport
from matching_engine import MatchingEngine
from record_store import RecordStore, SupabaseRecordStore

load_dotenv()

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_LOCKED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="入金チェーン照合エンジン")
    parser.add_argument("command", choices=["reconcile", "coverage", "fill-classification", "link-disbursements"])
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                      help="書き込みを行わない（既定）")
    mode.add_argument("--apply", dest="dry_run", action="store_false", help="照合結果を書き込む")
    parser.add_argument("--verbose", action="store_true", help="照合ごとの詳細を表示")
    parser.add_argument("--config", help="設定YAMLのパス")
    parser.add_argument("--source", action="append", dest="sources",
                        help="照合元コレクション（複数指定可、省略時は設定値）")
    parser.add_argument("--target", help="照合先コレクション（省略時は設定値）")
    parser.add_argument("--since", help="この日付 (YYYY-MM-DD) 以降の照合元のみ対象")
    return parser


def resolve_dry_run(flag: Optional[bool]) -> bool:
    """CLIフラグが優先。指定がなければ DRY_RUN 環境変数（既定 true）"""
    if flag is not None:
        return flag
    return os.getenv("DRY_RUN", "true").strip().lower() not in ("false", "0", "no")


def _fetch(store: RecordStore, collection: str, cfg: dict, filters=None) -> FetchResult:
    store_cfg = cfg["store"]
    result = store.fetch_all(collection, filters, page_size=store_cfg["page_size"],
                             max_pages=store_cfg["max_pages"])
    status = "" if result.complete else " (途中で打ち切り)"
    print(f"  📥 {collection}: {len(result.records)}件{status}")
    return result


def _fetch_many(store: RecordStore, collections: List[str], cfg: dict, filters=None):
    records: List[FinancialRecord] = []
    incomplete: List[str] = []
    for collection in collections:
        result = _fetch(store, collection, cfg, filters)
        records.extend(result.records)
        if not result.complete:
            incomplete.append(collection)
    return records, incomplete


def _print_failures(reports: List[WriteReport], limit: int):
    for report in reports:
        if not report.failures:
            continue
        print(f"\n❌ [{report.label}] 書き込み失敗 {report.failed}件（先頭{limit}件）:")
        for failure in report.first_failures(limit):
            print(f"    - {failure.record_id}: {failure.reason}")


def run_reconcile(store: RecordStore, cfg: dict, sources: List[str], target: str,
                  dry_run: bool, verbose: bool = False, since: Optional[str] = None) -> Dict:
    print("\n🔍 データ取得中...")
    filters = {"date": (">=", since)} if since else None
    source_records, incomplete = _fetch_many(store, sources, cfg, filters)
    target_result = _fetch(store, target, cfg)
    if not target_result.complete:
        incomplete.append(target)

    engine = MatchingEngine(cfg, verbose=verbose)
    index = engine.build_index(target_result.records)
    print(f"  🗂  照合先インデックス: {index.summary()} / 照合済み除外 {index.excluded_matched}件")

    print("\n🔗 照合中...")
    result = engine.run(source_records, index)

    writer = BatchWriter(store, batch_size=cfg["writer"]["batch_size"], dry_run=dry_run)
    reports = [writer.apply(result.patches, label="sources")]
    if result.target_patches:
        reports.append(writer.apply(result.target_patches, label="targets"))

    print("\n=== 照合結果 ===")
    for line in result.summary_lines():
        print(line)
    if incomplete:
        print(f"  ⚠️ 取得が不完全なコレクション: {', '.join(incomplete)}")
    _print_failures(reports, cfg["writer"]["max_failures_reported"])

    return {
        "total_sources": result.total_sources,
        "matched": len(result.matches),
        "skipped_already_matched": result.skipped_already_matched,
        "skipped_excluded_type": result.skipped_excluded_type,
        "unmatched_sources": len(result.unmatched_sources),
        "unmatched_targets": len(result.unmatched_targets),
        "strategy_counts": dict(result.strategy_counts),
        "matched_value": str(result.matched_value),
        "written": sum(r.succeeded for r in reports),
        "failed": sum(r.failed for r in reports),
        "incomplete_collections": incomplete,
        "_failures": [f for r in reports for f in r.failures],
    }


def run_coverage(store: RecordStore, cfg: dict, sources: List[str], target: str) -> Dict:
    print("\n🔍 データ取得中...")
    banks, incomplete = _fetch_many(store, cfg["collections"]["banks"], cfg)
    gateways, gw_incomplete = _fetch_many(store, sources, cfg)
    invoices = _fetch(store, target, cfg)

    resolver = ChainResolver(gateways, invoices.records)
    report = resolver.coverage(banks)

    print("\n=== P&L チェーンカバレッジ ===")
    for line in format_coverage(report):
        print(line)
    incomplete = incomplete + gw_incomplete + ([] if invoices.complete else [target])
    if incomplete:
        print(f"  ⚠️ 取得が不完全なコレクション: {', '.join(incomplete)}")

    return {
        source: {
            "inflows": bucket.inflows,
            "classified": bucket.classified,
            "coverage_pct": round(bucket.coverage_pct, 1),
            "counts": dict(bucket.counts),
        }
        for source, bucket in report.items()
    }


def run_fill_classification(store: RecordStore, cfg: dict, sources: List[str], target: str,
                            dry_run: bool) -> Dict:
    print("\n🔍 データ取得中...")
    gateways, incomplete = _fetch_many(store, sources, cfg)
    invoices = _fetch(store, target, cfg)

    filler = ClassificationFiller(invoices.records)
    patches = filler.fill(gateways)
    by_origin: Dict[str, int] = {}
    for patch in patches:
        origin = patch.fields["fac_fallback_source"]
        by_origin[origin] = by_origin.get(origin, 0) + 1

    report = BatchWriter(store, batch_size=cfg["writer"]["batch_size"], dry_run=dry_run).apply(
        patches, label="classification")

    print("\n=== 分類コード補完 ===")
    print(f"  補完対象: {len(patches)}件")
    for origin, count in sorted(by_origin.items()):
        print(f"    {origin}: {count}件")
    if incomplete:
        print(f"  ⚠️ 取得が不完全なコレクション: {', '.join(incomplete)}")
    _print_failures([report], cfg["writer"]["max_failures_reported"])

    return {
        "filled": len(patches),
        "by_origin": by_origin,
        "written": report.succeeded,
        "failed": report.failed,
        "_failures": list(report.failures),
    }


def run_link_disbursements(store: RecordStore, cfg: dict, dry_run: bool) -> Dict:
    settings = cfg["disbursements"]
    print("\n🔍 データ取得中...")
    disbursements, incomplete = _fetch_many(store, settings["collections"], cfg)
    banks, bank_incomplete = _fetch_many(store, settings["banks"], cfg)
    incomplete += bank_incomplete

    linker = DisbursementLinker(disbursements, cfg)
    print(f"  🗂  振込インデックス: {len(linker.by_id)}件")
    result = linker.link(banks)

    report = BatchWriter(store, batch_size=cfg["writer"]["batch_size"], dry_run=dry_run).apply(
        result.patches, label="disbursements")

    print("\n=== 振込の紐付け ===")
    for line in result.summary_lines():
        print(line)
    if incomplete:
        print(f"  ⚠️ 取得が不完全なコレクション: {', '.join(incomplete)}")
    _print_failures([report], cfg["writer"]["max_failures_reported"])

    return {
        "candidates": result.candidates,
        "linked": len(result.patches),
        "already_linked": result.already_linked,
        "strategy_counts": dict(result.strategy_counts),
        "skipped": dict(result.skipped),
        "written": report.succeeded,
        "failed": report.failed,
        "incomplete_collections": incomplete,
        "_failures": list(report.failures),
    }


def main(argv: Optional[List[str]] = None, store: Optional[RecordStore] = None) -> int:
    args = build_parser().parse_args(argv)
    dry_run = resolve_dry_run(args.dry_run)

    print(f"=== 照合エンジン: {args.command} ===")
    print(f"実行時刻: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    if dry_run:
        print("\n*** DRY_RUNモード: 書き込みは行いません ***")

    try:
        cfg = load_reconciliation_config(args.config)
        if store is None:
            EnvironmentValidator().check_basic_requirements()
            store = SupabaseRecordStore.from_env(cfg)
    except ConfigurationError as e:
        print(f"\n❌ 設定エラー: {e}")
        return EXIT_CONFIG_ERROR

    sources = args.sources or cfg["collections"]["sources"]
    target = args.target or cfg["collections"]["target"]

    lock_cfg = cfg["lock"]
    lock = ExecutionLock(lock_cfg["name"], timeout=lock_cfg["timeout_seconds"])
    process_id = f"{args.command}-{os.getpid()}"
    try:
        with lock.hold(process_id, {"command": args.command, "dry_run": dry_run}):
            run_store.init_db()
            run_id = run_store.start_run(args.command, dry_run)

            if args.command == "reconcile":
                stats = run_reconcile(store, cfg, sources, target, dry_run, args.verbose, args.since)
            elif args.command == "coverage":
                stats = run_coverage(store, cfg, sources, target)
            elif args.command == "fill-classification":
                stats = run_fill_classification(store, cfg, sources, target, dry_run)
            else:
                stats = run_link_disbursements(store, cfg, dry_run)

            run_store.record_failures(run_id, stats.pop("_failures", []))
            run_store.finish_run(run_id, stats)
    except LockHeldError as e:
        print(f"\n⏳ {e}")
        return EXIT_LOCKED

    print(f"\n✅ 完了 (run_id={run_id})")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
