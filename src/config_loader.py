import copy
import os
from typing import Optional

import yaml


class ConfigurationError(Exception):
    """起動時に検出される設定エラー（致命的）"""


DEFAULTS = {
    "store": {
        "table": "csv_rows",
        "page_size": 1000,
        "max_pages": 60,
        "timeout_seconds": 30,
        "max_retries": 5,
    },
    "collections": {
        "sources": [
            "braintree-api-revenue",
            "braintree-amex",
            "stripe-eur",
            "stripe-usd",
            "gocardless",
        ],
        "target": "invoice-orders",
        "banks": ["bankinter-eur", "bankinter-usd", "sabadell", "chase-usd"],
    },
    "tolerances": {
        "amount_pct": 0.02,
        "amount_min": 1.00,
        "amount_abs": 0.50,
        "amount_date_days": 5,
        "amount_min_threshold": 20.00,
        "bucket_spread": 1,
        "max_lookback_days": 365,
        "min_reference_length": 5,
    },
    "confidence": {
        "external-id": 1.00,
        "identity-amount": 0.90,
        "amount-date": 0.60,
        "identity-classification": 0.50,
        # 日数上限 → 信頼度（最後の要素より遠い場合は floor）
        "nearest_date_steps": [[7, 0.75], [30, 0.65], [90, 0.55]],
        "nearest_date_floor": 0.50,
    },
    "weights": {"amount": 0.5, "date": 0.3, "name": 0.2},
    "disbursements": {
        "collections": ["braintree-api-disbursement"],
        "banks": ["bankinter-eur", "bankinter-usd"],
        "amount_tolerance": 0.01,
        "date_window_days": 4,
    },
    "matching": {
        "require_same_sign": True,
        "annotate_targets": True,
        "exclude_matched_targets": True,
        # 照合元から除外する custom_data.type（GoCardless の払い出し等）
        "skip_source_types": ["payout"],
    },
    "writer": {"batch_size": 50, "max_failures_reported": 10},
    "lock": {"name": "reconciliation", "timeout_seconds": 3600},
}


def _default_path() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "reconciliation.yml")


def load_reconciliation_config(path: Optional[str] = None) -> dict:
    """YAML設定を読み込み、DEFAULTS に浅くマージする"""
    explicit = path or os.getenv("RECON_CONFIG")
    path = explicit or _default_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        # 明示指定されたファイルが無いのは設定ミス
        if explicit:
            raise ConfigurationError(f"設定ファイルが見つかりません: {path}")
        return copy.deepcopy(DEFAULTS)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"設定ファイルの解析に失敗しました: {path}: {e}")

    if not isinstance(cfg, dict):
        raise ConfigurationError(f"設定ファイルの形式が不正です: {path}")

    # shallow merge defaults
    merged = copy.deepcopy(DEFAULTS)
    for k, v in cfg.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v

    _validate(merged)
    return merged


def _validate(cfg: dict):
    tol = cfg["tolerances"]
    for key in ("amount_pct", "amount_min", "amount_abs", "amount_min_threshold"):
        value = tol.get(key)
        if not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"tolerances.{key} は0以上の数値である必要があります: {value!r}")
    for key in ("amount_date_days", "max_lookback_days", "bucket_spread"):
        value = tol.get(key)
        if not isinstance(value, int) or value < 0:
            raise ConfigurationError(f"tolerances.{key} は0以上の整数である必要があります: {value!r}")

    disb = cfg["disbursements"]
    value = disb.get("amount_tolerance")
    if not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"disbursements.amount_tolerance は0以上の数値である必要があります: {value!r}")
    value = disb.get("date_window_days")
    if not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"disbursements.date_window_days は0以上の整数である必要があります: {value!r}")

    skip = cfg["matching"].get("skip_source_types")
    if skip is not None and not isinstance(skip, list):
        raise ConfigurationError(f"matching.skip_source_types はリストである必要があります: {skip!r}")

    batch_size = cfg["writer"].get("batch_size")
    if not isinstance(batch_size, int) or batch_size < 1:
        raise ConfigurationError(f"writer.batch_size は1以上の整数である必要があります: {batch_size!r}")

    conf = cfg["confidence"]
    ordered = [conf["external-id"], conf["identity-amount"], conf["identity-classification"]]
    if not all(0.0 <= c <= 1.0 for c in ordered) or ordered != sorted(ordered, reverse=True):
        raise ConfigurationError("confidence は 0〜1 の範囲で優先順位の降順である必要があります")
