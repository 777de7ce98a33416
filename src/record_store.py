import os
import time
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

from config_loader import ConfigurationError
from financial_models import FetchResult, FinancialRecord


RETRYABLE_STATUS = (429, 500, 502, 503, 504)
ROW_COLUMNS = "id,amount,date,description,custom_data,source"

# 範囲フィルタ: {"date": (">=", "2025-01-01")}
FilterValue = Union[Any, Tuple[str, Any]]
Filters = Optional[Dict[str, FilterValue]]

_RANGE_OPS = {">=": "gte", "<=": "lte", ">": "gt", "<": "lt", "=": "eq", "!=": "neq"}


class RecordStoreError(Exception):
    """レコードストアの読み書きエラー"""


class RecordStore:
    """コレクション（source 単位）へのページング読み取りとマージ書き込み"""

    def fetch_page(self, collection: str, filters: Filters, offset: int, limit: int) -> List[FinancialRecord]:
        raise NotImplementedError

    def get_record(self, collection: str, record_id: str) -> Optional[FinancialRecord]:
        raise NotImplementedError

    def upsert_patch(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    def fetch_all(self, collection: str, filters: Filters = None, page_size: int = 1000,
                  max_pages: int = 60) -> FetchResult:
        """短いページが返るまで順番に読み込む

        途中でエラーになった場合はそこで打ち切り、取得済みの分を返す。
        """
        records: List[FinancialRecord] = []
        for page in range(max_pages):
            try:
                batch = self.fetch_page(collection, filters, page * page_size, page_size)
            except RecordStoreError as e:
                print(f"  ⚠️ [{collection}] ページ{page}の取得に失敗、{len(records)}件で打ち切り: {e}")
                return FetchResult(collection, records, complete=False, error=str(e))
            records.extend(batch)
            if len(batch) < page_size:
                return FetchResult(collection, records)

        print(f"  ⚠️ [{collection}] ページ上限({max_pages})に到達、{len(records)}件で打ち切り")
        return FetchResult(collection, records, complete=False, error="max_pages reached")


class SupabaseRecordStore(RecordStore):
    """Supabase(PostgREST) 上の csv_rows テーブル用クライアント

    コレクションは source 列で区切られた行の集合として扱う。
    """

    def __init__(self, base_url: str, api_key: str, table: str = "csv_rows",
                 timeout: int = 30, max_retries: int = 5, session: Optional[requests.Session] = None):
        if not base_url or not api_key:
            raise ConfigurationError("RECORD_STORE_URL と RECORD_STORE_KEY が必要です")
        self.base_url = base_url.rstrip("/") + "/rest/v1"
        self.table = table
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_env(cls, cfg: Optional[dict] = None) -> "SupabaseRecordStore":
        store_cfg = (cfg or {}).get("store", {})
        return cls(
            base_url=os.getenv("RECORD_STORE_URL", ""),
            api_key=os.getenv("RECORD_STORE_KEY", ""),
            table=os.getenv("RECORD_STORE_TABLE") or store_cfg.get("table", "csv_rows"),
            timeout=store_cfg.get("timeout_seconds", 30),
            max_retries=store_cfg.get("max_retries", 5),
        )

    def _call_with_backoff(self, method: str, params: Dict[str, str], json=None,
                           extra_headers: Optional[Dict[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}/{self.table}"
        headers = dict(self.headers)
        headers.update(extra_headers or {})
        backoff = 1
        last_error = None
        for _ in range(self.max_retries):
            try:
                r = self.session.request(method, url, headers=headers, params=params,
                                         json=json, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = str(e)
            else:
                if r.status_code not in RETRYABLE_STATUS:
                    if r.status_code >= 400:
                        raise RecordStoreError(f"{method} {self.table}: {r.status_code} {r.text[:200]}")
                    return r
                last_error = f"{r.status_code} {r.text[:200]}"
            time.sleep(backoff)
            backoff = min(backoff * 2, 16)
        raise RecordStoreError(f"{method} {self.table}: リトライ上限に到達 ({last_error})")

    @staticmethod
    def _filter_params(collection: str, filters: Filters) -> Dict[str, str]:
        params = {"source": f"eq.{collection}"}
        for key, value in (filters or {}).items():
            if isinstance(value, tuple):
                op, operand = value
                if op not in _RANGE_OPS:
                    raise RecordStoreError(f"未対応のフィルタ演算子: {op}")
                params[key] = f"{_RANGE_OPS[op]}.{operand}"
            else:
                params[key] = f"eq.{value}"
        return params

    def fetch_page(self, collection: str, filters: Filters, offset: int, limit: int) -> List[FinancialRecord]:
        params = self._filter_params(collection, filters)
        params.update({"select": ROW_COLUMNS, "order": "id.asc", "offset": str(offset), "limit": str(limit)})
        r = self._call_with_backoff("GET", params)
        return [FinancialRecord.from_row(row) for row in (r.json() or [])]

    def get_record(self, collection: str, record_id: str) -> Optional[FinancialRecord]:
        params = {"select": ROW_COLUMNS, "id": f"eq.{record_id}", "source": f"eq.{collection}"}
        rows = self._call_with_backoff("GET", params).json() or []
        return FinancialRecord.from_row(rows[0]) if rows else None

    def upsert_patch(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        """既存の custom_data を読み込んでからマージして書き戻す"""
        existing = self.get_record(collection, record_id)
        if existing is None:
            raise RecordStoreError(f"{collection}/{record_id}: レコードが存在しません")
        merged = existing.attributes.merged(patch).to_dict()
        self._call_with_backoff(
            "PATCH",
            {"id": f"eq.{record_id}", "source": f"eq.{collection}"},
            json={"custom_data": merged},
            extra_headers={"Prefer": "return=minimal"},
        )


class InMemoryRecordStore(RecordStore):
    """辞書ベースのストア（監査用ドライラン・テスト用）"""

    def __init__(self, rows: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for collection, items in (rows or {}).items():
            self.add(collection, items)

    def add(self, collection: str, rows: List[Dict[str, Any]]):
        bucket = self._rows.setdefault(collection, {})
        for row in rows:
            stored = dict(row)
            stored["id"] = str(stored.get("id"))
            stored["source"] = collection
            stored["custom_data"] = dict(stored.get("custom_data") or {})
            bucket[stored["id"]] = stored

    def raw(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._rows.get(collection, {}).get(str(record_id))

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Filters) -> bool:
        for key, value in (filters or {}).items():
            actual = row.get(key)
            if isinstance(value, tuple):
                op, operand = value
                if actual is None:
                    return False
                if op == ">=" and not actual >= operand:
                    return False
                if op == "<=" and not actual <= operand:
                    return False
                if op == ">" and not actual > operand:
                    return False
                if op == "<" and not actual < operand:
                    return False
                if op == "=" and actual != operand:
                    return False
                if op == "!=" and actual == operand:
                    return False
            elif actual != value:
                return False
        return True

    def fetch_page(self, collection: str, filters: Filters, offset: int, limit: int) -> List[FinancialRecord]:
        rows = [r for r in self._rows.get(collection, {}).values() if self._matches(r, filters)]
        return [FinancialRecord.from_row(r) for r in rows[offset:offset + limit]]

    def get_record(self, collection: str, record_id: str) -> Optional[FinancialRecord]:
        row = self.raw(collection, record_id)
        return FinancialRecord.from_row(row) if row else None

    def upsert_patch(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        row = self.raw(collection, record_id)
        if row is None:
            raise RecordStoreError(f"{collection}/{record_id}: レコードが存在しません")
        merged = dict(row["custom_data"])
        merged.update(patch)
        row["custom_data"] = merged
