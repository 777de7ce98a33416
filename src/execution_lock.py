#!/usr/bin/env python
"""
実行ロック管理
照合処理の多重起動（同一レコードへの並行書き込み）を防止する
"""

import json
import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class LockHeldError(Exception):
    """他のプロセスが有効なロックを保持している"""


class ExecutionLock:
    """ロックファイルによる実行ロック"""

    def __init__(self, lock_name: str, timeout: int = 3600, lock_dir: Optional[str] = None):
        """
        Args:
            lock_name: ロック名
            timeout: ロックの有効期限（秒）。過ぎたロックは奪取できる
            lock_dir: ロックファイルの置き場所（省略時は RECON_LOCK_DIR またはカレント）
        """
        self.lock_name = lock_name
        self.timeout = timeout
        directory = lock_dir or os.getenv("RECON_LOCK_DIR", ".")
        self.lock_file = os.path.join(directory, f".{lock_name}_lock.json")

    def _is_stale(self, lock: Dict[str, Any]) -> bool:
        try:
            taken_at = datetime.fromisoformat(lock.get("timestamp", ""))
        except (TypeError, ValueError):
            return True
        return datetime.now() - taken_at >= timedelta(seconds=self.timeout)

    def acquire_lock(self, process_id: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        current = self.get_lock_info()
        if current and not self._is_stale(current):
            return False
        if current:
            print(f"⏰ 期限切れのロックを破棄: {current.get('process_id')}")

        with open(self.lock_file, "w", encoding="utf-8") as f:
            json.dump({
                "process_id": process_id,
                "host": socket.gethostname(),
                "timestamp": datetime.now().isoformat(),
                "timeout": self.timeout,
                "metadata": metadata or {},
            }, f, ensure_ascii=False, indent=2)
        print(f"🔒 ロック取得: {self.lock_name} ({process_id})")
        return True

    def release_lock(self, process_id: str) -> bool:
        current = self.get_lock_info()
        if not current or current.get("process_id") != process_id:
            print(f"⚠️ 解除対象のロックがありません: {process_id}")
            return False
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass
        print(f"🔓 ロック解除: {self.lock_name} ({process_id})")
        return True

    def get_lock_info(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    @contextmanager
    def hold(self, process_id: str, metadata: Optional[Dict[str, Any]] = None):
        """with 文でロックを保持。取得できなければ LockHeldError"""
        if not self.acquire_lock(process_id, metadata):
            info = self.get_lock_info() or {}
            raise LockHeldError(
                f"{self.lock_name} は実行中です (process={info.get('process_id')}, since={info.get('timestamp')})"
            )
        try:
            yield self
        finally:
            self.release_lock(process_id)
