import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from financial_models import WriteFailure


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("RECON_STATE_DB", "reconciliation_state.db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path())
    con.execute("PRAGMA journal_mode=WAL;")
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              command TEXT,
              mode TEXT,
              started_at TEXT,
              finished_at TEXT,
              stats_json TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS write_failures (
              run_id TEXT,
              record_id TEXT,
              reason TEXT,
              ts TEXT
            );
            """
        )


def start_run(command: str, dry_run: bool) -> str:
    run_id = uuid.uuid4().hex
    with _conn() as con:
        con.execute(
            "INSERT INTO runs(run_id, command, mode, started_at) VALUES (?,?,?,?)",
            (run_id, command, "dry-run" if dry_run else "execute", _now()),
        )
    return run_id


def finish_run(run_id: str, stats: Dict):
    with _conn() as con:
        con.execute(
            "UPDATE runs SET finished_at=?, stats_json=? WHERE run_id=?",
            (_now(), json.dumps(stats, ensure_ascii=False, default=str), run_id),
        )


def record_failures(run_id: str, failures: List[WriteFailure]):
    if not failures:
        return
    ts = _now()
    with _conn() as con:
        con.executemany(
            "INSERT INTO write_failures(run_id, record_id, reason, ts) VALUES (?,?,?,?)",
            [(run_id, f.record_id, f.reason, ts) for f in failures],
        )


def get_run(run_id: str) -> Optional[Dict]:
    with _conn() as con:
        cur = con.execute(
            "SELECT command, mode, started_at, finished_at, stats_json FROM runs WHERE run_id=?", (run_id,)
        )
        row = cur.fetchone()
        if not row:
            return None
        command, mode, started_at, finished_at, stats_json = row
        return {
            "run_id": run_id,
            "command": command,
            "mode": mode,
            "started_at": started_at,
            "finished_at": finished_at,
            "stats": json.loads(stats_json or "{}"),
        }


def get_failures(run_id: str) -> List[Dict]:
    with _conn() as con:
        cur = con.execute("SELECT record_id, reason FROM write_failures WHERE run_id=? ORDER BY rowid", (run_id,))
        return [{"record_id": r[0], "reason": r[1]} for r in cur.fetchall()]
