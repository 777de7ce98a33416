"""
環境変数検証 - 照合エンジン用

起動時にレコードストアへの接続情報がそろっているかを確認し、
欠けていれば何も書き込む前に停止させる。
"""

import os
import re
from datetime import datetime
from typing import Dict, List, Tuple

from config_loader import ConfigurationError


class EnvironmentValidator:
    """環境変数の存在・形式チェック"""

    REQUIRED_VARS = {
        "RECORD_STORE_URL": {
            "description": "レコードストア (PostgREST/Supabase) のベースURL",
            "pattern": r"^https?://[^\s/]+(/.*)?$",
            "example": "https://xxxx.supabase.co",
        },
        "RECORD_STORE_KEY": {
            "description": "レコードストアのサービスキー",
            "pattern": r"^\S{20,}$",
            "example": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
        },
    }

    OPTIONAL_VARS = {
        "RECORD_STORE_TABLE": {
            "description": "レコードを格納するテーブル名",
            "pattern": r"^[A-Za-z_][A-Za-z0-9_]*$",
        },
        "DRY_RUN": {
            "description": "ドライランモード (true/false)",
            "pattern": r"^(true|false|1|0)$",
        },
        "RECON_STATE_DB": {
            "description": "実行履歴を保存する SQLite ファイル",
            "pattern": r"^\S+$",
        },
        "RECON_CONFIG": {
            "description": "照合設定 YAML のパス",
            "pattern": r"^\S+\.ya?ml$",
        },
    }

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ
        self.missing_vars: List[str] = []
        self.invalid_vars: List[Dict] = []
        self.warnings: List[Dict] = []

    def validate_all(self, verbose: bool = True) -> Dict:
        self.missing_vars, self.invalid_vars, self.warnings = [], [], []

        for name, rule in self.REQUIRED_VARS.items():
            value = self.environ.get(name)
            if not value:
                self.missing_vars.append(name)
                if verbose:
                    print(f"  ❌ {name}: 未設定")
            elif not re.match(rule["pattern"], value):
                self.invalid_vars.append({"name": name, "issue": "フォーマット不正", "expected": rule["example"]})
                if verbose:
                    print(f"  ⚠️  {name}: 設定済み (フォーマット不正)")
            elif verbose:
                print(f"  ✅ {name}: 設定済み")

        for name, rule in self.OPTIONAL_VARS.items():
            value = self.environ.get(name)
            if value and not re.match(rule["pattern"], value.lower() if name == "DRY_RUN" else value):
                self.warnings.append({"name": name, "issue": "フォーマット警告", "description": rule["description"]})
                if verbose:
                    print(f"  ⚠️  {name}: フォーマット警告")

        return {
            "timestamp": datetime.now().isoformat(),
            "status": "pass" if not self.missing_vars and not self.invalid_vars else "fail",
            "missing_required": list(self.missing_vars),
            "invalid_format": list(self.invalid_vars),
            "warnings": list(self.warnings),
        }

    def check_basic_requirements(self) -> bool:
        """起動時チェック。不足・不正があれば ConfigurationError"""
        results = self.validate_all(verbose=False)
        if results["status"] == "pass":
            return True

        problems = [f"{name}: 未設定" for name in results["missing_required"]]
        problems += [f"{v['name']}: {v['issue']} (例: {v['expected']})" for v in results["invalid_format"]]
        raise ConfigurationError("環境変数が不足しています:\n  " + "\n  ".join(problems))


def validate_environment_quick(environ=None) -> Tuple[bool, List[str]]:
    environ = os.environ if environ is None else environ
    missing = [name for name in EnvironmentValidator.REQUIRED_VARS if not environ.get(name)]
    return len(missing) == 0, missing


if __name__ == "__main__":
    print("🚀 照合エンジン - 環境変数検証")
    results = EnvironmentValidator().validate_all()
    print("\n🎉 検証OK" if results["status"] == "pass" else "\n❌ 検証失敗")
    raise SystemExit(0 if results["status"] == "pass" else 1)
