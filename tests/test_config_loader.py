import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import config_loader
from config_loader import DEFAULTS, ConfigurationError, load_reconciliation_config


def test_missing_default_file_returns_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("RECON_CONFIG", raising=False)
    monkeypatch.setattr(config_loader, "_default_path", lambda: str(tmp_path / "none.yml"))
    cfg = load_reconciliation_config()
    assert cfg["writer"]["batch_size"] == 50
    assert cfg["tolerances"] == DEFAULTS["tolerances"]

    # 入れ子のリストも DEFAULTS と共有しない
    cfg["writer"]["batch_size"] = 1
    cfg["collections"]["sources"].append("extra")
    cfg["confidence"]["nearest_date_steps"][0][1] = 0.1
    assert DEFAULTS["writer"]["batch_size"] == 50
    assert "extra" not in DEFAULTS["collections"]["sources"]
    assert DEFAULTS["confidence"]["nearest_date_steps"][0][1] == 0.75


def test_explicit_missing_file_is_rejected(tmp_path, monkeypatch):
    with pytest.raises(ConfigurationError):
        load_reconciliation_config(str(tmp_path / "none.yml"))
    monkeypatch.setenv("RECON_CONFIG", str(tmp_path / "also-missing.yml"))
    with pytest.raises(ConfigurationError):
        load_reconciliation_config()


def test_merged_config_does_not_share_lists(tmp_path):
    path = tmp_path / "recon.yml"
    path.write_text("writer:\n  batch_size: 5\n", encoding="utf-8")
    cfg = load_reconciliation_config(str(path))
    cfg["collections"]["banks"].append("extra-bank")
    assert "extra-bank" not in DEFAULTS["collections"]["banks"]


def test_yaml_is_shallow_merged(tmp_path):
    path = tmp_path / "recon.yml"
    path.write_text("tolerances:\n  amount_pct: 0.05\ncollections:\n  target: orders\n", encoding="utf-8")
    cfg = load_reconciliation_config(str(path))
    assert cfg["tolerances"]["amount_pct"] == 0.05
    assert cfg["tolerances"]["amount_min"] == 1.00
    assert cfg["collections"]["target"] == "orders"
    assert cfg["collections"]["sources"] == DEFAULTS["collections"]["sources"]


def test_env_var_path(tmp_path, monkeypatch):
    path = tmp_path / "env.yml"
    path.write_text("writer:\n  batch_size: 10\n", encoding="utf-8")
    monkeypatch.setenv("RECON_CONFIG", str(path))
    assert load_reconciliation_config()["writer"]["batch_size"] == 10


def test_repository_config_loads():
    cfg = load_reconciliation_config(os.path.join(os.path.dirname(__file__), "..", "config", "reconciliation.yml"))
    assert cfg["collections"]["target"] == "invoice-orders"
    assert cfg["weights"] == {"amount": 0.5, "date": 0.3, "name": 0.2}
    assert cfg["matching"]["skip_source_types"] == ["payout"]
    assert cfg["matching"]["annotate_targets"] is True
    assert cfg["disbursements"]["collections"] == ["braintree-api-disbursement"]


@pytest.mark.parametrize("body", [
    "writer:\n  batch_size: 0\n",
    "tolerances:\n  amount_pct: -1\n",
    "tolerances:\n  amount_date_days: 2.5\n",
    "confidence:\n  external-id: 0.4\n",
    "- just\n- a list\n",
    "tolerances: [unclosed\n",
    "disbursements:\n  date_window_days: -1\n",
    "disbursements:\n  amount_tolerance: cheap\n",
    "matching:\n  skip_source_types: payout\n",
])
def test_invalid_config_is_rejected(tmp_path, body):
    path = tmp_path / "bad.yml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_reconciliation_config(str(path))
