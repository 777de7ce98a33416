import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from config_loader import ConfigurationError
from environment_validator import EnvironmentValidator, validate_environment_quick


VALID = {
    "RECORD_STORE_URL": "https://abcd.supabase.co",
    "RECORD_STORE_KEY": "k" * 40,
}


def test_valid_environment_passes():
    results = EnvironmentValidator(dict(VALID, DRY_RUN="TRUE")).validate_all(verbose=False)
    assert results["status"] == "pass"
    assert results["warnings"] == []


def test_missing_and_invalid_required_vars():
    validator = EnvironmentValidator({"RECORD_STORE_URL": "not a url"})
    results = validator.validate_all(verbose=False)
    assert results["status"] == "fail"
    assert results["missing_required"] == ["RECORD_STORE_KEY"]
    assert results["invalid_format"][0]["name"] == "RECORD_STORE_URL"

    with pytest.raises(ConfigurationError) as exc:
        validator.check_basic_requirements()
    assert "RECORD_STORE_KEY" in str(exc.value)


def test_optional_format_warning_does_not_fail():
    results = EnvironmentValidator(dict(VALID, DRY_RUN="maybe")).validate_all(verbose=False)
    assert results["status"] == "pass"
    assert [w["name"] for w in results["warnings"]] == ["DRY_RUN"]


def test_quick_validation():
    assert validate_environment_quick(VALID) == (True, [])
    assert validate_environment_quick({}) == (False, ["RECORD_STORE_URL", "RECORD_STORE_KEY"])
