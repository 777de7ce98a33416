import os
import sys
from datetime import date
from decimal import Decimal

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from financial_models import AttributeBag, FinancialRecord, WriteFailure, WriteReport, parse_date, parse_decimal


def test_parse_decimal():
    assert parse_decimal("1,234.50") == Decimal("1234.50")
    assert parse_decimal(0.1) == Decimal("0.1")
    assert parse_decimal("") is None
    assert parse_decimal("abc") is None
    assert parse_decimal(True) is None


def test_parse_date_drops_time():
    assert parse_date("2025-03-01T23:59:00Z") == date(2025, 3, 1)
    assert parse_date("2025/03/01") == date(2025, 3, 1)
    assert parse_date("yesterday") is None


def test_attribute_bag_accessors():
    bag = AttributeBag({"a": "  ", "b": "Jane", "amount": "12.30", "ids": ["tx1", None, " "], "one": "tx9"})
    assert bag.get_string("a", "b") == "Jane"
    assert bag.get_string("missing") == ""
    assert bag.get_decimal("amount") == Decimal("12.30")
    assert bag.get_string_list("ids") == ["tx1"]
    assert bag.get_string_list("one") == ["tx9"]
    assert not bag.has("a")


def test_merged_keeps_unrelated_keys():
    bag = AttributeBag({"keep": 1, "x": "old"})
    merged = bag.merged({"x": "new"})
    assert merged.to_dict() == {"keep": 1, "x": "new"}
    assert bag.to_dict() == {"keep": 1, "x": "old"}


def test_record_matched_flag():
    row = {"id": 5, "amount": "-10", "date": "2025-01-01", "source": "stripe-eur"}
    record = FinancialRecord.from_row(row)
    assert record.id == "5"
    assert record.abs_amount == Decimal("10")
    assert not record.matched
    assert FinancialRecord.from_row(dict(row, custom_data={"matched_order_id": "o1"})).matched


def test_write_report():
    report = WriteReport("sources", attempted=3, succeeded=1,
                         failures=[WriteFailure("a", "x"), WriteFailure("b", "y")])
    assert report.failed == 2
    assert [f.record_id for f in report.first_failures(1)] == ["a"]


def test_blank_match_annotation_is_not_matched():
    record = FinancialRecord.from_row({"id": "1", "amount": "5", "custom_data": {
        "matched_invoice_number": "   ", "matched_order_id": ""}})
    assert not record.attributes.has("matched_invoice_number")
    assert not record.matched
