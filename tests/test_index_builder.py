import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from financial_models import FinancialRecord
from index_builder import TargetIndex, amount_bucket, invoice_classification_map


def _inv(id, amount, **custom):
    return FinancialRecord.from_row({
        "id": id, "date": "2025-03-01", "amount": amount,
        "custom_data": custom, "source": "invoice-orders",
    })


def test_amount_bucket_rounds_half_up():
    assert amount_bucket(Decimal("99.50")) == 100
    assert amount_bucket(Decimal("-99.49")) == 99
    assert amount_bucket(None) is None


def test_build_indexes_all_keys():
    index = TargetIndex.build([
        _inv("1", "100.00", invoice_number="INV-1", order_number="ORD-1", customer_name="Jane Smith"),
        _inv("2", "250.00", customer_email="Jane.Smith+x@mail.com"),
        _inv("3", "0", customer_name=""),
    ])
    assert [r.id for r in index.lookup_external_id("inv-1")] == ["1"]
    assert [r.id for r in index.lookup_external_id("ORD-1")] == ["1"]
    assert [r.id for r in index.by_normalized_name["jane smith"]] == ["1"]
    assert [r.id for r in index.by_email["jane.smith@mail.com"]] == ["2"]
    # 空キー・金額0はインデックスしない
    assert "" not in index.by_normalized_name
    assert 0 not in index.by_amount_bucket


def test_lookup_identity_by_name_or_email_without_duplicates():
    index = TargetIndex.build([
        _inv("1", "100.00", customer_name="Jane Smith", customer_email="jane@mail.com"),
        _inv("2", "120.00", customer_email="jane@mail.com"),
        _inv("3", "140.00", customer_name="Someone Else"),
    ])
    ids = [r.id for r in index.lookup_identity("jane smith", "jane@mail.com")]
    assert ids == ["1", "2"]
    assert index.lookup_identity("", "") == []


def test_candidates_near_scans_neighbouring_buckets():
    index = TargetIndex.build([
        _inv("1", "99.60"),
        _inv("2", "101.40"),
        _inv("3", "103.00"),
    ])
    assert sorted(r.id for r in index.candidates_near(Decimal("100.90"), 1)) == ["1", "2"]
    assert index.candidates_near(None) == []


def test_invoices_containing_fragment():
    index = TargetIndex.build([
        _inv("1", "10", invoice_number="#DSDES4519A0D-48689"),
        _inv("2", "10", invoice_number="#OTHER-1"),
    ])
    assert [r.id for r in index.invoices_containing("4519A0D")] == ["1"]
    assert index.invoices_containing("") == []


def test_matched_targets_excluded_but_classification_kept():
    invoices = [
        _inv("1", "100", invoice_number="INV-1", financial_account_code="4000",
             matched_source_id="tx-9"),
        _inv("2", "100", invoice_number="INV-2", financial_account_code="5000"),
    ]
    index = TargetIndex.build(invoices)
    assert [r.id for r in index.records] == ["2"]
    assert index.excluded_matched == 1
    assert invoice_classification_map(invoices) == {"inv-1": "4000", "inv-2": "5000"}

    everything = TargetIndex.build(index.records + [_inv("1", "100", matched_source_id="tx-9")],
                                   exclude_matched=False)
    assert len(everything.records) == 2
