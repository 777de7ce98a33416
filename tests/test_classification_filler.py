import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from classification_filler import ClassificationFiller
from financial_models import FinancialRecord


NOW = datetime(2025, 4, 1, tzinfo=timezone.utc)


def _rec(id, source, **custom):
    return FinancialRecord.from_row({"id": id, "amount": "10", "date": "2025-03-01",
                                     "custom_data": custom, "source": source})


INVOICES = [
    _rec("i1", "invoice-orders", customer_name="Acme Dental", invoice_number="INV-1", financial_account_code="4000"),
    _rec("i2", "invoice-orders", customer_name="Acme Dental", financial_account_code="4000"),
    _rec("i3", "invoice-orders", customer_name="Acme Dental", financial_account_code="4100"),
    _rec("i4", "invoice-orders", customer_name="Beta One", customer_email="x@beta.com", financial_account_code="5000"),
    _rec("i5", "invoice-orders", customer_name="Beta Two", customer_email="y@beta.com", financial_account_code="5000"),
    _rec("i6", "invoice-orders", customer_name="Gamma", customer_email="g@gamma.com", financial_account_code="6000"),
    _rec("i7", "invoice-orders", customer_name="No Code"),
]


def _filler():
    return ClassificationFiller(INVOICES, clock=lambda: NOW)


def test_existing_classification():
    filler = _filler()
    assert filler.existing_classification(_rec("g", "s", matched_invoice_fac="7000")) == "7000"
    assert filler.existing_classification(_rec("g", "s", matched_invoice_number="inv-1")) == "4000"
    assert filler.existing_classification(_rec("g", "s")) == ""


def test_fill_fallback_order():
    gateways = [
        _rec("g1", "stripe-eur", matched_invoice_fac="4000"),
        _rec("g2", "stripe-eur", customer_name="ACME dental"),
        _rec("g3", "stripe-eur", customer_name="Unknown", customer_email="z@beta.com"),
        _rec("g4", "stripe-eur", customer_email="q@gamma.com"),
        _rec("g5", "stripe-eur", matched_invoice_number="INV-1"),
        _rec("g6", "stripe-eur"),
    ]
    patches = {p.record_id: p for p in _filler().fill(gateways)}

    assert set(patches) == {"g2", "g3", "g4", "g6"}
    assert patches["g2"].fields["matched_invoice_fac"] == "4000"
    assert patches["g2"].fields["fac_fallback_source"] == "customer-name"
    assert patches["g3"].fields["matched_invoice_fac"] == "5000"
    assert patches["g3"].fields["fac_fallback_source"] == "email-domain"
    # 1件しかないドメインは使わない
    assert patches["g4"].fields["fac_fallback_source"] == "source-dominant"
    assert patches["g4"].fields["matched_invoice_fac"] == "4000"
    assert patches["g6"].fields["fac_fallback_at"] == NOW.isoformat()
    assert patches["g6"].collection == "stripe-eur"


def test_source_dominant_is_per_source():
    gateways = [
        _rec("a1", "stripe-usd", matched_invoice_fac="5000"),
        _rec("a2", "stripe-usd"),
        _rec("b1", "gocardless"),
    ]
    patches = {p.record_id: p for p in _filler().fill(gateways)}
    assert patches["a2"].fields["matched_invoice_fac"] == "5000"
    assert "b1" not in patches
