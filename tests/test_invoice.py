"""
Tests for invoice aggregation and lifecycle.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest
from dateutil import tz

from meetingsync_pricing.core.errors import (
    AlreadyFinalized,
    ChargeOutsidePeriod,
    InvoiceClosed,
    StaleCorrection
)
from meetingsync_pricing.core.invoice import (
    InvoiceStatus,
    add_charge,
    billing_period,
    finalize,
    mark_failed,
    open_invoice
)
from meetingsync_pricing.core.pricing import SessionCharge

PAID_AT = datetime(2026, 11, 2, 9, 0, tzinfo=tz.UTC)


def make_charge(session_id, total, day=18, revision=1, supersedes=None):
    return SessionCharge(
        session_id=session_id,
        session_date=date(2026, 10, day),
        tier_used="starter",
        duration_hours=Decimal("1"),
        base_cost=Decimal(total),
        overage_cost=Decimal("0.00"),
        participant_multiplier=Decimal("1"),
        total_cost=Decimal(total),
        revision=revision,
        supersedes=supersedes
    )


class TestBillingPeriod:
    """Test calendar-month billing periods."""

    def test_period_covers_calendar_month(self):
        assert billing_period(date(2026, 10, 18)) == (date(2026, 10, 1), date(2026, 10, 31))

    def test_leap_february(self):
        assert billing_period(date(2028, 2, 10)) == (date(2028, 2, 1), date(2028, 2, 29))

    def test_open_invoice_is_pending_and_empty(self):
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 18))

        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.session_charges == ()
        assert invoice.total_amount == Decimal("0")


class TestAddCharge:
    """Test charge accumulation."""

    def test_total_equals_sum_of_charges(self):
        """Test the total after a sequence of additions."""
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 1))
        totals = ["45.00", "118.50", "0.00", "37.25"]

        for index, total in enumerate(totals):
            invoice = add_charge(invoice, make_charge(f"sess_{index}", total))
            assert invoice.total_amount == sum(c.total_cost for c in invoice.session_charges)

        assert invoice.total_amount == Decimal("200.75")
        assert [c.session_id for c in invoice.session_charges] == [
            "sess_0", "sess_1", "sess_2", "sess_3"
        ]

    def test_add_charge_returns_new_invoice(self):
        """Test that the input invoice is left untouched."""
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 1))

        updated = add_charge(invoice, make_charge("sess_1", "45.00"))

        assert invoice.session_charges == ()
        assert updated.total_amount == Decimal("45.00")

    def test_correction_replaces_superseded_charge(self):
        """Test that a corrected charge takes the place of the one it supersedes."""
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 1))
        invoice = add_charge(invoice, make_charge("sess_1", "45.00"))
        invoice = add_charge(invoice, make_charge("sess_2", "75.00"))

        invoice = add_charge(invoice, make_charge("sess_1", "90.00", revision=2, supersedes=1))

        assert [(c.session_id, c.revision) for c in invoice.session_charges] == [
            ("sess_1", 2), ("sess_2", 1)
        ]
        assert invoice.total_amount == Decimal("165.00")

    def test_second_correction_of_same_revision_rejected(self):
        """Test that two corrections built from one charge cannot both be billed."""
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 1))
        invoice = add_charge(invoice, make_charge("sess_1", "45.00"))
        invoice = add_charge(invoice, make_charge("sess_1", "90.00", revision=2, supersedes=1))

        with pytest.raises(StaleCorrection) as excinfo:
            add_charge(invoice, make_charge("sess_1", "135.00", revision=2, supersedes=1))

        assert excinfo.value.current_revision == 2
        assert len(invoice.session_charges) == 1
        assert invoice.total_amount == Decimal("90.00")

    def test_correction_chain(self):
        """Test that each correction must supersede the revision on the invoice."""
        invoice = open_invoice("inv_1", "cust_1", date(2026, 10, 1))
        invoice = add_charge(invoice, make_charge("sess_1", "45.00"))
        invoice = add_charge(invoice, make_charge("sess_1", "90.00", revision=2, supersedes=1))
        invoice = add_charge(invoice, make_charge("sess_1", "135.00", revision=3, supersedes=2))

        assert [(c.session_id, c.revision) for c in invoice.session_charges] == [("sess_1", 3)]
        assert invoice.total_amount == Decimal("135.00")

    def test_charge_outside_period_rejected(self):
        invoice = open_invoice("inv_1", "cust_1", date(2026, 11, 1))

        with pytest.raises(ChargeOutsidePeriod):
            add_charge(invoice, make_charge("sess_1", "45.00", day=31))

    def test_paid_invoice_is_closed(self):
        invoice = finalize(open_invoice("inv_1", "cust_1", date(2026, 10, 1)), PAID_AT)

        with pytest.raises(InvoiceClosed) as excinfo:
            add_charge(invoice, make_charge("sess_1", "45.00"))

        assert excinfo.value.status == "paid"

    def test_failed_invoice_is_closed(self):
        invoice = mark_failed(open_invoice("inv_1", "cust_1", date(2026, 10, 1)))

        with pytest.raises(InvoiceClosed):
            add_charge(invoice, make_charge("sess_1", "45.00"))


class TestFinalize:
    """Test the payment lifecycle."""

    def test_finalize_marks_paid(self):
        invoice = add_charge(open_invoice("inv_1", "cust_1", date(2026, 10, 1)),
                             make_charge("sess_1", "45.00"))

        paid = finalize(invoice, PAID_AT)

        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_at == PAID_AT
        assert paid.total_amount == Decimal("45.00")

    def test_finalize_twice_raises(self):
        paid = finalize(open_invoice("inv_1", "cust_1", date(2026, 10, 1)), PAID_AT)

        with pytest.raises(AlreadyFinalized):
            finalize(paid, PAID_AT)

    def test_failed_invoice_can_be_paid(self):
        """Test that a payment retry after failure finalizes the invoice."""
        failed = mark_failed(open_invoice("inv_1", "cust_1", date(2026, 10, 1)))

        assert finalize(failed, PAID_AT).status == InvoiceStatus.PAID

    def test_paid_invoice_cannot_fail(self):
        paid = finalize(open_invoice("inv_1", "cust_1", date(2026, 10, 1)), PAID_AT)

        with pytest.raises(AlreadyFinalized):
            mark_failed(paid)
