"""
Invoice aggregation.

Invoices collect session charges for one calendar-month billing period.
The total is always recomputed from the charges it holds; there is no
running total that could drift from them.

Lifecycle: pending -> paid, or pending -> failed -> paid. Paid invoices are
immutable and only pending invoices accept charges.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from .clock import ensure_aware
from .errors import AlreadyFinalized, ChargeOutsidePeriod, InvoiceClosed, StaleCorrection
from .pricing import SessionCharge

logger = logging.getLogger(__name__)


class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


@dataclass(frozen=True)
class Invoice:
    """Charges for one customer and billing period."""
    invoice_id: str
    customer_id: str
    billing_period_start: date
    billing_period_end: date
    session_charges: Tuple[SessionCharge, ...] = ()
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        if self.billing_period_start > self.billing_period_end:
            raise ValueError("billing_period_start must be on or before billing_period_end")

    @property
    def total_amount(self) -> Decimal:
        return sum((charge.total_cost for charge in self.session_charges), Decimal(0))

    def covers(self, day: date) -> bool:
        return self.billing_period_start <= day <= self.billing_period_end


def billing_period(day: date) -> Tuple[date, date]:
    """Calendar month containing ``day`` as (first day, last day)."""
    start = day.replace(day=1)
    return start, start + relativedelta(months=1, days=-1)


def open_invoice(invoice_id: str, customer_id: str, period_date: date,
                 currency: str = "USD") -> Invoice:
    """Create an empty pending invoice for the month containing ``period_date``."""
    start, end = billing_period(period_date)
    return Invoice(
        invoice_id=invoice_id,
        customer_id=customer_id,
        billing_period_start=start,
        billing_period_end=end,
        currency=currency
    )


def add_charge(invoice: Invoice, charge: SessionCharge) -> Invoice:
    """Return a new invoice including ``charge``.

    A charge that supersedes an earlier revision of the same session replaces
    that revision in place; any other charge is appended.

    Raises:
        InvoiceClosed: If the invoice is not pending
        ChargeOutsidePeriod: If the charge date is outside the billing period
        StaleCorrection: If the correction supersedes a revision that was
            already replaced by another one
    """
    if invoice.status != InvoiceStatus.PENDING:
        raise InvoiceClosed(invoice.invoice_id, invoice.status.value)
    if not invoice.covers(charge.session_date):
        raise ChargeOutsidePeriod(invoice.invoice_id, charge.session_date)

    charges = list(invoice.session_charges)
    if charge.supersedes is not None:
        for index, existing in enumerate(charges):
            if existing.session_id != charge.session_id:
                continue
            if existing.revision != charge.supersedes:
                raise StaleCorrection(invoice.invoice_id, charge.session_id,
                                      charge.supersedes, existing.revision)
            charges[index] = charge
            return replace(invoice, session_charges=tuple(charges))

    charges.append(charge)
    return replace(invoice, session_charges=tuple(charges))


def finalize(invoice: Invoice, paid_at: datetime) -> Invoice:
    """Mark an invoice paid.

    Raises:
        AlreadyFinalized: If the invoice is already paid
    """
    if invoice.status == InvoiceStatus.PAID:
        raise AlreadyFinalized(invoice.invoice_id)
    logger.info("Invoice %s paid: %s %s", invoice.invoice_id, invoice.total_amount,
                invoice.currency)
    return replace(invoice, status=InvoiceStatus.PAID, paid_at=ensure_aware(paid_at))


def mark_failed(invoice: Invoice) -> Invoice:
    """Record a failed payment attempt on a pending invoice.

    Raises:
        AlreadyFinalized: If the invoice is already paid
    """
    if invoice.status == InvoiceStatus.PAID:
        raise AlreadyFinalized(invoice.invoice_id)
    logger.warning("Payment failed for invoice %s", invoice.invoice_id)
    return replace(invoice, status=InvoiceStatus.FAILED)
