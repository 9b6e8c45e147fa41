"""
Typed errors raised by the pricing engine.

Every business condition the host layer has to translate into user-facing
messaging is a subclass of PricingError. None of them indicate a crash.
"""

from datetime import date, datetime
from typing import List, Optional


class PricingError(Exception):
    """Base class for all pricing engine errors."""


class ValidationError(PricingError):
    """Raised when a pricing configuration violates one or more invariants.

    Carries every violation, not just the first, so operators get a complete
    diagnostic in a single pass.
    """
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            f"Pricing configuration validation failed: {'; '.join(self.errors)}"
        )


class UnknownTierError(PricingError):
    """Raised when a tier id is not present in the active configuration."""
    def __init__(self, tier_id: str):
        super().__init__(f"Unknown pricing tier: {tier_id}")
        self.tier_id = tier_id


class TierNotSelected(PricingError):
    """Raised when a session is quoted or checked before a tier was chosen."""
    def __init__(self):
        super().__init__("A pricing tier must be selected before starting a session")


class LanguageCountError(PricingError):
    """Base for language selection mismatches.

    ``delta`` is always positive: the number of languages to add or remove.
    """
    def __init__(self, message: str, delta: int, required: int, selected: int):
        super().__init__(message)
        self.delta = delta
        self.required = required
        self.selected = selected


class TooFewLanguages(LanguageCountError):
    """Fewer target languages selected than the tier requires."""
    def __init__(self, required: int, selected: int):
        delta = required - selected
        noun = "language" if delta == 1 else "languages"
        super().__init__(
            f"Select {delta} more {noun} ({selected} of {required} selected)",
            delta, required, selected
        )


class TooManyLanguages(LanguageCountError):
    """More target languages selected than the tier includes."""
    def __init__(self, required: int, selected: int):
        delta = selected - required
        noun = "language" if delta == 1 else "languages"
        super().__init__(
            f"Remove {delta} {noun} ({selected} selected, tier includes {required})",
            delta, required, selected
        )


class DailyQuotaExhausted(PricingError):
    """Raised when a free-tier customer has no minutes left in this window."""
    def __init__(self, next_reset_at: datetime):
        super().__init__(
            f"No free minutes remaining. Minutes reset at {next_reset_at.isoformat()}"
        )
        self.next_reset_at = next_reset_at


class InvalidDuration(PricingError):
    """Raised when a session duration is zero or negative."""
    def __init__(self, duration_hours):
        super().__init__(f"Session duration must be > 0 hours, got {duration_hours}")
        self.duration_hours = duration_hours


class TierLocked(PricingError):
    """Raised when a tier change is attempted inside the lock-in month."""
    def __init__(self, next_change_date: date, current_tier_id: Optional[str] = None):
        super().__init__(
            f"Tier is locked until {next_change_date.isoformat()}"
            + (f" (current tier: {current_tier_id})" if current_tier_id else "")
        )
        self.next_change_date = next_change_date
        self.current_tier_id = current_tier_id


class InvoiceStateError(PricingError):
    """Base for invalid invoice lifecycle transitions."""
    def __init__(self, message: str, invoice_id: str):
        super().__init__(message)
        self.invoice_id = invoice_id


class AlreadyFinalized(InvoiceStateError):
    """Raised when finalizing an invoice that is already paid."""
    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} is already paid", invoice_id)


class InvoiceClosed(InvoiceStateError):
    """Raised when adding a charge to an invoice that is no longer pending."""
    def __init__(self, invoice_id: str, status: str):
        super().__init__(
            f"Invoice {invoice_id} is {status}; charges can only be added while pending",
            invoice_id
        )
        self.status = status


class ChargeOutsidePeriod(InvoiceStateError):
    """Raised when a charge's date falls outside the invoice billing period."""
    def __init__(self, invoice_id: str, charge_date: date):
        super().__init__(
            f"Charge dated {charge_date.isoformat()} is outside the billing period "
            f"of invoice {invoice_id}",
            invoice_id
        )
        self.charge_date = charge_date


class StaleCorrection(InvoiceStateError):
    """Raised when a correction supersedes a revision the invoice no longer holds."""
    def __init__(self, invoice_id: str, session_id: str, supersedes: int, current_revision: int):
        super().__init__(
            f"Correction of session {session_id} supersedes revision {supersedes}, "
            f"but invoice {invoice_id} holds revision {current_revision}",
            invoice_id
        )
        self.session_id = session_id
        self.supersedes = supersedes
        self.current_revision = current_revision
