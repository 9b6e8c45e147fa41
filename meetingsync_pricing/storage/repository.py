"""
Repository for billing state shared between sessions.

The free-tier minute counter, the tier selection and invoices may be written
by several sessions of the same customer at once. Every write here is either
a conditional UPDATE (compare-and-swap) or a read-modify-write inside a
BEGIN IMMEDIATE transaction, so concurrent writers serialize instead of
overwriting each other.
"""

import logging
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional

from meetingsync_pricing.core.invoice import (
    Invoice,
    InvoiceStatus,
    add_charge,
    finalize,
    mark_failed
)
from meetingsync_pricing.core.pricing import SessionCharge
from meetingsync_pricing.core.quota import FreeTierUsage
from meetingsync_pricing.core.tier_lock import TierLockState
from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)


def _dt_to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


class BillingRepository:
    """SQLite-backed store for free-tier usage, tier selections and invoices."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the billing tables if they don't exist.

        Invoices store no total column: totals are always recomputed from
        their session charges.
        """
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS free_tier_usage (
                    customer_id TEXT PRIMARY KEY,
                    minutes_remaining INTEGER NOT NULL CHECK (minutes_remaining >= 0),
                    last_reset_at TEXT
                );
                CREATE TABLE IF NOT EXISTS tier_selection (
                    customer_id TEXT PRIMARY KEY,
                    tier_id TEXT,
                    selected_at TEXT
                );
                CREATE TABLE IF NOT EXISTS invoice (
                    invoice_id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    billing_period_start TEXT NOT NULL,
                    billing_period_end TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    paid_at TEXT
                );
                CREATE TABLE IF NOT EXISTS session_charge (
                    invoice_id TEXT NOT NULL REFERENCES invoice(invoice_id),
                    position INTEGER NOT NULL,
                    session_id TEXT NOT NULL,
                    session_date TEXT NOT NULL,
                    tier_used TEXT NOT NULL,
                    duration_hours TEXT NOT NULL,
                    base_cost TEXT NOT NULL,
                    overage_cost TEXT NOT NULL,
                    participant_multiplier TEXT NOT NULL,
                    total_cost TEXT NOT NULL,
                    overage_languages TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    supersedes INTEGER,
                    PRIMARY KEY (invoice_id, position)
                );
            """)
            conn.commit()
        finally:
            conn.close()

    # Free-tier usage

    def get_free_tier_usage(self, customer_id: str) -> Optional[FreeTierUsage]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT minutes_remaining, last_reset_at FROM free_tier_usage WHERE customer_id = ?",
                (customer_id,)
            ).fetchone()
            if row is None:
                return None
            return FreeTierUsage(minutes_remaining=row[0], last_reset_at=_dt_from_text(row[1]))
        finally:
            conn.close()

    def save_free_tier_reset(self, customer_id: str, previous: Optional[FreeTierUsage],
                             usage: FreeTierUsage) -> bool:
        """Store a reset counter if nobody reset it since ``previous`` was read.

        Returns:
            True if the write applied, False if another writer got there first
        """
        conn = get_connection(self.db_path)
        try:
            if previous is None:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO free_tier_usage (customer_id, minutes_remaining, last_reset_at) "
                    "VALUES (?, ?, ?)",
                    (customer_id, usage.minutes_remaining, _dt_to_text(usage.last_reset_at))
                )
            else:
                cursor = conn.execute(
                    "UPDATE free_tier_usage SET minutes_remaining = ?, last_reset_at = ? "
                    "WHERE customer_id = ? AND last_reset_at IS ?",
                    (usage.minutes_remaining, _dt_to_text(usage.last_reset_at), customer_id,
                     _dt_to_text(previous.last_reset_at))
                )
            conn.commit()
            applied = cursor.rowcount == 1
            if not applied:
                logger.debug("Free-tier reset for %s lost a concurrent update", customer_id)
            return applied
        finally:
            conn.close()

    def consume_free_minutes(self, customer_id: str, minutes: int) -> int:
        """Atomically take up to ``minutes`` from the counter.

        Returns:
            Minutes actually consumed (0 when the counter is exhausted)

        Raises:
            KeyError: If the customer has no free-tier counter
            ValueError: If minutes is negative
        """
        if minutes < 0:
            raise ValueError("minutes cannot be negative")
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT minutes_remaining FROM free_tier_usage WHERE customer_id = ?",
                (customer_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"No free-tier usage recorded for customer {customer_id}")
            consumed = min(minutes, row[0])
            conn.execute(
                "UPDATE free_tier_usage SET minutes_remaining = minutes_remaining - ? "
                "WHERE customer_id = ?",
                (consumed, customer_id)
            )
            conn.commit()
            return consumed
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Tier selection

    def get_tier_lock_state(self, customer_id: str) -> TierLockState:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT tier_id, selected_at FROM tier_selection WHERE customer_id = ?",
                (customer_id,)
            ).fetchone()
            if row is None:
                return TierLockState()
            return TierLockState(current_tier_id=row[0], tier_selected_date=_dt_from_text(row[1]))
        finally:
            conn.close()

    def record_tier_selection(self, customer_id: str, expected: TierLockState,
                              new_state: TierLockState) -> bool:
        """Store a tier selection if the stored one still equals ``expected``.

        Returns:
            True if the write applied, False if a concurrent change won
        """
        conn = get_connection(self.db_path)
        try:
            if expected.tier_selected_date is None and expected.current_tier_id is None:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO tier_selection (customer_id, tier_id, selected_at) "
                    "VALUES (?, ?, ?)",
                    (customer_id, new_state.current_tier_id,
                     _dt_to_text(new_state.tier_selected_date))
                )
            else:
                cursor = conn.execute(
                    "UPDATE tier_selection SET tier_id = ?, selected_at = ? "
                    "WHERE customer_id = ? AND tier_id IS ? AND selected_at IS ?",
                    (new_state.current_tier_id, _dt_to_text(new_state.tier_selected_date),
                     customer_id, expected.current_tier_id,
                     _dt_to_text(expected.tier_selected_date))
                )
            conn.commit()
            applied = cursor.rowcount == 1
            if not applied:
                logger.info("Tier selection for %s changed concurrently; write rejected", customer_id)
            return applied
        finally:
            conn.close()

    # Invoices

    def create_invoice(self, invoice: Invoice) -> None:
        """Insert a new invoice together with any charges it already holds."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT INTO invoice (invoice_id, customer_id, billing_period_start, "
                "billing_period_end, currency, status, paid_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (invoice.invoice_id, invoice.customer_id,
                 invoice.billing_period_start.isoformat(),
                 invoice.billing_period_end.isoformat(), invoice.currency,
                 invoice.status.value, _dt_to_text(invoice.paid_at))
            )
            self._write_charges(conn, invoice)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            return self._load_invoice(conn, invoice_id)
        finally:
            conn.close()

    def append_charge(self, invoice_id: str, charge: SessionCharge) -> Invoice:
        """Add a charge to a stored invoice, serialized per invoice.

        Raises:
            KeyError: If the invoice does not exist
            InvoiceClosed / ChargeOutsidePeriod: As for add_charge
        """
        return self._update_invoice(invoice_id, lambda invoice: add_charge(invoice, charge))

    def finalize_invoice(self, invoice_id: str, paid_at: datetime) -> Invoice:
        return self._update_invoice(invoice_id, lambda invoice: finalize(invoice, paid_at))

    def mark_invoice_failed(self, invoice_id: str) -> Invoice:
        return self._update_invoice(invoice_id, mark_failed)

    def _update_invoice(self, invoice_id: str,
                        transition: Callable[[Invoice], Invoice]) -> Invoice:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            invoice = self._load_invoice(conn, invoice_id)
            if invoice is None:
                raise KeyError(f"Invoice not found: {invoice_id}")
            updated = transition(invoice)
            conn.execute(
                "UPDATE invoice SET status = ?, paid_at = ? WHERE invoice_id = ?",
                (updated.status.value, _dt_to_text(updated.paid_at), invoice_id)
            )
            if updated.session_charges != invoice.session_charges:
                self._write_charges(conn, updated)
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _write_charges(self, conn: sqlite3.Connection, invoice: Invoice) -> None:
        conn.execute("DELETE FROM session_charge WHERE invoice_id = ?", (invoice.invoice_id,))
        for position, charge in enumerate(invoice.session_charges):
            conn.execute("""
                INSERT INTO session_charge
                (invoice_id, position, session_id, session_date, tier_used, duration_hours,
                 base_cost, overage_cost, participant_multiplier, total_cost,
                 overage_languages, revision, supersedes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                invoice.invoice_id,
                position,
                charge.session_id,
                charge.session_date.isoformat(),
                charge.tier_used,
                str(charge.duration_hours),
                str(charge.base_cost),
                str(charge.overage_cost),
                str(charge.participant_multiplier),
                str(charge.total_cost),
                ",".join(charge.overage_languages),
                charge.revision,
                charge.supersedes
            ))

    def _load_invoice(self, conn: sqlite3.Connection, invoice_id: str) -> Optional[Invoice]:
        row = conn.execute(
            "SELECT invoice_id, customer_id, billing_period_start, billing_period_end, "
            "currency, status, paid_at FROM invoice WHERE invoice_id = ?",
            (invoice_id,)
        ).fetchone()
        if row is None:
            return None

        cursor = conn.execute("""
            SELECT session_id, session_date, tier_used, duration_hours, base_cost,
                   overage_cost, participant_multiplier, total_cost, overage_languages,
                   revision, supersedes
            FROM session_charge WHERE invoice_id = ? ORDER BY position
        """, (invoice_id,))
        charges: List[SessionCharge] = []
        for charge_row in cursor.fetchall():
            charges.append(SessionCharge(
                session_id=charge_row[0],
                session_date=date.fromisoformat(charge_row[1]),
                tier_used=charge_row[2],
                duration_hours=Decimal(charge_row[3]),
                base_cost=Decimal(charge_row[4]),
                overage_cost=Decimal(charge_row[5]),
                participant_multiplier=Decimal(charge_row[6]),
                total_cost=Decimal(charge_row[7]),
                overage_languages=tuple(lang for lang in charge_row[8].split(",") if lang),
                revision=charge_row[9],
                supersedes=charge_row[10]
            ))

        return Invoice(
            invoice_id=row[0],
            customer_id=row[1],
            billing_period_start=date.fromisoformat(row[2]),
            billing_period_end=date.fromisoformat(row[3]),
            session_charges=tuple(charges),
            currency=row[4],
            status=InvoiceStatus(row[5]),
            paid_at=_dt_from_text(row[6])
        )
