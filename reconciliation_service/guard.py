"""
Idempotency Guard.

A payment has produced its side effects when its persisted status is
completed, or when ledger rows reference it (the status write after a
successful ledger insert may have been lost, or the process died between
inserting the rows and moving the balances).
"""
from typing import List
import logging

from ledger_service.ledger import ledger_entries_exist, unapplied_ledger_accounts
from ledger_service.models import Payment, utcnow
from reconciliation_service.repository import PaymentRepository
from reconciliation_service.state_machine import NON_TERMINAL_STATUSES, PaymentStatus

logger = logging.getLogger(__name__)

class IdempotencyGuard:
    def __init__(self, repository: PaymentRepository):
        self.repository = repository

    def already_processed(self, payment: Payment) -> bool:
        current = self.repository.get(payment.id)
        if current is not None and current.status == PaymentStatus.COMPLETED.value:
            return True
        with self.repository.session_factory() as db:
            return ledger_entries_exist(db, payment.id)

    def mark_processed(self, payment: Payment, **values) -> bool:
        """Compare-and-set to completed; False when another writer got there first"""
        values.setdefault("paid_at", utcnow())
        values.setdefault("error_message", None)
        values.setdefault("next_attempt_at", None)
        won = self.repository.compare_and_set_status(
            payment.id, NON_TERMINAL_STATUSES, PaymentStatus.COMPLETED, **values
        )
        if not won:
            logger.info(f"Payment {payment.external_reference} was already terminal when marking processed")
        return won

    def repair(self, payment: Payment) -> List[str]:
        """Complete a payment whose ledger rows already exist.

        Returns the accounts that were never credited; when there are any
        the payment is flagged for manual reconciliation instead of being
        completed silently.
        """
        with self.repository.session_factory() as db:
            uncredited = unapplied_ledger_accounts(db, payment.id)
        if not uncredited:
            self.mark_processed(payment)
            return []
        note = (f"Ledger rows for payment {payment.external_reference} exist but balance "
                f"was never updated for {', '.join(uncredited)}")
        logger.error(f"❌ {note}")
        self.mark_processed(payment, needs_reconciliation=True, reconciliation_note=note, error_message=note)
        return uncredited
