"""
Ledger Updater: credits a completed payment's commission split to the
platform and device-owner accounts.

Two phases:
  1. all LedgerTransaction rows for the payment are inserted in one
     transaction (nothing changes if this fails);
  2. each beneficiary balance is moved from the recorded balance_before to
     balance_after with a compare-and-set update, and the row is stamped
     applied_at in the same transaction.
A failure in phase 2 is a partial effect: the rows exist, so retrying would
double-credit. It is raised as LedgerPartialFailure for manual review. Rows
left without applied_at (a failed or interrupted phase 2) name the accounts
that were never credited.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes
from common.locks import build_key_locks
from common.money import format_minor
from common.settings import settings
from ledger_service.commission import validate_split
from ledger_service.models import Account, Device, LedgerTransaction, Payment, utcnow

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "payment"

class LedgerError(ServiceError):
    """Phase 1 failed; no row was written and no balance moved"""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.LEDGER_WRITE_FAILED, message, original_error)

class LedgerPartialFailure(ServiceError):
    """Rows were inserted but at least one balance update failed"""
    retryable = False

    def __init__(self, payment_id: str, failed_accounts: List[str], original_error: Exception = None):
        self.payment_id = payment_id
        self.failed_accounts = failed_accounts
        super().__init__(
            ErrorCodes.LEDGER_PARTIAL_FAILURE,
            f"Ledger rows for payment {payment_id} inserted but balance update failed for {', '.join(failed_accounts)}",
            original_error,
        )

@dataclass(frozen=True)
class LedgerEntryResult:
    user_id: str
    amount: int
    balance_before: int
    balance_after: int
    memo: str
    transaction_id: Optional[int] = None

@dataclass
class LedgerResult:
    payment_id: str
    entries: List[LedgerEntryResult] = field(default_factory=list)
    merged: bool = False
    already_applied: bool = False

    @property
    def total(self) -> int:
        return sum(e.amount for e in self.entries)

def ledger_entries_exist(db, payment_id: str) -> bool:
    stmt = select(LedgerTransaction.id).where(
        LedgerTransaction.reference_id == payment_id,
        LedgerTransaction.reference_type == REFERENCE_TYPE,
    ).limit(1)
    return db.execute(stmt).first() is not None

def load_ledger_entries(db, payment_id: str) -> List[LedgerTransaction]:
    stmt = select(LedgerTransaction).where(
        LedgerTransaction.reference_id == payment_id,
        LedgerTransaction.reference_type == REFERENCE_TYPE,
    ).order_by(LedgerTransaction.id)
    return list(db.execute(stmt).scalars())

def unapplied_ledger_accounts(db, payment_id: str) -> List[str]:
    """Accounts whose row for this payment exists but whose balance was never moved"""
    stmt = select(LedgerTransaction.user_id).where(
        LedgerTransaction.reference_id == payment_id,
        LedgerTransaction.reference_type == REFERENCE_TYPE,
        LedgerTransaction.applied_at.is_(None),
    ).order_by(LedgerTransaction.id)
    return list(db.execute(stmt).scalars())

class LedgerUpdater:
    def __init__(self, session_factory, locks=None, platform_account_id: Optional[str] = None):
        self.session_factory = session_factory
        self.locks = locks or build_key_locks("account")
        self.platform_account_id = platform_account_id if platform_account_id is not None else settings.platform_account_id

    def resolve_beneficiaries(self, db, payment: Payment) -> Tuple[str, str]:
        """(platform account id, device owner account id)"""
        platform_id = self.platform_account_id
        if not platform_id:
            admin = db.execute(
                select(Account.id).where(Account.role == "admin").order_by(Account.created_at, Account.id).limit(1)
            ).scalar()
            if admin is None:
                raise BusinessLogicError(ErrorCodes.ACCOUNT_NOT_FOUND, "No platform (admin) account configured")
            platform_id = admin

        owner_id = db.execute(select(Device.owner_account_id).where(Device.id == payment.device_id)).scalar()
        owner_id = owner_id or platform_id

        for account_id in {platform_id, owner_id}:
            if db.get(Account, account_id) is None:
                raise BusinessLogicError(ErrorCodes.ACCOUNT_NOT_FOUND, f"Beneficiary account {account_id} not found",
                                         context={"payment_id": payment.id})
        return platform_id, owner_id

    def _plan_credits(self, payment: Payment, platform_id: str, owner_id: str) -> List[Tuple[str, int, str]]:
        ref = payment.external_reference
        if platform_id == owner_id:
            return [(platform_id, payment.amount_total,
                     f"Platform commission + sale revenue - payment {ref}")]
        credits = [
            (platform_id, payment.amount_primary_share, f"Platform commission - payment {ref}"),
            (owner_id, payment.amount_secondary_share, f"Sale revenue - payment {ref}"),
        ]
        return [c for c in credits if c[1] > 0]

    def apply_payment_commission(self, payment: Payment) -> LedgerResult:
        validate_split(payment.amount_total, payment.amount_primary_share, payment.amount_secondary_share)

        with self.session_factory() as db:
            platform_id, owner_id = self.resolve_beneficiaries(db, payment)
        credits = self._plan_credits(payment, platform_id, owner_id)
        merged = platform_id == owner_id

        with self.locks.hold_many([c[0] for c in credits]):
            entries = self._insert_entries(payment, credits)
            if entries is None:
                logger.info(f"Ledger already applied for payment {payment.external_reference}")
                return self._existing_result(payment, merged)
            self._apply_balances(payment, entries)

        result = LedgerResult(payment_id=payment.id, entries=entries, merged=merged)
        logger.info(
            f"💰 Ledger applied for payment {payment.external_reference}: "
            + ", ".join(f"{e.user_id} +{format_minor(e.amount)} ({format_minor(e.balance_before)} -> {format_minor(e.balance_after)})"
                        for e in entries)
        )
        return result

    def _insert_entries(self, payment: Payment, credits: Sequence[Tuple[str, int, str]]) -> Optional[List[LedgerEntryResult]]:
        """Phase 1. Returns None when rows for this payment already exist."""
        db = self.session_factory()
        try:
            if ledger_entries_exist(db, payment.id):
                return None
            ids = [c[0] for c in credits]
            accounts = {
                a.id: a for a in db.execute(
                    select(Account).where(Account.id.in_(ids)).with_for_update()
                ).scalars()
            }
            rows = []
            for user_id, amount, memo in credits:
                before = accounts[user_id].balance or 0
                row = LedgerTransaction(
                    user_id=user_id, kind="credit", amount=amount,
                    balance_before=before, balance_after=before + amount,
                    reference_id=payment.id, reference_type=REFERENCE_TYPE, memo=memo,
                )
                db.add(row)
                rows.append(row)
            db.flush()
            entries = [LedgerEntryResult(r.user_id, r.amount, r.balance_before, r.balance_after, r.memo,
                                         transaction_id=r.id) for r in rows]
            db.commit()
            return entries
        except IntegrityError:
            db.rollback()
            # A concurrent writer inserted the same reference first
            logger.warning(f"Ledger rows for payment {payment.external_reference} inserted concurrently")
            return None
        except SQLAlchemyError as e:
            db.rollback()
            raise LedgerError(f"Ledger insert failed for payment {payment.external_reference}: {e}", e)
        finally:
            db.close()

    def _apply_balances(self, payment: Payment, entries: Sequence[LedgerEntryResult]):
        """Phase 2."""
        failed = []
        last_error = None
        for entry in entries:
            db = self.session_factory()
            try:
                self._update_balance(db, entry)
                db.commit()
            except (SQLAlchemyError, RuntimeError) as e:
                db.rollback()
                failed.append(entry.user_id)
                last_error = e
                logger.error(f"❌ Balance update failed for {entry.user_id} on payment {payment.external_reference}: {e}")
            finally:
                db.close()
        if failed:
            raise LedgerPartialFailure(payment.id, failed, last_error)

    def _update_balance(self, db, entry: LedgerEntryResult):
        res = db.execute(
            update(Account)
            .where(Account.id == entry.user_id, Account.balance == entry.balance_before)
            .values(balance=entry.balance_after)
        )
        if res.rowcount != 1:
            raise RuntimeError(f"balance of {entry.user_id} changed since it was read")
        db.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == entry.transaction_id)
            .values(applied_at=utcnow())
        )

    def _existing_result(self, payment: Payment, merged: bool) -> LedgerResult:
        with self.session_factory() as db:
            rows = load_ledger_entries(db, payment.id)
        return LedgerResult(
            payment_id=payment.id,
            entries=[LedgerEntryResult(r.user_id, r.amount, r.balance_before, r.balance_after, r.memo,
                                       transaction_id=r.id) for r in rows],
            merged=merged,
            already_applied=True,
        )
