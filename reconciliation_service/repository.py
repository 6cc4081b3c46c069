"""Payment persistence used by the reconciler, poller and admin routes."""
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Union
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ErrorCodes
from ledger_service.commission import calculate_commission, validate_split
from ledger_service.db import session_scope
from ledger_service.models import Device, Payment, Plan, ProvisioningAttempt, utcnow
from provisioning_service.hotspot_client import DeviceConfig
from provisioning_service.mac import normalize_mac
from reconciliation_service.state_machine import NON_TERMINAL_STATUSES, PaymentStatus

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"

StatusLike = Union[PaymentStatus, Iterable[PaymentStatus]]

def _values(statuses: StatusLike) -> List[str]:
    if isinstance(statuses, PaymentStatus):
        return [statuses.value]
    return [s.value for s in statuses]

class PaymentRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # reads

    def get_by_reference(self, external_reference: str) -> Optional[Payment]:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.external_reference == external_reference)
            ).scalar_one_or_none()

    def get(self, payment_id: str) -> Optional[Payment]:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def exists(self, external_reference: str) -> bool:
        with self.session_factory() as db:
            return db.execute(
                select(Payment.id).where(Payment.external_reference == external_reference)
            ).first() is not None

    def list_pollable(self, max_age_hours: int, now=None, limit: int = None) -> List[Payment]:
        """Non-terminal payments still worth asking the gateway about, oldest first"""
        now = now or utcnow()
        stmt = (
            select(Payment)
            .where(Payment.status.in_(_values(NON_TERMINAL_STATUSES)))
            .where(or_(Payment.gateway_status.is_(None), Payment.gateway_status != NOT_FOUND))
            .where(Payment.created_at >= now - timedelta(hours=max_age_hours))
            .where(or_(Payment.next_attempt_at.is_(None), Payment.next_attempt_at <= now))
            .order_by(Payment.created_at.asc(), Payment.id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self.session_factory() as db:
            return list(db.execute(stmt).unique().scalars())

    def list_by_status(self, statuses: StatusLike) -> List[Payment]:
        with self.session_factory() as db:
            return list(db.execute(
                select(Payment).where(Payment.status.in_(_values(statuses))).order_by(Payment.created_at.asc())
            ).unique().scalars())

    def list_failed_provisioning(self) -> List[Payment]:
        """Approved but not yet provisioned after at least one failed attempt"""
        with self.session_factory() as db:
            return list(db.execute(
                select(Payment)
                .where(Payment.status == PaymentStatus.APPROVED.value, Payment.provisioning_attempts > 0)
                .order_by(Payment.created_at.asc())
            ).unique().scalars())

    def list_flagged(self) -> List[Payment]:
        with self.session_factory() as db:
            return list(db.execute(
                select(Payment).where(Payment.needs_reconciliation.is_(True)).order_by(Payment.created_at.asc())
            ).unique().scalars())

    def device_config(self, payment: Payment) -> DeviceConfig:
        with self.session_factory() as db:
            device = db.get(Device, payment.device_id)
        if device is None or not device.host or not device.username or not device.password:
            raise BusinessLogicError(ErrorCodes.DEVICE_NOT_CONFIGURED,
                                     f"Device {payment.device_id} is missing or incomplete",
                                     context={"payment_id": payment.id})
        return DeviceConfig.from_model(device)

    def plan_profile(self, payment: Payment) -> Optional[str]:
        with self.session_factory() as db:
            plan = db.get(Plan, payment.plan_id)
        return plan.name if plan else None

    def attempt_stats(self) -> Dict[str, int]:
        with self.session_factory() as db:
            rows = db.execute(
                select(ProvisioningAttempt.status, func.count()).group_by(ProvisioningAttempt.status)
            ).all()
        return {status: count for status, count in rows}

    # writes

    def compare_and_set_status(self, payment_id: str, expected: StatusLike, new: PaymentStatus, **values) -> bool:
        """UPDATE ... WHERE status IN (expected); True when this caller won"""
        with session_scope(self.session_factory) as db:
            res = db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status.in_(_values(expected)))
                .values(status=new.value, **values)
            )
            return res.rowcount == 1

    def update_fields(self, payment_id: str, **values):
        with session_scope(self.session_factory) as db:
            db.execute(update(Payment).where(Payment.id == payment_id).values(**values))

    def record_attempt(self, payment: Payment, attempt_number: int, status: str, username: str = None,
                       error_message: str = None, device_credential_id: str = None, duration_ms: int = None):
        with session_scope(self.session_factory) as db:
            db.add(ProvisioningAttempt(
                payment_id=payment.id, mac_address=payment.mac_address, username=username,
                attempt_number=attempt_number, status=status, error_message=(error_message or "")[:1000] or None,
                device_credential_id=device_credential_id, duration_ms=duration_ms,
            ))

    def register(self, external_reference: str, mac_address: str, plan_id: int, device_id: int,
                 amount_total: int, primary_share: int = None, secondary_share: int = None) -> Payment:
        """Record a newly initiated purchase as pending"""
        mac = normalize_mac(mac_address)
        if primary_share is None and secondary_share is None:
            split = calculate_commission(amount_total)
            primary_share, secondary_share = split.primary_share, split.secondary_share
        elif primary_share is None:
            primary_share = amount_total - secondary_share
        elif secondary_share is None:
            secondary_share = amount_total - primary_share
        validate_split(amount_total, primary_share, secondary_share)

        payment = Payment(
            external_reference=external_reference, mac_address=mac, plan_id=plan_id, device_id=device_id,
            amount_total=amount_total, amount_primary_share=primary_share, amount_secondary_share=secondary_share,
            status=PaymentStatus.PENDING.value,
        )
        try:
            with session_scope(self.session_factory) as db:
                if db.get(Plan, plan_id) is None or db.get(Device, device_id) is None:
                    raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Unknown plan or device",
                                             context={"plan_id": plan_id, "device_id": device_id})
                db.add(payment)
        except IntegrityError:
            raise BusinessLogicError(ErrorCodes.DUPLICATE_PAYMENT,
                                     f"Payment {external_reference} already registered", field="external_reference")
        logger.info(f"📝 Registered pending payment {external_reference} for {mac}")
        return payment
