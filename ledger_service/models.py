import uuid
from datetime import datetime, timezone
from sqlalchemy import (Column, Integer, String, BigInteger, Boolean, DateTime, ForeignKey,
                        UniqueConstraint, Index, func)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

def utcnow() -> datetime:
    # Naive UTC, the form every supported backend round-trips unchanged
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    name = Column(String(128), nullable=False, default="")
    role = Column(String(16), nullable=False, default="owner")  # admin|owner
    balance = Column(BigInteger, nullable=False, default=0)  # minor units
    created_at = Column(DateTime, server_default=func.now())

class Plan(Base):
    __tablename__ = "plans"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)  # hotspot profile on the device
    price = Column(BigInteger, nullable=False, default=0)

class Device(Base):
    __tablename__ = "devices"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, default="")
    owner_account_id = Column(String(64), ForeignKey("accounts.id"), nullable=True)
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=8728)
    username = Column(String(128), nullable=False)
    password = Column(String(255), nullable=False)

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_reference = Column(String(128), nullable=False, unique=True)
    mac_address = Column(String(32), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    amount_total = Column(BigInteger, nullable=False)
    amount_primary_share = Column(BigInteger, nullable=False)
    amount_secondary_share = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    gateway_status = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime, nullable=True)

    error_message = Column(String(1000), nullable=True)
    provisioning_attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    provisioned_username = Column(String(64), nullable=True)
    provisioned_at = Column(DateTime, nullable=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    reconciliation_note = Column(String(1000), nullable=True)

    plan = relationship(Plan, lazy="joined")
    device = relationship(Device, lazy="joined")

    __table_args__ = (Index("ix_payments_status_created", "status", "created_at"),)

class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    kind = Column(String(8), nullable=False, default="credit")
    amount = Column(BigInteger, nullable=False)
    balance_before = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    reference_id = Column(String(36), nullable=False)
    reference_type = Column(String(16), nullable=False, default="payment")
    memo = Column(String(255), nullable=False, default="")
    applied_at = Column(DateTime, nullable=True)  # set with the balance update
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("reference_id", "reference_type", "user_id", name="uq_ledger_reference_user"),
        Index("ix_ledger_reference", "reference_id", "reference_type"),
    )

class ProvisioningAttempt(Base):
    __tablename__ = "provisioning_attempts"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True, nullable=False)
    mac_address = Column(String(32), nullable=False)
    username = Column(String(64), nullable=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)  # success|failed
    error_message = Column(String(1000), nullable=True)
    device_credential_id = Column(String(64), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
