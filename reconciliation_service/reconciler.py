"""
Status Reconciler.

Applies one StatusEvent to the stored payment. Progress is monotonic and
terminal states are final. Reaching approved/completed runs the side
effects, provisioning first and ledger second, behind the Idempotency
Guard; the payment is marked completed only after both succeeded.

Callers serialize events per payment through the keyed work queue; the
status compare-and-set protects against other processes.
"""
from dataclasses import dataclass
from typing import Optional
import logging

from common.error_handling import BusinessLogicError
from common.retry import PROVISIONING_REJECTED_BACKOFF, RetryConfig, next_attempt_at
from common.schemas import ReconcileResult
from common.tracing import reconciler_tracer
from ledger_service.commission import validate_split
from ledger_service.ledger import LedgerError, LedgerPartialFailure, LedgerUpdater
from ledger_service.models import Payment, utcnow
from provisioning_service.errors import InvalidCredentialInput, ProvisioningRejected, ProvisioningUnavailable
from provisioning_service.provisioner import CredentialProvisioner
from reconciliation_service.gateway import GatewayClient, GatewayUnavailable
from reconciliation_service.guard import IdempotencyGuard
from reconciliation_service.ingestion import SOURCE_MANUAL, StatusEvent, resolve_status
from reconciliation_service.repository import PaymentRepository
from reconciliation_service.state_machine import FAILURE_STATUSES, PaymentStatus, accepts, map_gateway_status

logger = logging.getLogger(__name__)

COMPLETED = "completed"
COMPLETED_NEEDS_RECONCILIATION = "completed_needs_reconciliation"
ALREADY_PROCESSED = "already_processed"
TRANSITIONED = "transitioned"
RECORDED = "recorded"
IGNORED_TERMINAL = "ignored_terminal"
IGNORED_STALE = "ignored_stale"
IGNORED_UNKNOWN = "ignored_unknown"
UNKNOWN_PAYMENT = "unknown_payment"
RETRY_SCHEDULED = "retry_scheduled"
REJECTED_EVENT = "rejected_event"

@dataclass(frozen=True)
class ReconcileOutcome:
    external_reference: str
    action: str
    status: Optional[str] = None
    detail: Optional[str] = None

    def to_result(self) -> ReconcileResult:
        return ReconcileResult(external_reference=self.external_reference, action=self.action,
                               status=self.status, detail=self.detail)

class StatusReconciler:
    def __init__(self, repository: PaymentRepository, provisioner: CredentialProvisioner, ledger: LedgerUpdater,
                 gateway: GatewayClient = None, guard: IdempotencyGuard = None, backoff: RetryConfig = None):
        self.repository = repository
        self.provisioner = provisioner
        self.ledger = ledger
        self.gateway = gateway or GatewayClient()
        self.guard = guard or IdempotencyGuard(repository)
        self.backoff = backoff or PROVISIONING_REJECTED_BACKOFF

    def handle(self, event: StatusEvent) -> ReconcileOutcome:
        """Queue entry point: fetch the status when the event has none, then reconcile"""
        try:
            event = resolve_status(event, self.gateway)
        except GatewayUnavailable as e:
            logger.warning(f"Gateway unavailable while resolving {event.external_reference}: {e.message}")
            return ReconcileOutcome(event.external_reference, RETRY_SCHEDULED, detail=e.message)
        return self.reconcile(event)

    def reprocess(self, external_reference: str, gateway_status: str = None) -> ReconcileOutcome:
        """Manual trigger; without a status the current one is fetched from the gateway"""
        return self.handle(StatusEvent(external_reference=external_reference, gateway_status=gateway_status,
                                       source=SOURCE_MANUAL))

    def reconcile(self, event: StatusEvent) -> ReconcileOutcome:
        with reconciler_tracer.start_span("reconcile_payment", trace_id=event.trace_id) as span:
            span.add_tag("payment.reference", event.external_reference)
            span.add_tag("event.source", event.source)
            span.add_tag("event.gateway_status", event.gateway_status)
            outcome = self._reconcile(event)
            span.add_tag("outcome", outcome.action)
            return outcome

    def _reconcile(self, event: StatusEvent) -> ReconcileOutcome:
        ref = event.external_reference
        target = map_gateway_status(event.gateway_status)
        if target is None:
            logger.warning(f"⚠️ Unrecognised gateway status {event.gateway_status!r} for {ref}, ignoring")
            return ReconcileOutcome(ref, IGNORED_UNKNOWN, detail=event.gateway_status)

        payment = self.repository.get_by_reference(ref)
        if payment is None:
            logger.warning(f"⚠️ No payment with reference {ref}, dropping {event.source} event")
            return ReconcileOutcome(ref, UNKNOWN_PAYMENT)

        current = PaymentStatus(payment.status)
        if current.is_terminal:
            logger.debug(f"Payment {ref} already {current.value}, ignoring {event.gateway_status}")
            return ReconcileOutcome(ref, IGNORED_TERMINAL, current.value)
        if not accepts(current, target):
            logger.info(f"Stale {event.source} event for {ref}: {target.value} after {current.value}")
            return ReconcileOutcome(ref, IGNORED_STALE, current.value)

        if target in FAILURE_STATUSES:
            return self._fail(payment, current, target, event)

        if target == PaymentStatus.PENDING:
            if payment.gateway_status != event.gateway_status:
                self.repository.update_fields(payment.id, gateway_status=event.gateway_status)
            return ReconcileOutcome(ref, RECORDED, current.value, event.gateway_status)

        if current == PaymentStatus.PENDING:
            if self.repository.compare_and_set_status(payment.id, PaymentStatus.PENDING, PaymentStatus.APPROVED,
                                                      gateway_status=event.gateway_status):
                logger.info(f"Payment {ref} approved ({event.source})")
            payment = self.repository.get(payment.id)
            if PaymentStatus(payment.status).is_terminal:
                return ReconcileOutcome(ref, IGNORED_TERMINAL, payment.status)
        elif payment.gateway_status != event.gateway_status:
            self.repository.update_fields(payment.id, gateway_status=event.gateway_status)

        return self._complete(payment)

    def _fail(self, payment: Payment, current: PaymentStatus, target: PaymentStatus,
              event: StatusEvent) -> ReconcileOutcome:
        ref = payment.external_reference
        if self.repository.compare_and_set_status(payment.id, current, target, gateway_status=event.gateway_status,
                                                  next_attempt_at=None):
            logger.info(f"Payment {ref} {current.value} -> {target.value} ({event.source})")
            return ReconcileOutcome(ref, TRANSITIONED, target.value)
        latest = self.repository.get(payment.id)
        logger.info(f"Payment {ref} changed concurrently to {latest.status}, dropping {target.value}")
        return ReconcileOutcome(ref, IGNORED_STALE, latest.status)

    def _complete(self, payment: Payment) -> ReconcileOutcome:
        ref = payment.external_reference
        if self.guard.already_processed(payment):
            # Ledger rows exist but the completed status write never happened
            uncredited = self.guard.repair(payment)
            if uncredited:
                return ReconcileOutcome(ref, COMPLETED_NEEDS_RECONCILIATION, PaymentStatus.COMPLETED.value,
                                        f"uncredited: {', '.join(uncredited)}")
            logger.info(f"Payment {ref} already processed, no side effects repeated")
            return ReconcileOutcome(ref, ALREADY_PROCESSED, PaymentStatus.COMPLETED.value)

        try:
            validate_split(payment.amount_total, payment.amount_primary_share, payment.amount_secondary_share)
            device = self.repository.device_config(payment)
        except BusinessLogicError as e:
            return self._reject_event(payment, e)

        if payment.provisioned_at is None:
            outcome = self._provision(payment, device)
            if outcome is not None:
                return outcome
        else:
            logger.info(f"Payment {ref} already provisioned as {payment.provisioned_username}, skipping device")

        try:
            self.ledger.apply_payment_commission(payment)
        except LedgerPartialFailure as e:
            logger.error(f"❌ {e.message}; payment {ref} flagged for manual reconciliation")
            self.guard.mark_processed(payment, needs_reconciliation=True, reconciliation_note=e.message,
                                      error_message=e.message)
            return ReconcileOutcome(ref, COMPLETED_NEEDS_RECONCILIATION, PaymentStatus.COMPLETED.value, e.message)
        except LedgerError as e:
            logger.error(f"❌ Ledger write failed for {ref}, will retry: {e.message}")
            self.repository.update_fields(payment.id, error_message=e.message)
            return ReconcileOutcome(ref, RETRY_SCHEDULED, PaymentStatus.APPROVED.value, e.message)
        except BusinessLogicError as e:
            return self._reject_event(payment, e)

        self.guard.mark_processed(payment)
        logger.info(f"🎉 Payment {ref} completed")
        return ReconcileOutcome(ref, COMPLETED, PaymentStatus.COMPLETED.value)

    def _provision(self, payment: Payment, device) -> Optional[ReconcileOutcome]:
        """None on success, otherwise the outcome to return"""
        ref = payment.external_reference
        attempt = (payment.provisioning_attempts or 0) + 1
        try:
            result = self.provisioner.provision_for_payment(payment.mac_address, self.repository.plan_profile(payment),
                                                            device, reference=ref)
        except InvalidCredentialInput as e:
            self.repository.record_attempt(payment, attempt, "failed", error_message=e.message)
            self.repository.update_fields(payment.id, provisioning_attempts=attempt)
            return self._reject_event(payment, e)
        except ProvisioningUnavailable as e:
            logger.warning(f"Device unavailable for {ref} (attempt {attempt}): {e.message}")
            self.repository.record_attempt(payment, attempt, "failed", error_message=e.message)
            self.repository.update_fields(payment.id, provisioning_attempts=attempt, error_message=e.message)
            return ReconcileOutcome(ref, RETRY_SCHEDULED, PaymentStatus.APPROVED.value, e.message)
        except ProvisioningRejected as e:
            retry_at = next_attempt_at(attempt, self.backoff)
            logger.warning(f"Device rejected provisioning for {ref} (attempt {attempt}), "
                           f"next try after {retry_at.isoformat()}: {e.message}")
            self.repository.record_attempt(payment, attempt, "failed", error_message=e.message)
            self.repository.update_fields(payment.id, provisioning_attempts=attempt, error_message=e.message,
                                          next_attempt_at=retry_at)
            return ReconcileOutcome(ref, RETRY_SCHEDULED, PaymentStatus.APPROVED.value, e.message)

        self.repository.record_attempt(payment, attempt, "success", username=result.username,
                                       device_credential_id=result.created_id, duration_ms=result.duration_ms)
        self.repository.update_fields(payment.id, provisioning_attempts=attempt, provisioned_username=result.username,
                                      provisioned_at=utcnow(), error_message=None, next_attempt_at=None)
        return None

    def _reject_event(self, payment: Payment, error: BusinessLogicError) -> ReconcileOutcome:
        logger.warning(f"🚫 Rejecting event for {payment.external_reference}: {error.code} - {error.message}")
        self.repository.update_fields(payment.id, error_message=f"{error.code}: {error.message}")
        return ReconcileOutcome(payment.external_reference, REJECTED_EVENT, payment.status, error.message)
