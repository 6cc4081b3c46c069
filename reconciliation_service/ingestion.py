"""
Event Ingestion: normalizes webhook pushes and poll results into StatusEvents
and hands them to the keyed work queue.

No deduplication happens here; the reconciler owns that. A webhook only says
that a payment changed: its events carry no status, so the reconciler always
reads the status from the gateway and a forged notification cannot mark a
payment paid.
"""
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from pydantic import ValidationError

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import GenericNotification, MercadoPagoNotification, WebhookAck
from common.security import verify_webhook_signature
from common.settings import settings
from common.tracing import get_current_trace_id
from ledger_service.models import utcnow
from reconciliation_service.gateway import GatewayClient, GatewayPaymentNotFound
from reconciliation_service.repository import NOT_FOUND, PaymentRepository

logger = logging.getLogger(__name__)

SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"
SOURCE_MANUAL = "manual"

@dataclass(frozen=True)
class StatusEvent:
    external_reference: str
    gateway_status: Optional[str]
    observed_at: datetime = field(default_factory=utcnow)
    source: str = SOURCE_WEBHOOK
    trace_id: Optional[str] = None

def normalize_mercadopago(body: Dict[str, Any]) -> Optional[StatusEvent]:
    """None for notifications that are not about a payment"""
    notification = MercadoPagoNotification(**body)
    topic = notification.type or (notification.action or "").split(".")[0]
    if not topic:
        raise BusinessLogicError(ErrorCodes.INVALID_WEBHOOK, "Notification has neither type nor action", field="type")
    if topic != "payment":
        return None
    payment_id = notification.data.get("id")
    if payment_id in (None, ""):
        raise BusinessLogicError(ErrorCodes.INVALID_WEBHOOK, "Payment notification without data.id", field="data.id")
    return StatusEvent(external_reference=str(payment_id), gateway_status=None,
                       source=SOURCE_WEBHOOK, trace_id=get_current_trace_id())

def normalize_generic(body: Dict[str, Any]) -> Optional[StatusEvent]:
    notification = GenericNotification(**body)
    return StatusEvent(external_reference=notification.external_reference, gateway_status=None,
                       source=SOURCE_WEBHOOK, trace_id=get_current_trace_id())

NORMALIZERS: Dict[str, Callable[[Dict[str, Any]], Optional[StatusEvent]]] = {
    "mercadopago": normalize_mercadopago,
    "generic": normalize_generic,
}

def resolve_status(event: StatusEvent, gateway: GatewayClient) -> StatusEvent:
    """Fill in a missing gateway status by asking the gateway.

    A 404 becomes the not_found status; GatewayUnavailable propagates.
    """
    if event.gateway_status:
        return event
    try:
        remote = gateway.get_payment(event.external_reference)
        status = remote.status
    except GatewayPaymentNotFound:
        status = NOT_FOUND
    return replace(event, gateway_status=status, observed_at=utcnow())

class WebhookReceiver:
    def __init__(self, repository: PaymentRepository, queue, handler: Callable[[StatusEvent], Any],
                 webhook_secret: str = None):
        self.repository = repository
        self.queue = queue
        self.handler = handler
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.webhook_secret

    def parse(self, provider: str, raw_body: bytes, signature: Optional[str] = None) -> Optional[StatusEvent]:
        normalizer = NORMALIZERS.get(provider)
        if normalizer is None:
            raise BusinessLogicError(ErrorCodes.UNSUPPORTED_PROVIDER, f"Unsupported webhook provider '{provider}'",
                                     field="provider")
        if not verify_webhook_signature(self.webhook_secret, raw_body, signature):
            raise BusinessLogicError(ErrorCodes.INVALID_SIGNATURE, "Webhook signature mismatch")
        try:
            body = json.loads(raw_body or b"null")
        except ValueError:
            raise BusinessLogicError(ErrorCodes.INVALID_WEBHOOK, "Webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise BusinessLogicError(ErrorCodes.INVALID_WEBHOOK, "Webhook body must be a JSON object")
        try:
            return normalizer(body)
        except ValidationError as e:
            raise BusinessLogicError(ErrorCodes.INVALID_WEBHOOK, f"Malformed {provider} notification: {e.errors()[0]['msg']}")

    def receive(self, provider: str, raw_body: bytes, signature: Optional[str] = None) -> WebhookAck:
        event = self.parse(provider, raw_body, signature)
        if event is None:
            logger.info(f"Ignoring non-payment {provider} notification")
            return WebhookAck(queued=False, reason="ignored_topic")

        if not self.repository.exists(event.external_reference):
            logger.warning(f"⚠️ Webhook for unknown payment {event.external_reference}, dropping")
            return WebhookAck(queued=False, reason="unknown_payment")

        self.queue.submit(event.external_reference, self.handler, event)
        logger.info(f"📥 Queued {provider} webhook for {event.external_reference}, status will be fetched")
        return WebhookAck(queued=True)
