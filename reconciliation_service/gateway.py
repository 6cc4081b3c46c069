"""Thin client for the payment gateway's "get payment by id" operation."""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

import requests

from common.circuit_breaker import GATEWAY_CB_CONFIG, CircuitBreakerException, get_circuit_breaker
from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes
from common.settings import settings
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

class GatewayUnavailable(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.GATEWAY_UNAVAILABLE, message, original_error)

class GatewayPaymentNotFound(BusinessLogicError):
    def __init__(self, external_reference: str):
        self.external_reference = external_reference
        super().__init__(ErrorCodes.PAYMENT_NOT_FOUND, f"Gateway has no payment {external_reference}",
                         context={"external_reference": external_reference})

@dataclass(frozen=True)
class GatewayPayment:
    external_reference: str
    status: str
    status_detail: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

class GatewayClient:
    def __init__(self, base_url: str = None, access_token: str = None, timeout: float = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or settings.gateway_api_url).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.gateway_access_token
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.session = session or requests.Session()
        self.breaker = get_circuit_breaker("gateway", GATEWAY_CB_CONFIG, counted_exceptions=(GatewayUnavailable,))

    def get_payment(self, external_reference: str) -> GatewayPayment:
        try:
            return self.breaker.call(self._get_payment, external_reference)
        except CircuitBreakerException as e:
            raise GatewayUnavailable(str(e), e)

    def _get_payment(self, external_reference: str) -> GatewayPayment:
        headers = {"Authorization": f"Bearer {self.access_token}", **get_trace_headers()}
        try:
            response = self.session.get(f"{self.base_url}/v1/payments/{external_reference}",
                                        headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayUnavailable(f"Gateway unreachable: {e}", e)

        if response.status_code == 404:
            raise GatewayPaymentNotFound(external_reference)
        if response.status_code >= 400:
            raise GatewayUnavailable(f"Gateway returned HTTP {response.status_code} for {external_reference}")
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailable(f"Gateway returned a non-JSON body for {external_reference}", e)
        if not isinstance(data, dict):
            raise GatewayUnavailable(f"Gateway returned a non-object body for {external_reference}")

        status = data.get("status")
        if not status:
            raise GatewayUnavailable(f"Gateway response for {external_reference} has no status")
        return GatewayPayment(external_reference=external_reference, status=status,
                              status_detail=data.get("status_detail"), raw=data)
