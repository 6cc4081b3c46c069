from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

class MercadoPagoNotification(BaseModel):
    type: Optional[str] = None
    action: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

class GenericNotification(BaseModel):
    external_reference: str = Field(min_length=1)

class WebhookAck(BaseModel):
    received: bool = True
    queued: bool
    reason: Optional[str] = None

class RegisterPayment(BaseModel):
    external_reference: str = Field(min_length=1)
    mac_address: str
    plan_id: int
    device_id: int
    amount_total: str  # decimal string, e.g. "10.00"
    amount_primary_share: Optional[str] = None
    amount_secondary_share: Optional[str] = None

class PaymentView(BaseModel):
    id: str
    external_reference: str
    mac_address: str
    status: str
    gateway_status: Optional[str] = None
    amount_total: str
    amount_primary_share: str
    amount_secondary_share: str
    provisioning_attempts: int = 0
    needs_reconciliation: bool = False
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    paid_at: Optional[str] = None

class ReconcileResult(BaseModel):
    external_reference: str
    action: str
    status: Optional[str] = None
    detail: Optional[str] = None

class SweepResult(BaseModel):
    checked: int
    submitted: int
    skipped: int
    results: List[ReconcileResult] = Field(default_factory=list)

class AdminAction(BaseModel):
    success: bool
    message: str
    action: Literal["start", "stop"]
