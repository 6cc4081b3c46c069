"""
Payment status ordering.

    pending -> approved -> completed
    pending/approved -> rejected | cancelled

completed, rejected and cancelled are terminal. Progress is monotonic:
an event is accepted only when its status ranks equal to or later than the
stored one; rejected/cancelled are accepted from any non-terminal state.
"""
from enum import Enum
from typing import Optional

class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

TERMINAL_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED})
NON_TERMINAL_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.APPROVED})
FAILURE_STATUSES = frozenset({PaymentStatus.REJECTED, PaymentStatus.CANCELLED})

_RANK = {PaymentStatus.PENDING: 0, PaymentStatus.APPROVED: 1, PaymentStatus.COMPLETED: 2}

# Raw gateway vocabulary -> internal target status
GATEWAY_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "not_found": PaymentStatus.PENDING,
    "approved": PaymentStatus.APPROVED,
    "completed": PaymentStatus.COMPLETED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.CANCELLED,
    "charged_back": PaymentStatus.CANCELLED,
}

def map_gateway_status(gateway_status: Optional[str]) -> Optional[PaymentStatus]:
    """None for statuses this system does not recognise"""
    if not gateway_status:
        return None
    return GATEWAY_STATUS_MAP.get(gateway_status.strip().lower())

def accepts(current: PaymentStatus, target: PaymentStatus) -> bool:
    if current.is_terminal:
        return False
    if target in FAILURE_STATUSES:
        return True
    return _RANK[target] >= _RANK[current]
