"""
Commission split between the platform and the device owner.

The platform receives a fixed percentage of each sale rounded half-up to the
cent; the owner receives the remainder, so the two shares always add up to
the total exactly.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from common.error_handling import BusinessLogicError, ErrorCodes
from common.settings import settings

@dataclass(frozen=True)
class CommissionSplit:
    total: int
    primary_share: int    # platform
    secondary_share: int  # device owner
    primary_percent: int

def calculate_commission(total: int, primary_percent: int = None) -> CommissionSplit:
    if primary_percent is None:
        primary_percent = settings.platform_commission_percent
    if total <= 0:
        raise BusinessLogicError(ErrorCodes.PAYMENT_INTEGRITY, "Invalid payment amount for commission calculation",
                                 field="amount_total", context={"total": total})
    if not 0 <= primary_percent <= 100:
        raise BusinessLogicError(ErrorCodes.PAYMENT_INTEGRITY, f"Commission percent out of range: {primary_percent}")

    primary = int((Decimal(total) * primary_percent / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return CommissionSplit(total=total, primary_share=primary, secondary_share=total - primary,
                           primary_percent=primary_percent)

def validate_split(total: int, primary_share: int, secondary_share: int) -> None:
    """Raise if the shares are negative or do not sum to the total"""
    if primary_share < 0 or secondary_share < 0:
        raise BusinessLogicError(ErrorCodes.PAYMENT_INTEGRITY, "Commission shares must not be negative",
                                 context={"primary": primary_share, "secondary": secondary_share})
    if primary_share + secondary_share != total:
        raise BusinessLogicError(
            ErrorCodes.PAYMENT_INTEGRITY,
            f"Shares {primary_share} + {secondary_share} do not sum to total {total}",
            context={"total": total, "primary": primary_share, "secondary": secondary_share},
        )
