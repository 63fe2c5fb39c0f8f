from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from shop_billing.models import PENDING, COMPLETED, CANCELLED

CENT = Decimal("0.01")


def round2(value) -> float:
    """Round a monetary value to 2 decimals, half-up.

    Goes through ``str`` so that binary float noise (``0.1 + 0.2``) does not
    push a value across the half-cent boundary.
    """
    if value is None:
        return 0.0
    d = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    # + 0.0 normalises -0.0
    return float(d) + 0.0


def clamp_pending(total: float, received: float) -> float:
    return max(0.0, round2(round2(total) - round2(received)))


def derive_status(pending: float, current: Optional[str] = None) -> str:
    if current == CANCELLED:
        return CANCELLED
    return COMPLETED if pending <= 0 else PENDING
