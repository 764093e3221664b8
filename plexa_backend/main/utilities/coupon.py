import logging
from typing import Optional

from main.models import Coupon

logger = logging.getLogger(__name__)


def resolve_coupon(code: Optional[str]) -> Optional[Coupon]:
    """
    Return the coupon if it can be applied right now, else None.

    Unknown, inactive or exhausted codes are ignored rather than rejected;
    checkout then proceeds at full price.
    """
    code = (code or "").strip()
    if not code:
        return None
    coupon = Coupon.objects.filter(code__iexact=code).first()
    if coupon is None:
        logger.info("Coupon %s not found; ignoring", code)
        return None
    if not coupon.is_usable():
        logger.info(
            "Coupon %s not usable (active=%s uses=%s/%s)",
            coupon.code,
            coupon.is_active,
            coupon.uses,
            coupon.max_uses,
        )
        return None
    return coupon
