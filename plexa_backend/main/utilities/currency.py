from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from main.models import Currency, Plan, PlanPrice
from orders.services.exceptions import InvalidCheckout

USD = "USD"


@dataclass(frozen=True)
class ResolvedPrice:
    currency_code: str
    rate: Decimal
    override_price: Optional[Decimal]


def resolve_rate(code: Optional[str]) -> Decimal:
    """Units of ``code`` per 1 USD. USD is always 1."""
    code = (code or USD).strip().upper()
    if code == USD:
        return Decimal("1")
    currency = Currency.objects.filter(code=code, is_active=True).first()
    if currency is None or not currency.rate_to_usd or currency.rate_to_usd <= 0:
        raise InvalidCheckout(f"Currency {code} is not available.")
    return currency.rate_to_usd


def resolve_plan_price(plan: Plan, code: Optional[str]) -> ResolvedPrice:
    code = (code or USD).strip().upper()
    rate = resolve_rate(code)
    override = None
    if code != USD:
        override = (
            PlanPrice.objects.filter(plan=plan, currency_code=code)
            .values_list("price", flat=True)
            .first()
        )
    return ResolvedPrice(currency_code=code, rate=rate, override_price=override)
