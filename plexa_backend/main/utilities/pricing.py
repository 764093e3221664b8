from dataclasses import dataclass
from decimal import Decimal

from main.models import ZERO, _qmoney

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PriceBreakdown:
    """
    Full-precision result of one pricing run, in the buyer's currency.

    Nothing here is rounded; use the ``*_charge`` helpers when an amount is
    fixed for charging or storage.
    """

    base: Decimal  # after currency resolution
    rate: Decimal  # buyer currency units per 1 USD
    multiplier: Decimal
    gross_subtotal: Decimal  # base x multiplier
    discount_percent: Decimal
    discount_amount: Decimal
    subtotal: Decimal  # after discount, before tax
    tax_rate: Decimal
    tax_amount: Decimal
    final: Decimal
    is_override: bool = False

    @property
    def price_in_usd(self) -> Decimal:
        return self.final / self.rate

    @property
    def final_charge(self) -> Decimal:
        return _qmoney(self.final)

    @property
    def usd_charge(self) -> Decimal:
        return _qmoney(self.price_in_usd)


def _d(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def compute_price(
    base_price_usd,
    *,
    rate=Decimal("1"),
    override_price=None,
    multiplier=Decimal("1"),
    discount_percent=ZERO,
    tax_rate=ZERO,
) -> PriceBreakdown:
    """
    base -> currency resolve (override wins over rate conversion)
         -> x region multiplier = subtotal
         -> - discount%
         -> + tax% on the discounted subtotal
    The order is fixed; reordering changes the amount collected.
    """
    rate = _d(rate)
    if rate <= 0:
        raise ValueError("Currency rate must be positive.")

    is_override = override_price is not None
    base = _d(override_price) if is_override else _d(base_price_usd) * rate

    multiplier = _d(multiplier) if multiplier is not None else Decimal("1")
    gross = base * multiplier

    discount_percent = _d(discount_percent)
    discount_amount = gross * discount_percent / HUNDRED
    subtotal = gross - discount_amount

    tax_rate = _d(tax_rate)
    tax_amount = subtotal * tax_rate / HUNDRED

    return PriceBreakdown(
        base=base,
        rate=rate,
        multiplier=multiplier,
        gross_subtotal=gross,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        final=subtotal + tax_amount,
        is_override=is_override,
    )


def convert_to_usd(amount, rate) -> Decimal:
    rate = _d(rate)
    if rate <= 0:
        raise ValueError("Currency rate must be positive.")
    return _d(amount) / rate
