from __future__ import annotations

from decimal import Decimal

from orders.services.exceptions import InsufficientFunds

from .base import IMMEDIATE, Confirmation, InitiateResult, OrderContext, PaymentGateway


class CreditsGateway(PaymentGateway):
    """
    Internal USD balance. ``initiate`` only checks the balance; the debit
    itself happens after the server exists.
    """

    name = "credits"
    requires_redirect = False

    def initiate(self, context: OrderContext) -> InitiateResult:
        user = context.user
        user.refresh_from_db(fields=["balance"])
        if user.balance < context.amount_usd:
            raise InsufficientFunds(
                f"Insufficient balance. Total is ${context.amount_usd:.2f} USD "
                f"({context.amount:.2f} {context.currency}) incl. tax. Please add funds."
            )
        return InitiateResult(mode=IMMEDIATE, reference=context.merchant_order_id)

    def confirm(self, pending) -> Confirmation:
        pending.user.refresh_from_db(fields=["balance"])
        amount = Decimal(str(pending.payload.get("amount_usd", pending.amount)))
        settled = pending.user.balance >= amount
        return Confirmation(
            settled=settled,
            amount_captured=amount if settled else Decimal("0"),
            currency="USD",
            external_transaction_id=pending.merchant_order_id,
            state="settled" if settled else "failed",
        )
