from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from orders.services.exceptions import GatewayError

from .base import REDIRECT, Confirmation, Credentials, InitiateResult, OrderContext, PaymentGateway

logger = logging.getLogger(__name__)

STRIPE_API = "https://api.stripe.com/v1"

# Charged in whole units, not cents
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


def minor_unit_factor(currency: str) -> int:
    return 1 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 100


@dataclass(frozen=True)
class StripeCredentials(Credentials):
    secret_key: str = ""
    publishable_key: str = ""

    aliases = {"secretKey": "secret_key", "publishableKey": "publishable_key"}
    required = ("secret_key",)


class StripeGateway(PaymentGateway):
    """Stripe Checkout Sessions over the REST API (form-encoded)."""

    name = "stripe"
    credentials_class = StripeCredentials

    def _auth(self):
        return (self.credentials.secret_key, "")

    def initiate(self, context: OrderContext) -> InitiateResult:
        data = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": context.currency.lower(),
            "line_items[0][price_data][unit_amount]": int(
                (context.amount * minor_unit_factor(context.currency)).to_integral_value()
            ),
            "line_items[0][price_data][product_data][name]": context.description,
            "success_url": context.return_url,
            "cancel_url": context.cancel_url or context.return_url,
            "client_reference_id": context.merchant_order_id,
            "metadata[order_id]": context.merchant_order_id,
        }
        for key, value in (context.metadata or {}).items():
            data[f"metadata[{key}]"] = value

        resp = self._send(
            "POST", f"{STRIPE_API}/checkout/sessions", data=data, auth=self._auth()
        )
        body = self._raise_for_status(resp, "create session")
        if not body.get("url") or not body.get("id"):
            logger.error("Stripe session without url: %s", body.get("id"))
            raise GatewayError()
        logger.info(
            "Stripe session %s created for %s", body["id"], context.merchant_order_id
        )
        return InitiateResult(mode=REDIRECT, target=body["url"], reference=body["id"])

    def confirm(self, pending) -> Confirmation:
        if not pending.gateway_reference:
            return Confirmation(settled=False, state="failed")
        resp = self._send(
            "GET",
            f"{STRIPE_API}/checkout/sessions/{pending.gateway_reference}",
            auth=self._auth(),
        )
        body = self._raise_for_status(resp, "retrieve session")

        payment_status = body.get("payment_status")
        if payment_status == "paid":
            state = "settled"
        elif body.get("status") == "expired":
            state = "failed"
        else:
            state = "pending"

        currency = (body.get("currency") or pending.currency_code or "").upper()
        return Confirmation(
            settled=state == "settled",
            amount_captured=Decimal(body.get("amount_total") or 0) / minor_unit_factor(currency),
            currency=currency,
            external_transaction_id=body.get("payment_intent") or body.get("id", ""),
            state=state,
            raw={"id": body.get("id"), "payment_status": payment_status},
        )
