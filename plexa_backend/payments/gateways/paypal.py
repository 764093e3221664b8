from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from orders.services.exceptions import GatewayError

from .base import REDIRECT, Confirmation, Credentials, InitiateResult, OrderContext, PaymentGateway

logger = logging.getLogger(__name__)

PAYPAL_HOSTS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "production": "https://api-m.paypal.com",
}

SUPPORTED_CURRENCIES = {
    "USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CNY", "INR", "BRL", "MXN", "SGD", "HKD",
}


@dataclass(frozen=True)
class PayPalCredentials(Credentials):
    client_id: str = ""
    secret: str = ""
    environment: str = "sandbox"

    aliases = {"clientId": "client_id", "clientSecret": "secret"}
    required = ("client_id", "secret")


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 with an OAuth client-credentials token per call."""

    name = "paypal"
    credentials_class = PayPalCredentials

    @property
    def base_url(self) -> str:
        env = (self.credentials.environment or "sandbox").lower()
        return PAYPAL_HOSTS.get(env, PAYPAL_HOSTS["sandbox"])

    def _token(self) -> str:
        resp = self._send(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.credentials.client_id, self.credentials.secret),
        )
        body = self._raise_for_status(resp, "oauth token")
        token = body.get("access_token")
        if not token:
            raise GatewayError()
        return token

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._token()}",
            "Content-Type": "application/json",
        }

    def initiate(self, context: OrderContext) -> InitiateResult:
        amount, currency = context.amount, context.currency.upper()
        if currency not in SUPPORTED_CURRENCIES:
            amount, currency = context.amount_usd, "USD"

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": context.merchant_order_id,
                    "custom_id": context.merchant_order_id,
                    "description": context.description[:127],
                    "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {
                "brand_name": context.metadata.get("brand_name", "Plexa"),
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "return_url": context.return_url,
                "cancel_url": context.cancel_url or context.return_url,
            },
        }
        resp = self._send(
            "POST", f"{self.base_url}/v2/checkout/orders", json=payload, headers=self._headers()
        )
        body = self._raise_for_status(resp, "create order")
        approve = next(
            (
                link.get("href")
                for link in body.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        if not approve:
            logger.error("PayPal order %s has no approval link", body.get("id"))
            raise GatewayError()
        return InitiateResult(mode=REDIRECT, target=approve, reference=body["id"])

    def confirm(self, pending) -> Confirmation:
        order_id = pending.gateway_reference
        if not order_id:
            return Confirmation(settled=False, state="failed")

        headers = self._headers()
        resp = self._send(
            "POST", f"{self.base_url}/v2/checkout/orders/{order_id}/capture", json={}, headers=headers
        )
        body = self._json(resp)
        if resp.status_code == 422:
            # Already captured (e.g. duplicate return); read the order instead
            resp = self._send(
                "GET", f"{self.base_url}/v2/checkout/orders/{order_id}", headers=headers
            )
            body = self._raise_for_status(resp, "get order")
        elif not (200 <= resp.status_code < 300):
            body = self._raise_for_status(resp, "capture order")

        status = body.get("status")
        capture = {}
        for unit in body.get("purchase_units", []):
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                capture = captures[0]
                break

        if status == "COMPLETED":
            state = "settled"
        elif status in ("VOIDED",):
            state = "failed"
        else:
            state = "pending"

        amount = capture.get("amount") or {}
        return Confirmation(
            settled=state == "settled",
            amount_captured=Decimal(str(amount.get("value") or "0")),
            currency=amount.get("currency_code", ""),
            external_transaction_id=capture.get("id") or order_id,
            state=state,
            raw={"id": order_id, "status": status},
        )
