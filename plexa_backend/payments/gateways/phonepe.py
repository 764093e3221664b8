from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from orders.services.exceptions import GatewayError

from .base import REDIRECT, Confirmation, Credentials, InitiateResult, OrderContext, PaymentGateway

logger = logging.getLogger(__name__)

PHONEPE_HOSTS = {
    "sandbox": {
        "oauth": "https://api-preprod.phonepe.com/apis/pg-sandbox",
        "pg": "https://api-preprod.phonepe.com/apis/pg-sandbox",
    },
    "production": {
        "oauth": "https://api.phonepe.com/apis/identity-manager",
        "pg": "https://api.phonepe.com/apis/pg",
    },
}

# Used only when the INR currency row is missing
FALLBACK_INR_PER_USD = Decimal("83")


@dataclass(frozen=True)
class PhonePeCredentials(Credentials):
    client_id: str = ""
    client_secret: str = ""
    client_version: str = "1"
    environment: str = "sandbox"

    aliases = {
        "clientId": "client_id",
        "clientSecret": "client_secret",
        "clientVersion": "client_version",
    }
    required = ("client_id", "client_secret")


class PhonePeGateway(PaymentGateway):
    """PhonePe Standard Checkout v2. Charges are always in INR paise."""

    name = "phonepe"
    credentials_class = PhonePeCredentials

    def _hosts(self) -> dict:
        env = (self.credentials.environment or "sandbox").lower()
        return PHONEPE_HOSTS.get(env, PHONEPE_HOSTS["sandbox"])

    def _token(self) -> str:
        secret = self.credentials.client_secret
        version = self.credentials.client_version or "1"
        # Older dashboards hand out "<secret>###<index>"
        if "###" in secret:
            secret, _, version = secret.partition("###")
        resp = self._send(
            "POST",
            f"{self._hosts()['oauth']}/v1/oauth/token",
            data={
                "client_id": self.credentials.client_id,
                "client_version": version or "1",
                "client_secret": secret,
                "grant_type": "client_credentials",
            },
        )
        body = self._raise_for_status(resp, "oauth token")
        token = body.get("access_token")
        if not token:
            raise GatewayError()
        return token

    def _headers(self) -> dict:
        return {
            "Authorization": f"O-Bearer {self._token()}",
            "Content-Type": "application/json",
        }

    def _amount_in_inr(self, context: OrderContext) -> Decimal:
        if context.currency.upper() == "INR":
            return context.amount
        from main.models import Currency

        rate = (
            Currency.objects.filter(code="INR").values_list("rate_to_usd", flat=True).first()
            or FALLBACK_INR_PER_USD
        )
        return context.amount_usd * rate

    def initiate(self, context: OrderContext) -> InitiateResult:
        paise = int(
            (self._amount_in_inr(context) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        amount_inr = Decimal(paise) / 100
        payload = {
            "merchantOrderId": context.merchant_order_id,
            "amount": paise,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": context.description[:100],
                "merchantUrls": {
                    "redirectUrl": context.return_url
                },
            },
        }
        resp = self._send(
            "POST", f"{self._hosts()['pg']}/checkout/v2/pay", json=payload, headers=self._headers()
        )
        body = self._raise_for_status(resp, "create payment")
        redirect_url = body.get("redirectUrl")
        if not redirect_url:
            logger.error("PhonePe returned no redirect for %s", context.merchant_order_id)
            raise GatewayError()
        logger.info("PhonePe payment %s initiated (%s paise)", context.merchant_order_id, paise)
        return InitiateResult(
            mode=REDIRECT,
            target=redirect_url,
            reference=body.get("orderId", ""),
            charged_amount=amount_inr,
            charged_currency="INR",
        )

    def confirm(self, pending) -> Confirmation:
        resp = self._send(
            "GET",
            f"{self._hosts()['pg']}/checkout/v2/order/{pending.merchant_order_id}/status",
            headers=self._headers(),
        )
        body = self._raise_for_status(resp, "order status")
        state_map = {"COMPLETED": "settled", "FAILED": "failed", "PENDING": "pending"}
        state = state_map.get(body.get("state"), "pending")

        details = body.get("paymentDetails") or []
        txn_id = details[0].get("transactionId", "") if details else ""
        return Confirmation(
            settled=state == "settled",
            amount_captured=Decimal(body.get("amount") or 0) / 100,
            currency="INR",
            external_transaction_id=txn_id or body.get("orderId", ""),
            state=state,
            raw={"state": body.get("state"), "orderId": body.get("orderId")},
        )
