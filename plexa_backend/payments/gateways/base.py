from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Type

import requests

from orders.services.exceptions import ConfigurationError, GatewayError, PaymentDeclined

logger = logging.getLogger(__name__)

IMMEDIATE = "immediate"
REDIRECT = "redirect"


@dataclass
class OrderContext:
    merchant_order_id: str
    amount: Decimal  # in ``currency``
    currency: str
    amount_usd: Decimal
    description: str
    user: Any = None
    return_url: str = ""
    cancel_url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitiateResult:
    mode: str  # IMMEDIATE | REDIRECT
    target: Optional[str] = None
    reference: str = ""
    # Set when the gateway charges in a currency other than the order's
    charged_amount: Optional[Decimal] = None
    charged_currency: str = ""


@dataclass
class Confirmation:
    settled: bool
    amount_captured: Decimal = Decimal("0")
    currency: str = ""
    external_transaction_id: str = ""
    # "settled" | "pending" | "failed"
    state: str = "failed"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Credentials:
    """Base for typed gateway credentials parsed from PaymentGateway.config."""

    # config key -> dataclass field
    aliases: ClassVar[Dict[str, str]] = {}
    required: ClassVar[tuple] = ()

    @classmethod
    def from_config(cls, gateway_name: str, config: Optional[dict]):
        config = dict(config or {})
        values = {}
        names = {f.name for f in fields(cls)}
        for key, raw in config.items():
            target = cls.aliases.get(key, key)
            if target in names:
                values[target] = raw
        missing = [k for k in cls.required if not values.get(k)]
        if missing:
            logger.error("Gateway %s missing credentials: %s", gateway_name, missing)
            raise ConfigurationError(
                f"{gateway_name.title()} is not properly configured. Please contact support."
            )
        return cls(**values)


class PaymentGateway:
    """
    One payment backend. ``initiate`` either settles on the spot or returns a
    redirect; ``confirm`` resolves a parked payment using only what was
    stored on the PendingPayment row before the redirect.
    """

    name: ClassVar[str] = ""
    credentials_class: ClassVar[Optional[Type[Credentials]]] = None
    requires_redirect: ClassVar[bool] = True
    timeout: ClassVar[int] = 15

    def __init__(self, credentials: Optional[Credentials] = None, config=None):
        self.credentials = credentials
        self.config = config

    def initiate(self, context: OrderContext) -> InitiateResult:
        raise NotImplementedError

    def confirm(self, pending) -> Confirmation:
        raise NotImplementedError

    # ---------- HTTP helpers ----------

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return requests.request(method, url, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s request to %s failed: %s", self.name, url, exc)
            raise GatewayError() from exc

    def _json(self, resp: requests.Response) -> dict:
        try:
            return resp.json() if resp.content else {}
        except ValueError:
            return {}

    def _raise_for_status(self, resp: requests.Response, action: str) -> dict:
        data = self._json(resp)
        if 200 <= resp.status_code < 300:
            return data
        logger.error(
            "%s %s failed: HTTP %s %s", self.name, action, resp.status_code, data
        )
        if resp.status_code in (401, 403):
            raise ConfigurationError(
                f"{self.name.title()} rejected our credentials. Please contact support."
            )
        if 400 <= resp.status_code < 500:
            raise PaymentDeclined()
        raise GatewayError()
