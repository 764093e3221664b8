from __future__ import annotations

from typing import Dict, Optional, Type

from app_settings.services import SettingsProvider, settings_provider
from orders.services.exceptions import ConfigurationError

from .base import (
    IMMEDIATE,
    REDIRECT,
    Confirmation,
    InitiateResult,
    OrderContext,
    PaymentGateway,
)
from .credits import CreditsGateway
from .paypal import PayPalGateway
from .phonepe import PhonePeGateway
from .stripe import StripeGateway

GATEWAYS: Dict[str, Type[PaymentGateway]] = {
    CreditsGateway.name: CreditsGateway,
    PhonePeGateway.name: PhonePeGateway,
    StripeGateway.name: StripeGateway,
    PayPalGateway.name: PayPalGateway,
}


def get_gateway(name: str, config: Optional[SettingsProvider] = None) -> PaymentGateway:
    """
    Build a ready-to-use gateway. Disabled or unconfigured gateways fail here,
    before any money moves, with a ConfigurationError.
    """
    config = config or settings_provider
    name = (name or "credits").strip().lower()
    gateway_cls = GATEWAYS.get(name)
    if gateway_cls is None:
        raise ConfigurationError("Selected payment method is not available.")

    if gateway_cls.credentials_class is None:
        return gateway_cls(config=config)

    row = config.gateway(name)
    if row is None or not row.enabled:
        raise ConfigurationError(f"{name.title()} payment method is not available.")
    credentials = gateway_cls.credentials_class.from_config(name, row.config)
    return gateway_cls(credentials=credentials, config=config)


__all__ = [
    "GATEWAYS",
    "IMMEDIATE",
    "REDIRECT",
    "Confirmation",
    "InitiateResult",
    "OrderContext",
    "PaymentGateway",
    "get_gateway",
]
