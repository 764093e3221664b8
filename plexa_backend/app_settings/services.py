from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from django.conf import settings
from django.core.cache import cache

from .models import PaymentGateway, Setting

logger = logging.getLogger(__name__)

CACHE_KEY = "app_settings:all"

DEFAULTS: dict[str, str] = {
    "tax_rate": "0",
    "tax_name": "Tax",
    "radar_enabled": "false",
    "radar_interval": "30",
    "radar_suspicious_files": "xmrig, minerd, cpuminer, .sh.x, wallet.dat, mining",
    "radar_ignore_files": "",
    "radar_discord_alerts": "false",
    "affiliate_enabled": "false",
    "affiliate_default_commission": "10",
    "affiliate_min_payout": "10",
    "brand_name": "Plexa",
}


def _cache_timeout() -> int:
    return int(getattr(settings, "PLEXA_BILLING", {}).get("SETTINGS_CACHE_TIMEOUT", 300))


class SettingsProvider:
    """
    Read-through view of the ``Setting`` table.

    All rows are loaded in one query and kept in the cache until a
    ``Setting`` row changes (see signals.py). Components receive an instance
    at construction instead of querying settings ad hoc.
    """

    def _load(self) -> dict[str, str]:
        values = cache.get(CACHE_KEY)
        if values is None:
            values = dict(Setting.objects.values_list("key", "value"))
            cache.set(CACHE_KEY, values, _cache_timeout())
        return values

    def invalidate(self) -> None:
        cache.delete(CACHE_KEY)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._load().get(key)
        if value is None or value == "":
            return DEFAULTS.get(key, default) if default is None else default
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return str(value).strip().lower() in {"1", "true", "yes", "on"}

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        value = self.get(key)
        if value is None:
            return default
        try:
            return Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            logger.warning("Setting %s is not a number: %r", key, value)
            return default

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return default

    def get_list(self, key: str) -> list[str]:
        raw = self.get(key) or ""
        return [s.strip().lower() for s in raw.split(",") if s.strip()]

    def set(self, key: str, value: Any) -> None:
        Setting.objects.update_or_create(key=key, defaults={"value": str(value)})

    def gateway(self, name: str) -> Optional[PaymentGateway]:
        return PaymentGateway.objects.filter(name=name).first()


settings_provider = SettingsProvider()
