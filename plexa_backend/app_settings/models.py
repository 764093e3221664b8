from __future__ import annotations

from django.db import models


class Setting(models.Model):
    """Flat key -> string store edited from the admin at runtime."""

    key = models.CharField(max_length=100, unique=True)
    value = models.TextField(blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["key"]

    def __str__(self) -> str:
        return self.key


class PaymentGateway(models.Model):
    name = models.CharField(max_length=32, unique=True)
    display_name = models.CharField(max_length=64, blank=True, default="")
    enabled = models.BooleanField(default=False)
    # Raw credentials; each gateway parses this into its own dataclass
    config = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.display_name or self.name
