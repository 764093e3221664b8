from __future__ import annotations

import secrets
import time

from django.conf import settings
from django.db import models
from django.utils import timezone


def generate_merchant_order_id(user_id) -> str:
    # ORD<epoch ms><user id> plus a short random tail so double clicks differ
    return f"ORD{int(time.time() * 1000)}{user_id}{secrets.token_hex(2).upper()}"


class PendingPayment(models.Model):
    """
    Everything needed to resume a redirect payment once the buyer comes
    back. ``merchant_order_id`` is the only key a callback carries.
    """

    class Purpose(models.TextChoices):
        CHECKOUT = "checkout", "Checkout"
        INVOICE = "invoice", "Invoice payment"
        TOPUP = "topup", "Wallet top-up"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        NEEDS_RECONCILIATION = "needs_reconciliation", "Needs reconciliation"

    merchant_order_id = models.CharField(max_length=64, unique=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="pending_payments",
    )
    purpose = models.CharField(max_length=16, choices=Purpose.choices)
    gateway = models.CharField(max_length=32)
    gateway_reference = models.CharField(max_length=128, blank=True, default="")
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency_code = models.CharField(max_length=3, default="USD")
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=24, choices=Status.choices, default=Status.PENDING, db_index=True
    )
    external_transaction_id = models.CharField(max_length=128, blank=True, default="")
    failure_reason = models.TextField(blank=True, default="")
    reconciliation_note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.merchant_order_id} ({self.gateway}, {self.status})"

    def _move(self, from_statuses, to_status, **fields) -> bool:
        updated = type(self).objects.filter(
            pk=self.pk, status__in=list(from_statuses)
        ).update(status=to_status, **fields)
        if updated:
            self.refresh_from_db()
        return bool(updated)

    def claim(self) -> bool:
        """pending -> processing; only one callback can win."""
        return self._move([self.Status.PENDING], self.Status.PROCESSING)

    def release(self) -> bool:
        return self._move([self.Status.PROCESSING], self.Status.PENDING)

    def complete(self, external_transaction_id: str = "") -> bool:
        return self._move(
            [self.Status.PROCESSING, self.Status.NEEDS_RECONCILIATION],
            self.Status.COMPLETED,
            external_transaction_id=external_transaction_id
            or self.external_transaction_id,
            resolved_at=timezone.now(),
        )

    def fail(self, reason: str) -> bool:
        return self._move(
            [self.Status.PENDING, self.Status.PROCESSING],
            self.Status.FAILED,
            failure_reason=reason,
            resolved_at=timezone.now(),
        )

    def flag_for_reconciliation(self, reason: str, external_transaction_id="") -> bool:
        return self._move(
            [self.Status.PROCESSING],
            self.Status.NEEDS_RECONCILIATION,
            failure_reason=reason,
            external_transaction_id=external_transaction_id
            or self.external_transaction_id,
        )
