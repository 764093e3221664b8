from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models

ZERO = Decimal("0.00")


class Affiliate(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="affiliate"
    )
    referral_code = models.CharField(max_length=50, unique=True)
    # 0 means "use affiliate_default_commission"
    commission_rate = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("10.00")
    )
    balance = models.DecimalField(max_digits=15, decimal_places=2, default=ZERO)
    total_earned = models.DecimalField(max_digits=15, decimal_places=2, default=ZERO)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"Affiliate {self.referral_code} ({self.user_id})"


class Referral(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACTIVE = "active", "Active"
        COMPLETED = "completed", "Completed"

    affiliate = models.ForeignKey(
        Affiliate, on_delete=models.CASCADE, related_name="referrals"
    )
    referred_user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="referral"
    )
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.ACTIVE
    )
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"Referral {self.affiliate_id} -> {self.referred_user_id}"


class AffiliatePayout(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        PAID = "paid", "Paid"

    affiliate = models.ForeignKey(
        Affiliate, on_delete=models.CASCADE, related_name="payouts"
    )
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.PENDING
    )
    payment_method = models.CharField(max_length=100, default="Credits")
    notes = models.TextField(blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Payout {self.amount} [{self.status}]"
