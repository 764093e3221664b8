from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

ZERO = Decimal("0.00")


def _qmoney(x: Decimal) -> Decimal:
    return (x or Decimal("0.00")).quantize(ZERO, rounding=ROUND_HALF_UP)


class User(AbstractUser):
    email = models.EmailField(unique=True)
    # Internal credits, always USD
    balance = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    preferred_currency = models.CharField(max_length=3, default="USD")
    panel_account_id = models.PositiveIntegerField(null=True, blank=True)
    referred_by = models.ForeignKey(
        "affiliates.Affiliate",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="referred_users",
    )
    billing_address = models.TextField(blank=True, default="")
    gst_number = models.CharField(max_length=32, blank=True, default="")

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(balance__gte=0), name="user_balance_non_negative"
            ),
        ]

    def __str__(self):
        return self.username or self.email

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        super().save(*args, **kwargs)

    @transaction.atomic
    def add_funds(self, amount) -> Decimal:
        amount = _qmoney(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive.")
        type(self).objects.filter(pk=self.pk).update(balance=F("balance") + amount)
        self.refresh_from_db(fields=["balance"])
        return self.balance

    @transaction.atomic
    def charge(self, amount) -> Decimal:
        """
        Debit internal credits. The balance check and the decrement are one
        conditional UPDATE, so two concurrent charges can never both pass.
        """
        amount = _qmoney(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive.")
        updated = type(self).objects.filter(pk=self.pk, balance__gte=amount).update(
            balance=F("balance") - amount
        )
        if not updated:
            raise ValueError("Insufficient wallet balance.")
        self.refresh_from_db(fields=["balance"])
        return self.balance

    def set_panel_account(self, panel_id: int) -> int:
        """Store the panel account id once; returns whichever id won."""
        type(self).objects.filter(pk=self.pk, panel_account_id__isnull=True).update(
            panel_account_id=panel_id
        )
        self.refresh_from_db(fields=["panel_account_id"])
        return self.panel_account_id


class Currency(models.Model):
    code = models.CharField(max_length=3, unique=True)
    symbol = models.CharField(max_length=8, default="$")
    # Units of this currency per 1 USD
    rate_to_usd = models.DecimalField(
        max_digits=18,
        decimal_places=6,
        default=Decimal("1"),
        validators=[MinValueValidator(Decimal("0.000001"))],
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["code"]
        verbose_name_plural = "Currencies"

    def __str__(self):
        return f"{self.code} ({self.rate_to_usd})"

    def save(self, *args, **kwargs):
        self.code = (self.code or "").strip().upper()
        super().save(*args, **kwargs)


class Location(models.Model):
    short = models.CharField(max_length=32)
    long_name = models.CharField(max_length=120, blank=True, default="")
    panel_location_id = models.PositiveIntegerField(null=True, blank=True)
    multiplier = models.DecimalField(
        max_digits=6, decimal_places=3, default=Decimal("1.000")
    )
    is_public = models.BooleanField(default=True)
    is_sold_out = models.BooleanField(default=False)

    class Meta:
        ordering = ["short"]

    def __str__(self):
        return self.long_name or self.short

    @property
    def is_orderable(self) -> bool:
        return self.is_public and not self.is_sold_out


class Plan(models.Model):
    class BillingPeriod(models.TextChoices):
        WEEKLY = "weekly", "Weekly"
        MONTHLY = "monthly", "Monthly"
        QUARTERLY = "quarterly", "Quarterly"
        YEARLY = "yearly", "Yearly"

    INTERVAL_DAYS = {
        BillingPeriod.WEEKLY: 7,
        BillingPeriod.MONTHLY: 30,
        BillingPeriod.QUARTERLY: 90,
        BillingPeriod.YEARLY: 365,
    }

    name = models.CharField(max_length=120)
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(max_digits=12, decimal_places=2)  # USD
    billing_period = models.CharField(
        max_length=16, choices=BillingPeriod.choices, default=BillingPeriod.MONTHLY
    )

    # Resource limits as the panel expects them (MB / % / MB)
    ram = models.PositiveIntegerField(default=1024)
    cpu = models.PositiveIntegerField(default=100)
    disk = models.PositiveIntegerField(default=5120)
    db_count = models.PositiveIntegerField(null=True, blank=True)
    allocations = models.PositiveIntegerField(
        default=0, help_text="Extra allocations on top of the default one"
    )
    backups = models.PositiveIntegerField(default=0)

    # Null nest/egg together with allow_egg_selection lets the buyer choose
    nest_id = models.PositiveIntegerField(null=True, blank=True)
    egg_id = models.PositiveIntegerField(null=True, blank=True)
    allow_egg_selection = models.BooleanField(default=False)
    docker_image = models.CharField(max_length=255, blank=True, default="")
    startup_cmd = models.TextField(blank=True, default="")
    environment_config = models.JSONField(
        default=dict, blank=True, help_text='{"VAR": {"value": "...", "user_visible": true}}'
    )

    is_visible = models.BooleanField(default=True)
    is_out_of_stock = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["price", "name"]

    def __str__(self):
        return self.name

    @property
    def billing_interval(self) -> timedelta:
        return timedelta(days=self.INTERVAL_DAYS.get(self.billing_period, 30))

    @property
    def buyer_chooses_egg(self) -> bool:
        return self.allow_egg_selection or not (self.nest_id and self.egg_id)


class PlanPrice(models.Model):
    """Admin-set absolute price of a plan in one currency."""

    plan = models.ForeignKey(Plan, on_delete=models.CASCADE, related_name="prices")
    currency_code = models.CharField(max_length=3)
    price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["plan", "currency_code"], name="uniq_plan_currency_price"
            )
        ]

    def __str__(self):
        return f"{self.plan} {self.price} {self.currency_code}"


class Coupon(models.Model):
    code = models.CharField(max_length=40, unique=True, db_index=True)
    discount_percent = models.DecimalField(
        max_digits=5, decimal_places=2, default=ZERO
    )
    max_uses = models.PositiveIntegerField(default=0, help_text="0 = unlimited")
    uses = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.code} ({self.discount_percent}%)"

    def save(self, *args, **kwargs):
        if self.code:
            self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def is_usable(self) -> bool:
        return self.is_active and (self.max_uses == 0 or self.uses < self.max_uses)

    def consume(self) -> bool:
        """Count one use if the cap still allows it. Returns False when exhausted."""
        updated = (
            type(self)
            .objects.filter(pk=self.pk, is_active=True)
            .filter(Q(max_uses=0) | Q(uses__lt=F("max_uses")))
            .update(uses=F("uses") + 1)
        )
        self.refresh_from_db(fields=["uses"])
        return bool(updated)

    def release(self) -> None:
        """Give back a use taken by ``consume`` for an order that was not delivered."""
        type(self).objects.filter(pk=self.pk, uses__gt=0).update(uses=F("uses") - 1)
        self.refresh_from_db(fields=["uses"])


class ActiveServerQuerySet(models.QuerySet):
    def overdue(self, now=None):
        now = now or timezone.now()
        return self.filter(
            status__in=[ActiveServer.Status.ACTIVE, ActiveServer.Status.CANCELLED],
            renewal_date__isnull=False,
            renewal_date__lt=now,
        )

    def renewing_within(self, days: int, now=None):
        now = now or timezone.now()
        return self.filter(
            status=ActiveServer.Status.ACTIVE,
            renewal_date__isnull=False,
            renewal_date__gt=now,
            renewal_date__lte=now + timedelta(days=days),
        )

    def suspended_before(self, cutoff):
        return self.filter(
            status=ActiveServer.Status.SUSPENDED,
            suspended_at__isnull=False,
            suspended_at__lt=cutoff,
        )


class ActiveServer(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        SUSPENDED = "suspended", "Suspended"
        CANCELLED = "cancelled", "Cancelled"
        FAILED = "failed", "Failed"

    class RadarStatus(models.TextChoices):
        SAFE = "safe", "Safe"
        WARNING = "warning", "Warning"
        DANGER = "danger", "Danger"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="servers"
    )
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="servers")
    location = models.ForeignKey(
        Location,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="servers",
    )
    server_name = models.CharField(max_length=191)
    ptero_server_id = models.PositiveIntegerField(null=True, blank=True)
    ptero_identifier = models.CharField(max_length=64, null=True, blank=True)
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.ACTIVE, db_index=True
    )
    renewal_date = models.DateTimeField(null=True, blank=True, db_index=True)
    suspended_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(null=True, blank=True)

    # Everything needed to finish a failed order without re-collecting payment
    nest_id = models.PositiveIntegerField(null=True, blank=True)
    egg_id = models.PositiveIntegerField(null=True, blank=True)
    env_overrides = models.JSONField(default=dict, blank=True)
    order_payload = models.JSONField(default=dict, blank=True)
    pending_payment = models.ForeignKey(
        "payments.PendingPayment",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="servers",
    )

    radar_status = models.CharField(
        max_length=16, choices=RadarStatus.choices, null=True, blank=True
    )
    radar_last_scan = models.DateTimeField(null=True, blank=True)
    radar_details = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ActiveServerQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["status", "renewal_date"])]

    def __str__(self):
        return f"{self.server_name} [{self.status}]"

    def transition(self, to_status: str, *, from_statuses, **fields) -> bool:
        """
        Conditional status change: only rows still in one of ``from_statuses``
        move. Returns False if another worker got there first.
        """
        if to_status not in self.Status.values:
            raise ValueError(f"Unknown server status: {to_status}")
        updated = (
            type(self)
            .objects.filter(pk=self.pk, status__in=list(from_statuses))
            .update(status=to_status, updated_at=timezone.now(), **fields)
        )
        if updated:
            self.refresh_from_db()
        return bool(updated)


class Invoice(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"

    class Type(models.TextChoices):
        PURCHASE = "purchase", "Purchase"
        RENEWAL = "renewal", "Renewal"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="invoices"
    )
    server = models.ForeignKey(
        ActiveServer,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="invoices",
    )
    plan = models.ForeignKey(
        Plan, null=True, blank=True, on_delete=models.SET_NULL, related_name="invoices"
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)  # USD
    currency_code = models.CharField(max_length=3, default="USD")
    currency_amount = models.DecimalField(max_digits=14, decimal_places=2)
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True
    )
    type = models.CharField(max_length=16, choices=Type.choices)
    description = models.CharField(max_length=255, blank=True, default="")
    due_date = models.DateTimeField(null=True, blank=True)
    billing_address = models.TextField(blank=True, default="")
    gst_number = models.CharField(max_length=32, blank=True, default="")
    coupon = models.ForeignKey(
        Coupon, null=True, blank=True, on_delete=models.SET_NULL, related_name="invoices"
    )
    payment_method = models.CharField(max_length=32, blank=True, default="")
    transaction_id = models.CharField(max_length=128, blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    commission_paid = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["user", "plan", "status", "created_at"])]

    def __str__(self):
        return f"Invoice #{self.pk or 'new'} {self.amount} USD [{self.status}]"

    def mark_paid(self, *, payment_method: str, transaction_id: str) -> bool:
        """pending -> paid, exactly once. Returns False if it was already paid."""
        updated = type(self).objects.filter(
            pk=self.pk, status=self.Status.PENDING
        ).update(
            status=self.Status.PAID,
            payment_method=payment_method,
            transaction_id=transaction_id,
            paid_at=timezone.now(),
        )
        if updated:
            self.refresh_from_db()
        return bool(updated)
