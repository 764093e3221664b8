import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from app_settings.services import SettingsProvider, settings_provider
from main import notifications
from main.models import ActiveServer, Invoice, Plan
from main.utilities.currency import resolve_plan_price
from main.utilities.pricing import compute_price
from orders.services.exceptions import BusinessError, InsufficientFunds, InvalidCheckout
from payments.gateways import OrderContext, get_gateway
from payments.models import PendingPayment
from payments.services import CallbackOutcome, callback_url, park_payment, start_redirect
from provisioning.pterodactyl import PanelClient, PanelError

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

BILLING_DEFAULTS = {
    "RENEWAL_LOOKAHEAD_DAYS": 5,
    "RENEWAL_DEDUP_DAYS": 30,
    "SUSPENDED_GRACE_DAYS": 7,
}


# ---------- Money ----------
def q(x: Decimal) -> Decimal:
    """Quantize to 2dp with HALF_UP (invoice-friendly)."""
    return (x or ZERO).quantize(ZERO, rounding=ROUND_HALF_UP)


def billing_settings() -> dict:
    return {**BILLING_DEFAULTS, **getattr(settings, "PLEXA_BILLING", {})}


# ---------- Cycles ----------
def interval_for(period: str) -> timedelta:
    return timedelta(days=Plan.INTERVAL_DAYS.get(period or "monthly", 30))


def _transaction_id(prefix: str, user_id) -> str:
    return f"{prefix}_{int(timezone.now().timestamp() * 1000)}_{user_id}"


# ---------- Renewal invoices ----------
def has_recent_pending_invoice(server: ActiveServer, *, now=None) -> bool:
    now = now or timezone.now()
    since = now - timedelta(days=billing_settings()["RENEWAL_DEDUP_DAYS"])
    return Invoice.objects.filter(
        user_id=server.user_id,
        plan_id=server.plan_id,
        status=Invoice.Status.PENDING,
        created_at__gt=since,
    ).exists()


def create_renewal_invoice(
    server: ActiveServer, config: Optional[SettingsProvider] = None
) -> Optional[Invoice]:
    """
    Pending renewal invoice due on the server's renewal date, priced like a
    purchase (region multiplier and current tax, no coupon). Returns None if
    one was already issued recently for the same user and plan.
    """
    config = config or settings_provider
    with transaction.atomic():
        # Serialize overlapping runs on the server row
        server = (
            ActiveServer.objects.select_for_update()
            .select_related("plan", "location", "user")
            .get(pk=server.pk)
        )
        if server.status != ActiveServer.Status.ACTIVE:
            return None
        if has_recent_pending_invoice(server):
            return None

        plan, user = server.plan, server.user
        try:
            resolved = resolve_plan_price(plan, user.preferred_currency)
        except InvalidCheckout:
            # Preferred currency was disabled since purchase; bill in USD
            resolved = resolve_plan_price(plan, "USD")

        breakdown = compute_price(
            plan.price,
            rate=resolved.rate,
            override_price=resolved.override_price,
            multiplier=server.location.multiplier if server.location else Decimal("1"),
            tax_rate=config.get_decimal("tax_rate"),
        )
        invoice = Invoice.objects.create(
            user=user,
            server=server,
            plan=plan,
            amount=breakdown.usd_charge,
            currency_code=resolved.currency_code,
            currency_amount=breakdown.final_charge,
            subtotal=q(breakdown.subtotal),
            tax_rate=breakdown.tax_rate,
            tax_amount=q(breakdown.tax_amount),
            status=Invoice.Status.PENDING,
            type=Invoice.Type.RENEWAL,
            description=f"Server Renewal - {server.server_name} ({plan.name})",
            due_date=server.renewal_date,
            billing_address=user.billing_address,
            gst_number=user.gst_number,
        )
    return invoice


# ---------- Settlement ----------
def _renew_server(invoice: Invoice, panel: Optional[PanelClient]) -> Optional[ActiveServer]:
    server = invoice.server
    if server is None:
        logger.warning("Invoice #%s has no server; nothing to renew", invoice.pk)
        return None

    was_suspended = server.status == ActiveServer.Status.SUSPENDED
    base = server.renewal_date or timezone.now()
    renewed = server.transition(
        ActiveServer.Status.ACTIVE,
        from_statuses=[ActiveServer.Status.ACTIVE, ActiveServer.Status.SUSPENDED],
        renewal_date=base + server.plan.billing_interval,
        suspended_at=None,
    )
    if not renewed:
        logger.warning(
            "Server #%s is %s; invoice #%s paid without renewal",
            server.pk,
            server.status,
            invoice.pk,
        )
        return server

    if was_suspended and server.ptero_server_id:
        try:
            (panel or PanelClient()).unsuspend_server(server.ptero_server_id)
            logger.info("Unsuspended panel server %s", server.ptero_server_id)
        except (PanelError, BusinessError) as exc:
            logger.error(
                "Failed to unsuspend panel server %s: %s", server.ptero_server_id, exc
            )
    return server


def settle_invoice(
    invoice: Invoice,
    *,
    payment_method: str,
    transaction_id: str,
    panel: Optional[PanelClient] = None,
) -> bool:
    """
    pending -> paid, then renew the linked server and queue the commission.
    Returns False if the invoice had already been paid.
    """
    from affiliates.tasks import process_commission_task

    if not invoice.mark_paid(payment_method=payment_method, transaction_id=transaction_id):
        logger.info("Invoice #%s already paid", invoice.pk)
        return False

    transaction.on_commit(lambda: process_commission_task.delay(invoice.pk))
    transaction.on_commit(lambda: notifications.notify_invoice_paid(invoice))

    if invoice.server_id:
        _renew_server(invoice, panel)
    return True


def invoice_amount_usd(invoice: Invoice) -> Decimal:
    return q(invoice.amount)


def pay_invoice_with_credits(
    user, invoice: Invoice, *, panel: Optional[PanelClient] = None
) -> Invoice:
    if invoice.user_id != user.pk:
        raise InvalidCheckout("Invoice not found.")
    if invoice.status != Invoice.Status.PENDING:
        raise BusinessError("This invoice has already been processed.")

    amount = invoice_amount_usd(invoice)
    with transaction.atomic():
        try:
            user.charge(amount)
        except ValueError:
            user.refresh_from_db(fields=["balance"])
            raise InsufficientFunds(
                f"Insufficient balance. You need ${amount:.2f} USD but have ${user.balance:.2f}"
            )
        paid = settle_invoice(
            invoice,
            payment_method="credits",
            transaction_id=_transaction_id("CREDIT", user.pk),
            panel=panel,
        )
        if not paid:
            # Lost a race with another payment path; roll back the debit
            raise BusinessError("This invoice has already been processed.")
    invoice.refresh_from_db()
    return invoice


def start_invoice_payment(
    user, invoice: Invoice, gateway_name: str, config: Optional[SettingsProvider] = None
):
    if invoice.user_id != user.pk:
        raise InvalidCheckout("Invoice not found.")
    if invoice.status != Invoice.Status.PENDING:
        raise BusinessError("This invoice has already been processed.")

    gateway = get_gateway(gateway_name, config)
    if not gateway.requires_redirect:
        raise InvalidCheckout("Use credits payment directly.")

    pending = park_payment(
        user=user,
        gateway_name=gateway.name,
        purpose=PendingPayment.Purpose.INVOICE,
        amount=invoice.currency_amount,
        currency_code=invoice.currency_code,
        payload={"invoice_id": invoice.pk, "amount_usd": str(invoice.amount)},
    )
    context = OrderContext(
        merchant_order_id=pending.merchant_order_id,
        amount=invoice.currency_amount,
        currency=invoice.currency_code,
        amount_usd=invoice.amount,
        description=invoice.description or f"Invoice #{invoice.pk}",
        user=user,
        return_url=callback_url(pending.merchant_order_id),
        metadata={"type": "invoice", "invoice_id": invoice.pk},
    )
    return start_redirect(gateway, pending, context)


def complete_invoice_payment(
    outcome: CallbackOutcome, *, panel: Optional[PanelClient] = None
) -> Optional[Invoice]:
    pending = outcome.pending
    invoice = Invoice.objects.filter(pk=pending.payload.get("invoice_id")).first()
    if outcome.state != "settled":
        return invoice
    if invoice is None:
        pending.flag_for_reconciliation("Invoice no longer exists")
        return None

    with transaction.atomic():
        paid = settle_invoice(
            invoice,
            payment_method=pending.gateway,
            transaction_id=pending.external_transaction_id or pending.merchant_order_id,
            panel=panel,
        )
    if paid:
        pending.complete()
    else:
        # Paid twice through different paths; money needs to go back
        pending.flag_for_reconciliation(f"Invoice #{invoice.pk} was already paid")
    invoice.refresh_from_db()
    return invoice


# ---------- Wallet top-up ----------
def start_topup(user, amount, gateway_name: str, config: Optional[SettingsProvider] = None):
    amount = q(Decimal(str(amount)))
    if amount <= 0:
        raise InvalidCheckout("Top-up amount must be positive.")
    gateway = get_gateway(gateway_name, config)
    if not gateway.requires_redirect:
        raise InvalidCheckout("Credits cannot be topped up with credits.")

    pending = park_payment(
        user=user,
        gateway_name=gateway.name,
        purpose=PendingPayment.Purpose.TOPUP,
        amount=amount,
        currency_code="USD",
        payload={"amount_usd": str(amount)},
    )
    context = OrderContext(
        merchant_order_id=pending.merchant_order_id,
        amount=amount,
        currency="USD",
        amount_usd=amount,
        description=f"Account credit ${amount}",
        user=user,
        return_url=callback_url(pending.merchant_order_id),
        metadata={"type": "topup"},
    )
    return start_redirect(gateway, pending, context)


def complete_topup(outcome: CallbackOutcome) -> Optional[Decimal]:
    pending = outcome.pending
    if outcome.state != "settled":
        return None
    amount = Decimal(str(pending.payload.get("amount_usd", pending.amount)))
    with transaction.atomic():
        balance = pending.user.add_funds(amount)
        pending.complete()
    logger.info("Top-up %s credited $%s to user %s", pending.merchant_order_id, amount, pending.user_id)
    return balance
