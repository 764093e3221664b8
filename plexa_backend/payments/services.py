"""
Shared plumbing for redirect payments: park the order before redirecting,
then resolve the gateway callback exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from main.models import _qmoney
from orders.services.exceptions import InvalidCheckout

from .gateways import Confirmation, OrderContext, get_gateway
from .models import PendingPayment, generate_merchant_order_id

logger = logging.getLogger(__name__)

# Captured amounts may differ from the order by provider rounding
AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class CallbackOutcome:
    # "duplicate" | "settled" | "pending" | "failed"
    state: str
    pending: PendingPayment
    confirmation: Optional[Confirmation] = None


def park_payment(
    *, user, gateway_name: str, purpose: str, amount, currency_code: str, payload: dict
) -> PendingPayment:
    return PendingPayment.objects.create(
        merchant_order_id=generate_merchant_order_id(user.pk),
        user=user,
        purpose=purpose,
        gateway=gateway_name,
        amount=_qmoney(amount),
        currency_code=currency_code,
        payload=payload,
    )


def start_redirect(gateway, pending: PendingPayment, context: OrderContext):
    """
    Call ``initiate`` and remember the gateway reference before redirecting.
    A charge in another currency is stored as ``amount_<code>`` so the
    callback can check it for underpayment.
    """
    try:
        result = gateway.initiate(context)
    except Exception as exc:
        pending.fail(str(exc))
        raise

    fields = {}
    if result.reference:
        fields["gateway_reference"] = result.reference
    charged = (result.charged_currency or "").upper()
    if result.charged_amount is not None and charged and charged != pending.currency_code:
        pending.payload = {
            **(pending.payload or {}),
            f"amount_{charged.lower()}": str(_qmoney(result.charged_amount)),
        }
        fields["payload"] = pending.payload
    if fields:
        PendingPayment.objects.filter(pk=pending.pk).update(**fields)
        for name, value in fields.items():
            setattr(pending, name, value)
    return result


def _expected_amount(pending: PendingPayment, confirmation: Confirmation) -> Decimal:
    if confirmation.currency and confirmation.currency != pending.currency_code:
        # Gateway charged in its own currency (PhonePe INR, PayPal USD fallback)
        key = f"amount_{confirmation.currency.lower()}"
        if key in pending.payload:
            return Decimal(str(pending.payload[key]))
        return Decimal("0")
    return pending.amount


def resolve_callback(
    merchant_order_id: str, *, purpose: Optional[str] = None, config=None
) -> CallbackOutcome:
    """
    Claim the parked payment and ask the gateway whether it settled.

    A payment that is no longer ``pending`` is a duplicate callback and is
    reported as such without touching the gateway.
    """
    pending = PendingPayment.objects.select_related("user").filter(
        merchant_order_id=merchant_order_id
    ).first()
    if pending is None or (purpose and pending.purpose != purpose):
        raise InvalidCheckout("Unknown payment reference.")

    with transaction.atomic():
        claimed = pending.claim()
    if not claimed:
        pending.refresh_from_db()
        logger.info("Duplicate callback for %s (%s)", merchant_order_id, pending.status)
        return CallbackOutcome(state="duplicate", pending=pending)

    try:
        gateway = get_gateway(pending.gateway, config)
        confirmation = gateway.confirm(pending)
    except Exception:
        pending.release()
        logger.warning("Confirming %s failed; left pending for retry", merchant_order_id)
        raise

    if confirmation.state == "pending":
        pending.release()
        return CallbackOutcome(state="pending", pending=pending, confirmation=confirmation)

    if not confirmation.settled:
        pending.fail(f"{pending.gateway} reported {confirmation.state}")
        logger.info("Payment %s not settled: %s", merchant_order_id, confirmation.raw)
        return CallbackOutcome(state="failed", pending=pending, confirmation=confirmation)

    expected = _expected_amount(pending, confirmation)
    if expected and confirmation.amount_captured + AMOUNT_TOLERANCE < expected:
        reason = (
            f"Captured {confirmation.amount_captured} {confirmation.currency} "
            f"but order total is {expected}"
        )
        logger.error("Payment %s underpaid: %s", merchant_order_id, reason)
        pending.flag_for_reconciliation(reason, confirmation.external_transaction_id)
        return CallbackOutcome(state="failed", pending=pending, confirmation=confirmation)

    PendingPayment.objects.filter(pk=pending.pk).update(
        external_transaction_id=confirmation.external_transaction_id
    )
    pending.external_transaction_id = confirmation.external_transaction_id
    return CallbackOutcome(state="settled", pending=pending, confirmation=confirmation)


def needing_reconciliation():
    return PendingPayment.objects.filter(
        status=PendingPayment.Status.NEEDS_RECONCILIATION
    ).select_related("user")


def mark_reconciled(pending: PendingPayment, note: str) -> bool:
    """Operator closed the case (refund issued or balance credited)."""
    updated = PendingPayment.objects.filter(
        pk=pending.pk, status=PendingPayment.Status.NEEDS_RECONCILIATION
    ).update(
        status=PendingPayment.Status.COMPLETED,
        reconciliation_note=note,
        resolved_at=timezone.now(),
    )
    if updated:
        logger.info("Pending payment %s reconciled: %s", pending.merchant_order_id, note)
        pending.refresh_from_db()
    return bool(updated)


def callback_url(merchant_order_id: str) -> str:
    return (
        f"{settings.SITE_URL.rstrip('/')}/api/payments/callback/"
        f"?merchant_order_id={merchant_order_id}"
    )
