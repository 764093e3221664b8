from __future__ import annotations

import logging
import secrets
from decimal import Decimal
from typing import Optional

from django.db import transaction
from django.db.models import F

from app_settings.services import SettingsProvider, settings_provider
from main.models import ZERO, Invoice, _qmoney
from orders.services.exceptions import BusinessError

from .models import Affiliate, AffiliatePayout, Referral

logger = logging.getLogger(__name__)


class AffiliateError(BusinessError):
    default_message = "Affiliate request could not be processed."


def _new_referral_code() -> str:
    while True:
        code = secrets.token_hex(4).upper()
        if not Affiliate.objects.filter(referral_code=code).exists():
            return code


def join(user, config: Optional[SettingsProvider] = None) -> Affiliate:
    config = config or settings_provider
    if not config.get_bool("affiliate_enabled"):
        raise AffiliateError("Affiliate program is currently disabled.")
    existing = Affiliate.objects.filter(user=user).first()
    if existing:
        return existing
    return Affiliate.objects.create(
        user=user,
        referral_code=_new_referral_code(),
        commission_rate=config.get_decimal(
            "affiliate_default_commission", Decimal("10")
        ),
    )


@transaction.atomic
def attach_referral(user, referral_code: str) -> Optional[Referral]:
    """Link ``user`` to the affiliate owning ``referral_code``; first link wins."""
    affiliate = Affiliate.objects.filter(
        referral_code=(referral_code or "").strip().upper(), is_active=True
    ).first()
    if affiliate is None or affiliate.user_id == user.pk:
        return None
    if user.referred_by_id:
        return None
    type(user).objects.filter(pk=user.pk, referred_by__isnull=True).update(
        referred_by=affiliate
    )
    user.refresh_from_db(fields=["referred_by"])
    referral, _ = Referral.objects.get_or_create(
        referred_user=user, defaults={"affiliate": affiliate}
    )
    return referral


def process_commission(
    invoice_id: int, config: Optional[SettingsProvider] = None
) -> Optional[Decimal]:
    """
    Credit the buyer's referrer for a paid invoice. Returns the amount
    credited, or None when nothing is owed.
    """
    config = config or settings_provider
    with transaction.atomic():
        invoice = (
            Invoice.objects.select_for_update()
            .select_related("user")
            .filter(pk=invoice_id, status=Invoice.Status.PAID)
            .first()
        )
        if invoice is None:
            logger.info("No commission for invoice #%s (not paid)", invoice_id)
            return None
        if invoice.commission_paid:
            logger.info("Commission for invoice #%s already credited", invoice_id)
            return None

        affiliate_id = invoice.user.referred_by_id
        if not affiliate_id:
            logger.info("No commission for invoice #%s (no referrer)", invoice_id)
            return None
        affiliate = Affiliate.objects.filter(pk=affiliate_id, is_active=True).first()
        if affiliate is None:
            logger.info("Referrer for invoice #%s is not an active affiliate", invoice_id)
            return None

        rate = affiliate.commission_rate
        if rate == 0:
            rate = config.get_decimal("affiliate_default_commission", Decimal("10"))

        amount = _qmoney(invoice.amount * rate / Decimal("100"))
        if amount <= ZERO:
            return None

        Affiliate.objects.filter(pk=affiliate.pk).update(
            balance=F("balance") + amount, total_earned=F("total_earned") + amount
        )
        Invoice.objects.filter(pk=invoice.pk).update(commission_paid=True)

    logger.info(
        "Awarded $%s commission to affiliate #%s for invoice #%s",
        amount,
        affiliate.pk,
        invoice_id,
    )
    return amount


@transaction.atomic
def request_payout(
    affiliate: Affiliate,
    amount,
    payment_method: str = "Credits",
    config: Optional[SettingsProvider] = None,
) -> AffiliatePayout:
    config = config or settings_provider
    amount = _qmoney(Decimal(str(amount)))
    min_payout = config.get_decimal("affiliate_min_payout", Decimal("10"))
    if amount < min_payout:
        raise AffiliateError(f"Minimum payout amount is ${min_payout:.2f}")

    updated = Affiliate.objects.filter(pk=affiliate.pk, balance__gte=amount).update(
        balance=F("balance") - amount
    )
    if not updated:
        raise AffiliateError("Insufficient balance")
    affiliate.refresh_from_db(fields=["balance"])
    return AffiliatePayout.objects.create(
        affiliate=affiliate, amount=amount, payment_method=payment_method or "Credits"
    )
