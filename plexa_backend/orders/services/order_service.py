"""
Checkout -> payment -> provisioning -> recording.

    INITIATED -> PRICED -> PAYMENT_PENDING -> PAID -> PROVISIONED -> RECORDED
                               |                         |
                         PAYMENT_FAILED          PROVISION_FAILED (retryable)

Balance debit and the paid invoice are written only once the panel server
exists. The coupon use is taken just before provisioning and given back if
it fails. A provisioning failure leaves a ``failed`` server row holding the
whole order so it can be retried without paying again.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from django.db import models, transaction
from django.utils import timezone

from app_settings.services import SettingsProvider, settings_provider
from main import notifications
from main.models import ActiveServer, Coupon, Invoice, Location, Plan, User, _qmoney
from main.utilities.coupon import resolve_coupon
from main.utilities.currency import resolve_plan_price
from main.utilities.locks import task_lock
from main.utilities.pricing import PriceBreakdown, compute_price
from payments.gateways import IMMEDIATE, OrderContext, get_gateway
from payments.models import PendingPayment
from payments.services import (
    callback_url,
    needing_reconciliation,
    park_payment,
    resolve_callback,
    start_redirect,
)
from provisioning.pterodactyl import PanelClient, PanelError, ServerSpec

from .exceptions import (
    AlreadyProcessed,
    BusinessError,
    CheckoutInProgress,
    CouponUnavailable,
    InsufficientFunds,
    InvalidCheckout,
    ProvisioningFailed,
)

logger = logging.getLogger(__name__)

CHECKOUT_LOCK_TTL = 120


class OrderState(models.TextChoices):
    INITIATED = "initiated", "Initiated"
    PRICED = "priced", "Priced"
    PAYMENT_PENDING = "payment_pending", "Payment pending"
    PAID = "paid", "Paid"
    PROVISIONED = "provisioned", "Provisioned"
    RECORDED = "recorded", "Recorded"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    PROVISION_FAILED = "provision_failed", "Provisioning failed"


@dataclass
class CheckoutRequest:
    plan_id: int
    location_id: int
    payment_method: str = "credits"
    server_name: str = ""
    coupon_code: str = ""
    billing_address: str = ""
    gst_number: str = ""
    nest_id: Optional[int] = None
    egg_id: Optional[int] = None
    env_overrides: Dict[str, str] = field(default_factory=dict)


@dataclass
class OrderDraft:
    """
    A priced order. Serialized into PendingPayment.payload for redirect
    gateways and into ActiveServer.order_payload when provisioning fails.
    """

    plan_id: int
    location_id: int
    server_name: str
    nest_id: Optional[int]
    egg_id: Optional[int]
    env_overrides: Dict[str, str]
    currency_code: str
    currency_rate: str
    subtotal: str
    discount_amount: str
    tax_rate: str
    tax_amount: str
    final_price: str
    amount_usd: str
    coupon_id: Optional[int]
    payment_method: str
    billing_address: str = ""
    gst_number: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderDraft":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in payload.items() if k in known})

    @property
    def final_decimal(self) -> Decimal:
        return Decimal(self.final_price)

    @property
    def usd_decimal(self) -> Decimal:
        return Decimal(self.amount_usd)


@dataclass
class CheckoutResult:
    state: str
    server: Optional[ActiveServer] = None
    invoice: Optional[Invoice] = None
    redirect_url: Optional[str] = None
    pending_payment: Optional[PendingPayment] = None
    panel_password: Optional[str] = None
    message: str = ""
    duplicate: bool = False


@dataclass
class Quote:
    plan: Plan
    location: Location
    currency_code: str
    breakdown: PriceBreakdown
    coupon: Optional[Coupon]


class OrderService:
    # Make the error types available as class attributes
    BusinessError = BusinessError
    ProvisioningFailed = ProvisioningFailed

    def __init__(
        self,
        config: Optional[SettingsProvider] = None,
        panel_factory: Optional[Callable[[], PanelClient]] = None,
        gateway_factory: Callable = get_gateway,
    ):
        self.config = config or settings_provider
        self.panel_factory = panel_factory or (lambda: PanelClient(config=self.config))
        self.gateway_factory = gateway_factory

    # ------------------------------------------------------------------
    # INITIATED -> PRICED
    # ------------------------------------------------------------------
    def quote(self, user: User, request: CheckoutRequest) -> Quote:
        plan = Plan.objects.filter(pk=request.plan_id).first()
        if plan is None or not plan.is_visible:
            raise InvalidCheckout("Invalid plan.")
        if plan.is_out_of_stock:
            raise InvalidCheckout("This plan is out of stock.")

        location = Location.objects.filter(pk=request.location_id).first()
        if location is None or not location.is_orderable:
            raise InvalidCheckout("Invalid or sold out region.")

        resolved = resolve_plan_price(plan, user.preferred_currency)
        coupon = resolve_coupon(request.coupon_code)
        breakdown = compute_price(
            plan.price,
            rate=resolved.rate,
            override_price=resolved.override_price,
            multiplier=location.multiplier,
            discount_percent=coupon.discount_percent if coupon else Decimal("0"),
            tax_rate=self.config.get_decimal("tax_rate"),
        )
        logger.info(
            "Priced plan %s for user %s: %s %s (USD %s, override=%s)",
            plan.pk,
            user.pk,
            breakdown.final_charge,
            resolved.currency_code,
            breakdown.usd_charge,
            breakdown.is_override,
        )
        return Quote(
            plan=plan,
            location=location,
            currency_code=resolved.currency_code,
            breakdown=breakdown,
            coupon=coupon,
        )

    def _draft(self, user: User, request: CheckoutRequest, quote: Quote, gateway_name: str) -> OrderDraft:
        plan = quote.plan
        if plan.buyer_chooses_egg and request.nest_id and request.egg_id:
            nest_id, egg_id = request.nest_id, request.egg_id
        else:
            nest_id, egg_id = plan.nest_id, plan.egg_id
        if not (nest_id and egg_id):
            raise InvalidCheckout("Please choose a server type.")

        b = quote.breakdown
        return OrderDraft(
            plan_id=plan.pk,
            location_id=quote.location.pk,
            server_name=(request.server_name or "").strip()
            or f"{user.username}'s {plan.name}",
            nest_id=int(nest_id),
            egg_id=int(egg_id),
            env_overrides={k: str(v) for k, v in (request.env_overrides or {}).items()},
            currency_code=quote.currency_code,
            currency_rate=str(b.rate),
            subtotal=str(_qmoney(b.subtotal)),
            discount_amount=str(_qmoney(b.discount_amount)),
            tax_rate=str(b.tax_rate),
            tax_amount=str(_qmoney(b.tax_amount)),
            final_price=str(b.final_charge),
            amount_usd=str(b.usd_charge),
            coupon_id=quote.coupon.pk if quote.coupon else None,
            payment_method=gateway_name,
            billing_address=request.billing_address or "",
            gst_number=request.gst_number or "",
        )

    # ------------------------------------------------------------------
    # PRICED -> PAYMENT_PENDING -> ...
    # ------------------------------------------------------------------
    def checkout(self, user: User, request: CheckoutRequest) -> CheckoutResult:
        quote = self.quote(user, request)
        gateway = self.gateway_factory(request.payment_method, self.config)
        draft = self._draft(user, request, quote, gateway.name)

        if gateway.requires_redirect:
            return self._start_redirect_checkout(user, gateway, draft, quote)

        # Internal credits: one checkout per user at a time so two orders
        # cannot both pass the balance check before either debits.
        with task_lock(f"checkout:user:{user.pk}", CHECKOUT_LOCK_TTL) as acquired:
            if not acquired:
                raise CheckoutInProgress()
            context = self._context(user, draft, quote.plan, merchant_order_id=f"CR{user.pk}")
            result = gateway.initiate(context)
            if result.mode != IMMEDIATE:
                raise BusinessError("Unexpected payment flow.")
            logger.info("Checkout for user %s paid by credits", user.pk)
            return self._provision_and_record(user, draft)

    def _context(self, user, draft: OrderDraft, plan: Plan, *, merchant_order_id: str,
                 return_url: str = "") -> OrderContext:
        return OrderContext(
            merchant_order_id=merchant_order_id,
            amount=draft.final_decimal,
            currency=draft.currency_code,
            amount_usd=draft.usd_decimal,
            description=f"{plan.name} - Server: {draft.server_name}",
            user=user,
            return_url=return_url,
            metadata={
                "type": "checkout",
                "plan_id": plan.pk,
                "user_id": user.pk,
                "brand_name": self.config.get("brand_name") or "Plexa",
            },
        )

    def _start_redirect_checkout(self, user, gateway, draft: OrderDraft, quote: Quote) -> CheckoutResult:
        pending = park_payment(
            user=user,
            gateway_name=gateway.name,
            purpose=PendingPayment.Purpose.CHECKOUT,
            amount=draft.final_decimal,
            currency_code=draft.currency_code,
            payload=draft.to_payload(),
        )
        context = self._context(
            user,
            draft,
            quote.plan,
            merchant_order_id=pending.merchant_order_id,
            return_url=callback_url(pending.merchant_order_id),
        )
        result = start_redirect(gateway, pending, context)
        logger.info(
            "Checkout %s parked for %s redirect", pending.merchant_order_id, gateway.name
        )
        return CheckoutResult(
            state=OrderState.PAYMENT_PENDING,
            redirect_url=result.target,
            pending_payment=pending,
        )

    # ------------------------------------------------------------------
    # Gateway callback re-enters at PAYMENT_PENDING -> PAID
    # ------------------------------------------------------------------
    def complete_callback(self, merchant_order_id: str) -> CheckoutResult:
        outcome = resolve_callback(
            merchant_order_id, purpose=PendingPayment.Purpose.CHECKOUT, config=self.config
        )
        pending = outcome.pending
        if outcome.state == "duplicate":
            server = pending.servers.first()
            return CheckoutResult(
                state=self._state_for_resolved(pending),
                server=server,
                invoice=server.invoices.filter(type=Invoice.Type.PURCHASE).first() if server else None,
                pending_payment=pending,
                duplicate=True,
                message=AlreadyProcessed.default_message,
            )
        if outcome.state == "pending":
            return CheckoutResult(
                state=OrderState.PAYMENT_PENDING,
                pending_payment=pending,
                message="Payment is still processing.",
            )
        if outcome.state == "failed":
            return CheckoutResult(
                state=OrderState.PAYMENT_FAILED,
                pending_payment=pending,
                message="Payment was not completed.",
            )

        draft = OrderDraft.from_payload(pending.payload)
        return self._provision_and_record(
            pending.user,
            draft,
            pending=pending,
            transaction_id=pending.external_transaction_id,
        )

    @staticmethod
    def _state_for_resolved(pending: PendingPayment) -> str:
        return {
            PendingPayment.Status.COMPLETED: OrderState.RECORDED,
            PendingPayment.Status.NEEDS_RECONCILIATION: OrderState.PROVISION_FAILED,
            PendingPayment.Status.FAILED: OrderState.PAYMENT_FAILED,
        }.get(pending.status, OrderState.PAYMENT_PENDING)

    # ------------------------------------------------------------------
    # PAID -> PROVISIONED -> RECORDED
    # ------------------------------------------------------------------
    def _server_spec(self, user: User, draft: OrderDraft, plan: Plan, location: Optional[Location],
                     panel_user_id: int) -> ServerSpec:
        same_egg = (draft.nest_id, draft.egg_id) == (plan.nest_id, plan.egg_id)
        return ServerSpec(
            name=draft.server_name,
            user_id=panel_user_id,
            nest_id=draft.nest_id,
            egg_id=draft.egg_id,
            memory=plan.ram,
            disk=plan.disk,
            cpu=plan.cpu,
            databases=plan.db_count,
            extra_allocations=plan.allocations,
            backups=plan.backups,
            docker_image=plan.docker_image if same_egg else "",
            startup=plan.startup_cmd if same_egg else "",
            plan_environment=plan.environment_config if same_egg else {},
            user_overrides=draft.env_overrides,
            location_id=location.panel_location_id if location else None,
        )

    def _reprice_without_coupon(self, draft: OrderDraft) -> OrderDraft:
        plan = Plan.objects.get(pk=draft.plan_id)
        location = Location.objects.filter(pk=draft.location_id).first()
        resolved = resolve_plan_price(plan, draft.currency_code)
        b = compute_price(
            plan.price,
            rate=Decimal(draft.currency_rate),
            override_price=resolved.override_price,
            multiplier=location.multiplier if location else Decimal("1"),
            tax_rate=Decimal(draft.tax_rate),
        )
        return replace(
            draft,
            subtotal=str(_qmoney(b.subtotal)),
            discount_amount=str(_qmoney(b.discount_amount)),
            tax_amount=str(_qmoney(b.tax_amount)),
            final_price=str(b.final_charge),
            amount_usd=str(b.usd_charge),
            coupon_id=None,
        )

    def _claim_coupon(self, user: User, draft: OrderDraft):
        """
        Take one use of the order's coupon before anything is provisioned.

        Returns ``(draft, coupon)``. A credits order whose coupon ran out is
        re-priced at full price; an externally paid one cannot be, so it
        raises CouponUnavailable and goes to reconciliation.
        """
        if not draft.coupon_id:
            return draft, None
        coupon = Coupon.objects.filter(pk=draft.coupon_id).first()
        if coupon is not None and coupon.consume():
            return draft, coupon

        code = coupon.code if coupon is not None else draft.coupon_id
        if draft.payment_method != "credits":
            raise CouponUnavailable(f"Coupon {code} ran out before the payment settled.")

        draft = self._reprice_without_coupon(draft)
        logger.warning(
            "Coupon %s ran out; order for user %s re-priced to $%s USD",
            code,
            user.pk,
            draft.amount_usd,
        )
        user.refresh_from_db(fields=["balance"])
        if user.balance < draft.usd_decimal:
            raise InsufficientFunds(
                f"Coupon {code} is no longer available and your balance does not cover "
                f"${draft.usd_decimal:.2f} USD. Please add funds."
            )
        return draft, None

    def _provision(self, user: User, draft: OrderDraft):
        """
        Returns ``(draft, coupon, created_server, panel_password)``. The
        coupon use is given back if the panel call fails.
        """
        draft, coupon = self._claim_coupon(user, draft)
        try:
            plan = Plan.objects.get(pk=draft.plan_id)
            location = Location.objects.filter(pk=draft.location_id).first()
            panel = self.panel_factory()
            panel_user_id, password = panel.ensure_account(user)
            created = panel.create_server(
                self._server_spec(user, draft, plan, location, panel_user_id)
            )
        except Exception:
            if coupon is not None:
                coupon.release()
            raise
        return draft, coupon, created, password

    @staticmethod
    def _failure_reason(exc: Exception) -> str:
        if isinstance(exc, (PanelError, BusinessError)):
            return str(exc) or exc.__class__.__name__
        return f"Provisioning failed unexpectedly ({exc.__class__.__name__})"

    def _provision_and_record(
        self,
        user: User,
        draft: OrderDraft,
        *,
        pending: Optional[PendingPayment] = None,
        transaction_id: str = "",
    ) -> CheckoutResult:
        try:
            draft, coupon, created, password = self._provision(user, draft)
        except InsufficientFunds:
            raise
        except (PanelError, BusinessError) as exc:
            return self._failed_result(user, draft, self._failure_reason(exc), pending)
        except Exception as exc:
            logger.exception("Unexpected provisioning error for user %s", user.pk)
            return self._failed_result(user, draft, self._failure_reason(exc), pending)

        try:
            server, invoice = self._record(
                user,
                draft,
                created,
                coupon=coupon,
                pending=pending,
                transaction_id=transaction_id,
            )
        except Exception:
            logger.exception(
                "Panel server %s created but recording failed for user %s", created.id, user.pk
            )
            if coupon is not None:
                coupon.release()
            if pending is not None:
                pending.flag_for_reconciliation(
                    f"Panel server {created.id} was created but the order could not be recorded"
                )
            raise
        if pending is not None:
            pending.complete(transaction_id)
        transaction.on_commit(lambda: notifications.send_server_ready_email(server, password))
        return CheckoutResult(
            state=OrderState.RECORDED,
            server=server,
            invoice=invoice,
            pending_payment=pending,
            panel_password=password,
        )

    def _failed_result(self, user, draft: OrderDraft, reason: str,
                       pending: Optional[PendingPayment]) -> CheckoutResult:
        server = self._record_failure(user, draft, reason, pending)
        return CheckoutResult(
            state=OrderState.PROVISION_FAILED,
            server=server,
            pending_payment=pending,
            message=ProvisioningFailed.default_message,
        )

    def _record_failure(self, user, draft: OrderDraft, reason: str,
                        pending: Optional[PendingPayment]) -> ActiveServer:
        logger.error("Provisioning failed for user %s: %s", user.pk, reason)
        plan = Plan.objects.get(pk=draft.plan_id)
        server = ActiveServer.objects.create(
            user=user,
            plan=plan,
            location_id=draft.location_id,
            server_name=draft.server_name,
            status=ActiveServer.Status.FAILED,
            failure_reason=reason,
            renewal_date=timezone.now() + plan.billing_interval,
            nest_id=draft.nest_id,
            egg_id=draft.egg_id,
            env_overrides=draft.env_overrides,
            order_payload=draft.to_payload(),
            pending_payment=pending,
        )
        if pending is not None:
            # Money was captured externally but nothing was delivered
            pending.flag_for_reconciliation(reason)
        transaction.on_commit(lambda: notifications.notify_provisioning_failed(server))
        return server

    @transaction.atomic
    def _record(
        self,
        user: User,
        draft: OrderDraft,
        created,
        *,
        coupon: Optional[Coupon] = None,
        pending: Optional[PendingPayment] = None,
        transaction_id: str = "",
        server: Optional[ActiveServer] = None,
    ):
        """
        The only step that moves money: debit credits, mark the server active
        and write the paid invoice. ``coupon`` is the use already claimed
        for this order, or None.
        """
        from affiliates.tasks import process_commission_task

        user = User.objects.select_for_update().get(pk=user.pk)
        plan = Plan.objects.get(pk=draft.plan_id)
        location = Location.objects.filter(pk=draft.location_id).first()
        amount_usd = draft.usd_decimal
        paid_by_credits = draft.payment_method == "credits"

        invoice_status = Invoice.Status.PAID
        if paid_by_credits:
            try:
                user.charge(amount_usd)
                logger.info("Balance deducted: $%s USD from user %s", amount_usd, user.pk)
            except ValueError:
                # Balance drained between the check and now; bill instead
                logger.error(
                    "User %s no longer covers $%s; issuing a pending invoice", user.pk, amount_usd
                )
                invoice_status = Invoice.Status.PENDING

        now = timezone.now()
        renewal_date = now + plan.billing_interval
        if invoice_status == Invoice.Status.PENDING:
            renewal_date = now

        fields = dict(
            ptero_server_id=created.id,
            ptero_identifier=created.identifier,
            server_name=created.name or draft.server_name,
            failure_reason=None,
            renewal_date=renewal_date,
        )
        if server is None:
            server = ActiveServer.objects.create(
                user=user,
                plan=plan,
                location=location,
                status=ActiveServer.Status.ACTIVE,
                nest_id=draft.nest_id,
                egg_id=draft.egg_id,
                env_overrides=draft.env_overrides,
                order_payload=draft.to_payload(),
                pending_payment=pending,
                **fields,
            )
        elif not server.transition(
            ActiveServer.Status.ACTIVE, from_statuses=[ActiveServer.Status.FAILED], **fields
        ):
            raise AlreadyProcessed("Server is no longer in failed state.")

        if draft.billing_address or draft.gst_number:
            User.objects.filter(pk=user.pk).update(
                billing_address=draft.billing_address, gst_number=draft.gst_number
            )

        paid = invoice_status == Invoice.Status.PAID
        prefix = "TXN" if paid_by_credits else draft.payment_method.upper()
        invoice = Invoice.objects.create(
            user=user,
            server=server,
            plan=plan,
            amount=amount_usd,
            currency_code=draft.currency_code,
            currency_amount=draft.final_decimal,
            subtotal=Decimal(draft.subtotal),
            tax_rate=Decimal(draft.tax_rate),
            tax_amount=Decimal(draft.tax_amount),
            status=invoice_status,
            type=Invoice.Type.PURCHASE,
            description=f"{plan.name} - {location}" if location else plan.name,
            due_date=now,
            billing_address=draft.billing_address,
            gst_number=draft.gst_number,
            coupon=coupon,
            payment_method=draft.payment_method if paid else "",
            transaction_id=(
                transaction_id or f"{prefix}_{int(now.timestamp() * 1000)}_{user.pk}"
            )
            if paid
            else "",
            paid_at=now if paid else None,
        )

        if paid:
            transaction.on_commit(lambda: process_commission_task.delay(invoice.pk))
        transaction.on_commit(lambda: notifications.notify_plan_purchased(server, invoice))
        logger.info(
            "Recorded server #%s and invoice #%s (%s) for user %s",
            server.pk,
            invoice.pk,
            invoice.status,
            user.pk,
        )
        return server, invoice

    # ------------------------------------------------------------------
    # Recovery and lifecycle actions
    # ------------------------------------------------------------------
    def retry_provisioning(self, server: ActiveServer) -> CheckoutResult:
        """
        Re-run provisioning for a failed server from its stored order. The
        deferred recording step runs once on success: credits are debited
        now (they never were) and the purchase invoice is written.
        """
        if server.status != ActiveServer.Status.FAILED:
            raise AlreadyProcessed("Server is not in failed state.")
        draft = OrderDraft.from_payload(server.order_payload)
        user = server.user
        pending = server.pending_payment
        if pending is not None and pending.status != PendingPayment.Status.NEEDS_RECONCILIATION:
            # Operator already refunded or settled this payment by hand
            raise AlreadyProcessed("The payment for this order was reconciled. Please order again.")

        with task_lock(f"retry:server:{server.pk}", CHECKOUT_LOCK_TTL) as acquired:
            if not acquired:
                raise CheckoutInProgress("A retry is already running for this server.")

            if draft.payment_method == "credits":
                user.refresh_from_db(fields=["balance"])
                if user.balance < draft.usd_decimal:
                    raise InsufficientFunds(
                        f"Insufficient balance. Total is ${draft.usd_decimal:.2f} USD. Please add funds."
                    )

            try:
                draft, coupon, created, password = self._provision(user, draft)
            except InsufficientFunds:
                raise
            except Exception as exc:
                if not isinstance(exc, (PanelError, BusinessError)):
                    logger.exception("Unexpected error retrying server #%s", server.pk)
                reason = self._failure_reason(exc)
                ActiveServer.objects.filter(pk=server.pk).update(failure_reason=reason)
                server.refresh_from_db()
                logger.error("Retry of server #%s failed: %s", server.pk, reason)
                return CheckoutResult(
                    state=OrderState.PROVISION_FAILED,
                    server=server,
                    message=f"Retry failed: {reason}",
                )

            try:
                server, invoice = self._record(
                    user,
                    draft,
                    created,
                    coupon=coupon,
                    pending=pending,
                    transaction_id=pending.external_transaction_id if pending else "",
                    server=server,
                )
            except Exception:
                if coupon is not None:
                    coupon.release()
                raise
            if pending is not None:
                pending.complete()

        logger.info("Server #%s provisioned on retry", server.pk)
        return CheckoutResult(
            state=OrderState.RECORDED, server=server, invoice=invoice, panel_password=password
        )

    def cancel(self, server: ActiveServer) -> bool:
        """Stop renewals; the server runs until its paid period ends."""
        cancelled = server.transition(
            ActiveServer.Status.CANCELLED,
            from_statuses=[ActiveServer.Status.ACTIVE, ActiveServer.Status.SUSPENDED],
        )
        if cancelled:
            logger.info("Server #%s cancelled by user %s", server.pk, server.user_id)
        return cancelled

    @staticmethod
    def list_needing_reconciliation():
        return needing_reconciliation()
