"""
Order flow tests: checkout -> payment -> provisioning -> recording.

The panel and the redirect gateways are mocked at the HTTP layer, so these
exercise the real clients end to end.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from django.utils import timezone

from main.factories import (
    ActiveServerFactory,
    CouponFactory,
    LocationFactory,
    PlanFactory,
    UserFactory,
)
from main.models import ActiveServer, Coupon, Invoice
from main.utilities.locks import task_lock
from orders.services.exceptions import (
    AlreadyProcessed,
    CheckoutInProgress,
    ConfigurationError,
    InsufficientFunds,
    InvalidCheckout,
)
from orders.services.order_service import CheckoutRequest, OrderService, OrderState
from payments.models import PendingPayment
from payments.services import mark_reconciled

pytestmark = [pytest.mark.django_db, pytest.mark.orders]


@pytest.fixture
def service():
    return OrderService()


def _request(plan, location, **kwargs):
    return CheckoutRequest(plan_id=plan.pk, location_id=location.pk, server_name="survival", **kwargs)


# ============================================================================
# Pricing
# ============================================================================


class TestQuote:
    def test_hidden_plan(self, service, user, location):
        plan = PlanFactory(is_visible=False)
        with pytest.raises(InvalidCheckout):
            service.quote(user, _request(plan, location))

    def test_out_of_stock_plan(self, service, user, location):
        plan = PlanFactory(is_out_of_stock=True)
        with pytest.raises(InvalidCheckout, match="out of stock"):
            service.quote(user, _request(plan, location))

    def test_sold_out_location(self, service, user, plan):
        location = LocationFactory(is_sold_out=True)
        with pytest.raises(InvalidCheckout):
            service.quote(user, _request(plan, location))

    def test_location_multiplier_and_tax(self, service, user, plan, panel_settings):
        panel_settings.set("tax_rate", "10")
        location = LocationFactory(multiplier=Decimal("1.5"))

        quote = service.quote(user, _request(plan, location))

        assert quote.breakdown.final_charge == Decimal("33.00")
        assert quote.breakdown.usd_charge == Decimal("33.00")


# ============================================================================
# Credits checkout
# ============================================================================


class TestCreditsCheckout:
    def test_success_records_everything_once(self, service, user, plan, location, panel_mock, freeze_time):
        with freeze_time("2026-03-01 12:00:00"):
            now = timezone.now()
            result = service.checkout(user, _request(plan, location))

        assert result.state == OrderState.RECORDED
        user.refresh_from_db()
        assert user.balance == Decimal("30.00")

        server = ActiveServer.objects.get(user=user)
        assert server.status == ActiveServer.Status.ACTIVE
        assert server.renewal_date == now + timedelta(days=30)
        assert server.ptero_server_id in panel_mock.servers
        assert server.ptero_identifier

        invoice = Invoice.objects.get(user=user)
        assert invoice.status == Invoice.Status.PAID
        assert invoice.type == Invoice.Type.PURCHASE
        assert invoice.amount == Decimal("20.00")
        assert invoice.server == server
        assert invoice.transaction_id.startswith("TXN_")
        assert invoice.description == f"Minecraft Starter - {location}"
        assert result.panel_password

    def test_payload_sent_to_panel(self, service, user, plan, location, panel_mock):
        service.checkout(user, _request(plan, location, env_overrides={"MINECRAFT_VERSION": "1.21"}))

        payload = panel_mock.created_payloads[0]
        assert payload["name"] == "survival"
        assert payload["deploy"]["locations"] == [3]
        assert payload["environment"]["MINECRAFT_VERSION"] == "1.21"
        assert payload["docker_image"] == plan.docker_image
        assert payload["feature_limits"]["allocations"] == 1

    def test_default_server_name(self, service, user, plan, location, panel_mock):
        service.checkout(user, CheckoutRequest(plan_id=plan.pk, location_id=location.pk))
        assert panel_mock.created_payloads[0]["name"] == "testuser's Minecraft Starter"

    def test_insufficient_balance_touches_nothing(self, service, user, location, panel_mock, responses):
        plan = PlanFactory(price=Decimal("100.00"))

        with pytest.raises(InsufficientFunds):
            service.checkout(user, _request(plan, location))

        assert not responses.calls
        assert not ActiveServer.objects.exists()
        assert not Invoice.objects.exists()

    def test_provisioning_failure_moves_no_money(self, service, user, plan, location, panel_mock):
        coupon = CouponFactory(code="SPRING", max_uses=5)
        panel_mock.fail_create = "No allocations available"

        result = service.checkout(user, _request(plan, location, coupon_code="SPRING"))

        assert result.state == OrderState.PROVISION_FAILED
        user.refresh_from_db()
        assert user.balance == Decimal("50.00")
        server = ActiveServer.objects.get(user=user)
        assert server.status == ActiveServer.Status.FAILED
        assert "No allocations available" in server.failure_reason
        assert server.order_payload["coupon_id"] == coupon.pk
        assert not Invoice.objects.exists()
        coupon.refresh_from_db()
        assert coupon.uses == 0

    def test_coupon_with_one_use_applies_once(self, service, user, plan, location, panel_mock):
        coupon = CouponFactory(code="ONCE", max_uses=1, discount_percent=Decimal("10"))

        service.checkout(user, _request(plan, location, coupon_code="ONCE"))
        service.checkout(user, _request(plan, location, coupon_code="ONCE"))

        first, second = Invoice.objects.order_by("pk")
        assert first.coupon == coupon
        assert first.amount == Decimal("18.00")
        assert second.coupon is None
        assert second.amount == Decimal("20.00")
        coupon.refresh_from_db()
        assert coupon.uses == 1
        user.refresh_from_db()
        assert user.balance == Decimal("12.00")

    def test_concurrent_checkout_rejected(self, service, user, plan, location, panel_mock):
        with task_lock(f"checkout:user:{user.pk}", 60):
            with pytest.raises(CheckoutInProgress):
                service.checkout(user, _request(plan, location))

    def test_billing_details_saved(self, service, user, plan, location, panel_mock):
        service.checkout(
            user, _request(plan, location, billing_address="1 Main St", gst_number="22AAAAA0000A1Z5")
        )
        user.refresh_from_db()
        assert user.gst_number == "22AAAAA0000A1Z5"
        assert Invoice.objects.get().billing_address == "1 Main St"

    def test_buyer_egg_only_when_plan_allows(self, service, user, location, panel_mock):
        panel_mock.add_egg(2, 9)
        plan = PlanFactory(allow_egg_selection=True)

        service.checkout(user, _request(plan, location, nest_id=2, egg_id=9))

        payload = panel_mock.created_payloads[0]
        assert payload["egg"] == 9
        # Plan image belongs to the plan's own egg
        assert payload["docker_image"] == "ghcr.io/pterodactyl/yolks:java_17"
        assert payload["startup"] == "java -jar server.jar"


# ============================================================================
# Redirect checkout
# ============================================================================


class TestRedirectCheckout:
    def test_stripe_round_trip(self, service, user, plan, location, panel_mock, stripe_mock):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))

        assert started.state == OrderState.PAYMENT_PENDING
        assert started.redirect_url.startswith("https://checkout.stripe.test/")
        assert not ActiveServer.objects.exists()
        pending = started.pending_payment
        assert pending.payload["final_price"] == "20.00"

        stripe_mock.pay(pending.gateway_reference)
        result = service.complete_callback(pending.merchant_order_id)

        assert result.state == OrderState.RECORDED
        assert result.invoice.payment_method == "stripe"
        assert result.invoice.transaction_id == f"pi_{pending.gateway_reference}"
        pending.refresh_from_db()
        assert pending.status == PendingPayment.Status.COMPLETED
        user.refresh_from_db()
        assert user.balance == Decimal("50.00")

    def test_duplicate_callback_is_a_no_op(self, service, user, plan, location, panel_mock, stripe_mock):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.pay(started.pending_payment.gateway_reference)
        first = service.complete_callback(started.pending_payment.merchant_order_id)

        again = service.complete_callback(started.pending_payment.merchant_order_id)

        assert again.duplicate
        assert again.state == OrderState.RECORDED
        assert again.server == first.server
        assert again.invoice == first.invoice
        assert len(panel_mock.created_payloads) == 1
        assert Invoice.objects.count() == 1

    def test_unpaid_callback_stays_pending(self, service, user, plan, location, panel_mock, stripe_mock):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        result = service.complete_callback(started.pending_payment.merchant_order_id)
        assert result.state == OrderState.PAYMENT_PENDING
        assert not panel_mock.created_payloads

    def test_expired_session(self, service, user, plan, location, panel_mock, stripe_mock):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.expire(started.pending_payment.gateway_reference)
        result = service.complete_callback(started.pending_payment.merchant_order_id)
        assert result.state == OrderState.PAYMENT_FAILED

    def test_unconfigured_gateway(self, service, user, plan, location):
        with pytest.raises(ConfigurationError):
            service.checkout(user, _request(plan, location, payment_method="paypal"))
        assert not PendingPayment.objects.exists()

    def test_paid_but_not_provisioned_needs_reconciliation(
        self, service, user, plan, location, panel_mock, stripe_mock
    ):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.pay(started.pending_payment.gateway_reference)
        panel_mock.fail_create = "Node offline"

        result = service.complete_callback(started.pending_payment.merchant_order_id)

        assert result.state == OrderState.PROVISION_FAILED
        pending = PendingPayment.objects.get()
        assert pending.status == PendingPayment.Status.NEEDS_RECONCILIATION
        assert list(service.list_needing_reconciliation()) == [pending]
        assert result.server.pending_payment == pending
        assert not Invoice.objects.exists()


    def test_unreadable_panel_reply_goes_to_reconciliation(
        self, service, user, plan, location, panel_mock, stripe_mock
    ):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.pay(started.pending_payment.gateway_reference)
        panel_mock.login_page = True

        result = service.complete_callback(started.pending_payment.merchant_order_id)

        assert result.state == OrderState.PROVISION_FAILED
        pending = PendingPayment.objects.get()
        assert pending.status == PendingPayment.Status.NEEDS_RECONCILIATION
        assert list(service.list_needing_reconciliation()) == [pending]
        assert "unreadable response" in result.server.failure_reason


# ============================================================================
# Panel replies that are not errors but are not usable either
# ============================================================================


class TestMalformedPanelReplies:
    def test_html_reply_records_failed_server(self, service, user, plan, location, panel_mock):
        panel_mock.login_page = True

        result = service.checkout(user, _request(plan, location))

        assert result.state == OrderState.PROVISION_FAILED
        server = ActiveServer.objects.get(user=user)
        assert server.status == ActiveServer.Status.FAILED
        assert "unreadable response" in server.failure_reason
        user.refresh_from_db()
        assert user.balance == Decimal("50.00")
        assert not Invoice.objects.exists()

    def test_unexpected_error_records_failed_server_and_frees_coupon(
        self, service, user, plan, location, panel_mock, monkeypatch
    ):
        coupon = CouponFactory(code="SPRING", max_uses=1)

        def broken_create(self, spec):
            raise RuntimeError("boom")

        monkeypatch.setattr("provisioning.pterodactyl.PanelClient.create_server", broken_create)

        result = service.checkout(user, _request(plan, location, coupon_code="SPRING"))

        assert result.state == OrderState.PROVISION_FAILED
        assert result.server.failure_reason == "Provisioning failed unexpectedly (RuntimeError)"
        coupon.refresh_from_db()
        assert coupon.uses == 0
        assert not Invoice.objects.exists()


# ============================================================================
# One coupon, several buyers
# ============================================================================


class TestSharedCoupon:
    def test_parked_payment_loses_last_use(self, service, user, plan, location, panel_mock, stripe_mock):
        coupon = CouponFactory(code="HALF", max_uses=1, discount_percent=Decimal("50"))
        buyer = UserFactory()
        parked = service.checkout(buyer, _request(plan, location, payment_method="stripe", coupon_code="HALF"))
        assert parked.pending_payment.payload["final_price"] == "10.00"

        first = service.checkout(user, _request(plan, location, coupon_code="HALF"))
        stripe_mock.pay(parked.pending_payment.gateway_reference)
        late = service.complete_callback(parked.pending_payment.merchant_order_id)

        assert first.state == OrderState.RECORDED
        assert first.invoice.coupon == coupon
        assert late.state == OrderState.PROVISION_FAILED
        assert "HALF" in late.server.failure_reason
        assert Invoice.objects.count() == 1
        assert len(panel_mock.created_payloads) == 1
        pending = PendingPayment.objects.get(user=buyer)
        assert pending.status == PendingPayment.Status.NEEDS_RECONCILIATION
        coupon.refresh_from_db()
        assert coupon.uses == 1

    def test_credits_order_repriced_when_coupon_runs_out(
        self, service, user, plan, location, panel_mock, monkeypatch
    ):
        coupon = CouponFactory(code="HALF", max_uses=1, discount_percent=Decimal("50"))
        quote = service.quote

        def quote_then_lose_coupon(*args, **kwargs):
            priced = quote(*args, **kwargs)
            Coupon.objects.filter(pk=coupon.pk).update(uses=1)
            return priced

        monkeypatch.setattr(service, "quote", quote_then_lose_coupon)

        result = service.checkout(user, _request(plan, location, coupon_code="HALF"))

        assert result.state == OrderState.RECORDED
        assert result.invoice.coupon is None
        assert result.invoice.amount == Decimal("20.00")
        assert result.server.order_payload["coupon_id"] is None
        user.refresh_from_db()
        assert user.balance == Decimal("30.00")
        coupon.refresh_from_db()
        assert coupon.uses == 1

    def test_repriced_order_still_needs_funds(
        self, service, location, panel_mock, monkeypatch
    ):
        buyer = UserFactory(balance=Decimal("15.00"))
        plan = PlanFactory(price=Decimal("20.00"))
        coupon = CouponFactory(code="HALF", max_uses=1, discount_percent=Decimal("50"))
        quote = service.quote

        def quote_then_lose_coupon(*args, **kwargs):
            priced = quote(*args, **kwargs)
            Coupon.objects.filter(pk=coupon.pk).update(uses=1)
            return priced

        monkeypatch.setattr(service, "quote", quote_then_lose_coupon)

        with pytest.raises(InsufficientFunds, match="HALF"):
            service.checkout(buyer, _request(plan, location, coupon_code="HALF"))

        assert not panel_mock.created_payloads
        assert not ActiveServer.objects.exists()
        buyer.refresh_from_db()
        assert buyer.balance == Decimal("15.00")


# ============================================================================
# Retry and cancel
# ============================================================================


class TestRetryProvisioning:
    def _failed_credits_order(self, service, user, plan, location, panel_mock):
        panel_mock.fail_create = "Node offline"
        service.checkout(user, _request(plan, location))
        panel_mock.fail_create = None
        return ActiveServer.objects.get(user=user)

    def test_retry_records_once(self, service, user, plan, location, panel_mock):
        server = self._failed_credits_order(service, user, plan, location, panel_mock)

        result = service.retry_provisioning(server)

        assert result.state == OrderState.RECORDED
        server.refresh_from_db()
        assert server.status == ActiveServer.Status.ACTIVE
        assert server.failure_reason is None
        assert ActiveServer.objects.count() == 1
        assert Invoice.objects.filter(server=server).count() == 1
        user.refresh_from_db()
        assert user.balance == Decimal("30.00")
        # Panel account from the first attempt is reused
        assert len(panel_mock.users) == 1

    def test_failed_retry_updates_reason(self, service, user, plan, location, panel_mock):
        server = self._failed_credits_order(service, user, plan, location, panel_mock)
        panel_mock.fail_create = "Still offline"

        result = service.retry_provisioning(server)

        assert result.state == OrderState.PROVISION_FAILED
        assert "Still offline" in result.server.failure_reason
        assert not Invoice.objects.exists()

    def test_retry_needs_balance(self, service, user, plan, location, panel_mock):
        server = self._failed_credits_order(service, user, plan, location, panel_mock)
        type(user).objects.filter(pk=user.pk).update(balance=Decimal("5.00"))

        with pytest.raises(InsufficientFunds):
            service.retry_provisioning(server)

    def test_only_failed_servers(self, service):
        with pytest.raises(AlreadyProcessed):
            service.retry_provisioning(
                ActiveServer(status=ActiveServer.Status.ACTIVE, order_payload={})
            )

    def test_external_payment_retry_completes_payment(
        self, service, user, plan, location, panel_mock, stripe_mock
    ):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.pay(started.pending_payment.gateway_reference)
        panel_mock.fail_create = "Node offline"
        server = service.complete_callback(started.pending_payment.merchant_order_id).server
        panel_mock.fail_create = None

        result = service.retry_provisioning(ActiveServer.objects.get(pk=server.pk))

        assert result.state == OrderState.RECORDED
        assert result.invoice.transaction_id.startswith("pi_")
        assert PendingPayment.objects.get().status == PendingPayment.Status.COMPLETED
        user.refresh_from_db()
        assert user.balance == Decimal("50.00")

    def test_retry_blocked_after_reconciliation(
        self, service, user, plan, location, panel_mock, stripe_mock
    ):
        started = service.checkout(user, _request(plan, location, payment_method="stripe"))
        stripe_mock.pay(started.pending_payment.gateway_reference)
        panel_mock.fail_create = "Node offline"
        server = service.complete_callback(started.pending_payment.merchant_order_id).server
        mark_reconciled(PendingPayment.objects.get(), "Refunded")

        with pytest.raises(AlreadyProcessed):
            service.retry_provisioning(ActiveServer.objects.get(pk=server.pk))


class TestCancel:
    def test_cancel_active(self, service):
        server = ActiveServerFactory()
        assert service.cancel(server)
        assert server.status == ActiveServer.Status.CANCELLED

    def test_cancel_failed_is_refused(self, service):
        server = ActiveServerFactory(status=ActiveServer.Status.FAILED)
        assert not service.cancel(server)
