import json
from decimal import Decimal
from urllib.parse import parse_qs

import pytest

from main.factories import CurrencyFactory, PaymentGatewayFactory, UserFactory
from orders.services.exceptions import ConfigurationError, InsufficientFunds, PaymentDeclined
from payments.gateways import IMMEDIATE, REDIRECT, OrderContext, get_gateway
from payments.gateways.paypal import PayPalCredentials
from payments.services import park_payment, start_redirect

pytestmark = pytest.mark.django_db


def _context(user, **kwargs):
    defaults = dict(
        merchant_order_id="ORD1",
        amount=Decimal("20.00"),
        currency="USD",
        amount_usd=Decimal("20.00"),
        description="Minecraft Starter - Server: survival",
        user=user,
        return_url="https://billing.plexa.test/api/payments/callback/?merchant_order_id=ORD1",
    )
    defaults.update(kwargs)
    return OrderContext(**defaults)


# ============================================================================
# Registry / configuration
# ============================================================================


class TestGetGateway:
    def test_unknown_gateway(self):
        with pytest.raises(ConfigurationError):
            get_gateway("bitcoin")

    def test_credits_needs_no_row(self):
        assert get_gateway("credits").requires_redirect is False

    def test_disabled_gateway_is_unavailable(self):
        PaymentGatewayFactory(name="stripe", enabled=False)
        with pytest.raises(ConfigurationError):
            get_gateway("stripe")

    def test_missing_credentials_fail_before_any_call(self, responses):
        PaymentGatewayFactory(name="paypal", config={"clientId": "abc"})
        with pytest.raises(ConfigurationError):
            get_gateway("paypal")
        assert len(responses.calls) == 0

    def test_credential_aliases(self):
        creds = PayPalCredentials.from_config(
            "paypal", {"clientId": "id", "clientSecret": "sec", "unknown": "x"}
        )
        assert creds.client_id == "id"
        assert creds.secret == "sec"
        assert creds.environment == "sandbox"


# ============================================================================
# Credits
# ============================================================================


class TestCreditsGateway:
    def test_immediate_when_balance_covers(self):
        user = UserFactory(balance=Decimal("50.00"))
        result = get_gateway("credits").initiate(_context(user))
        assert result.mode == IMMEDIATE

    def test_insufficient_balance(self):
        user = UserFactory(balance=Decimal("19.99"))
        with pytest.raises(InsufficientFunds):
            get_gateway("credits").initiate(_context(user))

    def test_initiate_does_not_debit(self):
        user = UserFactory(balance=Decimal("50.00"))
        get_gateway("credits").initiate(_context(user))
        user.refresh_from_db()
        assert user.balance == Decimal("50.00")


# ============================================================================
# Stripe
# ============================================================================


class TestStripeGateway:
    def test_initiate_creates_checkout_session(self, stripe_mock, responses):
        user = UserFactory()
        result = get_gateway("stripe").initiate(
            _context(user, amount=Decimal("941.22"), currency="INR")
        )

        assert result.mode == REDIRECT
        assert result.target.startswith("https://checkout.stripe.test/pay/")
        form = parse_qs(responses.calls[0].request.body)
        assert form["line_items[0][price_data][unit_amount]"] == ["94122"]
        assert form["line_items[0][price_data][currency]"] == ["inr"]
        assert form["client_reference_id"] == ["ORD1"]

    def test_zero_decimal_currency_charged_in_whole_units(self, stripe_mock, responses):
        user = UserFactory()
        gateway = get_gateway("stripe")
        pending = park_payment(
            user=user, gateway_name="stripe", purpose="checkout",
            amount=Decimal("3000"), currency_code="JPY", payload={},
        )
        result = start_redirect(
            gateway,
            pending,
            _context(
                user,
                merchant_order_id=pending.merchant_order_id,
                amount=Decimal("3000"),
                currency="JPY",
            ),
        )
        form = parse_qs(responses.calls[0].request.body)
        assert form["line_items[0][price_data][unit_amount]"] == ["3000"]

        stripe_mock.pay(result.reference)
        confirmation = gateway.confirm(pending)
        assert confirmation.currency == "JPY"
        assert confirmation.amount_captured == Decimal("3000")

    def test_rejected_key_is_a_configuration_error(self, stripe_mock):
        stripe_mock.reject_auth = True
        with pytest.raises(ConfigurationError):
            get_gateway("stripe").initiate(_context(UserFactory()))

    def test_confirm_paid_session(self, stripe_mock):
        user = UserFactory()
        gateway = get_gateway("stripe")
        pending = park_payment(
            user=user,
            gateway_name="stripe",
            purpose="checkout",
            amount=Decimal("20.00"),
            currency_code="USD",
            payload={},
        )
        result = start_redirect(gateway, pending, _context(user, merchant_order_id=pending.merchant_order_id))
        stripe_mock.pay(result.reference)

        confirmation = gateway.confirm(pending)

        assert confirmation.settled is True
        assert confirmation.amount_captured == Decimal("20")
        assert confirmation.external_transaction_id == f"pi_{result.reference}"

    def test_confirm_unpaid_session_is_pending(self, stripe_mock):
        user = UserFactory()
        gateway = get_gateway("stripe")
        pending = park_payment(
            user=user, gateway_name="stripe", purpose="checkout",
            amount=Decimal("20.00"), currency_code="USD", payload={},
        )
        start_redirect(gateway, pending, _context(user, merchant_order_id=pending.merchant_order_id))
        assert gateway.confirm(pending).state == "pending"


# ============================================================================
# PayPal
# ============================================================================


class TestPayPalGateway:
    def test_unsupported_currency_falls_back_to_usd(self, paypal_mock, responses):
        user = UserFactory()
        get_gateway("paypal").initiate(
            _context(user, amount=Decimal("5000"), currency="NGN", amount_usd=Decimal("3.25"))
        )
        order_call = [c for c in responses.calls if c.request.url.endswith("/v2/checkout/orders")][0]
        amount = json.loads(order_call.request.body)["purchase_units"][0]["amount"]
        assert amount == {"currency_code": "USD", "value": "3.25"}

    def test_capture_after_approval(self, paypal_mock):
        user = UserFactory()
        gateway = get_gateway("paypal")
        pending = park_payment(
            user=user, gateway_name="paypal", purpose="checkout",
            amount=Decimal("20.00"), currency_code="USD", payload={},
        )
        result = start_redirect(gateway, pending, _context(user, merchant_order_id=pending.merchant_order_id))
        assert "token=" in result.target
        paypal_mock.approve(result.reference)

        confirmation = gateway.confirm(pending)

        assert confirmation.settled
        assert confirmation.amount_captured == Decimal("20.00")
        assert confirmation.external_transaction_id == f"CAP-{result.reference}"

    def test_second_capture_reads_the_order(self, paypal_mock):
        user = UserFactory()
        gateway = get_gateway("paypal")
        pending = park_payment(
            user=user, gateway_name="paypal", purpose="checkout",
            amount=Decimal("20.00"), currency_code="USD", payload={},
        )
        result = start_redirect(gateway, pending, _context(user, merchant_order_id=pending.merchant_order_id))
        paypal_mock.approve(result.reference)
        gateway.confirm(pending)

        again = gateway.confirm(pending)

        assert again.settled
        assert paypal_mock.captures == 1


# ============================================================================
# PhonePe
# ============================================================================


class TestPhonePeGateway:
    def test_salt_index_split_from_secret(self, phonepe_mock):
        user = UserFactory()
        get_gateway("phonepe").initiate(_context(user, currency="INR", amount=Decimal("100.00")))
        token_form = phonepe_mock.token_requests[0]
        assert token_form["client_secret"] == "s3cret"
        assert token_form["client_version"] == "2"

    def test_usd_amount_converted_to_paise(self, phonepe_mock):
        CurrencyFactory(code="INR", rate_to_usd=Decimal("83"))
        user = UserFactory()
        get_gateway("phonepe").initiate(_context(user, merchant_order_id="ORDX"))
        assert phonepe_mock.orders["ORDX"]["amount"] == 166000

    def test_declined_request(self, enable_gateway, responses):
        enable_gateway("phonepe", client_id="M22TEST", client_secret="s3cret")
        host = "https://api-preprod.phonepe.com/apis/pg-sandbox"
        responses.add("POST", f"{host}/v1/oauth/token", json={"access_token": "t"})
        responses.add("POST", f"{host}/checkout/v2/pay", json={"code": "BAD_REQUEST"}, status=400)

        with pytest.raises(PaymentDeclined):
            get_gateway("phonepe").initiate(_context(UserFactory(), currency="INR"))
