from datetime import timedelta
from decimal import Decimal

import factory

from django.contrib.auth import get_user_model
from django.utils import timezone

from affiliates.models import Affiliate
from app_settings.models import PaymentGateway, Setting

from .models import ActiveServer, Coupon, Currency, Invoice, Location, Plan, PlanPrice

User = get_user_model()


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.Sequence(lambda n: f"user{n}@example.com")
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    first_name = factory.Faker("first_name")
    is_active = True
    balance = Decimal("0.00")
    preferred_currency = "USD"


class StaffUserFactory(UserFactory):
    is_staff = True


class CurrencyFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Currency
        django_get_or_create = ("code",)

    code = "INR"
    symbol = "₹"
    rate_to_usd = Decimal("83.000000")
    is_active = True


class LocationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Location

    short = factory.Sequence(lambda n: f"loc{n}")
    long_name = factory.Sequence(lambda n: f"Location {n}")
    panel_location_id = factory.Sequence(lambda n: n + 1)
    multiplier = Decimal("1.000")
    is_public = True
    is_sold_out = False


class PlanFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Plan

    name = factory.Sequence(lambda n: f"Plan {n}")
    price = Decimal("20.00")
    billing_period = Plan.BillingPeriod.MONTHLY
    ram = 2048
    cpu = 100
    disk = 10240
    db_count = 1
    allocations = 0
    backups = 1
    nest_id = 1
    egg_id = 5
    docker_image = "ghcr.io/pterodactyl/yolks:java_17"
    startup_cmd = "java -Xms128M -jar {{SERVER_JARFILE}}"
    environment_config = factory.LazyFunction(dict)
    is_visible = True
    is_out_of_stock = False


class PlanPriceFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PlanPrice

    plan = factory.SubFactory(PlanFactory)
    currency_code = "INR"
    price = Decimal("1499.00")


class CouponFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Coupon

    code = factory.Sequence(lambda n: f"SAVE{n}")
    discount_percent = Decimal("10.00")
    max_uses = 0
    uses = 0
    is_active = True


class ActiveServerFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ActiveServer

    user = factory.SubFactory(UserFactory)
    plan = factory.SubFactory(PlanFactory)
    location = factory.SubFactory(LocationFactory)
    server_name = factory.Sequence(lambda n: f"server-{n}")
    ptero_server_id = factory.Sequence(lambda n: 100 + n)
    ptero_identifier = factory.Sequence(lambda n: f"{n:08x}")
    status = ActiveServer.Status.ACTIVE
    renewal_date = factory.LazyFunction(lambda: timezone.now() + timedelta(days=30))
    nest_id = 1
    egg_id = 5


class InvoiceFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Invoice

    user = factory.SubFactory(UserFactory)
    server = None
    plan = factory.SubFactory(PlanFactory)
    amount = Decimal("20.00")
    currency_code = "USD"
    currency_amount = Decimal("20.00")
    subtotal = Decimal("20.00")
    status = Invoice.Status.PENDING
    type = Invoice.Type.RENEWAL
    due_date = factory.LazyFunction(timezone.now)


class AffiliateFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Affiliate

    user = factory.SubFactory(UserFactory)
    referral_code = factory.Sequence(lambda n: f"REF{n:05d}")
    commission_rate = Decimal("10.00")
    is_active = True


class SettingFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Setting

    key = factory.Sequence(lambda n: f"setting_{n}")
    value = ""


class PaymentGatewayFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PaymentGateway
        django_get_or_create = ("name",)

    name = "stripe"
    display_name = factory.LazyAttribute(lambda o: o.name.title())
    enabled = True
    config = factory.LazyFunction(
        lambda: {"secret_key": "sk_test_123", "publishable_key": "pk_test_123"}
    )
