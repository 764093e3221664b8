"""
Shared Test Fixtures
====================

This module provides pytest fixtures shared across all test modules.

Available Fixtures:
------------------
- api_client / authenticated_api_client / admin_api_client: DRF clients
- user, staff_user: users with a funded or empty balance
- responses: a RequestsMock that fails on any unmocked HTTP call
- panel_settings: panel URL and keys stored in the settings table
- panel_mock: Mocked Pterodactyl application + client API
- stripe_mock, paypal_mock, phonepe_mock: Mocked redirect gateways
- freeze_time: Time freezing utility

Usage:
-----
def test_example(authenticated_api_client, panel_mock):
    response = authenticated_api_client.post('/api/orders/checkout/', {...})
    assert response.status_code == 201
"""

from datetime import datetime
from decimal import Decimal

import pytest
import responses as responses_lib
from freezegun import freeze_time as freezegun_freeze_time
from rest_framework.test import APIClient

from django.contrib.auth import get_user_model
from django.core.cache import cache

from app_settings.services import settings_provider
from main.factories import LocationFactory, PaymentGatewayFactory, PlanFactory
from tests.mocks.gateways import PayPalMock, PhonePeMock, StripeMock
from tests.mocks.pterodactyl import PANEL_URL, PanelMock

User = get_user_model()


# ============================================================================
# CLIENT FIXTURES
# ============================================================================


@pytest.fixture
def api_client():
    """DRF API client"""
    return APIClient()


@pytest.fixture
def user(db):
    """Regular customer with $50 of credits"""
    return User.objects.create_user(
        username="testuser",
        email="testuser@plexa.test",
        password="TestPass123!",
        first_name="Test",
        last_name="User",
        balance=Decimal("50.00"),
    )


@pytest.fixture
def admin_user(db):
    """Create admin user"""
    return User.objects.create_superuser(
        username="admin",
        email="admin@plexa.test",
        password="AdminPass123!",
    )


@pytest.fixture
def authenticated_api_client(api_client, user):
    """API client with authenticated regular user"""
    api_client.force_authenticate(user=user)
    return api_client


@pytest.fixture
def admin_api_client(api_client, admin_user):
    """API client with authenticated admin user"""
    api_client.force_authenticate(user=admin_user)
    return api_client


# ============================================================================
# CATALOG FIXTURES
# ============================================================================


@pytest.fixture
def plan(db):
    """$20/month plan bound to nest 1 / egg 5"""
    return PlanFactory(name="Minecraft Starter", price=Decimal("20.00"))


@pytest.fixture
def location(db):
    return LocationFactory(short="eu1", long_name="Frankfurt", panel_location_id=3)


# ============================================================================
# SETTINGS FIXTURES
# ============================================================================


@pytest.fixture
def panel_settings(db):
    """Store panel credentials the way an operator would"""
    settings_provider.set("ptero_url", PANEL_URL)
    settings_provider.set("ptero_api_key", "ptla_test_key")
    settings_provider.set("ptero_client_api_key", "ptlc_test_key")
    return settings_provider


@pytest.fixture
def enable_gateway(db):
    """Enable a gateway row: ``enable_gateway("paypal", clientId=..., ...)``"""

    def _enable(name, **config):
        return PaymentGatewayFactory(name=name, config=config, enabled=True)

    return _enable


# ============================================================================
# EXTERNAL SERVICE MOCKS
# ============================================================================


@pytest.fixture
def responses():
    """Intercept every outgoing requests call"""
    with responses_lib.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def panel_mock(responses, panel_settings):
    """Mock Pterodactyl panel with the default plan egg registered"""
    mock = PanelMock()
    mock.add_egg(
        1,
        5,
        variables=[
            {
                "env_variable": "SERVER_JARFILE",
                "default_value": "server.jar",
                "user_viewable": True,
                "user_editable": True,
            },
            {
                "env_variable": "MINECRAFT_VERSION",
                "default_value": "latest",
                "user_viewable": True,
                "user_editable": True,
            },
            {
                "env_variable": "BUILD_TOKEN",
                "default_value": "",
                "user_viewable": False,
                "user_editable": False,
            },
        ],
    )
    mock.register_responses(responses)
    return mock


@pytest.fixture
def stripe_mock(responses, enable_gateway):
    enable_gateway("stripe", secret_key="sk_test_123", publishable_key="pk_test_123")
    mock = StripeMock()
    mock.register_responses(responses)
    return mock


@pytest.fixture
def paypal_mock(responses, enable_gateway):
    enable_gateway("paypal", clientId="client-123", clientSecret="secret-456", environment="sandbox")
    mock = PayPalMock()
    mock.register_responses(responses)
    return mock


@pytest.fixture
def phonepe_mock(responses, enable_gateway):
    enable_gateway("phonepe", client_id="M22TEST", client_secret="s3cret###2", environment="sandbox")
    mock = PhonePeMock()
    mock.register_responses(responses)
    return mock


# ============================================================================
# TIME FIXTURES
# ============================================================================


@pytest.fixture
def freeze_time():
    """Freeze time utility"""

    def _freeze(time_to_freeze=None):
        if time_to_freeze is None:
            time_to_freeze = datetime.now()
        return freezegun_freeze_time(time_to_freeze)

    return _freeze


# ============================================================================
# CLEANUP FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def clear_cache():
    """Start and end every test with an empty cache"""
    cache.clear()
    yield
    cache.clear()
