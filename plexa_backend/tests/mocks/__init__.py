"""
External Service Mocks
======================

This module provides mock implementations for external services used in tests.

Available Mocks:
---------------
- PanelMock: Mock Pterodactyl application and client API
- StripeMock: Mock Stripe Checkout Sessions
- PayPalMock: Mock PayPal Orders v2
- PhonePeMock: Mock PhonePe Standard Checkout v2

Every mock registers its endpoints on a ``responses.RequestsMock`` so the
real HTTP clients run unchanged.

Usage:
-----
import pytest
from tests.mocks.pterodactyl import PanelMock

@pytest.fixture
def panel_mock(responses):
    mock = PanelMock()
    mock.register_responses(responses)
    return mock

def test_provisioning(panel_mock):
    # Test code here
    assert panel_mock.created_payloads
"""
