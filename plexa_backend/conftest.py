"""
conftest.py - Pytest Configuration
===================================

This file contains pytest configuration and shared fixtures for all tests.

Test Setup:
----------
- Django settings configuration (SQLite unless POSTGRES_HOST is set)
- External service mocking (Pterodactyl panel, Stripe, PayPal, PhonePe)
- Common fixtures for users, clients, authentication
- Time freezing utilities

Markers:
-------
- unit: Fast unit tests (< 100ms)
- integration: Integration tests (< 1s)
- slow: Tests that take > 1s
- database: Tests requiring database access

Running Tests:
-------------
pytest                          # Run all tests
pytest -m unit                  # Run only unit tests
pytest -m "not slow"            # Skip slow tests
pytest -k test_checkout         # Run tests matching pattern
"""

import os
import sys
from pathlib import Path

# Add project root to Python path
BASE_DIR = Path(__file__).resolve().parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

# Set environment variables
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "plexa_backend.settings")
os.environ.setdefault("TESTING", "True")

# Load the shared fixtures defined in tests/fixtures/__init__.py
pytest_plugins = ["tests.fixtures"]


def pytest_configure(config):
    """Configure pytest"""
    from django.conf import settings

    # Disable migrations for faster tests
    settings.MIGRATION_MODULES = {
        "main": None,
        "app_settings": None,
        "payments": None,
        "provisioning": None,
        "orders": None,
        "billing_management": None,
        "affiliates": None,
        "radar": None,
    }

    # Use simple password hasher for faster tests
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Use local memory cache
    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }

    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

    # Run Celery tasks inline
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.CELERY_TASK_EAGER_PROPAGATES = True

    settings.SITE_URL = "https://billing.plexa.test"


def pytest_collection_modifyitems(config, items):
    """Modify test collection"""
    import pytest

    for item in items:
        if "db" in item.fixturenames:
            item.add_marker(pytest.mark.database)

        # Add module markers based on directory
        parts = Path(item.fspath).parts
        if "billing_management" in parts:
            item.add_marker(pytest.mark.billing)
        elif "orders" in parts:
            item.add_marker(pytest.mark.orders)
        elif "radar" in parts:
            item.add_marker(pytest.mark.radar)


def pytest_report_header(config):
    """Add custom header to pytest output"""
    return [
        "Plexa Billing - Test Suite",
        f"Python version: {sys.version.split()[0]}",
        "Django test environment configured",
    ]
