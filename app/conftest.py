"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]
    # Idempotency keys are salted with it; keep them stable across runs
    settings.SECRET_KEY = "test-secret-key"


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_views.py, test_tasks.py, test_settlement_engine.py, etc. → integration
    - test_money.py, test_fees.py, test_amounts.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_settlement_engine.py",
        "test_reconciliation_listener.py",
        "test_ledger_store.py",
        "test_registry.py",
    ]

    unit_patterns = [
        "test_money.py",
        "test_fees.py",
        "test_amounts.py",
        "test_models.py",
        "test_notifications.py",
        "test_stripe_adapter.py",
        "test_serializers.py",
        "test_application_errors.py",
    ]

    for item in items:
        # Skip if test already has unit/integration marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration"}:
            continue

        filename = item.path.name

        if filename in integration_patterns:
            item.add_marker(pytest.mark.integration)
        elif filename in unit_patterns:
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def api_client():
    """Unauthenticated DRF test client."""
    from rest_framework.test import APIClient

    return APIClient()


@pytest.fixture
def staff_user(db):
    """Operator account used by the settlement API."""
    from django.contrib.auth import get_user_model

    return get_user_model().objects.create_user(
        username="operator",
        email="operator@example.com",
        password="operator-pass",
        is_staff=True,
    )


@pytest.fixture
def authenticated_client(api_client, staff_user):
    """DRF test client authenticated as the operator."""
    api_client.force_authenticate(user=staff_user)
    return api_client
