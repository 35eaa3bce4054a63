"""
Tests for the health check endpoint.
"""

from __future__ import annotations

from unittest.mock import patch

from django.db import DatabaseError
from django.urls import reverse


def test_healthy(client, db, settings):
    settings.STRIPE_SECRET_KEY = "sk_test_health"

    response = client.get(reverse("health_check"))

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "database": "connected",
        "processor": "configured",
    }


def test_database_unreachable(client, settings):
    settings.STRIPE_SECRET_KEY = ""

    with patch("core.views.connection") as mock_connection:
        mock_connection.cursor.side_effect = DatabaseError("connection refused")
        response = client.get(reverse("health_check"))

    assert response.status_code == 503
    body = response.json()
    assert body["database"] == "disconnected"
    assert body["processor"] == "unconfigured"
