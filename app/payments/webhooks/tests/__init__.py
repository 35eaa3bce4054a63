"""Tests for Stripe webhook intake and processing."""
