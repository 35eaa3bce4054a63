"""Tests for the processor adapters."""
