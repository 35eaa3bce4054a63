"""
Tests for the payments app.

This package contains test modules for:
- test_money.py / test_fees.py / test_amounts.py: Integer money arithmetic
- test_ledger_store.py: LedgerStore writes and invariants
- test_settlement_engine.py: Captures, releases and refunds end to end
- test_reconciliation_listener.py: Processor notifications applied to the ledger
- test_tasks.py: Celery webhook and sweep tasks
- test_views.py: Settlement API endpoints

Usage:
    pytest payments/tests/
    pytest payments/tests/test_settlement_engine.py
"""
