"""
Payments app for booking settlement on Stripe.

This app handles:
- Holds on the payer's card and partial or full capture on approval
- Refunds funded by reversing the manager's transfer
- The settlement ledger (one PaymentTransaction per payment intent)
- Reconciliation of Stripe webhooks against the ledger

Related apps:
    - bookings: Bookings, line items and extensions being settled

Usage:
    from payments.services import SettlementEngine

    engine = SettlementEngine()
    engine.authorize_booking(booking.id)
    engine.decide_approval(booking.id, rejected_line_item_ids=[storage_item.id])
"""
