"""
Bookings app: reservations, their add-on line items and extension charges.

This app owns the booking-side state the settlement engine reconciles:

- Booking: the primary reservation with its status and payment status
- LineItem: storage / equipment add-ons priced and approved independently
- BookingExtension: separately authorized extension or penalty charges
- The denormalized line-item snapshot embedded in each Booking row

Money movement lives in the payments app; booking rows are only written by
payments.services.SettlementEngine and by the registry helpers it calls.

Usage:
    from bookings.registry import LineItemRegistry

    registry = LineItemRegistry(booking)
    approved, rejected = registry.partition(approved_ids, rejected_ids)
"""
