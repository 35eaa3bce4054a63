"""
State enums for booking models.

These are Django TextChoices for database storage and admin integration,
used as the choices of the django-fsm fields on Booking and LineItem.

Booking status:
    pending → confirmed → cancellation_requested → cancelled
    pending → cancelled
    confirmed → cancelled

Payment status (shared by Booking and LineItem):
    pending → authorized                       hold placed
    authorized → paid                          capture succeeded
    authorized → pending                       capture outcome unknown
    pending → paid | authorized | failed       unknown outcome resolved
    authorized → failed                        hold cancelled / item rejected
    paid → partially_refunded → refunded       unified refund
    paid → refunded
"""

from django.db import models


class BookingStatus(models.TextChoices):
    """
    Lifecycle of a booking (or of a line item mirroring it).

    Terminal state: CANCELLED
    """

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLATION_REQUESTED = "cancellation_requested", "Cancellation Requested"
    CANCELLED = "cancelled", "Cancelled"


class PaymentStatus(models.TextChoices):
    """
    Payment side of a booking or line item.

    A confirmed booking always has PAID or PARTIALLY_REFUNDED.
    """

    PENDING = "pending", "Pending"
    AUTHORIZED = "authorized", "Authorized"
    PAID = "paid", "Paid"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"
    REFUNDED = "refunded", "Refunded"
    FAILED = "failed", "Failed"


#: Payment statuses under which money has been captured and is refundable.
SETTLED_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED)


class LineItemKind(models.TextChoices):
    """Kinds of add-on attached to a primary booking."""

    STORAGE = "storage", "Storage"
    EQUIPMENT = "equipment", "Equipment"


class ExtensionKind(models.TextChoices):
    """Separately authorized charges raised against a confirmed booking."""

    EXTENSION = "extension", "Extension"
    PENALTY = "penalty", "Penalty"


class ExtensionStatus(models.TextChoices):
    """
    Lifecycle of an extension or penalty charge.

    State Flow:
        PENDING → AUTHORIZED → APPROVED
        AUTHORIZED → REJECTED | EXPIRED
        APPROVED → REFUNDED
    """

    PENDING = "pending", "Pending"
    AUTHORIZED = "authorized", "Authorized"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    EXPIRED = "expired", "Expired"
    REFUNDED = "refunded", "Refunded"
