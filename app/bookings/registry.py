"""
Line-item registry and denormalized snapshot synchronization.

The registry is the settlement engine's view of a booking's add-ons: it
validates approval decisions, sums subtotals and moves line items through
their state transitions. The snapshot helpers keep the copy embedded in
``Booking.line_item_snapshot`` in step with the LineItem rows.

Snapshot entry format:
    {
        "id": "<uuid>",
        "kind": "storage",
        "name": "Dry storage shelf",
        "price_cents": 2000,
        "status": "cancelled",
        "payment_status": "failed",
        "rejected": true,
    }

Usage:
    from bookings.registry import LineItemRegistry, ensure_snapshot_consistency

    registry = LineItemRegistry(booking)
    approved, rejected = registry.partition(approved_ids, rejected_ids)
    subtotal = registry.subtotal(approved, include_base=True)

    # At the end of every settlement operation
    ensure_snapshot_consistency(booking.id)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from bookings.models import Booking, LineItem
from bookings.states import BookingStatus, PaymentStatus
from payments.exceptions import InvalidStateTransitionError, PaymentValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from typing import Any
    from uuid import UUID


logger = logging.getLogger(__name__)


# =============================================================================
# Registry
# =============================================================================


class LineItemRegistry:
    """
    Line items of one booking, as loaded at the start of an operation.

    Items are read once and cached; the engine takes its reads at the start
    of an operation and writes back at the end.
    """

    def __init__(self, booking: Booking):
        self.booking = booking
        self._items: list[LineItem] | None = None

    @property
    def items(self) -> list[LineItem]:
        if self._items is None:
            self._items = list(self.booking.line_items.order_by("created_at", "id"))
        return self._items

    def get_many(self, line_item_ids: Iterable[UUID | str]) -> list[LineItem]:
        """
        Resolve ids to this booking's line items.

        Raises:
            PaymentValidationError: If any id does not belong to the booking
        """
        by_id = {str(item.id): item for item in self.items}
        wanted = [str(item_id) for item_id in line_item_ids]
        unknown = [item_id for item_id in wanted if item_id not in by_id]
        if unknown:
            raise PaymentValidationError(
                "Line items do not belong to this booking",
                error_code="UNKNOWN_LINE_ITEMS",
                details={"booking_id": str(self.booking.id), "line_item_ids": unknown},
            )
        # dict.fromkeys keeps order and drops duplicates
        return [by_id[item_id] for item_id in dict.fromkeys(wanted)]

    def partition(
        self,
        approved_ids: Iterable[UUID | str],
        rejected_ids: Iterable[UUID | str],
    ) -> tuple[list[LineItem], list[LineItem]]:
        """
        Split the booking's open line items into approved and rejected.

        Items named in neither list are approved: approving the booking
        approves every add-on the manager did not explicitly reject.

        Raises:
            PaymentValidationError: Unknown ids, an id in both lists, or a
                decision on an item that is already cancelled
        """
        approved = self.get_many(approved_ids)
        rejected = self.get_many(rejected_ids)

        overlap = {str(item.id) for item in approved} & {str(item.id) for item in rejected}
        if overlap:
            raise PaymentValidationError(
                "Line items cannot be both approved and rejected",
                error_code="CONFLICTING_DECISION",
                details={"line_item_ids": sorted(overlap)},
            )

        closed = [str(item.id) for item in approved + rejected if item.status == BookingStatus.CANCELLED]
        if closed:
            raise PaymentValidationError(
                "Line items are already cancelled",
                error_code="LINE_ITEMS_CLOSED",
                details={"line_item_ids": closed},
            )

        rejected_set = {item.id for item in rejected}
        approved = [
            item
            for item in self.items
            if item.id not in rejected_set and item.status != BookingStatus.CANCELLED
        ]
        return approved, rejected

    def open_items(self) -> list[LineItem]:
        """Line items that are not cancelled."""
        return [item for item in self.items if item.status != BookingStatus.CANCELLED]

    def refundable_items(self) -> list[LineItem]:
        """Line items whose money was captured and not yet refunded."""
        return [item for item in self.items if item.is_refundable]

    def subtotal(self, items: Sequence[LineItem], *, include_base: bool) -> int:
        """Pre-tax subtotal of ``items``, plus the booking base price if asked."""
        total = sum(item.price_cents for item in items)
        if include_base:
            total += self.booking.base_price_cents
        return total

    # =========================================================================
    # State changes
    # =========================================================================

    def mark_authorized(self, items: Iterable[LineItem]) -> None:
        for item in items:
            if item.payment_status == PaymentStatus.PENDING:
                self._apply(item, item.authorize)

    def mark_approved(self, items: Iterable[LineItem]) -> None:
        """Captured with the booking: paid and confirmed."""
        for item in items:
            self._apply(item, item.mark_paid, item.confirm)

    def mark_rejected(self, items: Iterable[LineItem]) -> None:
        """Released without capture: payment failed and item cancelled."""
        for item in items:
            self._apply(item, item.mark_failed, item.cancel)

    def mark_refunded(self, items: Iterable[LineItem]) -> None:
        """Captured money returned: refunded and item cancelled."""
        for item in items:
            if item.status == BookingStatus.CANCELLED:
                self._apply(item, item.mark_refunded)
            else:
                self._apply(item, item.mark_refunded, item.cancel)

    def mark_cancelled(self, items: Iterable[LineItem]) -> None:
        """Cancelled with payment left untouched (manual settlement)."""
        for item in items:
            if item.status != BookingStatus.CANCELLED:
                self._apply(item, item.cancel)

    @staticmethod
    def _apply(item: LineItem, *steps) -> None:
        try:
            for step in steps:
                step()
        except TransitionNotAllowed as e:
            raise InvalidStateTransitionError(
                f"Line item {item.id} cannot move from {item.status}/{item.payment_status}",
                details={
                    "line_item_id": str(item.id),
                    "status": item.status,
                    "payment_status": item.payment_status,
                    "transition": getattr(step, "__name__", ""),
                },
            ) from e
        item.save(update_fields=["status", "payment_status", "updated_at"])


# =============================================================================
# Denormalized Snapshot
# =============================================================================


def snapshot_entry(item: LineItem) -> dict[str, Any]:
    """Snapshot representation of one line item."""
    return {
        "id": str(item.id),
        "kind": item.kind,
        "name": item.name,
        "price_cents": item.price_cents,
        "status": item.status,
        "payment_status": item.payment_status,
        "rejected": item.is_rejected,
    }


def build_snapshot(items: Iterable[LineItem]) -> list[dict[str, Any]]:
    return [snapshot_entry(item) for item in items]


def ensure_snapshot_consistency(booking_id: UUID | str) -> bool:
    """
    Re-synchronize a booking's embedded snapshot with its line items.

    Reads the current snapshot and the LineItem rows, refreshes every entry
    from its row (``rejected`` follows the row's cancelled/failed state),
    appends entries for items the snapshot is missing, and writes the
    result back if anything differs. Entries whose row no longer exists are
    kept as they are.

    Safe to call any number of times; a second call with no intervening
    change writes nothing. The snapshot is derived data, so the write does
    not bump the booking's version and never makes a concurrent settlement
    conflict.

    Returns:
        True if the snapshot was rewritten
    """
    with transaction.atomic():
        booking = Booking.objects.select_for_update().get(pk=booking_id)
        items = {str(item.id): item for item in booking.line_items.order_by("created_at", "id")}

        current = list(booking.line_item_snapshot or [])
        refreshed: list[dict[str, Any]] = []
        seen: set[str] = set()

        for entry in current:
            item = items.get(str(entry.get("id")))
            if item is None:
                refreshed.append(entry)
                continue
            seen.add(str(item.id))
            refreshed.append({**entry, **snapshot_entry(item)})

        for item_id, item in items.items():
            if item_id not in seen:
                refreshed.append(snapshot_entry(item))

        if refreshed == current:
            return False

        Booking.objects.filter(pk=booking.pk).update(
            line_item_snapshot=refreshed,
            updated_at=timezone.now(),
        )

    logger.info(
        "Line item snapshot re-synchronized",
        extra={
            "booking_id": str(booking_id),
            "rejected": [e["id"] for e in refreshed if e.get("rejected")],
        },
    )
    return True
