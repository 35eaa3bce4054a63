"""
Normalization of Stripe events into processor notifications.

The reconciliation listener never reads Stripe payloads; it consumes
ProcessorNotification values built here. Charge events rarely carry an
expanded balance transaction, so the processor fee is fetched through the
adapter when the payload lacks it.

Event mapping:
    charge.captured / charge.succeeded (captured) / charge.updated -> capture_succeeded
    payment_intent.succeeded                                       -> capture_succeeded
    charge.refunded / refund.created / refund.updated (succeeded)  -> refund_succeeded

``charge.succeeded`` also fires when a manual-capture hold is placed; such
a charge is not captured yet and produces no notification.

Usage:
    from payments.webhooks.notifications import normalize_stripe_event

    for notification in normalize_stripe_event(event, processor=adapter):
        listener.apply(notification)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from payments.adapters import charge_settlement_from_payload

if TYPE_CHECKING:
    from typing import Any

    from payments.adapters import ChargeSettlement, ProcessorAdapter


logger = logging.getLogger(__name__)


CAPTURE_SUCCEEDED = "capture_succeeded"
REFUND_SUCCEEDED = "refund_succeeded"

CHARGE_CAPTURE_EVENTS = frozenset({"charge.succeeded", "charge.captured", "charge.updated"})
REFUND_EVENTS = frozenset({"charge.refunded", "refund.created", "refund.updated"})


@dataclass(frozen=True)
class ProcessorNotification:
    """
    A processor-side fact about one payment intent.

    Attributes:
        type: capture_succeeded or refund_succeeded
        intent_id: PaymentIntent the fact is about
        event_id: Stripe event that carried it
        amount_cents: Captured (or refunded) amount
        processor_fee_cents: Processor fee, None if not known yet
        net_amount_cents: What the manager's account keeps
        application_fee_cents: Platform fee taken on the charge
        refund_reference: Refund ID for refund notifications
    """

    type: str
    intent_id: str
    event_id: str = ""
    amount_cents: int = 0
    processor_fee_cents: int | None = None
    net_amount_cents: int | None = None
    application_fee_cents: int | None = None
    refund_reference: str | None = None

    @classmethod
    def from_settlement(cls, settlement: ChargeSettlement, event_id: str) -> ProcessorNotification:
        return cls(
            type=CAPTURE_SUCCEEDED,
            intent_id=settlement.intent_id,
            event_id=event_id,
            amount_cents=settlement.amount_cents,
            processor_fee_cents=settlement.processor_fee_cents,
            net_amount_cents=settlement.net_amount_cents,
            application_fee_cents=settlement.application_fee_cents,
        )


def normalize_stripe_event(
    event: dict[str, Any],
    processor: ProcessorAdapter | None = None,
) -> list[ProcessorNotification]:
    """
    Notifications carried by a Stripe event (possibly none).

    Args:
        event: Verified Stripe event payload
        processor: Adapter used to fetch charge fees missing from the payload
    """
    event_type = event.get("type", "")
    event_id = event.get("id", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in CHARGE_CAPTURE_EVENTS:
        if not obj.get("captured"):
            return []
        return [_capture_from_charge(obj, event_id, processor)]

    if event_type == "payment_intent.succeeded":
        charge = obj.get("latest_charge")
        if isinstance(charge, dict):
            return [_capture_from_charge(charge, event_id, processor)]
        if charge and processor is not None:
            settlement = processor.retrieve_charge_settlement(charge)
            return [ProcessorNotification.from_settlement(settlement, event_id)]
        application_fee = obj.get("application_fee_amount")
        amount = int(obj.get("amount_received") or 0)
        return [
            ProcessorNotification(
                type=CAPTURE_SUCCEEDED,
                intent_id=obj.get("id", ""),
                event_id=event_id,
                amount_cents=amount,
                net_amount_cents=amount - int(application_fee) if application_fee is not None else None,
                application_fee_cents=int(application_fee) if application_fee is not None else None,
            )
        ]

    if event_type == "charge.refunded":
        refunds = (obj.get("refunds") or {}).get("data") or []
        return [
            _refund_notification(refund, event_id, intent_id=obj.get("payment_intent"))
            for refund in refunds
            if refund.get("status") == "succeeded"
        ]

    if event_type in REFUND_EVENTS:
        if obj.get("status") != "succeeded":
            return []
        return [_refund_notification(obj, event_id)]

    logger.debug("Stripe event carries no settlement facts", extra={"event_type": event_type})
    return []


def _capture_from_charge(
    charge: dict[str, Any],
    event_id: str,
    processor: ProcessorAdapter | None,
) -> ProcessorNotification:
    settlement = charge_settlement_from_payload(charge)
    if settlement.processor_fee_cents is None and processor is not None and settlement.charge_id:
        # Balance transaction not expanded in the event; fetch it
        settlement = processor.retrieve_charge_settlement(settlement.charge_id)
    return ProcessorNotification.from_settlement(settlement, event_id)


def _refund_notification(
    refund: dict[str, Any],
    event_id: str,
    intent_id: str | None = None,
) -> ProcessorNotification:
    return ProcessorNotification(
        type=REFUND_SUCCEEDED,
        intent_id=refund.get("payment_intent") or intent_id or "",
        event_id=event_id,
        amount_cents=int(refund.get("amount") or 0),
        refund_reference=refund.get("id"),
    )
