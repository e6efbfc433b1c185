"""Fulfillment handler that collects a shipping address after payment."""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any, Callable

from storefront.models import (
    Field,
    FulfillmentError,
    HandlerMetadata,
    Item,
    Payment,
    PaymentNotConfirmedError,
)

FORM_URL_TEMPLATE = "https://store.example.com/fulfill/address/{payment_id}"
FORM_TIMEOUT_MINUTES = 60

# Escrow states whose result does not depend on the payment.
_TERMINAL_STATES: dict[str, dict[str, str]] = {
    "released": {
        "status": "completed",
        "escrow_state": "released",
        "message": "Order completed. Funds released to seller.",
    },
    "refunded": {
        "status": "refunded",
        "escrow_state": "refunded",
        "message": "Order cancelled. Funds refunded to buyer.",
    },
}


def _rfc3339(moment: _dt.datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.replace(microsecond=0).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _form_url(payment: Payment) -> str:
    return FORM_URL_TEMPLATE.format(payment_id=payment.id)


class ShippingFormHandler:
    """Serves an address form to the customer; fulfillment itself is manual."""

    def handle(self, payment: Payment, item: Item) -> dict[str, Any]:
        """Return the next step for the customer given the payment's state."""
        if not payment.is_confirmed():
            raise PaymentNotConfirmedError()
        if payment.escrow_enabled:
            return self._handle_escrow(payment)
        return {
            "form_url": _form_url(payment),
            "status": "awaiting_address",
            "timeout_minutes": FORM_TIMEOUT_MINUTES,
            "payment_id": payment.id,
        }

    def _handle_escrow(self, payment: Payment) -> dict[str, Any]:
        terminal = _TERMINAL_STATES.get(payment.escrow_state)
        if terminal is not None:
            return dict(terminal)
        states: dict[str, Callable[[Payment], dict[str, Any]]] = {
            "created": self._created,
            "funded": self._funded,
            "address_submitted": self._address_submitted,
            "shipped": self._shipped,
            "disputed": self._disputed,
        }
        try:
            step = states[payment.escrow_state]
        except KeyError:
            raise FulfillmentError(
                f"unknown escrow state: {payment.escrow_state}"
            ) from None
        return step(payment)

    @staticmethod
    def _created(payment: Payment) -> dict[str, Any]:
        return {
            "status": "awaiting_funding",
            "escrow_state": "created",
            "message": "Waiting for payment to be sent to escrow address",
            "payment_id": payment.id,
        }

    @staticmethod
    def _funded(payment: Payment) -> dict[str, Any]:
        timeout = _rfc3339(payment.escrow_timeout) if payment.escrow_timeout else ""
        return {
            "status": "awaiting_address",
            "form_url": _form_url(payment),
            "escrow_state": "funded",
            "timeout": timeout,
            "message": "Funds held in escrow. Please submit shipping address.",
        }

    @staticmethod
    def _address_submitted(payment: Payment) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": "processing",
            "escrow_state": "address_submitted",
            "message": "Processing order. Funds held in escrow until shipment.",
        }
        if payment.shipping_info is not None:
            result["shipping_address"] = payment.shipping_info
        return result

    @staticmethod
    def _shipped(payment: Payment) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": "shipped",
            "escrow_state": "shipped",
            "message": "Item shipped. Buyer must release funds or file dispute within 7 days.",
        }
        fulfillment = payment.fulfillment_result or {}
        for key in ("tracking_url", "tracking_number"):
            value = fulfillment.get(key)
            if isinstance(value, str):
                result[key] = value
        return result

    @staticmethod
    def _disputed(payment: Payment) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": "disputed",
            "escrow_state": "disputed",
            "message": "Order under dispute resolution with arbiter.",
        }
        if payment.dispute_reason is not None:
            result["dispute_reason"] = payment.dispute_reason
        if payment.dispute_resolution is not None:
            result["dispute_resolution"] = payment.dispute_resolution
        return result

    def validate(self, config: dict[str, Any] | None) -> None:
        """Raise FulfillmentError unless the configuration defines form fields."""
        if "form_fields" not in (config or {}):
            raise FulfillmentError("missing required field: form_fields")

    def metadata(self) -> HandlerMetadata:
        """Describe this handler for discovery and the admin UI."""
        return HandlerMetadata(
            type="shipping_form",
            display_name="Shipping Address Form",
            description=(
                "Collect shipping address from customer after payment. "
                "Manual fulfillment required."
            ),
            required_fields=(
                Field(
                    name="form_fields",
                    type="object",
                    description="Definition of address form fields to collect",
                    example='{"address1": {"label": "Street Address", "required": true}, "city": {...}}',
                    required=True,
                ),
            ),
            optional_fields=(
                Field(
                    name="require_phone",
                    type="boolean",
                    description="Whether phone number is required",
                    example="true",
                ),
                Field(
                    name="require_notes",
                    type="boolean",
                    description="Whether delivery notes field is shown",
                    example="false",
                ),
                Field(
                    name="form_timeout_minutes",
                    type="number",
                    description="Time limit for customer to submit address",
                    example="60",
                ),
            ),
        )


@dataclass
class FormData:
    """A submitted shipping address."""

    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    phone: str = ""
    notes: str = ""
    submitted_at: _dt.datetime = field(
        default_factory=lambda: _dt.datetime.now(_dt.timezone.utc)
    )


def validate_form_data(data: FormData) -> None:
    """Raise FulfillmentError naming the first missing required address field."""
    for name in ("address1", "city", "state", "postal_code", "country"):
        if not getattr(data, name):
            raise FulfillmentError(f"{name} is required")