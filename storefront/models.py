"""Payment, item and handler-description types shared by fulfillment handlers."""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any


class FulfillmentError(Exception):
    """Raised when a fulfillment handler cannot complete or validate its work."""


class PaymentNotConfirmedError(FulfillmentError):
    """Raised when fulfillment is attempted for a payment that is not confirmed."""

    def __init__(self, message: str = "payment not confirmed") -> None:
        super().__init__(message)


@dataclass
class Payment:
    """A payment for a single item, with optional escrow and fulfillment state."""

    id: str = ""
    item_id: str = ""
    status: str = ""
    amount: str = ""
    currency: str = ""
    payer_info: dict[str, Any] | None = None
    escrow_enabled: bool = False
    escrow_state: str = ""
    escrow_timeout: _dt.datetime | None = None
    shipping_info: dict[str, Any] | None = None
    fulfillment_result: dict[str, Any] | None = None
    dispute_reason: str | None = None
    dispute_resolution: str | None = None

    def is_confirmed(self) -> bool:
        """Return True when the payment has been confirmed."""
        return self.status == "confirmed"


@dataclass
class Item:
    """A catalogue item together with its fulfillment backend configuration."""

    id: str = ""
    name: str = ""
    description: str = ""
    price: str = ""
    currency: str = ""
    backend_type: str = ""
    backend_config: dict[str, Any] | None = None


@dataclass
class HandlerConfig:
    """Typed read access to a handler's free-form settings mapping."""

    settings: dict[str, Any] | None = None

    def get_string(self, key: str) -> str:
        """Return the string stored at ``key``, or an empty string."""
        value = (self.settings or {}).get(key)
        return value if isinstance(value, str) else ""

    def get_int(self, key: str) -> int:
        """Return the number stored at ``key`` as an int, or 0."""
        value = (self.settings or {}).get(key)
        if isinstance(value, bool):
            return 0
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        return 0


@dataclass(frozen=True)
class Field:
    """Description of one configuration field a handler accepts."""

    name: str
    type: str
    description: str
    example: str = ""
    validation: str = ""
    required: bool = False


@dataclass(frozen=True)
class HandlerMetadata:
    """Discovery information about a fulfillment handler."""

    type: str
    display_name: str
    description: str
    required_fields: tuple[Field, ...] = field(default_factory=tuple)
    optional_fields: tuple[Field, ...] = field(default_factory=tuple)