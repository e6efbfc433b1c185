"""Fulfillment handler that places orders with print-on-demand providers."""

from __future__ import annotations

import abc
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from storefront.models import (
    Field,
    FulfillmentError,
    HandlerMetadata,
    Item,
    Payment,
    PaymentNotConfirmedError,
)

SUPPORTED_PROVIDERS = frozenset({"printful"})
REQUIRED_CONFIG_FIELDS = ("provider", "api_key", "product_mapping")


@dataclass
class RecipientInfo:
    """Where and to whom a printed order is shipped."""

    name: str
    address: str
    city: str
    state: str = ""
    zip: str = ""
    country: str = ""
    email: str = ""
    phone: str = ""


@dataclass
class OrderRequest:
    """An order to be placed with a provider."""

    recipient_name: str
    recipient_address: str
    recipient_city: str
    recipient_state: str
    recipient_zip: str
    recipient_country: str
    recipient_email: str
    recipient_phone: str
    variant_id: str
    quantity: int = 1
    design_url: str = ""


@dataclass
class OrderResponse:
    """A provider's answer to an accepted order."""

    order_id: str
    external_id: str = ""
    status: str = ""
    tracking_url: str = ""
    shipping_date: str = ""
    created_at: str = ""


@dataclass
class OrderStatus:
    """The current state of an order as reported by its provider."""

    order_id: str
    status: str
    tracking_url: str = ""
    shipping_date: str = ""
    last_updated: str = ""


class Provider(abc.ABC):
    """A print-on-demand service that accepts and tracks orders."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the provider's short name."""

    @abc.abstractmethod
    def create_order(self, request: OrderRequest) -> OrderResponse:
        """Place ``request`` with the provider and return its response."""

    @abc.abstractmethod
    def get_status(self, order_id: str) -> OrderStatus:
        """Return the current status of ``order_id``."""


ProviderFactory = Callable[[str, str], Provider]


@dataclass
class PodOrder:
    """A record of an order created with a print-on-demand provider."""

    provider: str
    order_id: str
    item_id: str
    payment_id: str
    status: str = ""
    tracking_url: str = ""
    estimated_ship_date: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


def _provider_config(backend_config: Mapping[str, Any] | None) -> tuple[str, str]:
    if backend_config is None:
        raise FulfillmentError("missing backend configuration")
    provider_name = backend_config.get("provider")
    if not isinstance(provider_name, str):
        raise FulfillmentError("missing or invalid provider in configuration")
    api_key = backend_config.get("api_key")
    if not isinstance(api_key, str) or not api_key:
        raise FulfillmentError("missing or invalid api_key in configuration")
    return provider_name, api_key


def _item_mapping(backend_config: Mapping[str, Any] | None, item_id: str) -> Mapping[str, Any] | None:
    product_mapping = (backend_config or {}).get("product_mapping")
    if not isinstance(product_mapping, Mapping):
        return None
    mapping = product_mapping.get(item_id)
    return mapping if isinstance(mapping, Mapping) else None


def extract_variant_id(backend_config: Mapping[str, Any] | None, item_id: str) -> str:
    """Return the provider variant id mapped to ``item_id``."""
    product_mapping = (backend_config or {}).get("product_mapping")
    if not isinstance(product_mapping, Mapping):
        raise FulfillmentError("missing or invalid product_mapping in configuration")
    item_mapping = product_mapping.get(item_id)
    if not isinstance(item_mapping, Mapping):
        raise FulfillmentError(f"no product mapping found for item {item_id}")

    variant = item_mapping.get("variant_id")
    if isinstance(variant, str) and variant:
        return variant
    if isinstance(variant, (int, float)) and not isinstance(variant, bool):
        return f"{variant:.0f}"
    raise FulfillmentError("missing or invalid variant_id in product mapping")


def extract_recipient_from_payer_info(payer_info: Mapping[str, Any] | None) -> RecipientInfo:
    """Build shipping recipient details from a payment's payer information."""
    if payer_info is None:
        raise FulfillmentError("payer info is nil")

    def text(key: str) -> str:
        value = payer_info.get(key)
        return value if isinstance(value, str) else ""

    name = text("name")
    address1 = text("address1")
    address2 = text("address2")
    city = text("city")
    country = text("country_code")
    zip_code = text("zip")

    if not all((name, address1, city, country, zip_code)):
        raise FulfillmentError(
            "missing required shipping information (name, address1, city, country_code, zip)"
        )

    address = f"{address1}, {address2}" if address2 else address1
    return RecipientInfo(
        name=name,
        address=address,
        city=city,
        state=text("state_code"),
        zip=zip_code,
        country=country,
        email=text("email"),
        phone=text("phone"),
    )


def _order_request(
    recipient: RecipientInfo,
    variant_id: str,
    backend_config: Mapping[str, Any] | None,
    item_id: str,
) -> OrderRequest:
    request = OrderRequest(
        recipient_name=recipient.name,
        recipient_address=recipient.address,
        recipient_city=recipient.city,
        recipient_state=recipient.state,
        recipient_zip=recipient.zip,
        recipient_country=recipient.country,
        recipient_email=recipient.email,
        recipient_phone=recipient.phone,
        variant_id=variant_id,
        quantity=1,
    )
    mapping = _item_mapping(backend_config, item_id)
    if mapping is not None:
        design_url = mapping.get("design_url")
        if isinstance(design_url, str):
            request.design_url = design_url
    return request


class PrintOnDemandHandler:
    """Creates orders with external print-on-demand services."""

    def __init__(self, provider_factory: ProviderFactory | None = None) -> None:
        self._provider_factory = provider_factory

    def _provider(self, backend_config: Mapping[str, Any] | None) -> Provider:
        provider_name, api_key = _provider_config(backend_config)
        if self._provider_factory is None:
            raise FulfillmentError(
                "failed to create provider: no provider factory configured"
            )
        try:
            return self._provider_factory(provider_name, api_key)
        except Exception as exc:
            raise FulfillmentError(f"failed to create provider: {exc}") from exc

    def handle(self, payment: Payment, item: Item) -> dict[str, Any]:
        """Place an order for a confirmed payment and return the order details."""
        if payment.escrow_enabled:
            raise FulfillmentError(
                "print-on-demand handler does not support escrow payments"
            )
        if not payment.is_confirmed():
            raise PaymentNotConfirmedError()

        provider = self._provider(item.backend_config)
        variant_id = extract_variant_id(item.backend_config, item.id)
        try:
            recipient = extract_recipient_from_payer_info(payment.payer_info)
        except FulfillmentError as exc:
            raise FulfillmentError(f"failed to extract recipient info: {exc}") from exc

        request = _order_request(recipient, variant_id, item.backend_config, item.id)
        provider_name = provider.name()
        try:
            response = provider.create_order(request)
        except Exception as exc:
            raise FulfillmentError(
                f"failed to create order with {provider_name}: {exc}"
            ) from exc

        return {
            "provider": provider_name,
            "order_id": response.order_id,
            "external_id": response.external_id,
            "status": response.status,
            "tracking_url": response.tracking_url,
            "shipping_date": response.shipping_date,
            "created_at": response.created_at,
        }

    def validate(self, config: Mapping[str, Any] | None) -> None:
        """Raise FulfillmentError unless the configuration names a supported provider."""
        config = config or {}
        for name in REQUIRED_CONFIG_FIELDS:
            if name not in config:
                raise FulfillmentError(f"missing required field: {name}")
        provider = config["provider"]
        if not isinstance(provider, str):
            raise FulfillmentError("invalid provider type")
        if provider not in SUPPORTED_PROVIDERS:
            raise FulfillmentError(f"unsupported provider: {provider}")

    def metadata(self) -> HandlerMetadata:
        """Describe this handler for discovery and the admin UI."""
        return HandlerMetadata(
            type="pod",
            display_name="Print-on-Demand Integration",
            description=(
                "Automatically create orders with print-on-demand providers "
                "(Printful, etc). Integrates with PoD vendor APIs for seamless "
                "fulfillment."
            ),
            required_fields=(
                Field(
                    name="provider",
                    type="string",
                    description="Print-on-demand service provider",
                    example="printful",
                    validation="must be 'printful'",
                    required=True,
                ),
                Field(
                    name="api_key",
                    type="secret",
                    description="API key for authentication with PoD provider",
                    example="placeholder",
                    required=True,
                ),
                Field(
                    name="product_mapping",
                    type="object",
                    description="Map of item IDs to PoD product/variant IDs",
                    example='{"item-123": {"product_id": 456, "variant_id": 789}}',
                    required=True,
                ),
            ),
            optional_fields=(
                Field(
                    name="api_url",
                    type="string",
                    description="Base URL for API endpoint (if not using provider default)",
                    example="https://api.printful.com",
                ),
                Field(
                    name="webhook_secret",
                    type="secret",
                    description="Webhook secret for order status updates",
                    example="secret",
                ),
                Field(
                    name="default_size",
                    type="string",
                    description="Default size if not specified per item",
                    example="L",
                ),
            ),
        )