"""Fulfillment handler for instant digital downloads from local or S3 storage."""

from __future__ import annotations

import abc
import datetime as _dt
import os
from collections.abc import Callable, Mapping
from typing import Any

from storefront.models import (
    Field,
    FulfillmentError,
    HandlerConfig,
    HandlerMetadata,
    Item,
    Payment,
    PaymentNotConfirmedError,
)

BYTES_PER_MEGABYTE = 1024 * 1024
DEFAULT_EXPIRATION_HOURS = 24
DEFAULT_S3_KEY_PREFIX = "items/"
ENDPOINT_ENV_VAR = "AWS_ENDPOINT"


class ObjectStore(abc.ABC):
    """An S3-compatible object store able to report sizes and presign downloads."""

    @abc.abstractmethod
    def object_size(self, bucket: str, key: str) -> int | None:
        """Return the size in bytes of ``key`` in ``bucket``, or None if unknown."""

    @abc.abstractmethod
    def presign_get(self, bucket: str, key: str, expires_hours: int) -> str:
        """Return a URL granting download of ``key`` for ``expires_hours`` hours."""


ObjectStoreFactory = Callable[[str, "str | None"], ObjectStore]


def _as_config(config: HandlerConfig | Mapping[str, Any] | None) -> HandlerConfig:
    if isinstance(config, HandlerConfig):
        return config
    return HandlerConfig(settings=dict(config) if config is not None else None)


def _storage_type(config: HandlerConfig) -> str:
    return config.get_string("storage") or "local"


def _expiration_hours(config: HandlerConfig) -> int:
    return config.get_int("expiration_hours") or DEFAULT_EXPIRATION_HOURS


def _rfc3339(moment: _dt.datetime) -> str:
    text = moment.replace(microsecond=0).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def s3_key(item: Item, config: HandlerConfig | Mapping[str, Any] | None) -> str:
    """Return the object key: explicit ``s3_key``, else prefix plus the item id."""
    cfg = _as_config(config)
    explicit = cfg.get_string("s3_key")
    if explicit:
        return explicit
    prefix = cfg.get_string("s3_key_prefix") or DEFAULT_S3_KEY_PREFIX
    return prefix + item.id


class DigitalMediaHandler:
    """Delivers digital products through expiring download links."""

    def __init__(self, object_store_factory: ObjectStoreFactory | None = None) -> None:
        self._object_store_factory = object_store_factory

    def handle(self, payment: Payment, item: Item) -> dict[str, Any]:
        """Return download details for a confirmed, non-escrow payment."""
        if payment.escrow_enabled:
            raise FulfillmentError("digital media does not support escrow payments")
        if not payment.is_confirmed():
            raise PaymentNotConfirmedError()

        config = HandlerConfig(settings=item.backend_config)
        if _storage_type(config) == "s3":
            download_url, file_size = self._s3_download(item, config)
        else:
            download_url, file_size = self._local_download(config)

        result = self._result(download_url, file_size, config)
        # Downloads are always served through the store, keyed by payment.
        result["download_url"] = f"/api/download/{payment.id}"
        return result

    @staticmethod
    def _local_download(config: HandlerConfig) -> tuple[str, int]:
        if not config.get_string("file_path"):
            raise FulfillmentError("file_path not configured")
        return "/api/download/{payment_id}", 0

    def _s3_download(self, item: Item, config: HandlerConfig) -> tuple[str, int]:
        bucket = config.get_string("s3_bucket")
        region = config.get_string("s3_region")
        key = s3_key(item, config)
        hours = _expiration_hours(config)

        store = self._open_store(region)
        try:
            size = store.object_size(bucket, key)
        except Exception as exc:
            raise FulfillmentError(f"failed to get object metadata: {exc}") from exc
        try:
            url = store.presign_get(bucket, key, hours)
        except Exception as exc:
            raise FulfillmentError(f"failed to generate presigned URL: {exc}") from exc
        return url, size or 0

    def _open_store(self, region: str) -> ObjectStore:
        if self._object_store_factory is None:
            raise FulfillmentError("failed to create AWS session: no object store configured")
        endpoint = os.environ.get(ENDPOINT_ENV_VAR) or None
        try:
            return self._object_store_factory(region, endpoint)
        except Exception as exc:
            raise FulfillmentError(f"failed to create AWS session: {exc}") from exc

    @staticmethod
    def _result(download_url: str, file_size: int, config: HandlerConfig) -> dict[str, Any]:
        expires_at = _dt.datetime.now().astimezone() + _dt.timedelta(
            hours=_expiration_hours(config)
        )
        return {
            "download_url": download_url,
            "expires_at": _rfc3339(expires_at),
            "file_size_mb": file_size // BYTES_PER_MEGABYTE,
            "max_downloads": config.get_int("max_downloads"),
        }

    def validate(self, config: Mapping[str, Any] | None) -> None:
        """Raise FulfillmentError unless the storage and expiry settings are valid."""
        cfg = _as_config(config)
        storage = _storage_type(cfg)
        if storage == "s3":
            if not cfg.get_string("s3_bucket"):
                raise FulfillmentError("s3_bucket is required for S3 storage")
            if not cfg.get_string("s3_region"):
                raise FulfillmentError("s3_region is required for S3 storage")
        elif storage == "local":
            if not cfg.get_string("file_path"):
                raise FulfillmentError("file_path is required for local storage")
        else:
            raise FulfillmentError(
                f"unsupported storage type: {storage} (must be 's3' or 'local')"
            )
        if cfg.get_int("expiration_hours") < 1:
            raise FulfillmentError("expiration_hours must be at least 1")

    def metadata(self) -> HandlerMetadata:
        """Describe this handler for discovery and the admin UI."""
        return HandlerMetadata(
            type="digital_media",
            display_name="Digital Media Download",
            description=(
                "Deliver digital products (ebooks, software, assets) via instant "
                "download. Supports both S3 and local filesystem storage with "
                "expiring download links."
            ),
            required_fields=(
                Field(
                    name="storage",
                    type="string",
                    description="Storage backend type (s3 or local)",
                    example="s3",
                    validation="^(s3|local)$",
                ),
            ),
            optional_fields=(
                Field(
                    name="file_path",
                    type="string",
                    description="Local file path (required if storage=local)",
                    example="./downloads/product.pdf",
                ),
                Field(
                    name="s3_bucket",
                    type="string",
                    description="S3 bucket name (required if storage=s3)",
                    example="store-downloads",
                ),
                Field(
                    name="s3_region",
                    type="string",
                    description="AWS region (required if storage=s3)",
                    example="us-east-1",
                ),
                Field(
                    name="s3_key_prefix",
                    type="string",
                    description="Prefix for S3 object keys",
                    example="items/",
                ),
                Field(
                    name="s3_key",
                    type="string",
                    description="Explicit S3 object key (overrides s3_key_prefix + item.ID)",
                    example="downloads/product.pdf",
                ),
                Field(
                    name="expiration_hours",
                    type="number",
                    description="Hours until download link expires",
                    example="24",
                    validation="^\\d+$",
                ),
                Field(
                    name="max_downloads",
                    type="number",
                    description="Maximum number of downloads allowed",
                    example="10",
                    validation="^\\d+$",
                ),
            ),
        )