"""Storefront core: AES-GCM encryption, a bucketed key-value store, fulfillment handlers and background jobs."""

__version__ = "0.1.0"