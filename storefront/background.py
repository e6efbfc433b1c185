"""Periodic background jobs: audit-log cleanup, escrow timeouts, PoD status polling."""

from __future__ import annotations

import abc
import datetime as _dt
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from storefront.models import Item, Payment
from storefront.pod import OrderStatus, Provider

logger = logging.getLogger(__name__)

_WAKE_SLICE = 0.05

ProviderFactory = Callable[[str, str], Provider]


class _AuditStore(Protocol):
    def cleanup_old_audit_logs(self, retention_days: int) -> int: ...


class _PaymentStore(Protocol):
    def list_payments(self, filters: dict[str, Any]) -> list[Payment]: ...

    def update_escrow_state(
        self, payment_id: str, new_state: str, additional_data: dict[str, Any] | None
    ) -> None: ...

    def get_item(self, item_id: str) -> Item: ...

    def update_fulfillment_result(self, payment_id: str, result: dict[str, Any]) -> None: ...


def _seconds(interval: float | _dt.timedelta) -> float:
    seconds = (
        interval.total_seconds()
        if isinstance(interval, _dt.timedelta)
        else float(interval)
    )
    if seconds <= 0:
        raise ValueError("interval must be positive")
    return seconds


class PeriodicWorker(abc.ABC):
    """Runs :meth:`run_once` immediately on start and then once per interval."""

    def __init__(self, interval: float | _dt.timedelta) -> None:
        self.interval = _seconds(interval)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def _label(self) -> str:
        return type(self).__name__

    def start(self, cancel_event: threading.Event | None = None) -> None:
        """Start the loop in a background thread.

        The loop ends when :meth:`stop` is called or ``cancel_event`` is set.
        """
        if self._thread is not None:
            raise RuntimeError(f"{self._label} already started")
        self._thread = threading.Thread(
            target=self._run, args=(cancel_event,), name=self._label, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal the loop to end and wait for it to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()

    def _run(self, cancel_event: threading.Event | None) -> None:
        self._safe_run_once()
        next_tick = time.monotonic() + self.interval
        while True:
            if self._stop_event.is_set():
                logger.info("%s stopped", self._label)
                return
            if cancel_event is not None and cancel_event.is_set():
                logger.info("%s context cancelled", self._label)
                return
            now = time.monotonic()
            if now >= next_tick:
                self._safe_run_once()
                while next_tick <= time.monotonic():
                    next_tick += self.interval
                continue
            self._stop_event.wait(min(next_tick - now, _WAKE_SLICE))

    def _safe_run_once(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception("%s cycle failed", self._label)

    @abc.abstractmethod
    def run_once(self) -> Any:
        """Perform a single cycle of work."""


class AuditLogCleaner(PeriodicWorker):
    """Periodically removes audit log entries older than the retention period."""

    def __init__(
        self, store: _AuditStore, interval: float | _dt.timedelta, retention_days: int
    ) -> None:
        super().__init__(interval)
        self.store = store
        self.retention_days = retention_days

    def run_once(self) -> int:
        """Delete old logs; return how many were deleted (0 if skipped or failed)."""
        if self.retention_days <= 0:
            return 0
        logger.info("Cleaning audit logs older than %d days", self.retention_days)
        try:
            deleted = self.store.cleanup_old_audit_logs(self.retention_days)
        except Exception as exc:
            logger.error("Failed to cleanup audit logs: %s", exc)
            return 0
        if deleted > 0:
            logger.info("Audit log cleanup complete: %d old logs deleted", deleted)
        return deleted


class EscrowTimeoutChecker(PeriodicWorker):
    """Refunds confirmed escrow payments whose timeout has passed."""

    def __init__(self, store: _PaymentStore, interval: float | _dt.timedelta) -> None:
        super().__init__(interval)
        self.store = store

    def run_once(self) -> tuple[int, int]:
        """Check escrow payments; return ``(checked, refunded)`` counts."""
        logger.info("Checking for expired escrow payments...")
        try:
            payments = self.store.list_payments({"status": "confirmed"})
        except Exception as exc:
            logger.error("Failed to list payments: %s", exc)
            return 0, 0

        checked = refunded = 0
        for payment in payments or ():
            if not payment.escrow_enabled:
                continue
            if payment.escrow_state in ("released", "refunded"):
                continue
            timeout = payment.escrow_timeout
            if timeout is None:
                continue
            checked += 1

            now = (
                _dt.datetime.now()
                if timeout.tzinfo is None
                else _dt.datetime.now(_dt.timezone.utc)
            )
            if timeout >= now:
                continue
            logger.info(
                "Escrow timeout expired for payment %s (state: %s, timeout: %s)",
                payment.id,
                payment.escrow_state,
                timeout,
            )
            try:
                self.store.update_escrow_state(payment.id, "refunded", None)
            except Exception as exc:
                logger.error(
                    "Failed to refund expired escrow payment %s: %s", payment.id, exc
                )
                continue
            refunded += 1
            logger.info("Auto-refunded expired escrow payment %s", payment.id)

        if checked > 0:
            logger.info(
                "Escrow timeout check complete: %d checked, %d refunded",
                checked,
                refunded,
            )
        return checked, refunded


def is_pod_order(payment: Payment) -> bool:
    """Return True if the payment's fulfillment result names a provider and order."""
    result = payment.fulfillment_result
    if result is None:
        return False
    provider = result.get("provider")
    order_id = result.get("order_id")
    return (
        isinstance(provider, str)
        and isinstance(order_id, str)
        and bool(provider)
        and bool(order_id)
    )


class PoDPoller(PeriodicWorker):
    """Polls print-on-demand providers for the status of fulfilled orders."""

    def __init__(
        self,
        store: _PaymentStore,
        interval: float | _dt.timedelta,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        super().__init__(interval)
        self.store = store
        self._provider_factory = provider_factory

    def run_once(self) -> tuple[int, int]:
        """Poll every active PoD order; return ``(polled, updated)`` counts."""
        logger.info("Polling PoD order statuses...")
        try:
            payments = self.store.list_payments({"status": "fulfilled"})
        except Exception as exc:
            logger.error("Failed to list payments: %s", exc)
            return 0, 0

        polled = updated = 0
        for payment in payments or ():
            if not is_pod_order(payment):
                continue
            polled += 1
            if self.poll_order(payment):
                updated += 1

        logger.info(
            "PoD polling complete: %d orders polled, %d updated", polled, updated
        )
        return polled, updated

    def poll_order(self, payment: Payment) -> bool:
        """Refresh one order's status; return True if the stored result changed."""
        result = payment.fulfillment_result or {}
        provider_name = result.get("provider")
        provider_name = provider_name if isinstance(provider_name, str) else ""
        order_id = result.get("order_id")
        order_id = order_id if isinstance(order_id, str) else ""

        try:
            item = self.store.get_item(payment.item_id)
        except Exception as exc:
            logger.error("Failed to get item for payment %s: %s", payment.id, exc)
            return False

        api_key = (item.backend_config or {}).get("api_key")
        if not isinstance(api_key, str) or not api_key:
            logger.error("Missing API key for payment %s", payment.id)
            return False

        if self._provider_factory is None:
            logger.error(
                "Failed to create provider for payment %s: no provider factory configured",
                payment.id,
            )
            return False
        try:
            provider = self._provider_factory(provider_name, api_key)
        except Exception as exc:
            logger.error("Failed to create provider for payment %s: %s", payment.id, exc)
            return False

        try:
            status: OrderStatus = provider.get_status(order_id)
        except Exception as exc:
            logger.error(
                "Failed to get status for order %s (payment %s): %s",
                order_id,
                payment.id,
                exc,
            )
            return False

        current = result.get("status")
        current = current if isinstance(current, str) else ""
        if current == status.status:
            return False

        updated = dict(result)
        updated["status"] = status.status
        updated["tracking_url"] = status.tracking_url
        updated["shipping_date"] = status.shipping_date
        updated["last_updated"] = status.last_updated

        try:
            self.store.update_fulfillment_result(payment.id, updated)
        except Exception as exc:
            logger.error(
                "Failed to update fulfillment result for payment %s: %s", payment.id, exc
            )
            return False

        logger.info(
            "Updated status for order %s (payment %s): %s -> %s",
            order_id,
            payment.id,
            current,
            status.status,
        )
        return True