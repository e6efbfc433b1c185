import datetime as dt
import threading
import time

import pytest

from storefront.background import (
    AuditLogCleaner,
    EscrowTimeoutChecker,
    PoDPoller,
    is_pod_order,
)
from storefront.models import Item, Payment
from storefront.pod import OrderRequest, OrderResponse, OrderStatus, Provider


class FakeAuditStore:
    def __init__(self, deleted=5, error=None):
        self.calls = []
        self.deleted = deleted
        self.error = error

    def cleanup_old_audit_logs(self, retention_days):
        self.calls.append(retention_days)
        if self.error is not None:
            raise self.error
        return self.deleted


class FakeStore:
    def __init__(self, payments=None, items=None, list_error=None,
                 get_item_error=None, update_error=None, escrow_error=None):
        self.payments = payments or []
        self.items = items or {}
        self.list_error = list_error
        self.get_item_error = get_item_error
        self.update_error = update_error
        self.escrow_error = escrow_error
        self.update_calls = []
        self.escrow_state_calls = []
        self.list_calls = 0

    def list_payments(self, filters):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        status = filters.get("status")
        return [p for p in self.payments if status is None or p.status == status]

    def get_item(self, item_id):
        if self.get_item_error is not None:
            raise self.get_item_error
        try:
            return self.items[item_id]
        except KeyError:
            raise LookupError("item not found") from None

    def update_fulfillment_result(self, payment_id, result):
        if self.update_error is not None:
            raise self.update_error
        self.update_calls.append((payment_id, result))

    def update_escrow_state(self, payment_id, new_state, additional_data):
        if self.escrow_error is not None:
            raise self.escrow_error
        self.escrow_state_calls.append((payment_id, new_state, additional_data))


class FakeProvider(Provider):
    def __init__(self, status):
        self._status = status
        self.queried = []

    def name(self):
        return "printful"

    def create_order(self, request: OrderRequest) -> OrderResponse:
        return OrderResponse(order_id="1")

    def get_status(self, order_id):
        self.queried.append(order_id)
        return OrderStatus(
            order_id=order_id,
            status=self._status,
            tracking_url="https://tracking.example.com/1",
            shipping_date="2024-01-02",
            last_updated="2024-01-01T00:00:00Z",
        )


def pod_payment(status="pending"):
    return Payment(
        id="payment1",
        item_id="item1",
        status="fulfilled",
        fulfillment_result={"provider": "printful", "order_id": "12345", "status": status},
    )


# Audit log cleaner


def test_audit_cleaner_runs_repeatedly_with_retention():
    store = FakeAuditStore()
    cleaner = AuditLogCleaner(store, 0.1, 90)
    cleaner.start()
    time.sleep(0.25)
    cleaner.stop()
    assert len(store.calls) >= 2
    assert set(store.calls) == {90}


def test_audit_cleaner_zero_retention_skips():
    store = FakeAuditStore()
    cleaner = AuditLogCleaner(store, 0.1, 0)
    cleaner.start()
    time.sleep(0.25)
    cleaner.stop()
    assert store.calls == []


def test_audit_cleaner_stop_immediately():
    store = FakeAuditStore()
    cleaner = AuditLogCleaner(store, 1.0, 90)
    cleaner.start()
    began = time.monotonic()
    cleaner.stop()
    assert time.monotonic() - began < 0.9
    assert len(store.calls) <= 1


def test_audit_cleaner_run_once_returns_count():
    assert AuditLogCleaner(FakeAuditStore(deleted=7), 1, 30).run_once() == 7


def test_audit_cleaner_error_is_swallowed():
    store = FakeAuditStore(error=RuntimeError("db down"))
    assert AuditLogCleaner(store, 1, 30).run_once() == 0
    assert store.calls == [30]


@pytest.mark.parametrize("interval", [0, -1, dt.timedelta(0)])
def test_non_positive_interval_rejected(interval):
    with pytest.raises(ValueError):
        AuditLogCleaner(FakeAuditStore(), interval, 30)


def test_start_twice_rejected():
    cleaner = AuditLogCleaner(FakeAuditStore(), 1, 0)
    cleaner.start()
    try:
        with pytest.raises(RuntimeError):
            cleaner.start()
    finally:
        cleaner.stop()


# Escrow timeout checker


def test_escrow_checker_refunds_only_expired():
    now = dt.datetime.now()
    expired = now - dt.timedelta(hours=1)
    future = now + dt.timedelta(hours=1)
    store = FakeStore(payments=[
        Payment(id="pay1", status="confirmed", escrow_enabled=True,
                escrow_state="funded", escrow_timeout=expired),
        Payment(id="pay2", status="confirmed", escrow_enabled=True,
                escrow_state="shipped", escrow_timeout=future),
        Payment(id="pay3", status="confirmed", escrow_enabled=False,
                escrow_timeout=expired),
        Payment(id="pay4", status="confirmed", escrow_enabled=True,
                escrow_state="released", escrow_timeout=expired),
    ])
    checker = EscrowTimeoutChecker(store, 3600)
    assert checker.run_once() == (2, 1)
    assert store.escrow_state_calls == [("pay1", "refunded", None)]


def test_escrow_checker_aware_timeout():
    expired = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=5)
    store = FakeStore(payments=[
        Payment(id="pay1", status="confirmed", escrow_enabled=True,
                escrow_state="funded", escrow_timeout=expired),
    ])
    EscrowTimeoutChecker(store, 3600).run_once()
    assert [c[0] for c in store.escrow_state_calls] == ["pay1"]


def test_escrow_checker_refund_failure_not_counted():
    expired = dt.datetime.now() - dt.timedelta(hours=1)
    store = FakeStore(
        payments=[Payment(id="pay1", status="confirmed", escrow_enabled=True,
                          escrow_state="funded", escrow_timeout=expired)],
        escrow_error=RuntimeError("write failed"),
    )
    assert EscrowTimeoutChecker(store, 3600).run_once() == (1, 0)


def test_escrow_checker_start_stop():
    store = FakeStore()
    checker = EscrowTimeoutChecker(store, 0.1)
    checker.start()
    time.sleep(0.15)
    checker.stop()
    assert store.list_calls >= 1


# PoD poller


def test_new_pod_poller_interval():
    poller = PoDPoller(FakeStore(), dt.timedelta(hours=1))
    assert poller.interval == 3600


@pytest.mark.parametrize(
    "result, expected",
    [
        ({"provider": "printful", "order_id": "12345"}, True),
        ({"order_id": "12345"}, False),
        ({"provider": "printful"}, False),
        ({"provider": "", "order_id": "12345"}, False),
        (None, False),
    ],
)
def test_is_pod_order(result, expected):
    assert is_pod_order(Payment(fulfillment_result=result)) is expected


def test_poll_once_no_payments():
    store = FakeStore()
    assert PoDPoller(store, 3600).run_once() == (0, 0)
    assert store.update_calls == []


def test_poll_once_non_pod_payments():
    store = FakeStore(payments=[
        Payment(id="payment1", status="fulfilled",
                fulfillment_result={"download_url": "http://example.com/file"}),
    ])
    assert PoDPoller(store, 3600).run_once() == (0, 0)
    assert store.update_calls == []


def test_start_stop_completes_quickly():
    store = FakeStore()
    poller = PoDPoller(store, 0.1)
    poller.start()
    time.sleep(0.05)
    began = time.monotonic()
    poller.stop()
    assert time.monotonic() - began < 2.0
    calls_at_stop = store.list_calls
    assert calls_at_stop >= 1
    time.sleep(0.15)
    assert store.list_calls == calls_at_stop


def test_poll_order_without_provider_factory():
    store = FakeStore(items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})})
    assert PoDPoller(store, 3600).poll_order(pod_payment()) is False
    assert store.update_calls == []


def test_poll_order_item_not_found():
    store = FakeStore(get_item_error=LookupError("item not found"))
    factory_calls = []
    poller = PoDPoller(store, 3600, lambda n, k: factory_calls.append(n))
    assert poller.poll_order(pod_payment()) is False
    assert factory_calls == []


def test_poll_order_missing_api_key():
    store = FakeStore(items={"item1": Item(id="item1", backend_config={})})
    factory_calls = []
    poller = PoDPoller(store, 3600, lambda n, k: factory_calls.append(n))
    assert poller.poll_order(pod_payment()) is False
    assert factory_calls == []


def test_poll_once_error_listing_payments():
    store = FakeStore(list_error=RuntimeError("database error"))
    assert PoDPoller(store, 3600).run_once() == (0, 0)
    assert store.update_calls == []


def test_cancel_event_ends_loop():
    store = FakeStore()
    poller = PoDPoller(store, 1.0)
    cancel = threading.Event()
    poller.start(cancel)
    time.sleep(0.05)
    cancel.set()
    time.sleep(0.1)
    calls_after_cancel = store.list_calls
    began = time.monotonic()
    poller.stop()
    assert time.monotonic() - began < 1.0
    assert calls_after_cancel == 1


def test_poll_once_with_pod_payments_no_factory():
    store = FakeStore(
        payments=[pod_payment()],
        items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})},
    )
    assert PoDPoller(store, 3600).run_once() == (1, 0)
    assert store.update_calls == []


def test_poll_order_updates_changed_status():
    provider = FakeProvider("shipped")
    received = []

    def factory(name, api_key):
        received.append((name, api_key))
        return provider

    store = FakeStore(
        payments=[pod_payment("pending")],
        items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})},
    )
    poller = PoDPoller(store, 3600, factory)
    assert poller.run_once() == (1, 1)
    assert received == [("printful", "placeholder")]
    assert provider.queried == ["12345"]
    payment_id, result = store.update_calls[0]
    assert payment_id == "payment1"
    assert result == {
        "provider": "printful",
        "order_id": "12345",
        "status": "shipped",
        "tracking_url": "https://tracking.example.com/1",
        "shipping_date": "2024-01-02",
        "last_updated": "2024-01-01T00:00:00Z",
    }


def test_poll_order_unchanged_status():
    store = FakeStore(items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})})
    poller = PoDPoller(store, 3600, lambda n, k: FakeProvider("pending"))
    assert poller.poll_order(pod_payment("pending")) is False
    assert store.update_calls == []


def test_poll_order_update_failure():
    store = FakeStore(
        items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})},
        update_error=RuntimeError("write failed"),
    )
    poller = PoDPoller(store, 3600, lambda n, k: FakeProvider("shipped"))
    assert poller.poll_order(pod_payment("pending")) is False


def test_poll_order_factory_error():
    def factory(name, api_key):
        raise ValueError("unsupported provider")

    store = FakeStore(items={"item1": Item(id="item1", backend_config={"api_key": "placeholder"})})
    assert PoDPoller(store, 3600, factory).poll_order(pod_payment()) is False
    assert store.update_calls == []