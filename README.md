# storefront

The core of a small online store, as a Python library:

- `storefront.encryption`: AES-256-GCM encryption of backend configurations
  and other secrets. A random 12-byte nonce is placed in front of every
  ciphertext.
- `storefront.db`: a bucketed key-value store with JSON values, kept in an
  SQLite file. It has read-only and read-write transactions, prefix scans and
  simple index buckets.
- `storefront.models`: the `Payment`, `Item`, `HandlerConfig`, `Field` and
  `HandlerMetadata` types shared by the handlers, and the `FulfillmentError`
  and `PaymentNotConfirmedError` exceptions.
- Fulfillment handlers that turn a confirmed payment into something the
  customer can use:
  - `storefront.shipping_form`: a shipping address form, with the full escrow
    state flow;
  - `storefront.digital_media`: digital downloads from local storage or an
    S3-compatible object store;
  - `storefront.pod`: orders placed with a print-on-demand provider.
- `storefront.background`: jobs that run on an interval. One removes old
  audit logs, one refunds escrow payments whose timeout has passed, and one
  polls print-on-demand providers for order status.

## Installation

```
pip install .
pip install ".[test]"   # with pytest, to run the tests
```

## Encryption

```python
from storefront.encryption import EncryptionService, generate_key_base64

key_b64 = generate_key_base64()
service = EncryptionService.from_base64(key_b64)

ciphertext = service.encrypt(b"backend config")
assert service.decrypt(ciphertext) == b"backend config"
```

A key must be exactly 32 bytes. `generate_key()` returns a fresh random key as
bytes. If a key has the wrong length or is not valid base64, or if a
ciphertext is too short or fails authentication, `EncryptionError` is raised.

## Key-value store

```python
from storefront.db import Database

with Database("store.db") as db:
    db.init_buckets()

    with db.update() as tx:
        tx.bucket("categories").put("c1", {"name": "Books"})

    with db.view() as tx:
        print(tx.bucket("categories").get("c1"))
        print(tx.bucket("categories").get_all())
```

- `init_buckets()` creates every bucket the store uses and is safe to call
  more than once; `bucket_names()` lists the buckets that exist.
- `update()` commits on normal exit and rolls back if an exception is raised
  inside the block. Writing inside `view()` raises `DatabaseError`.
- `get_all()` and `get_by_prefix(prefix)` return values in key order.
- `add_index`, `get_index` and `delete_index` store plain string mappings in a
  named index bucket such as `payments_by_invoice`.
- Using a bucket that does not exist raises `BucketNotFoundError`; reading a
  missing key raises `KeyNotFoundError`. Both are subclasses of
  `DatabaseError`, as is the error raised once the database is closed.

## Fulfillment handlers

Each handler offers three methods:

- `validate(config)` checks an item's backend configuration and raises
  `FulfillmentError` on a problem;
- `handle(payment, item)` returns a dict that describes the fulfillment, and
  raises `PaymentNotConfirmedError` unless `payment.status` is `"confirmed"`;
- `metadata()` returns a `HandlerMetadata` describing the fields it expects.

```python
from storefront.models import Payment, Item
from storefront.shipping_form import ShippingFormHandler, FormData, validate_form_data
from storefront.pod import PrintOnDemandHandler

handler = ShippingFormHandler()
handler.validate({"form_fields": {"address1": {"required": True}}})
result = handler.handle(Payment(id="pay_123", status="confirmed"), Item(id="item_123"))
# result["status"] == "awaiting_address"

validate_form_data(FormData(address1="123 Main St", city="Springfield",
                            state="CA", postal_code="94102", country="US"))

PrintOnDemandHandler().validate({
    "provider": "printful",
    "api_key": "placeholder",
    "product_mapping": {"item-123": {"variant_id": 789}},
})
```

For escrow payments, `ShippingFormHandler` reports the next step for each of
the states `created`, `funded`, `address_submitted`, `shipped`, `released`,
`refunded` and `disputed`. `DigitalMediaHandler` and `PrintOnDemandHandler`
refuse escrow payments.

### Outside services

Digital downloads from S3 and print-on-demand orders go through two small
abstract classes that you implement:

- `storefront.digital_media.ObjectStore`, with `object_size(bucket, key)` and
  `presign_get(bucket, key, expires_hours)`. Pass
  `DigitalMediaHandler(object_store_factory)`, a callable taking
  `(region, endpoint)`; `endpoint` comes from the `AWS_ENDPOINT` environment
  variable, or is `None`.
- `storefront.pod.Provider`, with `name()`, `create_order(request)` and
  `get_status(order_id)`. Pass `PrintOnDemandHandler(provider_factory)` or
  `PoDPoller(..., provider_factory)`, a callable taking
  `(provider_name, api_key)`.

Local-storage downloads need no object store. Whatever the storage, the
returned `download_url` is `/api/download/<payment id>`.

## Background jobs

`AuditLogCleaner`, `EscrowTimeoutChecker` and `PoDPoller` are built on
`PeriodicWorker`. Each runs a cycle as soon as it starts and then once per
interval (seconds or a `timedelta`):

- `start(cancel_event=None)` starts the worker in a daemon thread;
- `stop()` ends it and waits for it to finish;
- setting the `threading.Event` passed to `start` also ends it;
- `run_once()` runs a single cycle right away and returns its counts.

The jobs take a store object that you supply. It needs these methods:
`cleanup_old_audit_logs(retention_days)` for `AuditLogCleaner`;
`list_payments(filters)` and `update_escrow_state(payment_id, new_state,
additional_data)` for `EscrowTimeoutChecker`; and `list_payments(filters)`,
`get_item(item_id)` and `update_fulfillment_result(payment_id, result)` for
`PoDPoller`. The module `storefront.background` also provides
`is_pod_order(payment)`.

## What this package does not do

- It has no HTTP API, web server or command-line program. It is a library
  only.
- It has no store service with catalogue, payment or audit-log operations. The
  background jobs need such an object, and you must supply it.
- It has no concrete S3 client and no concrete print-on-demand provider. You
  must implement `ObjectStore` and `Provider` yourself.
- It does not load configuration files or environment settings. The one
  exception is `AWS_ENDPOINT`, as described above.