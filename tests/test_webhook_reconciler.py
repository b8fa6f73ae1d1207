import pytest

from conftest import FlakyStockStore, make_order
from pipeline.errors import (
    InvalidNotificationFormat,
    InvalidNotificationSignature,
    OrderNotFound,
)
from pipeline.webhook_reconciler import WebhookReconciler, extract_order_id
from schemas.order_models import OrderItem, OrderStatus


def payload(order_ref="abc123", transaction_status="settlement", **extra):
    body = {
        "order_id": f"ORDER-{order_ref}-1699999999",
        "transaction_status": transaction_status,
        "gross_amount": "165000.00",
        "status_code": "200",
    }
    body.update(extra)
    return body


@pytest.fixture
def reconciler(store, activity_log):
    return WebhookReconciler(store, activity_log)


def test_extract_order_id():
    assert extract_order_id("ORDER-abc123-1699999999") == "abc123"


def test_extract_order_id_keeps_hyphenated_ids():
    order_id = "4f0c2a8e-9d1b-4c61-a2f7-0b5f3c9e7d21"
    assert extract_order_id(f"ORDER-{order_id}-1700000000123") == order_id


@pytest.mark.parametrize("composite", ["garbage", "ORDER-abc123", "ORDER--1699999999", "", None])
def test_extract_order_id_rejects_malformed(composite):
    with pytest.raises(InvalidNotificationFormat):
        extract_order_id(composite)


async def test_scenario_deny_cancels_and_restores_stock(reconciler, store, activity_log, seeded_order):
    result = await reconciler.handle(payload(transaction_status="deny"), "10.0.0.1")

    stored = await store.get_order(seeded_order.id)
    assert result["success"]
    assert result["data"]["status"] == "CANCELLED"
    assert stored.status == OrderStatus.CANCELLED
    assert stored.payment_status == "DENIED"
    assert store.stock_of("rose") == 13
    assert store.stock_of("lily") == 5

    entries = await activity_log.recent()
    assert entries[0].action == "PAYMENT_NOTIFICATION"
    assert entries[0].ip_address == "10.0.0.1"


async def test_scenario_settlement_marks_paid(reconciler, store, seeded_order):
    await reconciler.handle(payload(transaction_status="settlement", payment_type="gopay"))

    stored = await store.get_order(seeded_order.id)
    assert stored.status == OrderStatus.PROCESSING
    assert stored.payment_status == "PAID"
    assert stored.payment_method == "gopay"
    assert store.stock_of("rose") == 10


async def test_scenario_late_duplicate_on_completed_order(reconciler, store, activity_log):
    order = store.add_order(
        make_order("done1", status=OrderStatus.COMPLETED, payment_status="PAID", payment_method="gopay"),
        [OrderItem(product_id="rose", quantity=1, price=40000)],
    )

    result = await reconciler.handle(payload("done1", "settlement", payment_type="gopay"))

    stored = await store.get_order("done1")
    assert result["success"]
    assert result["data"]["applied"] is False
    assert stored.model_dump() == order.model_dump()
    assert [e.action for e in await activity_log.recent()] == ["PAYMENT_NOTIFICATION"]


async def test_duplicate_deny_is_acknowledged_without_recompensation(reconciler, store, activity_log, seeded_order):
    await reconciler.handle(payload(transaction_status="deny"))
    second = await reconciler.handle(payload(transaction_status="deny"))

    assert second["success"]
    assert second["data"]["applied"] is False
    assert store.stock_of("rose") == 13
    assert len(await activity_log.recent()) == 2


async def test_unknown_order_raises_not_found(reconciler):
    with pytest.raises(OrderNotFound):
        await reconciler.handle(payload("missing"))


async def test_malformed_payload_raises_format_error(reconciler):
    with pytest.raises(InvalidNotificationFormat):
        await reconciler.handle({"order_id": "garbage", "transaction_status": "settlement"})

    with pytest.raises(InvalidNotificationFormat):
        await reconciler.handle({"transaction_status": "settlement"})

    with pytest.raises(InvalidNotificationFormat):
        await reconciler.handle(["not", "an", "object"])


async def test_partial_stock_failure_still_acknowledged(activity_log):
    store = FlakyStockStore(failing_products={"rose"})
    store.add_product("rose", stock=10)
    store.add_order(make_order(), [OrderItem(product_id="rose", quantity=3, price=40000)])
    reconciler = WebhookReconciler(store, activity_log)

    result = await reconciler.handle(payload(transaction_status="expire"))

    stored = await store.get_order("abc123")
    assert result["success"]
    assert result["data"]["stockCompensation"] == "partial_failure"
    assert stored.payment_status == "EXPIRED"


async def test_signature_checked_when_enabled(store, activity_log, gateway, seeded_order):
    gateway.signature_ok = False
    reconciler = WebhookReconciler(store, activity_log, gateway=gateway, verify_signature=True)

    with pytest.raises(InvalidNotificationSignature):
        await reconciler.handle(payload(signature_key="bad"))

    stored = await store.get_order(seeded_order.id)
    assert stored.payment_status == "PENDING"


async def test_activity_log_failure_does_not_fail_webhook(store, seeded_order):
    class BrokenLog:
        async def append(self, *args, **kwargs):
            raise RuntimeError("db down")

    reconciler = WebhookReconciler(store, BrokenLog())

    result = await reconciler.handle(payload())

    assert result["success"]
