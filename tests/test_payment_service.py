from datetime import datetime

import pytest

from conftest import make_order
from pipeline.errors import (
    InvalidFulfillmentStatus,
    OrderAccessDenied,
    OrderNotFound,
    OrderNotPending,
)
from pipeline.order_state_machine import apply_gateway_status
from pipeline.payment_service import PaymentService, build_composite_id, can_access_order
from schemas.order_models import Actor, GatewayNotification, OrderItem, OrderStatus

CUSTOMER = Actor(user_id="user-1", username="sari", email="sari@example.com", role="CUSTOMER")
STRANGER = Actor(user_id="user-2", username="budi", role="CUSTOMER")
ADMIN = Actor(user_id="admin-1", username="ops", role="ADMIN")


@pytest.fixture
def service(store, activity_log, gateway):
    return PaymentService(
        store,
        activity_log,
        gateway,
        frontend_url="https://shop.test/",
        clock_ms=lambda: 1700000000123,
    )


def test_composite_id():
    assert build_composite_id("abc123", 1699999999) == "ORDER-abc123-1699999999"


def test_only_owner_can_access_order():
    order = make_order()
    assert can_access_order(CUSTOMER, order)
    assert not can_access_order(STRANGER, order)
    assert not can_access_order(ADMIN, order)


async def test_create_payment(service, store, gateway, activity_log, seeded_order):
    result = await service.create_payment(seeded_order.id, CUSTOMER, "10.1.1.1")

    assert result == {
        "success": True,
        "token": "tok-ORDER-abc123-1700000000123",
        "redirect_url": "https://pay.test/ORDER-abc123-1700000000123",
        "orderId": "abc123",
    }

    params = gateway.created[0]
    assert params["transaction_details"] == {"order_id": "ORDER-abc123-1700000000123", "gross_amount": 165000}
    assert params["item_details"][-1] == {"id": "SHIPPING", "price": 15000, "quantity": 1, "name": "Ongkos Kirim"}
    assert params["item_details"][0]["name"] == "Red Rose Bouquet"
    assert params["customer_details"]["first_name"] == "Sari"
    assert params["customer_details"]["last_name"] == "Dewi"
    assert params["callbacks"]["finish"] == "https://shop.test/order/success?orderId=abc123"
    assert params["expiry"] == {"unit": "hours", "duration": 24}

    stored = await store.get_order(seeded_order.id)
    assert stored.midtrans_order_id == "ORDER-abc123-1700000000123"
    assert stored.payment_token == "tok-ORDER-abc123-1700000000123"
    assert stored.payment_status == "PENDING"
    assert (await activity_log.recent())[0].action == "CREATE_PAYMENT"


async def test_create_payment_truncates_long_item_names(service, store, gateway, seeded_order):
    store.add_product("rose", stock=10, name="R" * 80)

    await service.create_payment(seeded_order.id, CUSTOMER)

    assert len(gateway.created[0]["item_details"][0]["name"]) == 50


async def test_create_payment_errors(service, store, gateway, seeded_order):
    with pytest.raises(OrderNotFound):
        await service.create_payment("missing", CUSTOMER)

    with pytest.raises(OrderAccessDenied):
        await service.create_payment(seeded_order.id, STRANGER)

    store.add_order(make_order("paid1", status=OrderStatus.PROCESSING, payment_status="PAID"))
    with pytest.raises(OrderNotPending):
        await service.create_payment("paid1", CUSTOMER)

    assert gateway.created == []


async def test_admin_cancel_restores_stock_once(service, store, activity_log, seeded_order):
    updated = await service.update_fulfillment_status(seeded_order.id, "cancelled", ADMIN)

    assert updated.status == OrderStatus.CANCELLED
    assert updated.payment_status == "PENDING"
    assert store.stock_of("rose") == 13

    await service.update_fulfillment_status(seeded_order.id, "CANCELLED", ADMIN)
    assert store.stock_of("rose") == 13
    assert (await activity_log.recent())[0].action == "UPDATE_ORDER_STATUS"


async def test_admin_cancel_after_payment_compensation_skips_restore(service, store):
    store.add_order(
        make_order("exp1", status=OrderStatus.PENDING, payment_status="EXPIRED",
                   stock_restored_at=datetime(2024, 1, 1)),
        [OrderItem(product_id="rose", quantity=2, price=40000)],
    )

    await service.update_fulfillment_status("exp1", "CANCELLED", ADMIN)

    assert store.stock_of("rose") == 10


def gateway_report(order, transaction_status):
    return GatewayNotification(order_id=order.midtrans_order_id, transaction_status=transaction_status)


async def test_admin_cancel_sets_restore_marker(service, store, seeded_order):
    updated = await service.update_fulfillment_status(seeded_order.id, "CANCELLED", ADMIN)

    assert updated.stock_restored_at is not None


async def test_admin_reopen_then_gateway_expire_restores_once(service, store, seeded_order):
    await service.update_fulfillment_status(seeded_order.id, "CANCELLED", ADMIN)
    reopened = await service.update_fulfillment_status(seeded_order.id, "PENDING", ADMIN)
    assert reopened.status == OrderStatus.PENDING
    assert store.stock_of("rose") == 13

    outcome = await apply_gateway_status(store, reopened, gateway_report(reopened, "expire"))

    assert outcome.status == OrderStatus.CANCELLED
    assert outcome.payment_status == "EXPIRED"
    assert outcome.stock_restored == []
    assert store.stock_of("rose") == 13
    assert store.stock_of("lily") == 5


async def test_admin_cancel_after_guarded_deny_restores_stock(service, store):
    shipped = store.add_order(
        make_order("ship1", status=OrderStatus.SHIPPED, payment_status="PAID"),
        [OrderItem(product_id="rose", quantity=2, price=40000)],
    )

    outcome = await apply_gateway_status(store, shipped, gateway_report(shipped, "deny"))
    assert outcome.guarded
    assert store.stock_of("rose") == 10

    await service.update_fulfillment_status("ship1", "CANCELLED", ADMIN)

    assert store.stock_of("rose") == 12


async def test_admin_status_must_be_known(service, seeded_order):
    with pytest.raises(InvalidFulfillmentStatus):
        await service.update_fulfillment_status(seeded_order.id, "LOST", ADMIN)

    with pytest.raises(OrderNotFound):
        await service.update_fulfillment_status("missing", "SHIPPED", ADMIN)
