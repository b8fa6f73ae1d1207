import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from pipeline.errors import GatewayQueryError
from pipeline.midtrans_gateway import IPaymentGateway
from pipeline.order_store import InMemoryActivityLog, InMemoryOrderStore
from schemas.order_models import (
    GatewayNotification,
    Order,
    OrderItem,
    OrderStatus,
    PaymentTransaction,
)


class FakeGateway(IPaymentGateway):
    """Scripted gateway: status per midtrans id, optional gate to hold queries open."""

    def __init__(self):
        self.statuses: Dict[str, Any] = {}
        self.query_calls: List[str] = []
        self.created: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.signature_ok = True
        self.closed = False
        self.open_queries: List[str] = []
        self.max_open = 0

    def script(self, midtrans_order_id: str, transaction_status: str, **extra) -> None:
        self.statuses[midtrans_order_id] = {"transaction_status": transaction_status, **extra}

    async def create_transaction(self, params: Dict[str, Any]) -> PaymentTransaction:
        self.created.append(params)
        tx_id = params["transaction_details"]["order_id"]
        return PaymentTransaction(token=f"tok-{tx_id}", redirect_url=f"https://pay.test/{tx_id}")

    async def query_transaction_status(self, midtrans_order_id: str) -> GatewayNotification:
        self.query_calls.append(midtrans_order_id)
        self.open_queries.append(midtrans_order_id)
        self.max_open = max(self.max_open, len(self.open_queries))
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.open_queries.remove(midtrans_order_id)
        scripted = self.statuses.get(midtrans_order_id)
        if scripted is None:
            raise GatewayQueryError(midtrans_order_id, "Transaction doesn't exist.")
        if isinstance(scripted, Exception):
            raise scripted
        return GatewayNotification(order_id=midtrans_order_id, **scripted)

    def verify_signature(self, notification: GatewayNotification) -> bool:
        return self.signature_ok

    async def close(self) -> None:
        self.closed = True


class FlakyStockStore(InMemoryOrderStore):
    """Fails stock increments for the listed products."""

    def __init__(self, failing_products):
        super().__init__()
        self.failing_products = set(failing_products)

    async def increment_product_stock(self, product_id: str, by_quantity: int) -> None:
        if product_id in self.failing_products:
            raise RuntimeError("connection reset")
        await super().increment_product_stock(product_id, by_quantity)


def make_order(order_id: str = "abc123", **fields) -> Order:
    defaults = {
        "id": order_id,
        "user_id": "user-1",
        "status": OrderStatus.PENDING,
        "payment_status": "PENDING",
        "midtrans_order_id": f"ORDER-{order_id}-1699999999",
        "total": 165000,
        "shipping_fee": 15000,
        "customer_name": "Sari Dewi",
        "customer_email": "sari@example.com",
    }
    defaults.update(fields)
    return Order(**defaults)


@pytest.fixture
def store():
    store = InMemoryOrderStore()
    store.add_product("rose", stock=10, name="Red Rose Bouquet")
    store.add_product("lily", stock=4, name="White Lily")
    return store


@pytest.fixture
def activity_log():
    return InMemoryActivityLog()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def seeded_order(store):
    """PENDING/PENDING order with 3 roses and 1 lily."""
    order = make_order()
    store.add_order(order, [
        OrderItem(product_id="rose", quantity=3, price=40000),
        OrderItem(product_id="lily", quantity=1, price=30000),
    ])
    return order


def seed_pending_orders(store: InMemoryOrderStore, count: int) -> List[Order]:
    base = datetime(2024, 1, 1)
    orders = []
    for n in range(count):
        order = make_order(f"order-{n:02d}", created_at=base + timedelta(minutes=n))
        store.add_order(order, [OrderItem(product_id="rose", quantity=1, price=40000)])
        orders.append(order)
    return orders
