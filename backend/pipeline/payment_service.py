"""
Payment Service
===============
Creates hosted-payment transactions for orders and applies admin
fulfillment status changes.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from pipeline.errors import (
    InvalidFulfillmentStatus,
    OrderAccessDenied,
    OrderNotFound,
    OrderNotPending,
)
from pipeline.midtrans_gateway import IPaymentGateway, MidtransConfig
from pipeline.order_state_machine import restore_stock
from pipeline.order_store import IActivityLog, IOrderStore, record_activity
from schemas.order_models import (
    Actor,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
)

logger = structlog.get_logger().bind(component="payment_service")

DEFAULT_PHONE = "08123456789"
DEFAULT_CITY = "Jakarta"
DEFAULT_POSTAL_CODE = "12345"
ITEM_NAME_MAX = 50


def can_access_order(actor: Actor, order: Order) -> bool:
    """Only the customer who placed an order may pay for it."""
    return bool(order.user_id) and actor.user_id == order.user_id


def build_composite_id(order_id: str, now_ms: Optional[int] = None) -> str:
    """Gateway transaction id, unique per payment attempt."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"ORDER-{order_id}-{stamp}"


def build_item_details(order: Order, items: List[OrderItem]) -> List[Dict[str, Any]]:
    details = [
        {
            "id": item.product_id,
            "price": int(round(item.price)),
            "quantity": item.quantity,
            "name": (item.product_name or item.product_id)[:ITEM_NAME_MAX],
        }
        for item in items
    ]
    if order.shipping_fee and order.shipping_fee > 0:
        details.append({
            "id": "SHIPPING",
            "price": int(round(order.shipping_fee)),
            "quantity": 1,
            "name": "Ongkos Kirim",
        })
    return details


def build_customer_details(order: Order, actor: Actor) -> Dict[str, Any]:
    name_parts = (order.customer_name or "").split()
    first_name = name_parts[0] if name_parts else (actor.username or "")
    last_name = " ".join(name_parts[1:])
    contact = {
        "first_name": first_name,
        "last_name": last_name,
        "email": order.customer_email or actor.email,
        "phone": order.customer_phone or DEFAULT_PHONE,
    }
    address = {
        **contact,
        "address": order.shipping_address or "",
        "city": DEFAULT_CITY,
        "postal_code": DEFAULT_POSTAL_CODE,
        "country_code": "IDN",
    }
    return {**contact, "billing_address": address, "shipping_address": dict(address)}


class PaymentService:
    """
    Example:
        service = PaymentService(store, activity_log, MidtransGateway())
        result = await service.create_payment(order_id, actor)
    """

    def __init__(
        self,
        store: IOrderStore,
        activity_log: IActivityLog,
        gateway: IPaymentGateway,
        frontend_url: Optional[str] = None,
        expiry_hours: Optional[int] = None,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.store = store
        self.activity_log = activity_log
        self.gateway = gateway
        self.frontend_url = (frontend_url or MidtransConfig.FRONTEND_URL).rstrip("/")
        self.expiry_hours = expiry_hours or MidtransConfig.PAYMENT_EXPIRY_HOURS
        self._clock_ms = clock_ms

    def build_transaction_params(
        self,
        order: Order,
        items: List[OrderItem],
        actor: Actor,
        transaction_id: str,
    ) -> Dict[str, Any]:
        return {
            "transaction_details": {
                "order_id": transaction_id,
                "gross_amount": int(round(order.total)),
            },
            "item_details": build_item_details(order, items),
            "customer_details": build_customer_details(order, actor),
            "callbacks": {
                "finish": f"{self.frontend_url}/order/success?orderId={order.id}",
                "error": f"{self.frontend_url}/order/failed?orderId={order.id}",
                "pending": f"{self.frontend_url}/order/pending?orderId={order.id}",
            },
            "expiry": {"unit": "hours", "duration": self.expiry_hours},
            "credit_card": {"secure": True},
        }

    async def create_payment(self, order_id: str, actor: Actor, ip_address: str = "unknown") -> Dict[str, Any]:
        log = logger.bind(order_id=order_id, user_id=actor.user_id)

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if not can_access_order(actor, order):
            log.warning("payment_create_forbidden")
            raise OrderAccessDenied(order_id)
        if order.status != OrderStatus.PENDING:
            raise OrderNotPending(order_id, order.status.value)

        items = await self.store.get_order_items_with_products(order_id)
        transaction_id = build_composite_id(order.id, self._clock_ms())
        params = self.build_transaction_params(order, items, actor, transaction_id)

        log.info("payment_create_initiated", midtrans_order_id=transaction_id,
                 gross_amount=params["transaction_details"]["gross_amount"], items=len(items))

        transaction: PaymentTransaction = await self.gateway.create_transaction(params)

        await self.store.update_order(order_id, {
            "payment_token": transaction.token,
            "payment_url": transaction.redirect_url,
            "midtrans_order_id": transaction_id,
            "payment_status": PaymentStatus.PENDING.value,
            "updated_at": datetime.utcnow(),
        })

        await record_activity(
            self.activity_log,
            actor.user_id,
            "CREATE_PAYMENT",
            f"Created Midtrans payment for order {order_id}",
            ip_address,
        )

        log.info("payment_created", midtrans_order_id=transaction_id)

        return {
            "success": True,
            "token": transaction.token,
            "redirect_url": transaction.redirect_url,
            "orderId": order_id,
        }

    async def update_fulfillment_status(
        self,
        order_id: str,
        status: Optional[str],
        actor: Actor,
        ip_address: str = "unknown",
    ) -> Order:
        """Admin status change; payment status is left as is."""
        try:
            new_status = OrderStatus((status or "").upper())
        except ValueError:
            raise InvalidFulfillmentStatus(status)

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        log = logger.bind(order_id=order_id, admin_id=actor.user_id)

        now = datetime.utcnow()
        fields = {"status": new_status, "updated_at": now}
        restore = new_status == OrderStatus.CANCELLED and not order.stock_already_restored
        if restore:
            fields["stock_restored_at"] = now

        updated = await self.store.update_order(order_id, fields)

        if restore:
            items = await self.store.get_order_items_with_products(order_id)
            restored, failures = await restore_stock(self.store, items)
            if failures:
                log.error("stock_compensation_partial_failure",
                          failed_products=[f.product_id for f in failures],
                          errors=[f.error for f in failures])
            else:
                log.info("stock_restored", products=len(restored))

        await record_activity(
            self.activity_log,
            actor.user_id,
            "UPDATE_ORDER_STATUS",
            f"Admin changed order {order_id} status from {order.status.value} to {new_status.value}",
            ip_address,
        )

        log.info("fulfillment_status_updated", previous=order.status.value, status=new_status.value)
        return updated
