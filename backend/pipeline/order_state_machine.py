"""
Order State Machine
===================
Maps a gateway transaction status (plus the fraud sub-status of a
``capture``) onto an order's ``(status, payment_status)`` pair, and restores
reserved stock when a payment is denied, expires or is cancelled.

Both reconcilers (webhook and poll-sync) go through ``apply_gateway_status``.

    transaction_status  fraud_status  -> status      payment_status  stock
    capture             challenge        PENDING     CHALLENGE       -
    capture             accept           PROCESSING  PAID            -
    settlement          -                PROCESSING  PAID            -
    pending             -                PENDING     PENDING         -
    deny                -                CANCELLED   DENIED          restore
    expire              -                CANCELLED   EXPIRED         restore
    cancel              -                CANCELLED   CANCELLED       restore
    anything else       -                unchanged   RAW UPPERCASED  -

Orders already SHIPPED / DELIVERED / COMPLETED keep their status and never
have stock restored; only the payment status is recorded.

Stock is restored at most once per order, tracked by ``stock_restored_at``.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from pipeline.errors import StockCompensationPartialFailure
from pipeline.order_store import IOrderStore
from schemas.order_models import (
    FraudStatus,
    GatewayNotification,
    LOCKED_FULFILLMENT_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    StockFailure,
    TransactionStatus,
    Transition,
    TransitionOutcome,
)

logger = structlog.get_logger().bind(component="order_state_machine")


# (status, payment_status, restore_stock) keyed by (transaction_status, fraud_status)
TRANSITION_TABLE: Dict[Tuple[str, Optional[str]], Tuple[OrderStatus, PaymentStatus, bool]] = {
    (TransactionStatus.CAPTURE.value, FraudStatus.CHALLENGE.value): (OrderStatus.PENDING, PaymentStatus.CHALLENGE, False),
    (TransactionStatus.CAPTURE.value, FraudStatus.ACCEPT.value): (OrderStatus.PROCESSING, PaymentStatus.PAID, False),
    (TransactionStatus.SETTLEMENT.value, None): (OrderStatus.PROCESSING, PaymentStatus.PAID, False),
    (TransactionStatus.PENDING.value, None): (OrderStatus.PENDING, PaymentStatus.PENDING, False),
    (TransactionStatus.DENY.value, None): (OrderStatus.CANCELLED, PaymentStatus.DENIED, True),
    (TransactionStatus.EXPIRE.value, None): (OrderStatus.CANCELLED, PaymentStatus.EXPIRED, True),
    (TransactionStatus.CANCEL.value, None): (OrderStatus.CANCELLED, PaymentStatus.CANCELLED, True),
}


def _lookup(transaction_status: str, fraud_status: Optional[str]):
    if transaction_status == TransactionStatus.CAPTURE.value:
        return TRANSITION_TABLE.get((transaction_status, fraud_status))
    return TRANSITION_TABLE.get((transaction_status, None))


def resolve_transition(
    order: Order,
    transaction_status: str,
    fraud_status: Optional[str] = None,
) -> Transition:
    """Pure mapping; performs no I/O."""
    tx = (transaction_status or "").strip().lower()
    fraud = fraud_status.strip().lower() if fraud_status else None

    mapped = _lookup(tx, fraud)
    if mapped is None:
        new_status, new_payment, restore = order.status, PaymentStatus.normalize(tx), False
    else:
        status, payment, restore = mapped
        new_status, new_payment = status, payment.value

    if order.status in LOCKED_FULFILLMENT_STATUSES:
        return Transition(
            status=order.status,
            payment_status=new_payment,
            restore_stock=False,
            guarded=True,
        )

    if restore and order.stock_already_restored:
        return Transition(
            status=new_status,
            payment_status=new_payment,
            restore_stock=False,
            compensation_skipped=True,
        )

    return Transition(status=new_status, payment_status=new_payment, restore_stock=restore)


async def restore_stock(store: IOrderStore, items: List[OrderItem]) -> Tuple[List[str], List[StockFailure]]:
    """One increment per item; every item is attempted."""
    restored: List[str] = []
    failures: List[StockFailure] = []

    for item in items:
        try:
            await store.increment_product_stock(item.product_id, item.quantity)
            restored.append(item.product_id)
        except Exception as e:
            failures.append(StockFailure(
                product_id=item.product_id,
                quantity=item.quantity,
                error=str(e),
            ))

    return restored, failures


async def apply_gateway_status(
    store: IOrderStore,
    order: Order,
    notification: GatewayNotification,
    items: Optional[List[OrderItem]] = None,
) -> TransitionOutcome:
    """
    Apply a gateway status report to ``order`` and persist it.

    The order fields and the ``stock_restored_at`` marker are written in one
    update before stock is restored, so a redelivered or reordered
    notification never compensates again. Unchanged orders are not
    rewritten.

    Raises StockCompensationPartialFailure after persisting if any stock
    increment failed.
    """
    log = logger.bind(order_id=order.id, transaction_status=notification.transaction_status)

    transition = resolve_transition(order, notification.transaction_status, notification.fraud_status)

    payment_method = order.payment_method
    if notification.payment_type and not transition.guarded:
        payment_method = notification.payment_type

    fields = {}
    if transition.status != order.status:
        fields["status"] = transition.status
    if transition.payment_status != order.payment_status:
        fields["payment_status"] = transition.payment_status
    if payment_method != order.payment_method:
        fields["payment_method"] = payment_method

    now = datetime.utcnow()
    if transition.restore_stock:
        fields["stock_restored_at"] = now

    if fields:
        fields["updated_at"] = now
        updated = await store.update_order(order.id, fields)
    else:
        updated = order

    if transition.guarded:
        log.info("transition_guarded", order_status=order.status.value,
                 payment_status=transition.payment_status)
    if transition.compensation_skipped:
        log.info("stock_compensation_skipped", reason="already_restored")
    newly_paid = transition.payment_status == PaymentStatus.PAID.value != order.payment_status
    if newly_paid and order.stock_already_restored and not transition.guarded:
        log.warning("paid_after_stock_restored", previous_status=order.status.value,
                    previous_payment_status=order.payment_status)

    restored: List[str] = []
    failures: List[StockFailure] = []
    if transition.restore_stock:
        if items is None:
            items = await store.get_order_items_with_products(order.id)
        restored, failures = await restore_stock(store, items)

    outcome = TransitionOutcome(
        order_id=order.id,
        previous_status=order.status,
        previous_payment_status=order.payment_status,
        status=updated.status,
        payment_status=updated.payment_status,
        payment_method=updated.payment_method,
        changed=bool(fields),
        guarded=transition.guarded,
        stock_restored=restored,
        stock_failures=failures,
    )

    log.info("transition_applied",
             status=outcome.status.value,
             payment_status=outcome.payment_status,
             changed=outcome.changed,
             stock_restored=len(restored))

    if failures:
        log.error("stock_compensation_partial_failure",
                  failed_products=[f.product_id for f in failures],
                  errors=[f.error for f in failures])
        raise StockCompensationPartialFailure(outcome, failures)

    return outcome
