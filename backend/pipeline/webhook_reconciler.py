"""
Webhook Reconciler
==================
Handles at-least-once, unordered gateway notifications:

1. extract the order id from the composite ``ORDER-{orderId}-{timestamp}`` id
2. load the order
3. apply the order state machine
4. persist (no-op when already applied)
5. append an audit entry
6. acknowledge, even for duplicates
"""

import re
import uuid
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from pipeline.errors import (
    InvalidNotificationFormat,
    InvalidNotificationSignature,
    OrderNotFound,
    StockCompensationPartialFailure,
)
from pipeline.midtrans_gateway import IPaymentGateway
from pipeline.order_state_machine import apply_gateway_status
from pipeline.order_store import IActivityLog, IOrderStore, record_activity
from schemas.order_models import GatewayNotification

logger = structlog.get_logger().bind(component="webhook_reconciler")

# Greedy so ids containing hyphens (UUIDs) survive; the timestamp is the last segment
COMPOSITE_ID_PATTERN = re.compile(r"^ORDER-(.+)-(\d+)$")


def extract_order_id(composite_id: Optional[str]) -> str:
    match = COMPOSITE_ID_PATTERN.match((composite_id or "").strip())
    if not match:
        raise InvalidNotificationFormat(composite_id)
    return match.group(1)


class WebhookReconciler:
    """
    Example:
        reconciler = WebhookReconciler(store, activity_log)
        summary = await reconciler.handle(request_json)
    """

    def __init__(
        self,
        store: IOrderStore,
        activity_log: IActivityLog,
        gateway: Optional[IPaymentGateway] = None,
        verify_signature: bool = False,
    ):
        self.store = store
        self.activity_log = activity_log
        self.gateway = gateway
        self.verify_signature = verify_signature

    def parse(self, payload: Any) -> GatewayNotification:
        if not isinstance(payload, dict):
            raise InvalidNotificationFormat(None)
        try:
            return GatewayNotification(**payload)
        except ValidationError as e:
            logger.warning("notification_malformed", errors=e.error_count())
            raise InvalidNotificationFormat(payload.get("order_id")) from e

    async def handle(self, payload: Any, ip_address: str = "unknown") -> Dict[str, Any]:
        correlation_id = str(uuid.uuid4())
        notification = self.parse(payload)
        log = logger.bind(correlation_id=correlation_id, midtrans_order_id=notification.order_id)

        log.info("webhook_received",
                 transaction_status=notification.transaction_status,
                 fraud_status=notification.fraud_status,
                 payment_type=notification.payment_type,
                 gross_amount=notification.gross_amount)

        if self.verify_signature and self.gateway is not None:
            if not self.gateway.verify_signature(notification):
                log.warning("webhook_signature_invalid")
                raise InvalidNotificationSignature(notification.order_id)

        try:
            order_id = extract_order_id(notification.order_id)
        except InvalidNotificationFormat:
            log.error("webhook_order_id_unparseable")
            raise

        order = await self.store.get_order(order_id)
        if order is None:
            log.error("webhook_order_not_found", order_id=order_id)
            raise OrderNotFound(order_id)

        stock_partial_failure = False
        try:
            outcome = await apply_gateway_status(self.store, order, notification)
        except StockCompensationPartialFailure as e:
            # Payment truth is already persisted; acknowledge and leave stock to an operator
            outcome = e.outcome
            stock_partial_failure = True

        await record_activity(
            self.activity_log,
            order.user_id,
            "PAYMENT_NOTIFICATION",
            f"Payment notification: {notification.transaction_status} for order {order_id}",
            ip_address,
        )

        log.info("webhook_processed",
                 order_id=order_id,
                 status=outcome.status.value,
                 payment_status=outcome.payment_status,
                 applied=outcome.changed)

        data = outcome.summary()
        if stock_partial_failure:
            data["stockCompensation"] = "partial_failure"

        return {
            "success": True,
            "message": "Notification processed successfully",
            "data": data,
        }
