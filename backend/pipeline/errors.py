"""
Payment reconciliation error taxonomy.

Every error carries the HTTP status it maps to; the API layer renders them
as ``{"success": false, "error": ...}``.
"""

from typing import List, Optional

from schemas.order_models import StockFailure, TransitionOutcome


class PaymentSyncError(Exception):
    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidNotificationFormat(PaymentSyncError):
    """Composite order id could not be parsed. Resending will not help."""
    http_status = 400

    def __init__(self, composite_id: Optional[str]):
        super().__init__("Invalid order ID format")
        self.composite_id = composite_id


class InvalidNotificationSignature(PaymentSyncError):
    http_status = 403

    def __init__(self, composite_id: str):
        super().__init__("Invalid notification signature")
        self.composite_id = composite_id


class OrderNotFound(PaymentSyncError):
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found")
        self.order_id = order_id


class OrderAccessDenied(PaymentSyncError):
    http_status = 403

    def __init__(self, order_id: str):
        super().__init__("Unauthorized access to this order")
        self.order_id = order_id


class OrderNotPending(PaymentSyncError):
    http_status = 400

    def __init__(self, order_id: str, status: str):
        super().__init__("Order already processed")
        self.order_id = order_id
        self.status = status


class MissingGatewayTransaction(PaymentSyncError):
    http_status = 400

    def __init__(self, order_id: str):
        super().__init__("Order does not have a Midtrans transaction")
        self.order_id = order_id


class InvalidFulfillmentStatus(PaymentSyncError):
    http_status = 400

    def __init__(self, status: Optional[str]):
        super().__init__("Invalid order status")
        self.status = status


class GatewayError(PaymentSyncError):
    http_status = 502


class GatewayQueryError(GatewayError):
    """Transient failure asking the gateway for a transaction's status."""

    def __init__(self, midtrans_order_id: str, reason: str):
        super().__init__(f"Gateway status query failed for {midtrans_order_id}: {reason}")
        self.midtrans_order_id = midtrans_order_id
        self.reason = reason


class StockCompensationPartialFailure(PaymentSyncError):
    """
    Raised after the order fields were persisted but one or more stock
    increments failed. ``outcome`` describes what was applied.
    """
    http_status = 500

    def __init__(self, outcome: TransitionOutcome, failures: List[StockFailure]):
        products = ", ".join(f.product_id for f in failures)
        super().__init__(
            f"Stock restore failed for order {outcome.order_id} (products: {products}); "
            "manual stock reconciliation required"
        )
        self.outcome = outcome
        self.failures = failures
