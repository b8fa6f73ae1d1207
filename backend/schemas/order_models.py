# schemas/order_models.py
# ============================================================================
# BLOOM SISTERS BACKEND — ORDER / PAYMENT SCHEMAS
# ============================================================================
# Order, order item and gateway payload models shared by the state machine,
# both reconcilers and the HTTP layer.
# ============================================================================

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    """Fulfillment lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """
    Known payment statuses.

    The gateway vocabulary is open ended, so ``Order.payment_status`` is a
    plain string; unknown gateway values pass through uppercased.
    """
    PENDING = "PENDING"
    PAID = "PAID"
    CHALLENGE = "CHALLENGE"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @classmethod
    def normalize(cls, raw: Optional[str]) -> str:
        value = (raw or "").strip().upper()
        try:
            return cls(value).value
        except ValueError:
            return value


class TransactionStatus(str, Enum):
    """Gateway transaction_status vocabulary we map explicitly."""
    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENY = "deny"
    EXPIRE = "expire"
    CANCEL = "cancel"


class FraudStatus(str, Enum):
    ACCEPT = "accept"
    CHALLENGE = "challenge"


# Fulfillment states a payment notification may never move out of
LOCKED_FULFILLMENT_STATUSES = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
})


# ============================================================================
# SECTION 2: ORDER ENTITIES
# ============================================================================

class OrderItem(BaseModel):
    """Line snapshot taken at checkout. ``price`` is frozen, never re-read."""
    product_id: str
    quantity: int = Field(gt=0)
    price: int = Field(ge=0)
    product_name: Optional[str] = None
    product_stock: Optional[int] = None


class Order(BaseModel):
    """Core order entity (payment-relevant slice)."""
    id: str
    user_id: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    payment_status: str = PaymentStatus.PENDING.value
    payment_method: Optional[str] = None

    midtrans_order_id: Optional[str] = None
    payment_token: Optional[str] = None
    payment_url: Optional[str] = None

    # Set once, in the same write that releases the reservation; never cleared
    stock_restored_at: Optional[datetime] = None

    total: int = 0
    shipping_fee: int = 0

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def stock_already_restored(self) -> bool:
        return self.stock_restored_at is not None

    @property
    def awaiting_payment(self) -> bool:
        return (
            bool(self.midtrans_order_id)
            and self.payment_status.upper() == PaymentStatus.PENDING.value
            and self.status != OrderStatus.CANCELLED
        )


# Columns the Order Store accepts in update_order
UPDATABLE_ORDER_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_method",
    "midtrans_order_id",
    "payment_token",
    "payment_url",
    "stock_restored_at",
    "updated_at",
})


# ============================================================================
# SECTION 3: GATEWAY PAYLOADS
# ============================================================================

class GatewayNotification(BaseModel):
    """
    Inbound webhook body, also the shape returned by a status query.

    ``order_id`` is the composite ``ORDER-{orderId}-{timestamp}`` id.
    """
    model_config = ConfigDict(extra="allow")

    order_id: str = Field(min_length=1)
    transaction_status: str = Field(min_length=1)
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    gross_amount: Optional[str] = None
    status_code: Optional[str] = None
    signature_key: Optional[str] = None
    transaction_id: Optional[str] = None

    @field_validator("gross_amount", "status_code", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)

    @field_validator("transaction_status", "fraud_status", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value).strip().lower()


class PaymentTransaction(BaseModel):
    """Hosted-payment transaction returned by the gateway."""
    token: str
    redirect_url: str


# ============================================================================
# SECTION 4: STATE MACHINE RESULTS
# ============================================================================

class Transition(BaseModel):
    """Pure result of mapping a gateway status onto an order."""
    status: OrderStatus
    payment_status: str
    restore_stock: bool = False
    guarded: bool = False
    compensation_skipped: bool = False


class StockFailure(BaseModel):
    product_id: str
    quantity: int
    error: str


class TransitionOutcome(BaseModel):
    """What was actually applied to an order."""
    order_id: str
    previous_status: OrderStatus
    previous_payment_status: str
    status: OrderStatus
    payment_status: str
    payment_method: Optional[str] = None
    changed: bool = False
    guarded: bool = False
    stock_restored: List[str] = Field(default_factory=list)
    stock_failures: List[StockFailure] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "status": self.status.value,
            "paymentStatus": self.payment_status,
            "applied": self.changed,
        }


# ============================================================================
# SECTION 5: SYNC RESULTS
# ============================================================================

class SyncResult(BaseModel):
    order_id: str
    status: OrderStatus
    payment_status: str
    transaction_status: str
    changed: bool = False


class ConcurrentSyncSkipped(BaseModel):
    """Returned instead of querying when the order is already being synced."""
    order_id: str
    reason: str = "sync already in flight"


class SyncLogEntry(BaseModel):
    """One line of the rolling sync activity log."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    order_ref: Optional[str] = None
    success: bool
    message: str

    def render(self) -> str:
        mark = "OK" if self.success else "FAIL"
        clock = self.timestamp.strftime("%H:%M:%S")
        if self.order_ref is None:
            return f"{mark} {clock} - {self.message}"
        return f"{mark} {clock} - Order {self.order_ref}: {self.message}"


class BatchSyncReport(BaseModel):
    selected: int = 0
    synced: List[SyncResult] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None


class ActivityLogEntry(BaseModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    action: str
    details: str
    ip_address: str = "unknown"
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# SECTION 6: ACTORS
# ============================================================================

class Actor(BaseModel):
    """Authenticated caller, decoded from the bearer token."""
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


ADMIN_ROLES = frozenset({"ADMIN", "SUPERADMIN"})
