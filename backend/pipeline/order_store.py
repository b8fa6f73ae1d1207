"""
Order Store & Activity Log
==========================
Persistence interfaces consumed by the payment core, with an in-memory
implementation (tests, local runs) and a Postgres one backed by
``database``.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

import database
from pipeline.errors import OrderNotFound
from schemas.order_models import (
    ActivityLogEntry,
    Order,
    OrderItem,
    UPDATABLE_ORDER_FIELDS,
)

logger = structlog.get_logger().bind(component="order_store")


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Order Store collaborator"""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_items_with_products(self, order_id: str) -> List[OrderItem]:
        pass

    @abstractmethod
    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Order:
        """Raises OrderNotFound if the order vanished."""
        pass

    @abstractmethod
    async def increment_product_stock(self, product_id: str, by_quantity: int) -> None:
        pass

    @abstractmethod
    async def list_pending_payment_orders(self, limit: Optional[int] = None) -> List[Order]:
        """Orders with a gateway transaction still awaiting payment, oldest first."""
        pass

    @abstractmethod
    async def count_pending_payment_orders(self) -> int:
        pass


class IActivityLog(ABC):
    """Append-only audit trail"""

    @abstractmethod
    async def append(
        self,
        user_id: Optional[str],
        action: str,
        details: str,
        ip_address: str = "unknown",
    ) -> ActivityLogEntry:
        pass

    @abstractmethod
    async def recent(self, limit: int = 50) -> List[ActivityLogEntry]:
        pass


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_ORDER_FIELDS
    if unknown:
        raise ValueError(f"Columns not updatable: {sorted(unknown)}")


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """In-memory order store; one asyncio.Lock guards all tables"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._items: Dict[str, List[OrderItem]] = {}
        self._stock: Dict[str, int] = {}
        self._product_names: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # Seeding helpers (not part of the collaborator contract)

    def add_product(self, product_id: str, stock: int, name: Optional[str] = None) -> None:
        self._stock[product_id] = stock
        self._product_names[product_id] = name or product_id

    def add_order(self, order: Order, items: Optional[List[OrderItem]] = None) -> Order:
        self._orders[order.id] = order
        self._items[order.id] = list(items or [])
        return order

    def stock_of(self, product_id: str) -> int:
        return self._stock[product_id]

    # IOrderStore

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy() if order else None

    async def get_order_items_with_products(self, order_id: str) -> List[OrderItem]:
        async with self._lock:
            return [
                item.model_copy(update={
                    "product_name": self._product_names.get(item.product_id),
                    "product_stock": self._stock.get(item.product_id),
                })
                for item in self._items.get(order_id, [])
            ]

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Order:
        _check_fields(fields)
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            update = dict(fields)
            update.setdefault("updated_at", datetime.utcnow())
            updated = order.model_copy(update=update)
            self._orders[order_id] = updated
            return updated.model_copy()

    async def increment_product_stock(self, product_id: str, by_quantity: int) -> None:
        async with self._lock:
            if product_id not in self._stock:
                raise LookupError(f"Product not found: {product_id}")
            self._stock[product_id] += by_quantity

    async def list_pending_payment_orders(self, limit: Optional[int] = None) -> List[Order]:
        async with self._lock:
            pending = sorted(
                (o for o in self._orders.values() if o.awaiting_payment),
                key=lambda o: o.created_at,
            )
            if limit is not None:
                pending = pending[:limit]
            return [o.model_copy() for o in pending]

    async def count_pending_payment_orders(self) -> int:
        async with self._lock:
            return sum(1 for o in self._orders.values() if o.awaiting_payment)


class InMemoryActivityLog(IActivityLog):
    """Append-only activity log"""

    def __init__(self):
        self._entries: List[ActivityLogEntry] = []
        self._lock = asyncio.Lock()

    async def append(
        self,
        user_id: Optional[str],
        action: str,
        details: str,
        ip_address: str = "unknown",
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            details=details,
            ip_address=ip_address,
        )
        async with self._lock:
            self._entries.append(entry)
        return entry

    async def recent(self, limit: int = 50) -> List[ActivityLogEntry]:
        async with self._lock:
            return list(reversed(self._entries))[:limit]


# =============================================================================
# POSTGRES IMPLEMENTATIONS
# =============================================================================

class PostgresOrderStore(IOrderStore):
    """Order store over the asyncpg pool in ``database``"""

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await database.get_order(order_id)
        return Order(**row) if row else None

    async def get_order_items_with_products(self, order_id: str) -> List[OrderItem]:
        rows = await database.get_order_items_with_products(order_id)
        return [OrderItem(**row) for row in rows]

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Order:
        _check_fields(fields)
        row = await database.update_order(order_id, fields)
        if row is None:
            raise OrderNotFound(order_id)
        return Order(**row)

    async def increment_product_stock(self, product_id: str, by_quantity: int) -> None:
        await database.increment_product_stock(product_id, by_quantity)

    async def list_pending_payment_orders(self, limit: Optional[int] = None) -> List[Order]:
        rows = await database.get_pending_payment_orders(limit)
        return [Order(**row) for row in rows]

    async def count_pending_payment_orders(self) -> int:
        return await database.count_pending_payment_orders()


class PostgresActivityLog(IActivityLog):

    async def append(
        self,
        user_id: Optional[str],
        action: str,
        details: str,
        ip_address: str = "unknown",
    ) -> ActivityLogEntry:
        log_id = await database.create_activity_log(user_id, action, details, ip_address)
        return ActivityLogEntry(
            id=log_id,
            user_id=user_id,
            action=action,
            details=details,
            ip_address=ip_address,
        )

    async def recent(self, limit: int = 50) -> List[ActivityLogEntry]:
        rows = await database.get_recent_activity(limit)
        return [ActivityLogEntry(**row) for row in rows]


# =============================================================================
# HELPERS
# =============================================================================

async def record_activity(
    activity_log: IActivityLog,
    user_id: Optional[str],
    action: str,
    details: str,
    ip_address: str = "unknown",
) -> Optional[ActivityLogEntry]:
    """Append to the activity log; a failed write is logged, never raised."""
    try:
        return await activity_log.append(user_id, action, details, ip_address)
    except Exception as e:
        logger.error("activity_log_write_failed", action=action, error=str(e))
        return None
