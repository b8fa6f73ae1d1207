"""
Bloom Sisters Payment Server
============================
FastAPI server for the payment reconciliation core:
- Hosted-payment creation for customers
- Gateway webhook receiver
- Admin fulfillment status updates
- Admin poll-sync controls (manual, batch, auto-sync timer)
- Health monitoring

pip install fastapi uvicorn pydantic asyncpg httpx structlog pyjwt
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from api.auth import get_current_user, require_admin
from pipeline.errors import InvalidNotificationFormat, PaymentSyncError
from pipeline.midtrans_gateway import IPaymentGateway, MidtransConfig, MidtransGateway
from pipeline.order_store import (
    IActivityLog,
    IOrderStore,
    PostgresActivityLog,
    PostgresOrderStore,
)
from pipeline.payment_service import PaymentService
from pipeline.webhook_reconciler import WebhookReconciler
from schemas.order_models import Actor, BatchSyncReport, ConcurrentSyncSkipped
from tasks.payment_sync import SyncConfig, SyncCoordinator


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    VERSION = "1.0.0"


config = ServerConfig()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, config.LOG_LEVEL, logging.INFO)
    ),
)

logger = structlog.get_logger().bind(component="server")

START_TIME = datetime.utcnow()


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreatePaymentRequest(BaseModel):
    """Customer request to pay for an order"""
    orderId: Optional[str] = None


class UpdateOrderStatusRequest(BaseModel):
    """Admin fulfillment status change"""
    status: Optional[str] = None


class AutoSyncRequest(BaseModel):
    """Auto-sync toggle / interval change"""
    enabled: Optional[bool] = None
    intervalSeconds: Optional[int] = Field(default=None)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    auto_sync_running: bool
    orders_in_flight: int


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def report_body(report: BatchSyncReport) -> Dict[str, Any]:
    return {
        "selected": report.selected,
        "synced": [
            {"orderId": r.order_id, "status": r.status.value, "paymentStatus": r.payment_status}
            for r in report.synced
        ],
        "skipped": report.skipped,
        "failed": [{"orderId": k, "error": v} for k, v in report.failed.items()],
    }


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    store: Optional[IOrderStore] = None,
    activity_log: Optional[IActivityLog] = None,
    gateway: Optional[IPaymentGateway] = None,
    coordinator: Optional[SyncCoordinator] = None,
    auto_sync: Optional[bool] = None,
) -> FastAPI:
    """
    Build the app. Collaborators default to Postgres and Midtrans; tests pass
    in-memory ones.
    """
    store = store or PostgresOrderStore()
    activity_log = activity_log or PostgresActivityLog()
    gateway = gateway or MidtransGateway()
    coordinator = coordinator or SyncCoordinator(store, gateway, activity_log)
    auto_sync = SyncConfig.ENABLED if auto_sync is None else auto_sync

    payments = PaymentService(store, activity_log, gateway)
    reconciler = WebhookReconciler(
        store,
        activity_log,
        gateway=gateway,
        verify_signature=MidtransConfig.VERIFY_SIGNATURE,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=config.VERSION, env=config.ENV)

        if isinstance(store, PostgresOrderStore):
            await database.init_database()

        if auto_sync:
            await coordinator.start()

        logger.info("server_ready", auto_sync=auto_sync)

        yield

        logger.info("server_shutting_down")
        await coordinator.stop()
        await gateway.close()
        if isinstance(store, PostgresOrderStore):
            await database.close_database()

    app = FastAPI(
        title="Bloom Sisters Payment Service",
        description="Midtrans payment creation, webhook and poll-sync reconciliation",
        version=config.VERSION,
        lifespan=lifespan,
    )

    app.state.store = store
    app.state.activity_log = activity_log
    app.state.gateway = gateway
    app.state.coordinator = coordinator
    app.state.payments = payments
    app.state.reconciler = reconciler

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(PaymentSyncError)
    async def payment_error_handler(request: Request, exc: PaymentSyncError):
        return error_response(exc.http_status, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Invalid request body")

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        uptime = (datetime.utcnow() - START_TIME).total_seconds()
        return HealthResponse(
            status="healthy",
            version=config.VERSION,
            uptime_seconds=uptime,
            auto_sync_running=coordinator.is_running,
            orders_in_flight=len(coordinator.in_flight),
        )

    # =========================================================================
    # PAYMENT ENDPOINTS
    # =========================================================================

    @app.post("/api/payment/create")
    async def create_payment(
        body: CreatePaymentRequest,
        request: Request,
        actor: Actor = Depends(get_current_user),
    ):
        """Create a hosted-payment transaction for one of the caller's orders."""
        if not body.orderId:
            return error_response(400, "Order ID is required")
        return await payments.create_payment(body.orderId, actor, client_ip(request))

    @app.post("/api/payment/notification")
    async def payment_notification(request: Request):
        """
        Gateway webhook receiver. Unauthenticated.

        Duplicates are acknowledged with 200; only a malformed payload (400),
        a bad signature (403) or an unknown order (404) is rejected.
        """
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidNotificationFormat(None)

        try:
            return await reconciler.handle(payload, client_ip(request))
        except PaymentSyncError:
            raise
        except Exception as e:
            logger.error("webhook_unhandled_error", error=str(e), error_type=type(e).__name__)
            return error_response(500, "Failed to process notification")

    # =========================================================================
    # ADMIN: ORDERS
    # =========================================================================

    @app.patch("/api/orders/{order_id}/status")
    async def update_order_status(
        order_id: str,
        body: UpdateOrderStatusRequest,
        request: Request,
        actor: Actor = Depends(require_admin),
    ):
        order = await payments.update_fulfillment_status(order_id, body.status, actor, client_ip(request))
        return {
            "success": True,
            "message": "Order status updated",
            "data": {
                "orderId": order.id,
                "status": order.status.value,
                "paymentStatus": order.payment_status,
            },
        }

    # =========================================================================
    # ADMIN: PAYMENT SYNC
    # =========================================================================

    @app.get("/api/orders/payment/sync/{order_id}")
    async def sync_order_payment(
        order_id: str,
        request: Request,
        actor: Actor = Depends(require_admin),
    ):
        """Manual single-order sync; errors surface to the caller."""
        result = await coordinator.sync_one(order_id, actor.user_id, client_ip(request))

        if isinstance(result, ConcurrentSyncSkipped):
            return error_response(409, "Sync already in progress for this order, try again shortly")

        return {
            "success": True,
            "message": "Payment status synced",
            "data": {
                "status": result.status.value,
                "paymentStatus": result.payment_status,
            },
        }

    @app.post("/api/orders/payment/sync-pending")
    async def sync_pending_payments(actor: Actor = Depends(require_admin)):
        report = await coordinator.sync_pending()
        return {
            "success": True,
            "message": f"Synced {len(report.synced)} of {report.selected} pending orders",
            "data": report_body(report),
        }

    @app.post("/api/orders/payment/sync-all")
    async def sync_all_pending_payments(actor: Actor = Depends(require_admin)):
        report = await coordinator.sync_all_pending()
        return {
            "success": True,
            "message": f"Synced {len(report.synced)} of {report.selected} pending orders",
            "data": report_body(report),
        }

    @app.get("/api/orders/payment/sync-status")
    async def sync_status(actor: Actor = Depends(require_admin)):
        return {"success": True, "data": await coordinator.status()}

    @app.get("/api/orders/payment/activity")
    async def payment_activity(
        limit: int = Query(default=20, ge=1, le=100),
        actor: Actor = Depends(require_admin),
    ):
        """Newest audit entries (payments, notifications, syncs, status changes)."""
        entries = await activity_log.recent(limit)
        return {
            "success": True,
            "data": [
                {
                    "id": e.id,
                    "userId": e.user_id,
                    "action": e.action,
                    "details": e.details,
                    "ipAddress": e.ip_address,
                    "createdAt": e.created_at.isoformat(),
                }
                for e in entries
            ],
        }

    @app.put("/api/orders/payment/auto-sync")
    async def configure_auto_sync(body: AutoSyncRequest, actor: Actor = Depends(require_admin)):
        if body.intervalSeconds is not None:
            try:
                await coordinator.set_interval(body.intervalSeconds)
            except ValueError as e:
                return error_response(400, str(e))

        if body.enabled is True:
            await coordinator.start()
        elif body.enabled is False:
            await coordinator.stop()

        logger.info("auto_sync_configured", admin_id=actor.user_id,
                    enabled=coordinator.enabled, interval=coordinator.interval_seconds)
        return {"success": True, "data": await coordinator.status()}

    return app


# =============================================================================
# MAIN
# =============================================================================

app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.ENV == "development",
        log_level="info",
    )
