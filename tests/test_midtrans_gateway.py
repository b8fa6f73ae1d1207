import base64
import json

import httpx
import pytest

from pipeline.errors import GatewayError, GatewayQueryError
from pipeline.midtrans_gateway import MidtransGateway, compute_signature
from schemas.order_models import GatewayNotification

SERVER_KEY = "SB-Mid-server-test"


def make_gateway(handler, is_production=False):
    return MidtransGateway(
        server_key=SERVER_KEY,
        is_production=is_production,
        transport=httpx.MockTransport(handler),
    )


async def test_create_transaction_posts_to_snap_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"token": "snap-token", "redirect_url": "https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token"})

    gateway = make_gateway(handler)
    tx = await gateway.create_transaction({"transaction_details": {"order_id": "ORDER-abc-1", "gross_amount": 1000}})
    await gateway.close()

    assert tx.token == "snap-token"
    assert seen["url"] == "https://app.sandbox.midtrans.com/snap/v1/transactions"
    assert seen["auth"] == "Basic " + base64.b64encode(f"{SERVER_KEY}:".encode()).decode()
    assert seen["body"]["transaction_details"]["gross_amount"] == 1000


async def test_create_transaction_rejection_raises():
    def handler(request):
        return httpx.Response(400, json={"error_messages": ["transaction_details.gross_amount is required"]})

    gateway = make_gateway(handler)
    with pytest.raises(GatewayError, match="gross_amount"):
        await gateway.create_transaction({"transaction_details": {"order_id": "ORDER-abc-1"}})


async def test_query_status_uses_production_api():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200, json={
            "order_id": "ORDER-abc-1",
            "transaction_status": "capture",
            "fraud_status": "accept",
            "payment_type": "credit_card",
            "gross_amount": "165000.00",
            "status_code": "200",
        })

    gateway = make_gateway(handler, is_production=True)
    report = await gateway.query_transaction_status("ORDER-abc-1")

    assert seen["url"] == "https://api.midtrans.com/v2/ORDER-abc-1/status"
    assert report.transaction_status == "capture"
    assert report.fraud_status == "accept"


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="upstream error"),
    httpx.Response(200, json={"status_code": "404", "status_message": "Transaction doesn't exist."}),
    httpx.Response(200, text="not json"),
])
async def test_query_status_failures_raise_query_error(response):
    gateway = make_gateway(lambda request: response)

    with pytest.raises(GatewayQueryError):
        await gateway.query_transaction_status("ORDER-abc-1")


async def test_query_status_timeout_raises_query_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = make_gateway(handler)

    with pytest.raises(GatewayQueryError) as excinfo:
        await gateway.query_transaction_status("ORDER-abc-1")

    assert excinfo.value.reason == "timeout"


def test_verify_signature():
    gateway = MidtransGateway(server_key=SERVER_KEY)
    signature = compute_signature("ORDER-abc-1", "200", "165000.00", SERVER_KEY)

    good = GatewayNotification(order_id="ORDER-abc-1", transaction_status="settlement",
                               status_code="200", gross_amount="165000.00", signature_key=signature)
    forged = good.model_copy(update={"gross_amount": "1.00"})
    unsigned = good.model_copy(update={"signature_key": None})

    assert gateway.verify_signature(good)
    assert not gateway.verify_signature(forged)
    assert not gateway.verify_signature(unsigned)
