"""
Tests for VenueClient error mapping and the typed VenueApi (httpx MockTransport).
"""
import httpx
import pytest

from src.core.errors import RateLimited, TransientNetworkError, ValidationError, VenueError
from src.core.json_utils import loads
from src.execution.api_governor import ApiGovernor, GovernorConfig
from src.execution.order_ledger import OrderStatus
from src.execution.venue_api import VenueApi, parse_venue_order
from src.execution.venue_client import VenueClient, VenueRequest
from src.state.domain_events import Side

BASE = "https://api.test"


def signer(request):
    return {"X-API-Key": "key", "X-Instruction": request.instruction or ""}


def make_client(handler, with_signer=True):
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    return VenueClient(BASE, signer=signer if with_signer else None, client=http)


def make_governor():
    return ApiGovernor(GovernorConfig(
        backoff_base_sec=0.01, backoff_max_sec=0.02, transient_retry_delay_sec=0.01,
        default_timeout_sec=2.0, tick_sec=0.01,
    ))


class TestVenueClient:
    @pytest.mark.asyncio
    async def test_private_request_is_signed(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("X-API-Key")
            seen["instruction"] = request.headers.get("X-Instruction")
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        resp = await client.execute(VenueRequest("GET", "/api/v1/capital", instruction="balanceQuery", private=True))
        assert resp.data == {"ok": True}
        assert seen == {"key": "key", "instruction": "balanceQuery"}

    @pytest.mark.asyncio
    async def test_private_request_without_signer_fails(self):
        client = make_client(lambda request: httpx.Response(200, json={}), with_signer=False)
        with pytest.raises(VenueError):
            await client.execute(VenueRequest("GET", "/api/v1/capital", private=True))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,text,expected", [
        (429, "Too Many Requests", RateLimited),
        (400, "Request rate limit exceeded", RateLimited),
        (503, "Service Unavailable", TransientNetworkError),
        (400, "Invalid order", VenueError),
        (404, "Not found", VenueError),
    ])
    async def test_status_mapping(self, status, text, expected):
        client = make_client(lambda request: httpx.Response(status, text=text))
        with pytest.raises(expected):
            await client.execute(VenueRequest("GET", "/api/v1/ticker"))

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransientNetworkError):
            await client.execute(VenueRequest("GET", "/api/v1/ticker"))


class TestParseVenueOrder:
    def test_backpack_order_payload(self):
        order = parse_venue_order({
            "id": "111", "symbol": "sol_usdc", "side": "Bid", "price": "150.5", "quantity": "0.2",
            "executedQuantity": "0.1", "executedQuoteQuantity": "15.05", "status": "PartiallyFilled",
            "createdAt": 1714564800000,
        })
        assert order.symbol == "SOL_USDC"
        assert order.side is Side.BUY
        assert order.status is OrderStatus.PARTIALLY_FILLED
        assert order.filled_quantity == pytest.approx(0.1)
        assert order.to_order().filled_amount == pytest.approx(15.05)

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError):
            parse_venue_order({"price": "1", "quantity": "1", "side": "Ask"})

    def test_expired_maps_to_cancelled(self):
        order = parse_venue_order({"id": "1", "price": "1", "quantity": "1", "side": "Ask", "status": "Expired"})
        assert order.status is OrderStatus.CANCELLED
        assert order.side is Side.SELL


class TestVenueApi:
    @pytest.mark.asyncio
    async def test_ticker_and_balance(self):
        def handler(request):
            if request.url.path == "/api/v1/ticker":
                assert request.url.params["symbol"] == "SOL_USDC"
                return httpx.Response(200, json={"symbol": "SOL_USDC", "lastPrice": "151.2",
                                                 "priceChangePercent": "1.5"})
            if request.url.path == "/api/v1/capital":
                return httpx.Response(200, json={"SOL": {"available": "1.5", "locked": "0.5", "staked": "0"}})
            return httpx.Response(404, text="not found")

        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(handler), gov)
            ticker = await api.ticker("sol-usdc")
            assert ticker.last_price == pytest.approx(151.2)
            assert ticker.change_pct == pytest.approx(1.5)
            assert await api.balance("sol") == pytest.approx(2.0)
            assert await api.balance("BTC") == 0.0
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_ticker_without_price_is_invalid(self):
        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(lambda request: httpx.Response(200, json={"lastPrice": "0"})), gov)
            with pytest.raises(ValidationError):
                await api.ticker("SOL_USDC")
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_open_orders_skip_malformed_entries(self):
        payload = [
            {"id": "1", "symbol": "SOL_USDC", "side": "Bid", "price": "150", "quantity": "0.1", "status": "New"},
            {"symbol": "SOL_USDC", "side": "Bid", "price": "149", "quantity": "0.1"},
        ]
        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(lambda request: httpx.Response(200, json=payload)), gov)
            orders = await api.open_orders("SOL_USDC")
            assert [o.id for o in orders] == ["1"]
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_order_status_404_is_none(self):
        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(lambda request: httpx.Response(404, text="Order not found")), gov)
            assert await api.order_status("SOL_USDC", "42") is None
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_create_order_body_and_no_transient_retry(self):
        calls = []

        def handler(request):
            calls.append(loads(request.content))
            return httpx.Response(503, text="upstream timeout")

        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(handler), gov)
            with pytest.raises(TransientNetworkError):
                await api.create_order("SOL_USDC", Side.BUY, 150.0, 0.1)
        finally:
            await gov.stop()
        assert len(calls) == 1
        assert calls[0] == {
            "symbol": "SOL_USDC", "side": "Bid", "orderType": "Limit",
            "price": "150", "quantity": "0.1", "timeInForce": "GTC",
        }

    @pytest.mark.asyncio
    async def test_create_order_retries_rate_limit(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(429, text="rate limit")
            return httpx.Response(200, json={
                "id": "900", "side": "Bid", "price": "150", "quantity": "0.1", "status": "New",
            })

        gov = make_governor()
        gov.start()
        try:
            api = VenueApi(make_client(handler), gov)
            order = await api.create_order("SOL_USDC", Side.BUY, 150.0, 0.1)
        finally:
            await gov.stop()
        assert len(calls) == 2
        assert order.id == "900"
        assert order.symbol == "SOL_USDC"
        assert order.status is OrderStatus.NEW
