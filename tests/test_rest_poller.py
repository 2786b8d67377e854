"""
Tests for RestPoller service.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from src.core.errors import CircuitOpenError, VenueError
from src.execution.order_ledger import OrderStatus
from src.execution.rest_poller import PollResult, RestPoller, RestPollerConfig
from src.execution.venue_api import Ticker, VenueOrder
from src.market_data.extractors import OrderUpdate, PriceUpdate
from src.state.domain_events import Side


def venue_order(oid, status=OrderStatus.NEW, filled=0.0):
    return VenueOrder(
        id=oid, symbol="SOL_USDC", side=Side.BUY, price=150.0, quantity=0.2,
        filled_quantity=filled, filled_amount=filled * 150.0, status=status, created_at=1,
    )


class TestRestPollerBasic:
    """Basic functionality tests."""

    @pytest.fixture
    def mock_api(self):
        api = MagicMock()
        api.ticker = AsyncMock(return_value=Ticker("SOL_USDC", 151.0, 2.0))
        api.open_orders = AsyncMock(return_value=[])
        api.order_status = AsyncMock(return_value=None)
        return api

    @pytest.fixture
    def poller(self, mock_api):
        return RestPoller("SOL_USDC", mock_api, config=RestPollerConfig(poll_interval_sec=30.0))

    @pytest.mark.asyncio
    async def test_poll_returns_price_event(self, poller):
        events = []
        result = await poller.poll_if_due(events.append, force=True)
        assert isinstance(result, PollResult)
        assert result.success
        assert result.price == 151.0
        assert isinstance(events[0], PriceUpdate)
        assert events[0].source == "rest"

    @pytest.mark.asyncio
    async def test_poll_respects_interval(self, poller, mock_api):
        await poller.poll_if_due(lambda e: None, force=True)
        result = await poller.poll_if_due(lambda e: None)
        assert result.success
        assert result.updates == 0
        assert mock_api.ticker.await_count == 1

    @pytest.mark.asyncio
    async def test_force_poll_ignores_interval(self, poller, mock_api):
        await poller.poll_if_due(lambda e: None, force=True)
        await poller.poll_if_due(lambda e: None, force=True)
        assert mock_api.ticker.await_count == 2

    @pytest.mark.asyncio
    async def test_no_order_queries_without_pending(self, poller, mock_api):
        await poller.poll_once(lambda e: None)
        mock_api.open_orders.assert_not_awaited()


class TestRestPollerOrders:
    """Order status tests."""

    @pytest.mark.asyncio
    async def test_pending_orders_are_reported(self):
        api = MagicMock()
        api.ticker = AsyncMock(return_value=Ticker("SOL_USDC", 151.0))
        api.open_orders = AsyncMock(return_value=[venue_order("1", OrderStatus.PARTIALLY_FILLED, 0.1)])
        api.order_status = AsyncMock(return_value=venue_order("2", OrderStatus.FILLED, 0.2))
        poller = RestPoller("SOL_USDC", api, pending_ids=lambda: {"1", "2"})

        events = []
        result = await poller.poll_once(events.append)

        updates = [e for e in events if isinstance(e, OrderUpdate)]
        assert [(u.order_id, u.status) for u in updates] == [
            ("1", OrderStatus.PARTIALLY_FILLED),
            ("2", OrderStatus.FILLED),
        ]
        assert all(u.source == "rest" for u in updates)
        api.order_status.assert_awaited_once_with("SOL_USDC", "2")
        assert result.orders_checked == 2

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self):
        api = MagicMock()
        api.ticker = AsyncMock(return_value=Ticker("SOL_USDC", 151.0))
        poller = RestPoller("SOL_USDC", api)
        sink = AsyncMock()
        await poller.poll_once(sink)
        sink.assert_awaited_once()


class TestRestPollerErrors:
    """Error handling tests."""

    @pytest.mark.asyncio
    async def test_engine_error_is_reported_not_raised(self):
        api = MagicMock()
        api.ticker = AsyncMock(side_effect=CircuitOpenError("circuit open"))
        poller = RestPoller("SOL_USDC", api)

        events = []
        result = await poller.poll_once(events.append)

        assert not result.success
        assert "circuit open" in result.error
        assert events == []
        assert poller.errors == 1

    @pytest.mark.asyncio
    async def test_price_still_delivered_when_order_list_fails(self):
        api = MagicMock()
        api.ticker = AsyncMock(return_value=Ticker("SOL_USDC", 151.0))
        api.open_orders = AsyncMock(side_effect=CircuitOpenError("circuit open"))
        api.order_status = AsyncMock()
        poller = RestPoller("SOL_USDC", api, pending_ids=lambda: {"1"})

        events = []
        result = await poller.poll_once(events.append)

        assert not result.success
        assert "open_orders" in result.error
        assert result.price == 151.0
        assert [type(e) for e in events] == [PriceUpdate]
        api.order_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_bad_order_does_not_hide_the_others(self):
        api = MagicMock()
        api.ticker = AsyncMock(return_value=Ticker("SOL_USDC", 151.0))
        api.open_orders = AsyncMock(return_value=[venue_order("2", OrderStatus.PARTIALLY_FILLED, 0.1)])
        api.order_status = AsyncMock(side_effect=VenueError("unknown order", status=400))
        poller = RestPoller("SOL_USDC", api, pending_ids=lambda: {"1", "2"})

        events = []
        result = await poller.poll_once(events.append)

        assert not result.success
        assert "order_status:1" in result.error
        assert isinstance(events[0], PriceUpdate)
        assert [e.order_id for e in events if isinstance(e, OrderUpdate)] == ["2"]
        assert result.orders_checked == 2
        assert poller.errors == 1
