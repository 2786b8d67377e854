"""
Tests for the PositionStats projection.
"""
import asyncio

import pytest

from src.execution.order_ledger import Order, OrderLedger, OrderStatus
from src.state.domain_events import (
    OrderCancelled,
    OrderFilled,
    OrderPartiallyFilled,
    PositionDetected,
    REASON_UNRESOLVABLE,
    Side,
    make_override,
)
from src.state.event_ledger import EventLedger
from src.state.position_stats import PositionStats

T0 = 1714564800000


def fill(oid, qty, amount, side=Side.BUY, partial=False, cumulative=None, ts=T0):
    cls = OrderPartiallyFilled if partial else OrderFilled
    event_id = f"partial:{oid}:{cumulative}" if partial else f"fill:{oid}"
    return cls(
        event_id=event_id, instrument="BTC_USDC", timestamp_ms=ts, order_id=oid, side=side,
        price=amount / qty, quantity=qty, amount=amount,
        cumulative_quantity=cumulative if cumulative is not None else qty,
    )


class TestFold:
    def test_buy_fills_accumulate(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_all([fill("a", 0.1, 500.0), fill("b", 0.2, 980.0)])

        snap = stats.snapshot()
        assert snap.quantity == pytest.approx(0.3)
        assert snap.amount == pytest.approx(1480.0)
        assert snap.average_price == pytest.approx(4933.333333, rel=1e-6)
        assert snap.order_count == 2

    def test_duplicate_event_id_is_ignored(self):
        stats = PositionStats("BTC_USDC")
        assert stats.apply_event(fill("a", 0.1, 500.0)) is True
        assert stats.apply_event(fill("a", 0.1, 500.0)) is False
        assert stats.total_filled_quantity == pytest.approx(0.1)

    def test_partials_add_quantity_but_not_order_count(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0, partial=True, cumulative=0.1))
        stats.apply_event(fill("a", 0.05, 250.0, partial=True, cumulative=0.15))
        assert stats.total_filled_quantity == pytest.approx(0.15)
        assert stats.filled_order_count == 0
        stats.apply_event(fill("a", 0.05, 250.0, cumulative=0.2))
        assert stats.total_filled_quantity == pytest.approx(0.2)
        assert stats.filled_order_count == 1

    def test_sell_reduces_amount_at_average_cost(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 1.0, 100.0))
        stats.apply_event(fill("b", 1.0, 300.0))
        stats.apply_event(fill("c", 0.5, 150.0, side=Side.SELL))
        assert stats.total_filled_quantity == pytest.approx(1.5)
        assert stats.total_filled_amount == pytest.approx(300.0)
        assert stats.average_price == pytest.approx(200.0)

    def test_sell_beyond_holdings_floors_at_zero(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        stats.apply_event(fill("b", 0.5, 2600.0, side=Side.SELL))
        assert stats.total_filled_quantity == 0.0
        assert stats.total_filled_amount == 0.0
        assert stats.average_price == 0.0

    def test_cancel_does_not_change_position(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        cancelled = OrderCancelled(event_id="cancel:b", instrument="BTC_USDC", timestamp_ms=T0, order_id="b")
        assert stats.apply_event(cancelled) is False
        assert stats.total_filled_quantity == pytest.approx(0.1)

    def test_other_instrument_is_ignored(self):
        stats = PositionStats("ETH_USDC")
        assert stats.apply_event(fill("a", 0.1, 500.0)) is False


class TestCorrections:
    def test_position_detected_adds_one_order(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(PositionDetected(
            event_id="detected:BTC_USDC:1", instrument="BTC_USDC", timestamp_ms=T0,
            quantity=0.2, amount=1000.0, price=5000.0, price_source="ticker",
        ))
        assert stats.snapshot().order_count == 1
        assert stats.average_price == pytest.approx(5000.0)

    def test_override_sets_absolute_values(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        stats.apply_event(make_override("BTC_USDC", 0.3, 1500.0, 2, "reconcile_increase", timestamp_ms=T0 + 1))
        snap = stats.snapshot()
        assert (snap.quantity, snap.amount, snap.order_count) == (0.3, 1500.0, 2)
        assert snap.last_update_ms == T0 + 1

    def test_zeroing_override_starts_new_cycle(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        reset = make_override("BTC_USDC", 0.0, 0.0, 0, "fresh_start")
        stats.apply_event(reset)
        assert stats.processed_event_ids == {reset.event_id}
        assert stats.snapshot().quantity == 0.0

    def test_audit_override_is_not_folded(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        before, version = stats.snapshot(), stats.version
        audit = make_override("BTC_USDC", 0.0, 0.0, 0, REASON_UNRESOLVABLE, drift=0.5, timestamp_ms=T0 + 5)

        assert audit.audit_only
        assert stats.apply_event(audit) is False
        assert stats.snapshot() == before
        assert stats.processed_event_ids == {"fill:a"}
        assert stats.version == version

    def test_replay_is_deterministic(self):
        events = [
            fill("a", 0.1, 500.0),
            fill("b", 0.2, 980.0),
            make_override("BTC_USDC", 0.35, 1730.0, 3, "reconcile_increase"),
            fill("c", 0.05, 240.0, side=Side.SELL),
        ]
        first, second = PositionStats("BTC_USDC"), PositionStats("BTC_USDC")
        first.apply_all(events)
        second.apply_all(list(events) + list(events))
        assert first.snapshot() == second.snapshot()


class TestRebuild:
    def _live_fills(self, ledger, clock, live):
        orders = OrderLedger("SOL_USDC", ledger, on_event=live.apply_event, clock=clock)

        async def inner():
            await orders.register(Order(id="A", instrument="SOL_USDC", side=Side.BUY, price=5000.0, quantity=0.1))
            await orders.register(Order(id="B", instrument="SOL_USDC", side=Side.BUY, price=4900.0, quantity=0.2))
            clock.advance(1000)
            await orders.apply_fill("A", 0.1, 500.0, OrderStatus.FILLED)
            clock.advance(1000)
            await orders.apply_fill("B", 0.1, 490.0, OrderStatus.PARTIALLY_FILLED)
            # the same observation again, as a poll would deliver it
            await orders.apply_fill("B", 0.1, 490.0, OrderStatus.PARTIALLY_FILLED)
            clock.advance(1000)
            await orders.apply_fill("B", 0.2, 980.0, OrderStatus.FILLED)

        asyncio.run(inner())

    def test_live_fold_equals_ledger_rebuild(self, ledger, clock):
        live = PositionStats("SOL_USDC")
        self._live_fills(ledger, clock, live)

        rebuilt = PositionStats("SOL_USDC")
        applied = rebuilt.rebuild_from_ledger(ledger)

        assert applied == 3
        assert rebuilt.snapshot() == live.snapshot()
        assert rebuilt.processed_event_ids == live.processed_event_ids
        snap = rebuilt.snapshot()
        assert snap.quantity == pytest.approx(0.3)
        assert snap.amount == pytest.approx(1480.0)
        assert snap.average_price == pytest.approx(4933.333333, rel=1e-6)
        assert snap.order_count == 2

    def test_rebuild_discards_previous_state(self, ledger, clock):
        live = PositionStats("SOL_USDC")
        self._live_fills(ledger, clock, live)

        stats = PositionStats("SOL_USDC")
        stats.apply_event(make_override("SOL_USDC", 9.0, 9.0, 9, "reconcile_increase", timestamp_ms=T0))
        stats.rebuild_from_ledger(ledger)
        assert stats.snapshot() == live.snapshot()

    def test_rebuild_ignores_other_instruments(self, tmp_path, clock):
        shared_dir = str(tmp_path / "shared")
        sol = EventLedger(shared_dir, instrument="SOL_USDC", fsync=False, clock=clock)
        btc = EventLedger(shared_dir, instrument="BTC_USDC", fsync=False, clock=clock)
        sol.open()
        btc.open()

        async def inner():
            await btc.append(fill("x", 1.0, 60000.0))
            await sol.append(make_override("SOL_USDC", 2.0, 300.0, 1, "reconcile_increase", timestamp_ms=T0))

        asyncio.run(inner())
        stats = PositionStats("SOL_USDC")
        assert stats.rebuild_from_ledger(sol) == 1
        assert stats.snapshot().quantity == 2.0


class TestProfit:
    def test_profit_view(self):
        stats = PositionStats("BTC_USDC")
        stats.apply_event(fill("a", 0.1, 500.0))
        view = stats.calculate_profit(6000.0)
        assert view.current_value == pytest.approx(600.0)
        assert view.profit == pytest.approx(100.0)
        assert view.profit_pct == pytest.approx(20.0)

    def test_no_profit_without_price_or_position(self):
        stats = PositionStats("BTC_USDC")
        assert stats.calculate_profit(6000.0) is None
        stats.apply_event(fill("a", 0.1, 500.0))
        assert stats.calculate_profit(None) is None
