"""
Tests for webhook alerting: filtering, rate limiting, payload formats.
"""
import pytest
from unittest.mock import AsyncMock

from src.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    format_discord,
    format_slack,
)


def make_manager(**overrides):
    cfg = dict(webhook_url="https://hooks.test/x", batch_window_ms=60_000)
    cfg.update(overrides)
    manager = AlertManager(AlertConfig(**cfg))
    manager._http_post = AsyncMock(return_value=True)
    return manager


class TestFiltering:
    @pytest.mark.asyncio
    async def test_disabled_or_no_url_sends_nothing(self):
        assert await make_manager(enabled=False).alert_durability("SOL_USDC", "disk full") is False
        assert await make_manager(webhook_url=None).alert_durability("SOL_USDC", "disk full") is False

    @pytest.mark.asyncio
    async def test_below_min_severity_dropped(self):
        manager = make_manager(min_severity=AlertSeverity.WARNING)
        try:
            assert await manager.alert_stream("SOL_USDC", degraded=False) is False
            assert await manager.alert_stream("SOL_USDC", degraded=True) is True
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_same_type_is_rate_limited(self):
        manager = make_manager(rate_limit_seconds=60)
        try:
            assert await manager.alert_unresolvable("SOL_USDC", 0.5) is True
            assert await manager.alert_unresolvable("SOL_USDC", 0.6) is False
            assert await manager.alert_durability("SOL_USDC", "disk full") is True
        finally:
            await manager.close()


class TestDelivery:
    @pytest.mark.asyncio
    async def test_close_flushes_pending_batch(self):
        manager = make_manager()
        await manager.alert_circuit(True, "CLOSED -> OPEN")
        manager._http_post.assert_not_awaited()
        await manager.close()
        manager._http_post.assert_awaited_once()
        payload = manager._http_post.await_args.args[0]
        assert payload["type"] == "CIRCUIT_OPEN"
        assert payload["severity"] == "WARNING"

    @pytest.mark.asyncio
    async def test_generic_batch_payload(self):
        manager = make_manager()
        await manager.alert_circuit(True, "opened")
        await manager.alert_durability("SOL_USDC", "disk full")
        await manager.flush()
        payload = manager._http_post.await_args.args[0]
        assert [a["type"] for a in payload["alerts"]] == ["CIRCUIT_OPEN", "DURABILITY_ERROR"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_slack_batch_merges_attachments(self):
        manager = make_manager(webhook_type="slack")
        await manager.alert_circuit(True, "opened")
        await manager.alert_unresolvable("SOL_USDC", 0.5, reason="no reference price")
        await manager.flush()
        payload = manager._http_post.await_args.args[0]
        assert len(payload["attachments"]) == 2
        assert payload["attachments"][1]["title"] == "Position drift could not be resolved"
        await manager.close()


class TestFormatters:
    def _alert(self):
        return Alert(
            alert_type=AlertType.UNRESOLVABLE_RECONCILIATION,
            severity=AlertSeverity.CRITICAL,
            title="Position drift could not be resolved",
            message="SOL_USDC drift",
            instrument="SOL_USDC",
            details={"drift": 0.5},
            timestamp_ms=1714564800000,
        )

    def test_slack_format(self):
        payload = format_slack(self._alert(), AlertConfig(bot_name="dca-engine"))
        attachment = payload["attachments"][0]
        assert attachment["color"] == "#FF0000"
        assert {"title": "Instrument", "value": "SOL_USDC", "short": True} in attachment["fields"]
        assert attachment["ts"] == 1714564800

    def test_discord_format(self):
        payload = format_discord(self._alert(), AlertConfig(include_details=False))
        embed = payload["embeds"][0]
        assert embed["color"] == 0xFF0000
        assert embed["timestamp"] == "2024-05-01T12:00:00Z"
        assert [f["name"] for f in embed["fields"]] == ["Instrument", "Type"]
