"""
Tests for environment settings and per-instrument overrides.
"""
import pytest

from src.config.config import Settings, env_bool
from src.config.per_instrument import ToleranceTable, load_per_instrument_overrides


class TestSettings:
    def test_defaults(self, monkeypatch):
        for key in ("BP_INSTRUMENTS", "BP_INSTRUMENT", "BP_MAX_RPS", "BP_MAX_RPM", "BP_LOG_LEVEL"):
            monkeypatch.delenv(key, raising=False)
        cfg = Settings.load()
        assert cfg.instruments == ["SOL_USDC"]
        assert cfg.max_requests_per_second == 10
        assert cfg.max_requests_per_minute == 100
        assert cfg.log_level == "INFO"

    def test_instrument_list_is_normalized(self, monkeypatch):
        monkeypatch.setenv("BP_INSTRUMENTS", "sol-usdc, btc_usdc,")
        assert Settings.load().instruments == ["SOL_USDC", "BTC_USDC"]

    @pytest.mark.parametrize("key,value", [
        ("BP_MAX_RPS", "0"),
        ("BP_MAX_RPS", "500"),
        ("BP_CIRCUIT_THRESHOLD", "0"),
        ("BP_BACKOFF_BASE_SEC", "0"),
        ("BP_LOG_LEVEL", "chatty"),
        ("BP_DEFAULT_TOLERANCE", "-1"),
    ])
    def test_invalid_values_rejected(self, monkeypatch, key, value):
        monkeypatch.delenv("BP_MAX_RPM", raising=False)
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_masks_secrets(self, monkeypatch):
        monkeypatch.setenv("BP_API_KEY", "key")
        monkeypatch.setenv("BP_API_SECRET", "secret")
        dumped = Settings.load().dump()
        assert dumped["api_key"] == "***"
        assert dumped["api_secret"] == "***"

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("false", False), ("0", False)])
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("BP_FRESH_START", raw)
        assert env_bool("BP_FRESH_START", False) is expected


class TestPerInstrument:
    def test_load_overrides(self, tmp_path):
        p = tmp_path / "per_instrument.yaml"
        p.write_text("SOL:\n  tolerance: 0.02\nbtc-usdc:\n  tolerance: 0.00005\nbroken: 3\n")
        overrides = load_per_instrument_overrides(str(p))
        assert overrides == {"SOL": {"tolerance": 0.02}, "BTC_USDC": {"tolerance": 0.00005}}
        table = ToleranceTable(overrides)
        assert table.tolerance("SOL_USDC") == 0.02
        assert table.tolerance("BTC_USDC") == 0.00005
        assert table.tolerance("ETH_USDC") == 0.001

    def test_missing_or_bad_file_gives_no_overrides(self, tmp_path):
        assert load_per_instrument_overrides(str(tmp_path / "missing.yaml")) == {}
        bad = tmp_path / "bad.yaml"
        bad.write_text("SOL: [unclosed\n")
        assert load_per_instrument_overrides(str(bad)) == {}

    def test_override_field_lookup(self):
        table = ToleranceTable({"SOL": {"tolerance": 0.02, "history_limit": 50}})
        assert table.override("SOL_USDC", "history_limit") == 50
        assert table.override("BTC_USDC", "history_limit", 100) == 100
