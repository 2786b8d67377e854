"""
Tests for the append-only event ledger and its archiver.
"""
import asyncio
import gzip

import pytest

from src.core.errors import DurabilityError
from src.core.json_utils import dumps
from src.state.domain_events import (
    ManualOverride,
    OrderCreated,
    OrderFilled,
    Side,
    from_record,
    make_override,
)
from src.state.event_ledger import EventLedger, day_file_name, list_day_files
from src.state.ledger_archiver import LedgerArchiver

T0 = 1714564800000  # 2024-05-01T12:00:00Z

DAY_MS = 86_400_000


def _created(oid: str, instrument: str = "SOL_USDC", ts: int = T0) -> OrderCreated:
    return OrderCreated(
        event_id=f"created:{oid}", instrument=instrument, timestamp_ms=ts,
        order_id=oid, side=Side.BUY, price=150.0, quantity=0.1,
    )


def _filled(oid: str, qty: float, amount: float, ts: int = T0) -> OrderFilled:
    return OrderFilled(
        event_id=f"fill:{oid}", instrument="SOL_USDC", timestamp_ms=ts,
        order_id=oid, side=Side.BUY, price=amount / qty, quantity=qty,
        amount=amount, cumulative_quantity=qty,
    )


class TestAppendAndReplay:
    def test_replay_returns_events_in_append_order(self, ledger):
        async def inner():
            await ledger.append(_created("1"))
            await ledger.append(_filled("1", 0.1, 15.0))
            await ledger.append(_created("2"))

        asyncio.run(inner())
        events = list(ledger.replay())
        assert [e.event_id for e in events] == ["created:1", "fill:1", "created:2"]
        assert isinstance(events[1], OrderFilled)
        assert events[1].amount == pytest.approx(15.0)
        assert ledger.appended == 3

    def test_replay_is_restartable(self, ledger):
        asyncio.run(ledger.append(_created("1")))
        assert len(list(ledger.replay())) == 1
        assert len(list(ledger.replay())) == 1

    def test_day_files_partition_by_utc_day(self, ledger, clock):
        async def inner():
            await ledger.append(_created("1"))
            clock.advance(DAY_MS)
            await ledger.append(_created("2"))

        asyncio.run(inner())
        days = [day for day, _ in list_day_files(ledger.directory)]
        assert days == ["2024-05-01", "2024-05-02"]
        assert [e.order_id for e in ledger.replay()] == ["1", "2"]

    def test_replay_filters_by_instrument(self, tmp_path, clock):
        shared_dir = str(tmp_path / "ledger")
        sol = EventLedger(shared_dir, instrument="SOL_USDC", fsync=False, clock=clock)
        btc = EventLedger(shared_dir, instrument="BTC_USDC", fsync=False, clock=clock)

        async def inner():
            await sol.append(_created("1"))
            await btc.append(_created("2", instrument="BTC_USDC"))

        asyncio.run(inner())
        assert [e.order_id for e in sol.replay()] == ["1"]
        assert [e.order_id for e in btc.replay()] == ["2"]
        assert len(list(sol.replay(all_instruments=True))) == 2
        assert [e.order_id for e in sol.replay("btc-usdc")] == ["2"]

    def test_malformed_lines_are_skipped(self, ledger):
        asyncio.run(ledger.append(_created("1")))
        path = ledger.current_path()
        with path.open("a", encoding="utf-8") as fh:
            fh.write("{not json\n")
            fh.write(dumps({"action": "ORDER_FILLED", "instrument": "SOL_USDC", "event_id": "x"}) + "\n")
            fh.write("\n")
        asyncio.run(ledger.append(_created("2")))

        events = list(ledger.replay())
        assert [e.order_id for e in events] == ["1", "2"]
        assert ledger.skipped_records == 2

    def test_override_roundtrip_keeps_audit_fields(self, ledger):
        event = make_override(
            "SOL_USDC", 1.5, 225.0, 3, "reconcile_increase",
            drift=0.5, reference_price=150.0, price_source="average",
            previous_quantity=1.0, previous_amount=150.0, timestamp_ms=T0,
        )
        asyncio.run(ledger.append(event))
        (replayed,) = list(ledger.replay())
        assert isinstance(replayed, ManualOverride)
        assert replayed == event

    def test_record_format(self, ledger):
        asyncio.run(ledger.append(_created("1")))
        record = _created("1").to_record()
        assert record["timestamp"] == "2024-05-01T12:00:00.000Z"
        assert record["action"] == "ORDER_CREATED"
        assert record["orderId"] == "1"
        assert from_record(record) == _created("1")


class TestDurability:
    def test_open_fails_when_directory_unusable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        led = EventLedger(str(blocker), instrument="SOL_USDC")
        with pytest.raises(DurabilityError):
            led.open()

    def test_append_failure_raises_and_reports(self, tmp_path, clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        errors = []
        led = EventLedger(str(blocker / "sub"), instrument="SOL_USDC", on_write_error=errors.append, clock=clock)

        with pytest.raises(DurabilityError):
            asyncio.run(led.append(_created("1")))
        assert led.write_errors == 1
        assert led.appended == 0
        assert len(errors) == 1


class TestLedgerArchiver:
    def test_old_days_are_gzipped_and_still_replayed(self, ledger, clock):
        async def inner():
            await ledger.append(_created("1"))
            clock.advance(DAY_MS)
            await ledger.append(_created("2"))

        asyncio.run(inner())
        archiver = LedgerArchiver(str(ledger.directory), retention_days=1)
        archived = archiver.archive_before("2024-05-02")

        assert [p.name for p in archived] == [day_file_name("2024-05-01") + ".gz"]
        assert not (ledger.directory / day_file_name("2024-05-01")).exists()
        with gzip.open(archived[0], "rt", encoding="utf-8") as fh:
            assert "created:1" in fh.read()
        assert [e.order_id for e in ledger.replay()] == ["1", "2"]

    def test_upload_to_s3_when_bucket_configured(self, ledger):
        asyncio.run(ledger.append(_created("1")))
        uploads = []

        class FakeS3Client:
            def upload_file(self, filename, bucket, key):
                uploads.append((filename, bucket, key))

        archiver = LedgerArchiver(str(ledger.directory), s3_bucket="my-bucket", s3_client=FakeS3Client())
        archiver.archive_before("2099-01-01")

        assert len(uploads) == 1
        fname, bucket, key = uploads[0]
        assert bucket == "my-bucket"
        assert key == "events_2024-05-01.jsonl.gz"
        assert fname.endswith(".gz")

    def test_failed_upload_keeps_local_archive(self, ledger):
        asyncio.run(ledger.append(_created("1")))

        class BrokenS3Client:
            def upload_file(self, filename, bucket, key):
                raise RuntimeError("no credentials")

        archiver = LedgerArchiver(str(ledger.directory), s3_bucket="b", s3_client=BrokenS3Client())
        archived = archiver.archive_before("2099-01-01")
        assert len(archived) == 1
        assert archived[0].exists()

    def test_current_day_is_never_archived(self, ledger):
        asyncio.run(ledger.append(_created("1")))
        archiver = LedgerArchiver(str(ledger.directory))
        assert archiver.archive_before("2024-05-01") == []
