"""
Ledger archiver that runs a background compression loop.

Day files older than the retention window are gzipped in place
(`events_YYYY-MM-DD.jsonl` -> `events_YYYY-MM-DD.jsonl.gz`) and optionally
uploaded to S3. Contents are never altered, so replay still sees every event.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

from src.core.json_utils import dumps
from src.state.event_ledger import list_day_files

log = logging.getLogger("dcabot")


class LedgerArchiver:
    def __init__(
        self,
        ledger_dir: str,
        retention_days: int = 30,
        interval_sec: float = 3600,
        s3_bucket: Optional[str] = None,
        s3_client: Any = None,
    ) -> None:
        self.directory = Path(ledger_dir)
        self.retention_days = retention_days
        self.interval_sec = interval_sec
        self.s3_bucket = s3_bucket
        self._s3_client = s3_client
        self._task: asyncio.Task | None = None
        self._running = False

    def _s3(self) -> Any:
        if self._s3_client is None:
            import boto3

            self._s3_client = boto3.client("s3")
        return self._s3_client

    def cutoff_day(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return (now - timedelta(days=self.retention_days)).strftime("%Y-%m-%d")

    def archive_before(self, cutoff_day: str) -> List[Path]:
        """Gzip every plain day file strictly older than `cutoff_day`. Returns the archives written."""
        archived: List[Path] = []
        for day, path in list_day_files(self.directory):
            if day >= cutoff_day or path.suffix == ".gz":
                continue
            gz_path = Path(str(path) + ".gz")
            if gz_path.exists():
                # an earlier pass wrote the archive but did not remove the source
                log.warning(dumps({"event": "ledger_archive_exists", "path": str(gz_path)}))
                continue
            tmp_path = Path(str(gz_path) + ".tmp")
            try:
                with path.open("rb") as f_in, gzip.open(tmp_path, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
                tmp_path.replace(gz_path)
                path.unlink()
            except OSError as exc:
                log.error(dumps({"event": "ledger_archive_failed", "path": str(path), "err": str(exc)}))
                tmp_path.unlink(missing_ok=True)
                continue
            archived.append(gz_path)
            log.info(dumps({"event": "ledger_day_archived", "day": day, "path": str(gz_path)}))
            if self.s3_bucket:
                self._upload(gz_path)
        return archived

    def _upload(self, gz_path: Path) -> bool:
        try:
            self._s3().upload_file(str(gz_path), self.s3_bucket, gz_path.name)
        except Exception as exc:
            # the local archive is kept
            log.warning(dumps({"event": "ledger_archive_upload_failed", "path": str(gz_path), "err": str(exc)}))
            return False
        log.info(dumps({"event": "ledger_archive_uploaded", "bucket": self.s3_bucket, "key": gz_path.name}))
        return True

    async def archive_once(self) -> List[Path]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.archive_before, self.cutoff_day())

    async def _loop(self) -> None:
        self._running = True
        interval = max(60.0, float(self.interval_sec))
        while self._running:
            try:
                await self.archive_once()
            except Exception as exc:
                log.error(dumps({"event": "ledger_archive_loop_error", "err": str(exc)}))
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
