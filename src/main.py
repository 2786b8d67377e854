"""
Entry point wiring all components.

One SharedServices per process (HTTP client, governor, bus, metrics, alerts,
archiver) and one EngineContext + Engine per configured instrument.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import List

from src.config.config import Settings
from src.core.errors import DurabilityError
from src.core.json_utils import dumps
from src.engine_context import create_context, create_shared
from src.infra.logging_cfg import build_logger
from src.orchestrator.engine import Engine

log = build_logger("dcabot")


async def main() -> int:
    try:
        cfg = Settings.load()
    except ValueError as exc:
        log.error(dumps({"event": "config_invalid", "err": str(exc)}))
        return 1
    log.setLevel(getattr(logging, cfg.log_level))

    shared = create_shared(cfg)
    engines: List[Engine] = [Engine(create_context(cfg, inst, shared)) for inst in cfg.instruments]
    bus_task = asyncio.create_task(shared.bus.start(), name="event-bus")

    if cfg.metrics_port:
        shared.metrics.serve(cfg.metrics_port)
    shared.archiver.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    started: List[Engine] = []
    exit_code = 0
    reason = "normal"
    try:
        for engine in engines:
            await engine.start()
            started.append(engine)
        log.info(dumps({"event": "startup", "instruments": [e.instrument for e in started]}))
        await shared.alerts.alert_lifecycle(True, [e.instrument for e in started])
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
        reason = "signal_received"
    except DurabilityError as exc:
        log.critical(dumps({"event": "startup_aborted", "err": str(exc)}))
        exit_code = 2
        reason = "ledger_unwritable"
    finally:
        for engine in started:
            await engine.stop(stop_governor=False)
        await shared.alerts.alert_lifecycle(False, [e.instrument for e in started], reason)
        shared.bus.stop()
        await shared.bus.drain()
        bus_task.cancel()
        await asyncio.gather(bus_task, return_exceptions=True)
        await shared.close()
        log.info("Shutdown complete")
    return exit_code


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nEngine stopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
