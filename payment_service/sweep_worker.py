"""
Periodic sweep runner.

    python -m payment_service.sweep_worker

Runs one reconciliation sweep every SWEEP_INTERVAL_SECONDS until SIGINT or
SIGTERM. A failed sweep is logged and the loop carries on.
"""
import asyncio
import logging
import signal

from common.settings import settings
from payment_service.engine import ReconciliationEngine
from payment_service.wiring import build_container

logger = logging.getLogger(__name__)


async def run(engine: ReconciliationEngine, interval: float, stop: asyncio.Event) -> int:
    sweeps = 0
    while not stop.is_set():
        try:
            await engine.run_sweep()
        except Exception as e:
            logger.error(f"Sweep failed: {e}", exc_info=True)
        sweeps += 1
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    return sweeps


async def main() -> None:
    container = build_container(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(f"Sweep worker started, interval {settings.sweep_interval_seconds}s")
    sweeps = await run(container.engine, settings.sweep_interval_seconds, stop)
    logger.info(f"Sweep worker stopped after {sweeps} sweeps")


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    asyncio.run(main())
