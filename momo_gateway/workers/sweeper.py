"""
Maintenance sweeper background worker.

Each cycle:
- resubmits due FAILED disbursements and reconciles due TIMEOUT ones
- fails PENDING disbursements past their expiry
- polls requested collections still awaiting the payer
- reaps expired idempotency records
- deletes webhook records past retention
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from momo_gateway.config import get_settings
from momo_gateway.database.connection import close_db
from momo_gateway.monitoring.logging import setup_logging
from momo_gateway.monitoring.metrics import metrics
from momo_gateway.services import Services, build_services

logger = structlog.get_logger(__name__)


async def run_sweep_cycle(services: Services) -> Dict[str, Any]:
    """
    Run every maintenance task once.

    A failing task is logged and does not stop the others.

    Returns:
        Dict[str, Any]: Per-task results, None for a task that failed
    """
    tasks = {
        "retry": services.disbursements.run_retry_sweep,
        "expiry": services.disbursements.expire_stale,
        "collections": services.collections.poll_pending,
        "idempotency": services.idempotency.sweep_expired,
        "webhook_cleanup": services.webhooks.cleanup_old,
    }
    results: Dict[str, Any] = {}
    for name, task in tasks.items():
        try:
            result = await task()
        except Exception as e:
            metrics.record_sweep(name, "error")
            logger.error("sweep_task_failed", task=name, error=str(e))
            results[name] = None
            continue
        records = sum(result.values()) if isinstance(result, dict) else int(result)
        metrics.record_sweep(name, "success", records)
        results[name] = result
    logger.info("sweep_cycle_completed", **results)
    return results


async def start_sweeper(
    interval_seconds: Optional[float] = None,
    once: bool = False,
    services: Optional[Services] = None,
) -> None:
    """
    Start the sweeper loop.

    Args:
        interval_seconds: Seconds between cycles (default from settings)
        once: Run a single cycle and exit
        services: Prebuilt services (built from settings when omitted)
    """
    owns_services = services is None
    services = services or build_services(get_settings())
    settings = services.settings
    interval = interval_seconds or settings.retry_sweep_interval_seconds

    logger.info("sweeper_starting", interval_seconds=interval, once=once)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("sweeper_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            await run_sweep_cycle(services)
            if once:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        if owns_services:
            await services.close()
            await close_db()
        logger.info("sweeper_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Disbursement maintenance sweeper")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweep cycles"
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    args = parser.parse_args()

    setup_logging(get_settings())
    asyncio.run(start_sweeper(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
