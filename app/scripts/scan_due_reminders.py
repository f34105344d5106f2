"""Periodic scanner to send due reminders.

Run via a cron schedule every minute:
    python -m app.scripts.scan_due_reminders
or as a long-running process that sleeps between sweeps:
    python -m app.scripts.scan_due_reminders --loop
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from app.runtime import build_services
from config import configure_logging, settings

_LOGGER = logging.getLogger(__name__)


async def main(loop: bool = False, interval: float = settings.REMINDER_SWEEP_INTERVAL) -> None:
    async with build_services(with_agent=False) as services:
        while True:
            try:
                stats = await services.scheduler.sweep()
                _LOGGER.info("[CRON] scan_due_reminders: %s", stats)
            except Exception:  # noqa: BLE001
                if not loop:
                    raise
                _LOGGER.exception("[CRON] scan_due_reminders: sweep failed")
            if not loop:
                return
            # next sweep starts only after this one finished
            await asyncio.sleep(interval)


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send due task reminders.")
    parser.add_argument("--loop", action="store_true", help="keep sweeping every REMINDER_SWEEP_INTERVAL seconds")
    parser.add_argument("--interval", type=float, default=settings.REMINDER_SWEEP_INTERVAL)
    args = parser.parse_args(argv)

    configure_logging()
    _LOGGER.info("[CRON] scan_due_reminders: job started")
    try:
        asyncio.run(main(loop=args.loop, interval=args.interval))
    except Exception as e:  # noqa: BLE001
        _LOGGER.error("[CRON] scan_due_reminders: job failed: %s", e)
        return 1
    _LOGGER.info("[CRON] scan_due_reminders: job completed successfully")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(cli())
