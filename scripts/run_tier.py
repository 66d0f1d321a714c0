"""
Script to run one scheduler tier immediately, outside its cadence.

Usage:
    python scripts/run_tier.py daily
    python scripts/run_tier.py realtime --slot 2024-01-15T10:05
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from models.base import RunStatus, Tier
from tracking.services import TrackingServices

logger = logging.getLogger(__name__)


async def run_tier(tier: str, slot: str = None) -> int:
    services = TrackingServices()
    try:
        run = await services.scheduler.run_tier(tier, slot=slot, force=True)
        await services.aggregator.flush()
    finally:
        await services.stop()
        await services.dispose()

    logger.info(
        f"{run.tier.value} run for slot {run.slot}: {run.status.value}, "
        f"{run.records_processed} records in {run.duration_seconds}s"
    )
    for error in run.errors or []:
        logger.error(f"  {error.get('error_type')}: {error.get('message')}")
    return 0 if run.status == RunStatus.SUCCESS else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one scheduler tier now")
    parser.add_argument("tier", choices=[t.value for t in Tier])
    parser.add_argument("--slot", default=None, help="Slot identifier; defaults to the current slot")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_tier(args.tier, args.slot)))
