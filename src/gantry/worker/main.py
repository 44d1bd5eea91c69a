"""Worker entry point — advances one run, or sweeps parked runs for expired approvals.

Usage:
    python -m gantry.worker.main --run-id=RUN-1a2b3c4d
    python -m gantry.worker.main --sweep
"""

from __future__ import annotations

import argparse
import asyncio
import logging

import redis.asyncio as aioredis

from gantry.config.bootstrap import load_bootstrap_config
from gantry.db.engine import create_engine, create_session_factory
from gantry.errors import RunNotFoundError
from gantry.models.config import BootstrapConfig
from gantry.pipeline.orchestrator import Orchestrator
from gantry.pipeline.services import build_services

logger = logging.getLogger(__name__)


async def run_worker(run_id: str) -> None:
    """Advance a single run until it parks or finishes."""
    cfg = load_bootstrap_config()
    _configure_logging(cfg)
    logger.info("Worker starting for run %s", run_id)

    engine = create_engine(cfg.postgres_url, pool_size=2)
    session_factory = create_session_factory(engine)
    redis_client = aioredis.from_url(cfg.redis_url)

    try:
        orchestrator = Orchestrator(build_services(cfg, redis_client, session_factory))
        try:
            status = await orchestrator.advance_by_id(run_id)
        except RunNotFoundError:
            logger.error("Run %s not found in database", run_id)
            return
        logger.info("Worker finished run %s with status=%s", run_id, status.value)
    finally:
        await redis_client.aclose()
        await engine.dispose()


async def run_sweeper(interval: float | None = None, *, once: bool = False) -> None:
    """Periodic timeout tick: abort parked runs whose approval has expired."""
    cfg = load_bootstrap_config()
    _configure_logging(cfg)
    interval = interval or cfg.sweep_interval_seconds
    logger.info("Sweeper starting (interval %.0fs)", interval)

    engine = create_engine(cfg.postgres_url, pool_size=2)
    session_factory = create_session_factory(engine)
    redis_client = aioredis.from_url(cfg.redis_url)

    try:
        orchestrator = Orchestrator(build_services(cfg, redis_client, session_factory))
        while True:
            advanced = await orchestrator.sweep()
            if advanced:
                logger.info("Sweep advanced %d run(s): %s", len(advanced), ", ".join(advanced))
            if once:
                return
            await asyncio.sleep(interval)
    finally:
        await redis_client.aclose()
        await engine.dispose()


def _configure_logging(cfg: BootstrapConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Gantry pipeline worker")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--run-id", help="Pipeline run to advance")
    group.add_argument("--sweep", action="store_true", help="Run the approval-timeout sweeper")
    parser.add_argument("--interval", type=float, default=None, help="Sweep interval in seconds")
    parser.add_argument("--once", action="store_true", help="Sweep a single time and exit")
    args = parser.parse_args()

    if args.sweep:
        asyncio.run(run_sweeper(args.interval, once=args.once))
    else:
        asyncio.run(run_worker(args.run_id))


if __name__ == "__main__":
    main()
