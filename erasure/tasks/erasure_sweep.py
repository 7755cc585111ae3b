"""
Erasure sweep background task.

Periodically:
- erases every user whose scheduled deletion date has passed
- marks pending recovery codes past their expiry as expired

Each run opens its own session and builds a fresh pipeline, so one
failing run cannot leave a broken session behind for the next.
"""
import argparse
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..database import create_db_engine, get_engine, get_session_factory, init_db
from ..gdpr.pipeline import ErasurePipeline
from ..gdpr.subsystems import build_identity_http_client, build_s3_client
from ..observability.logging import request_context, setup_logging
from ..observability.metrics import record_sweep_run
from ..settings import get_settings

logger = logging.getLogger(__name__)


# Default sweep interval (1 hour)
DEFAULT_SWEEP_INTERVAL = 3600
DEFAULT_SWEEP_BATCH_LIMIT = 500


def get_sweep_interval() -> int:
    """Get the sweep interval from environment or use default.

    Returns:
        Sweep interval in seconds (default 3600 = 1 hour)
    """
    try:
        return int(os.environ.get("SWEEP_INTERVAL_SECONDS", str(DEFAULT_SWEEP_INTERVAL)))
    except ValueError:
        logger.warning(
            f"Invalid SWEEP_INTERVAL_SECONDS, using default {DEFAULT_SWEEP_INTERVAL}"
        )
        return DEFAULT_SWEEP_INTERVAL


@dataclass
class SweepReport:
    """What one sweep run did."""
    users_processed: int = 0
    users_fully_verified: int = 0
    codes_expired: int = 0


async def run_sweep_once(pipeline: ErasurePipeline, batch_limit: int = DEFAULT_SWEEP_BATCH_LIMIT) -> SweepReport:
    """Run one sweep with an existing pipeline."""
    report = SweepReport()
    report.codes_expired = pipeline.cleanup_expired_codes(batch_limit)
    results = await pipeline.process_expired(batch_limit)
    report.users_processed = len(results)
    report.users_fully_verified = sum(1 for r in results if r.success)
    return report


class ErasureSweepScheduler:
    """Background scheduler for the periodic erasure sweep.

    Args:
        session_factory: Opens a primary store session per run
        pipeline_factory: Builds a pipeline for a session
            (default: ErasurePipeline.from_settings)
        interval_seconds: Sweep interval (default from env or 3600s)
        batch_limit: Users and codes handled per run
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline_factory: Optional[Callable[[Session], ErasurePipeline]] = None,
        interval_seconds: Optional[int] = None,
        batch_limit: int = DEFAULT_SWEEP_BATCH_LIMIT,
    ):
        self.session_factory = session_factory
        self.pipeline_factory = pipeline_factory or ErasurePipeline.from_settings
        self.interval = interval_seconds or get_sweep_interval()
        self.batch_limit = batch_limit
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def run_once(self) -> SweepReport:
        """Run one sweep in a fresh session; errors propagate."""
        with request_context(f"sweep-{uuid.uuid4().hex[:12]}"):
            db = self.session_factory()
            try:
                pipeline = self.pipeline_factory(db)
                report = await run_sweep_once(pipeline, self.batch_limit)
            finally:
                db.close()
        logger.info(
            f"Erasure sweep: users={report.users_processed}, "
            f"fully_verified={report.users_fully_verified}, "
            f"codes_expired={report.codes_expired}"
        )
        return report

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Erasure sweep scheduler started (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Erasure sweep scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        """Main sweep loop with metrics."""
        while self._running:
            try:
                report = await self.run_once()
                record_sweep_run(
                    success=True,
                    users=report.users_processed,
                    expired_codes=report.codes_expired,
                )
            except Exception as e:
                logger.error(f"Erasure sweep error: {type(e).__name__}")
                record_sweep_run(success=False)

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break


async def _serve(scheduler: ErasureSweepScheduler) -> None:
    await scheduler.start()
    try:
        while scheduler.running:
            await asyncio.sleep(1)
    finally:
        await scheduler.stop()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the erasure sweep.")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.log_level.upper(), settings.log_format_json)
    init_db(get_engine(settings.database_url))

    # Clients are shared across runs; only the session is per run
    s3_client = build_s3_client(settings.object_storage_endpoint_url, settings.object_storage_region)
    warehouse_engine = create_db_engine(settings.warehouse_url)
    identity_http = build_identity_http_client(
        settings.identity_provider_url,
        settings.identity_provider_token,
        settings.identity_provider_timeout,
    )

    def pipeline_factory(db: Session) -> ErasurePipeline:
        return ErasurePipeline.from_settings(
            db,
            settings,
            s3_client=s3_client,
            warehouse_engine=warehouse_engine,
            identity_http=identity_http,
        )

    scheduler = ErasureSweepScheduler(
        session_factory=get_session_factory(settings.database_url),
        pipeline_factory=pipeline_factory,
        interval_seconds=settings.sweep_interval_seconds,
        batch_limit=settings.sweep_batch_limit,
    )
    try:
        if args.once:
            asyncio.run(scheduler.run_once())
        else:
            asyncio.run(_serve(scheduler))
    except KeyboardInterrupt:
        logger.info("Erasure sweep interrupted")
    finally:
        identity_http.close()
        warehouse_engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
