"""
Mail Sync Worker Process

Standalone worker that claims sync jobs from the MongoDB queue and runs them
through the sync orchestrator. Runs separately from the FastAPI process so
long initial syncs never block the API.

Usage:
    python -m mailsync.workers.sync_worker [--with-scheduler]
"""

import argparse
import asyncio
import logging
import os
import signal
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from mailsync.core.config import SyncSettings, get_settings
from mailsync.core.exceptions import TransientProviderError
from mailsync.services.engine import SyncEngine
from mailsync.services.job_queue import JobType
from mailsync.services.sync_orchestrator import SyncRequest
from mailsync.workers.scheduler import SyncScheduler

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SYNC_JOB_TYPES = (JobType.SYNC_ACCOUNT, JobType.INITIAL_SYNC)


class SyncWorker:
    """
    Standalone worker process for mailbox sync.

    Polls the ``sync_jobs`` collection, enforces the per-type timeout, and
    settles each job: completed, rescheduled with backoff, or failed for good
    (which deactivates the account for sync units).
    """

    def __init__(
        self,
        with_scheduler: bool = False,
        settings: Optional[SyncSettings] = None,
        engine: Optional[SyncEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine
        self.scheduler: Optional[SyncScheduler] = None
        self.with_scheduler = with_scheduler
        self.shutdown_requested = False
        self.current_job_id: Optional[str] = None
        self.mongo_client: Optional[AsyncMongoClient] = None
        self.pid = os.getpid()

        if engine is not None and with_scheduler:
            self.scheduler = SyncScheduler(engine, self.settings)

    async def initialize(self):
        """Connect to MongoDB and build the engine."""
        try:
            self.mongo_client = AsyncMongoClient(
                self.settings.mongodb_uri,
                serverSelectionTimeoutMS=10000
            )
            db = self.mongo_client[self.settings.mongodb_database]
            await self.mongo_client.admin.command("ping")
            logger.info(f"Connected to MongoDB database: {self.settings.mongodb_database}")
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

        self.engine = SyncEngine(db, self.settings)
        await self.engine.ensure_indexes()
        if self.with_scheduler:
            self.scheduler = SyncScheduler(self.engine, self.settings)

    async def close(self):
        """Close MongoDB connection."""
        if self.mongo_client:
            await self.mongo_client.close()
            self.mongo_client = None
            logger.info("MongoDB connection closed")

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_requested = True

    async def run(self):
        """Main worker loop."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info(f"Sync worker started (PID: {self.pid}, scheduler={self.with_scheduler})")

        try:
            if self.engine is None:
                await self.initialize()

            # Jobs orphaned by a crashed worker
            await self.engine.jobs.requeue_stale(self.settings.job_lease_seconds)

            while not self.shutdown_requested:
                if self.scheduler is not None:
                    await self.scheduler.tick()

                job = await self.engine.jobs.claim(self.pid)
                if job:
                    await self.process_job(job)
                else:
                    await asyncio.sleep(self.settings.worker_poll_interval)

        except Exception as e:
            logger.error(f"Worker crashed: {e}", exc_info=True)
            raise
        finally:
            await self.close()
            logger.info("Sync worker stopped")

    async def process_job(self, job: Dict[str, Any]) -> bool:
        """
        Run one claimed job under its timeout and settle it.

        Returns:
            True if the job completed
        """
        policy = self.engine.jobs.policy_for(job["type"])
        self.current_job_id = job["_id"]
        logger.info(f"Processing job {job['_id']} ({job['type']}) attempt {job.get('attempts', 1)}")

        error: Optional[BaseException] = None
        try:
            result = await asyncio.wait_for(self._dispatch(job), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError:
            error = TransientProviderError(f"Job timed out after {policy.timeout_seconds}s")
        except Exception as e:
            logger.error(f"Job {job['_id']} failed: {e}", exc_info=True)
            error = e
        finally:
            self.current_job_id = None

        if error is None:
            await self.engine.jobs.complete(job, result)
            return True

        will_retry = await self.engine.jobs.retry_or_fail(job, error)
        if not will_retry:
            await self._on_exhausted(job, error)
        return False

    async def _dispatch(self, job: Dict[str, Any]) -> Dict[str, Any]:
        payload = job.get("payload", {})
        orchestrator = self.engine.orchestrator

        if job["type"] in SYNC_JOB_TYPES:
            report = await orchestrator.run(SyncRequest.from_payload(payload))
            return report.to_dict()

        if job["type"] == JobType.PROCESS_MESSAGE:
            outcome = await orchestrator.process_message(
                payload["account_id"], payload["provider_message_id"]
            )
            return {"outcome": outcome.value if outcome else None}

        if job["type"] == JobType.RENEW_SUBSCRIPTIONS:
            return await self.engine.subscriptions.renew_expiring()

        raise ValueError(f"Unknown job type: {job['type']}")

    async def _on_exhausted(self, job: Dict[str, Any], error: BaseException) -> None:
        payload = job.get("payload", {})
        if job["type"] in SYNC_JOB_TYPES:
            await self.engine.orchestrator.fail_account(payload["account_id"], str(error))
        elif job["type"] == JobType.PROCESS_MESSAGE:
            await self.engine.orchestrator.record_message_failure(
                payload["account_id"], payload["provider_message_id"], str(error)
            )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mail sync worker")
    parser.add_argument(
        "--with-scheduler",
        action="store_true",
        help="Also run the periodic sync and subscription renewal scheduler",
    )
    return parser


async def main(argv: Optional[list] = None):
    """Entry point for the worker process."""
    args = build_parser().parse_args(argv)
    worker = SyncWorker(with_scheduler=args.with_scheduler)
    await worker.run()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
