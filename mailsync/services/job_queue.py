"""
MongoDB-backed job queue.

The API and the scheduler enqueue; workers claim jobs atomically with
``find_one_and_update``. Each job type carries its own attempt limit,
backoff schedule and timeout.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, List

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument

from mailsync.core.config import SyncSettings
from mailsync.core.exceptions import RateLimitError
from mailsync.models.accounts import utcnow

logger = logging.getLogger(__name__)

SYNC_JOBS_COLLECTION = "sync_jobs"


class JobType:
    SYNC_ACCOUNT = "sync_account"
    INITIAL_SYNC = "initial_sync"
    PROCESS_MESSAGE = "process_message"
    RENEW_SUBSCRIPTIONS = "renew_subscriptions"


class JobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class RetryPolicy:
    max_attempts: int
    backoff_seconds: List[int]
    timeout_seconds: int

    def delay_for(self, attempt: int) -> int:
        """Backoff before the next try, after ``attempt`` tries have run."""
        if not self.backoff_seconds:
            return 0
        index = min(max(attempt - 1, 0), len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]


def retry_policies(settings: SyncSettings) -> Dict[str, RetryPolicy]:
    sync_policy = RetryPolicy(settings.sync_max_attempts, settings.sync_backoff_seconds, settings.sync_timeout_seconds)
    return {
        JobType.SYNC_ACCOUNT: sync_policy,
        JobType.INITIAL_SYNC: RetryPolicy(
            settings.sync_max_attempts, settings.sync_backoff_seconds, settings.initial_sync_timeout_seconds
        ),
        JobType.PROCESS_MESSAGE: RetryPolicy(
            settings.message_max_attempts, settings.message_backoff_seconds, settings.message_timeout_seconds
        ),
        JobType.RENEW_SUBSCRIPTIONS: RetryPolicy(1, [], settings.renewal_timeout_seconds),
    }


class JobQueue:
    """Enqueue, claim and settle background sync jobs."""

    def __init__(self, db, settings: SyncSettings):
        self.collection = db[SYNC_JOBS_COLLECTION]
        self.settings = settings
        self.policies = retry_policies(settings)

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index(
                [("status", ASCENDING), ("run_after", ASCENDING), ("created_at", ASCENDING)]
            )
            await self.collection.create_index([("type", ASCENDING), ("payload.account_id", ASCENDING)])
        except Exception as e:
            logger.warning(f"Failed to create job indexes: {e}")

    def policy_for(self, job_type: str) -> RetryPolicy:
        return self.policies[job_type]

    async def enqueue(self, job_type: str, payload: Dict[str, Any], delay_seconds: float = 0) -> str:
        now = utcnow()
        job_id = str(ObjectId())
        await self.collection.insert_one({
            "_id": job_id,
            "type": job_type,
            "payload": payload,
            "status": JobStatus.PENDING,
            "attempts": 0,
            "max_attempts": self.policy_for(job_type).max_attempts,
            "run_after": now + timedelta(seconds=delay_seconds),
            "created_at": now,
            "updated_at": now,
            "last_error": None,
        })
        logger.debug(f"Enqueued {job_type} job {job_id}: {payload}")
        return job_id

    async def enqueue_sync(
        self,
        account_id: str,
        mode: str,
        cursor: Optional[str] = None,
        processed_so_far: int = 0,
        delay_seconds: float = 0,
    ) -> str:
        job_type = JobType.INITIAL_SYNC if mode == "initial" else JobType.SYNC_ACCOUNT
        return await self.enqueue(
            job_type,
            {
                "account_id": account_id,
                "mode": mode,
                "cursor": cursor,
                "processed_so_far": processed_so_far,
            },
            delay_seconds=delay_seconds,
        )

    async def enqueue_message(self, account_id: str, provider_message_id: str) -> str:
        return await self.enqueue(
            JobType.PROCESS_MESSAGE,
            {"account_id": account_id, "provider_message_id": provider_message_id},
        )

    async def enqueue_renewal(self) -> str:
        return await self.enqueue(JobType.RENEW_SUBSCRIPTIONS, {})

    async def claim(self, worker_pid: int) -> Optional[Dict[str, Any]]:
        """Atomically claim the oldest due job."""
        now = utcnow()
        return await self.collection.find_one_and_update(
            {"status": JobStatus.PENDING, "run_after": {"$lte": now}},
            {
                "$set": {
                    "status": JobStatus.RUNNING,
                    "started_at": now,
                    "worker_pid": worker_pid,
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
            },
            sort=[("run_after", ASCENDING), ("created_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )

    async def complete(self, job: Dict[str, Any], result: Optional[Dict[str, Any]] = None) -> None:
        now = utcnow()
        await self.collection.update_one(
            {"_id": job["_id"]},
            {"$set": {
                "status": JobStatus.COMPLETED,
                "completed_at": now,
                "updated_at": now,
                "result": result or {},
            }},
        )

    async def retry_or_fail(self, job: Dict[str, Any], error: BaseException) -> bool:
        """
        Reschedule a failed job or mark it failed for good.

        Returns:
            True if the job will run again, False if attempts are exhausted
        """
        policy = self.policy_for(job["type"])
        attempts = job.get("attempts", 1)
        now = utcnow()

        if attempts >= policy.max_attempts:
            await self.collection.update_one(
                {"_id": job["_id"]},
                {"$set": {
                    "status": JobStatus.FAILED,
                    "last_error": str(error),
                    "completed_at": now,
                    "updated_at": now,
                }},
            )
            logger.error(f"Job {job['_id']} ({job['type']}) failed after {attempts} attempts: {error}")
            return False

        delay = policy.delay_for(attempts)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)

        await self.collection.update_one(
            {"_id": job["_id"]},
            {"$set": {
                "status": JobStatus.PENDING,
                "last_error": str(error),
                "run_after": now + timedelta(seconds=delay),
                "updated_at": now,
            }},
        )
        logger.warning(
            f"Job {job['_id']} ({job['type']}) attempt {attempts}/{policy.max_attempts} failed, "
            f"retrying in {delay}s: {error}"
        )
        return True

    async def requeue_stale(self, lease_seconds: int) -> int:
        """Return RUNNING jobs whose worker vanished to the queue."""
        cutoff = utcnow() - timedelta(seconds=lease_seconds)
        result = await self.collection.update_many(
            {"status": JobStatus.RUNNING, "started_at": {"$lt": cutoff}},
            {"$set": {"status": JobStatus.PENDING, "run_after": utcnow(), "updated_at": utcnow()}},
        )
        if result.modified_count:
            logger.info(f"Requeued {result.modified_count} stale jobs")
        return result.modified_count

    async def pending_count(self, job_type: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"status": JobStatus.PENDING}
        if job_type:
            query["type"] = job_type
        return await self.collection.count_documents(query)

    async def has_pending(self, job_type: str, account_id: Optional[str] = None) -> bool:
        query: Dict[str, Any] = {"type": job_type, "status": {"$in": [JobStatus.PENDING, JobStatus.RUNNING]}}
        if account_id:
            query["payload.account_id"] = account_id
        return await self.collection.find_one(query, {"_id": 1}) is not None
