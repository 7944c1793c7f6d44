# app/utils/recording_scheduler.py
# Deferred recording URL lookups for completed calls.
# Jobs live in recording_fetch_jobs so pending fetches survive a restart;
# APScheduler only holds the timers.

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytz
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from ..config.database import get_database
from ..config.settings import get_settings
from ..models.recording_job import RecordingJobStatus
from ..services.cache_invalidation import invalidate_after_call_update

logger = logging.getLogger(__name__)

class RecordingFetchScheduler:
    """
    Polls the provider for a call's recording after a delay, retrying with
    exponential backoff until the URL shows up or the attempts run out.
    Failures are recorded on the job and never raised.
    """

    def __init__(self, client, cache=None, delay_seconds: int = None, max_attempts: int = None):
        settings = get_settings()
        self.client = client
        self.cache = cache
        self.delay_seconds = settings.recording_fetch_delay_seconds if delay_seconds is None else delay_seconds
        self.max_attempts = settings.recording_fetch_max_attempts if max_attempts is None else max_attempts

        self.scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            timezone=pytz.UTC,
        )
        self.is_running = False

    def _get_db(self):
        return get_database()

    @staticmethod
    def _job_id(call_log_id: str) -> str:
        return f"recording_fetch_{call_log_id}"

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Recording scheduler already running")
            return
        self.scheduler.start()
        self.is_running = True
        await self._load_pending_jobs()
        logger.info("✅ Recording fetch scheduler started")

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("✅ Recording fetch scheduler stopped")

    async def enqueue(self, call_log_id: str, provider_call_id: str) -> bool:
        """Create the fetch job for a call log; False when one already exists"""
        db = self._get_db()
        now = datetime.utcnow()
        run_at = now + timedelta(seconds=self.delay_seconds)
        try:
            await db.recording_fetch_jobs.insert_one({
                "call_log_id": call_log_id,
                "provider_call_id": provider_call_id,
                "status": RecordingJobStatus.PENDING.value,
                "attempts": 0,
                "max_attempts": self.max_attempts,
                "run_at": run_at,
                "last_error": None,
                "created_at": now,
                "updated_at": now,
            })
        except DuplicateKeyError:
            logger.debug(f"Recording fetch already queued for call log {call_log_id}")
            return False

        self._schedule(call_log_id, run_at)
        logger.info(f"🎙️ Recording fetch queued for call log {call_log_id} at {run_at}")
        return True

    def _schedule(self, call_log_id: str, run_at: datetime) -> None:
        if not self.is_running:
            return
        self.scheduler.add_job(
            func=self.run_job,
            trigger=DateTrigger(run_date=pytz.UTC.localize(run_at)),
            args=[call_log_id],
            id=self._job_id(call_log_id),
            name=f"Recording fetch {call_log_id}",
            replace_existing=True,
        )

    async def _load_pending_jobs(self) -> None:
        """Re-arm timers for jobs left pending (or interrupted mid-run) by the last process"""
        db = self._get_db()
        jobs = await db.recording_fetch_jobs.find({
            "status": {"$in": [RecordingJobStatus.PENDING.value, RecordingJobStatus.PROCESSING.value]}
        }).to_list(length=None)

        now = datetime.utcnow()
        for job in jobs:
            run_at = max(job.get("run_at") or now, now + timedelta(seconds=1))
            if job["status"] == RecordingJobStatus.PROCESSING.value:
                await db.recording_fetch_jobs.update_one(
                    {"_id": job["_id"]},
                    {"$set": {"status": RecordingJobStatus.PENDING.value, "run_at": run_at, "updated_at": now}},
                )
            self._schedule(job["call_log_id"], run_at)

        if jobs:
            logger.info(f"🔄 Re-scheduled {len(jobs)} pending recording fetch jobs")

    async def run_job(self, call_log_id: str) -> Optional[str]:
        """One fetch attempt; returns the final job status"""
        db = self._get_db()
        now = datetime.utcnow()

        job = await db.recording_fetch_jobs.find_one_and_update(
            {"call_log_id": call_log_id, "status": RecordingJobStatus.PENDING.value},
            {"$set": {"status": RecordingJobStatus.PROCESSING.value, "updated_at": now}, "$inc": {"attempts": 1}},
        )
        if not job:
            logger.debug(f"No pending recording job for call log {call_log_id}")
            return None
        attempts = job.get("attempts", 0) + 1

        recording_url = None
        error = None
        try:
            recording_url = await self.client.get_recording(job["provider_call_id"])
        except Exception as e:
            error = str(e)
            logger.warning(f"Recording fetch for call {job['provider_call_id']} failed (attempt {attempts}): {e}")

        if recording_url:
            try:
                await self._store_recording(call_log_id, recording_url)
            except Exception as e:
                error = str(e)
                recording_url = None
                logger.error(f"❌ Storing recording for call log {call_log_id} failed (attempt {attempts}): {e}")

        if recording_url:
            status = RecordingJobStatus.COMPLETED.value
            update = {"status": status, "recording_url": recording_url, "last_error": None}
        elif attempts < job.get("max_attempts", self.max_attempts):
            run_at = datetime.utcnow() + timedelta(seconds=self.delay_seconds * (2 ** attempts))
            status = RecordingJobStatus.PENDING.value
            update = {"status": status, "run_at": run_at, "last_error": error}
            self._schedule(call_log_id, run_at)
        else:
            status = RecordingJobStatus.FAILED.value if error else RecordingJobStatus.NOT_AVAILABLE.value
            update = {"status": status, "last_error": error}
            logger.info(f"Recording for call log {call_log_id} gave up after {attempts} attempts ({status})")

        update["updated_at"] = datetime.utcnow()
        await db.recording_fetch_jobs.update_one({"_id": job["_id"]}, {"$set": update})
        return status

    async def _store_recording(self, call_log_id: str, recording_url: str) -> None:
        """Write the URL unless a later webhook already delivered one"""
        db = self._get_db()
        object_id = ObjectId(call_log_id)
        result = await db.call_logs.update_one(
            {"_id": object_id, "recording_url": {"$in": [None, ""]}},
            {"$set": {"recording_url": recording_url, "updated_at": datetime.utcnow()}},
        )
        if result.modified_count:
            logger.info(f"🎙️ Recording stored for call log {call_log_id}")
            call_log = await db.call_logs.find_one({"_id": object_id})
            if call_log:
                invalidate_after_call_update(self.cache, call_log)

    async def get_status(self) -> Dict[str, Any]:
        db = self._get_db()
        pending = await db.recording_fetch_jobs.count_documents({"status": RecordingJobStatus.PENDING.value})
        return {
            "running": self.is_running,
            "scheduled_timers": len(self.scheduler.get_jobs()) if self.is_running else 0,
            "pending_jobs": pending,
        }
