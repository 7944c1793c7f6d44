# app/models/recording_job.py
# Deferred recording lookup jobs (persisted so a restart does not drop them)

from enum import Enum

class RecordingJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    NOT_AVAILABLE = "not_available"
    FAILED = "failed"
