"""
In-process registry of live production jobs.

The tracker is a cache in front of the durable Video.status: it answers
status polls with fine-grained progress while a job runs in this process.
When the entry is missing (restart, another process, Celery worker) the
status endpoint estimates progress from the stored status instead.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from adreel.models import PROCESSING_STATUSES, Video, VideoStatus
from adreel.settings import get_settings


@dataclass(frozen=True)
class StepInfo:
    step: str
    progress: int
    message: str


class ProcessingStep(Enum):
    INITIALIZING = StepInfo("initializing", 0, "Starting up...")
    ANALYZING = StepInfo("analyzing", 10, "Analyzing product...")
    GENERATING_SCRIPT = StepInfo("generating_script", 20, "Writing script...")
    DOWNLOADING_IMAGES = StepInfo("downloading_images", 30, "Downloading images...")
    GENERATING_VIDEO = StepInfo("generating_video", 40, "Generating AI video...")
    GENERATING_VOICEOVER = StepInfo("generating_voiceover", 60, "Generating voiceover...")
    ADDING_AUDIO = StepInfo("adding_audio", 70, "Adding audio...")
    ADDING_SUBTITLES = StepInfo("adding_subtitles", 75, "Adding subtitles...")
    ADDING_WATERMARK = StepInfo("adding_watermark", 80, "Adding watermark...")
    ADDING_MUSIC = StepInfo("adding_music", 85, "Adding background music...")
    OPTIMIZING = StepInfo("optimizing", 90, "Optimizing video...")
    UPLOADING = StepInfo("uploading", 95, "Uploading video...")
    COMPLETED = StepInfo("completed", 100, "Done!")
    FAILED = StepInfo("failed", 0, "Something went wrong")

    @property
    def info(self) -> StepInfo:
        return self.value


_STEP_MESSAGES = {s.info.step: s.info.message for s in ProcessingStep}

# Progress estimate when no live job exists
STATUS_PROGRESS: dict[str, int] = {
    VideoStatus.pending.value: 0,
    VideoStatus.generating_script.value: 20,
    VideoStatus.generating_video.value: 50,
    VideoStatus.adding_audio.value: 70,
    VideoStatus.adding_subtitles.value: 80,
    VideoStatus.optimizing.value: 90,
    VideoStatus.completed.value: 100,
    VideoStatus.failed.value: 0,
}

_STATUS_MESSAGES: dict[str, str] = {
    VideoStatus.pending.value: "Waiting to start...",
    VideoStatus.generating_script.value: ProcessingStep.GENERATING_SCRIPT.info.message,
    VideoStatus.generating_video.value: ProcessingStep.GENERATING_VIDEO.info.message,
    VideoStatus.adding_audio.value: ProcessingStep.ADDING_AUDIO.info.message,
    VideoStatus.adding_subtitles.value: ProcessingStep.ADDING_SUBTITLES.info.message,
    VideoStatus.optimizing.value: ProcessingStep.OPTIMIZING.info.message,
    VideoStatus.completed.value: ProcessingStep.COMPLETED.info.message,
    VideoStatus.failed.value: ProcessingStep.FAILED.info.message,
}


def estimate_progress(status: str) -> int:
    return STATUS_PROGRESS.get(status, 0)


def step_message(step: str) -> str:
    return _STEP_MESSAGES.get(step) or _STATUS_MESSAGES.get(step) or step


@dataclass(frozen=True)
class JobSnapshot:
    video_id: str
    owner_id: str
    status: str
    current_step: str
    progress: int
    error: str | None = None
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "videoId": self.video_id,
            "status": self.status,
            "currentStep": self.current_step,
            "progress": self.progress,
            "error": self.error,
        }


class JobTracker:
    """Thread-safe keyed map of JobSnapshot.

    Snapshots are immutable; every update swaps the entry under the lock, so
    readers never see a half-written job. Progress never decreases within a
    job, and 100 is reserved for the `completed` step.
    """

    def __init__(self, retention_sec: float | None = None):
        self._jobs: dict[str, JobSnapshot] = {}
        self._lock = threading.Lock()
        self._retention_sec = retention_sec

    def set_job(self, video_id: str, owner_id: str) -> JobSnapshot:
        info = ProcessingStep.INITIALIZING.info
        job = JobSnapshot(
            video_id=video_id,
            owner_id=owner_id,
            status=VideoStatus.pending.value,
            current_step=info.step,
            progress=info.progress,
        )
        with self._lock:
            self._prune_locked()
            self._jobs[video_id] = job
        return job

    def update_progress(self, video_id: str, step: ProcessingStep) -> JobSnapshot | None:
        info = step.info
        with self._lock:
            job = self._jobs.get(video_id)
            if job is None or job.finished_at is not None:
                return job
            progress = max(job.progress, info.progress)
            if step is not ProcessingStep.COMPLETED:
                progress = min(progress, 99)
            job = replace(job, current_step=info.step, progress=progress)
            self._jobs[video_id] = job
            return job

    def update_status(self, video_id: str, status: str, error: str | None = None) -> JobSnapshot | None:
        with self._lock:
            job = self._jobs.get(video_id)
            if job is None:
                return None
            changes: dict[str, Any] = {"status": status}
            if error:
                changes["error"] = error
            if status in (VideoStatus.completed.value, VideoStatus.failed.value):
                changes["finished_at"] = time.monotonic()
            if status == VideoStatus.completed.value:
                changes["current_step"] = ProcessingStep.COMPLETED.info.step
                changes["progress"] = 100
            elif status == VideoStatus.failed.value:
                changes["current_step"] = ProcessingStep.FAILED.info.step
            job = replace(job, **changes)
            self._jobs[video_id] = job
            return job

    def set_error(self, video_id: str, message: str) -> JobSnapshot | None:
        return self.update_status(video_id, VideoStatus.failed.value, message)

    def get_job(self, video_id: str) -> JobSnapshot | None:
        with self._lock:
            return self._jobs.get(video_id)

    def remove_job(self, video_id: str) -> None:
        with self._lock:
            self._jobs.pop(video_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _prune_locked(self) -> None:
        if not self._retention_sec:
            return
        cutoff = time.monotonic() - self._retention_sec
        expired = [
            vid for vid, job in self._jobs.items()
            if job.finished_at is not None and job.finished_at < cutoff
        ]
        for vid in expired:
            del self._jobs[vid]


def build_status_payload(video: Video, job: JobSnapshot | None) -> dict[str, Any]:
    """Status poll response: live job when present, stored status otherwise."""
    status = video.status
    if job is not None and (job.finished_at is None or job.status == status):
        # A running job is ahead of the durable record
        progress = job.progress
        current_step = job.current_step
        source = "live"
    else:
        progress = estimate_progress(status)
        current_step = status
        source = "stored"

    is_failed = status == VideoStatus.failed.value
    is_completed = status == VideoStatus.completed.value
    is_processing = not is_failed and not is_completed

    payload: dict[str, Any] = {
        "videoId": video.id,
        "status": status,
        "progress": 100 if is_completed else min(progress, 99),
        "currentStep": current_step,
        "stepMessage": step_message(current_step),
        "isProcessing": is_processing,
        "isCompleted": is_completed,
        "isFailed": is_failed,
        "source": source,
    }
    if is_failed:
        payload["errorMessage"] = video.error_message or (job.error if job else None)
    if is_completed:
        payload["videoUrl"] = video.public_url
        payload["thumbnailUrl"] = video.thumbnail_url
        payload["duration"] = video.duration
    return payload


def is_in_progress(video: Video, tracker: JobTracker) -> bool:
    """True while the production job owns the record."""
    if video.status in PROCESSING_STATUSES:
        return True
    if video.status == VideoStatus.pending.value:
        job = tracker.get_job(video.id)
        return job is not None and job.finished_at is None
    return False


job_tracker = JobTracker(retention_sec=get_settings().job_retention_sec)
