from adreel.models import Video
from adreel.services.job_tracker import (
    JobTracker,
    ProcessingStep,
    build_status_payload,
    estimate_progress,
    is_in_progress,
    step_message,
)


def make_video(status, **fields):
    return Video(id="vid-1", owner_id="owner-1", aspect_ratio="9:16", status=status, **fields)


class TestJobTracker:
    def test_new_job_starts_at_zero(self):
        tracker = JobTracker()
        job = tracker.set_job("vid-1", "owner-1")
        assert job.status == "pending"
        assert job.current_step == "initializing"
        assert job.progress == 0

    def test_progress_never_decreases(self):
        tracker = JobTracker()
        tracker.set_job("vid-1", "owner-1")
        tracker.update_progress("vid-1", ProcessingStep.OPTIMIZING)
        job = tracker.update_progress("vid-1", ProcessingStep.ADDING_AUDIO)
        assert job.progress == 90
        assert job.current_step == "adding_audio"

    def test_completed_sets_full_progress(self):
        tracker = JobTracker()
        tracker.set_job("vid-1", "owner-1")
        job = tracker.update_status("vid-1", "completed")
        assert job.progress == 100
        assert job.current_step == "completed"
        assert job.finished_at is not None

    def test_finished_job_ignores_progress(self):
        tracker = JobTracker()
        tracker.set_job("vid-1", "owner-1")
        tracker.set_error("vid-1", "Video generation failed: quota")
        job = tracker.update_progress("vid-1", ProcessingStep.UPLOADING)
        assert job.status == "failed"
        assert job.current_step == "failed"
        assert job.error == "Video generation failed: quota"

    def test_unknown_job(self):
        tracker = JobTracker()
        assert tracker.update_progress("missing", ProcessingStep.ANALYZING) is None
        assert tracker.update_status("missing", "completed") is None
        assert tracker.get_job("missing") is None

    def test_remove_job(self):
        tracker = JobTracker()
        tracker.set_job("vid-1", "owner-1")
        tracker.remove_job("vid-1")
        assert len(tracker) == 0


class TestStatusPayload:
    def test_fallback_progress_table(self):
        assert estimate_progress("pending") == 0
        assert estimate_progress("generating_video") == 50
        assert estimate_progress("optimizing") == 90
        assert estimate_progress("completed") == 100
        assert estimate_progress("unknown") == 0

    def test_step_messages(self):
        assert step_message("adding_music") == "Adding background music..."
        assert step_message("pending") == "Waiting to start..."
        assert step_message("custom") == "custom"

    def test_live_job_wins_while_running(self):
        tracker = JobTracker()
        tracker.set_job("vid-1", "owner-1")
        tracker.update_progress("vid-1", ProcessingStep.ADDING_SUBTITLES)

        payload = build_status_payload(make_video("adding_audio"), tracker.get_job("vid-1"))
        assert payload["source"] == "live"
        assert payload["progress"] == 75
        assert payload["currentStep"] == "adding_subtitles"
        assert payload["isProcessing"] is True

    def test_stored_status_without_job(self):
        payload = build_status_payload(make_video("generating_video"), None)
        assert payload["source"] == "stored"
        assert payload["progress"] == 50
        assert payload["stepMessage"] == "Generating AI video..."

    def test_completed_payload(self):
        video = make_video(
            "completed",
            public_url="http://test/files/optimized/a.mp4",
            thumbnail_url="http://test/files/thumbnails/a.jpg",
            duration=15.0,
        )
        payload = build_status_payload(video, None)
        assert payload["progress"] == 100
        assert payload["isCompleted"] is True
        assert payload["videoUrl"].endswith("a.mp4")
        assert payload["duration"] == 15.0

    def test_failed_payload(self):
        payload = build_status_payload(make_video("failed", error_message="Script generation failed: boom"), None)
        assert payload["isFailed"] is True
        assert payload["errorMessage"] == "Script generation failed: boom"
        assert "videoUrl" not in payload


class TestInProgress:
    def test_processing_statuses(self):
        assert is_in_progress(make_video("optimizing"), JobTracker())
        assert not is_in_progress(make_video("completed"), JobTracker())

    def test_pending_with_live_job(self):
        tracker = JobTracker()
        assert not is_in_progress(make_video("pending"), tracker)
        tracker.set_job("vid-1", "owner-1")
        assert is_in_progress(make_video("pending"), tracker)
