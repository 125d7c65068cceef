import httpx
import pytest
import pytest_asyncio
from sqlalchemy import delete

from adreel import models, repositories
from adreel.errors import GenerationError, TransformError, TransientExternalError
from adreel.schemas import VideoCreateRequest
from adreel.services import media
from adreel.services import production as production_module
from adreel.services.blob_store import StoredBlob
from adreel.services.generators import Generators, ScriptGenerator, SpeechSynthesizer, VideoGenerator
from adreel.services.job_tracker import JobTracker
from adreel.services.production import ProductionContext, VideoProduction, folder_for, summarize_error
from adreel.services.retry import RetryExhausted


class FakeScript(ScriptGenerator):
    def __init__(self, script="Meet the rice. It cooks in ten minutes. Order today!"):
        self.script = script
        self.calls = 0

    async def generate(self, *, product, style, duration, language, model=None):
        self.calls += 1
        return self.script

    async def analyze(self, *, product, model=None):
        raise TransientExternalError("analysis backend 503")


class FakeVideo(VideoGenerator):
    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = 0
        self.images = None

    async def generate(self, *, script, images, aspect_ratio, duration, style=None, model=None):
        self.calls += 1
        self.images = images
        if self.errors:
            raise self.errors.pop(0)
        return b"raw-video"


class FakeSpeech(SpeechSynthesizer):
    async def synthesize(self, *, script, voice, model=None):
        return b"voice-audio"


class MemoryBlobStore:
    def __init__(self):
        self.blobs = {}

    async def upload(self, data, filename, mime_type, folder_id):
        blob_id = f"{folder_id}/{filename}"
        self.blobs[blob_id] = data
        return StoredBlob(id=blob_id, public_url=f"http://test/files/{blob_id}", size=len(data), mime_type=mime_type)

    async def delete(self, blob_id):
        return self.blobs.pop(blob_id, None) is not None

    async def list(self, folder_id):
        return [b for b in self.blobs if b.startswith(f"{folder_id}/")]


class BrokenBlobStore(MemoryBlobStore):
    async def upload(self, data, filename, mime_type, folder_id):
        raise OSError("disk quota exceeded")


class RecordingTracker(JobTracker):
    def __init__(self):
        super().__init__()
        self.history = []

    def update_progress(self, video_id, step):
        job = super().update_progress(video_id, step)
        self.history.append((job.status, job.progress))
        return job

    def update_status(self, video_id, status, error=None):
        job = super().update_status(video_id, status, error)
        self.history.append((job.status, job.progress))
        return job


def image_transport(fail_urls=()):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) in fail_urls:
            return httpx.Response(404)
        return httpx.Response(200, content=b"image-bytes")

    return httpx.MockTransport(handler)


@pytest.fixture
def fake_media(monkeypatch):
    calls = []

    async def mux_voiceover(video, audio, **kwargs):
        calls.append("mux")
        return video + b"+voice"

    async def burn_subtitles(video, script, style=None, **kwargs):
        calls.append(("subtitles", style.position))
        return video + b"+subs"

    async def add_watermark(video, options, **kwargs):
        calls.append(("watermark", options.text))
        return video + b"+wm"

    async def add_background_music(video, music, volume=0.3, **kwargs):
        calls.append("music")
        return video + b"+music"

    async def optimize_for_platform(video, profile, **kwargs):
        calls.append(("optimize", profile.name))
        return video + b"+opt"

    async def get_duration(video, **kwargs):
        return 15.0

    async def extract_thumbnail(video, offset_sec=1.0, **kwargs):
        calls.append(("thumbnail", offset_sec))
        return b"jpeg"

    monkeypatch.setattr(media, "mux_voiceover", mux_voiceover)
    monkeypatch.setattr(media, "burn_subtitles", burn_subtitles)
    monkeypatch.setattr(media, "add_watermark", add_watermark)
    monkeypatch.setattr(media, "add_background_music", add_background_music)
    monkeypatch.setattr(media, "optimize_for_platform", optimize_for_platform)
    monkeypatch.setattr(media, "get_duration", get_duration)
    monkeypatch.setattr(media, "extract_thumbnail", extract_thumbnail)
    monkeypatch.setattr(production_module, "load_music_track", lambda name: b"track")
    return calls


@pytest.fixture
def status_log(monkeypatch):
    log = []
    original = repositories.advance_video_status

    async def recording(session, video_id, owner_id, new_status, **kwargs):
        moved = await original(session, video_id, owner_id, new_status, **kwargs)
        log.append((new_status.value, moved))
        return moved

    monkeypatch.setattr(repositories, "advance_video_status", recording)
    return log


@pytest_asyncio.fixture
async def video_id(session_factory, owner, product):
    async with session_factory() as session:
        video = models.Video(owner_id=owner, product_id=product, title="Rice promo", aspect_ratio="9:16")
        session.add(video)
        await session.commit()
        return video.id


def make_request(product_id, **overrides):
    data = {
        "productId": product_id,
        "mode": "auto",
        "title": "Rice promo",
        "aspectRatio": "9:16",
        "duration": 15,
        "models": {"video": "stub-video"},
    }
    data.update(overrides)
    return VideoCreateRequest.model_validate(data)


def make_production(session_factory, tracker, notifier, settings, *, video=None, script=None, transport=None,
                    blob_store=None):
    generators = Generators(script=script or FakeScript(), video=video or FakeVideo(), speech=FakeSpeech())
    return VideoProduction(
        session_factory,
        tracker=tracker,
        generators=generators,
        blob_store=blob_store if blob_store is not None else MemoryBlobStore(),
        settings=settings,
        notifier=notifier,
        http_transport=transport or image_transport(),
    )


async def load_video(session_factory, video_id):
    async with session_factory() as session:
        return await session.get(models.Video, video_id)


class TestHappyPath:
    async def test_full_pipeline(self, session_factory, tracker, notifier, settings, owner, product, video_id,
                                 fake_media, status_log):
        job = make_production(session_factory, tracker, notifier, settings)
        request = make_request(
            product,
            voice="female-th",
            music="upbeat",
            subtitle={"enabled": True, "position": "top"},
            watermark={"enabled": True, "text": "@riceshop"},
        )

        status = await job.run(video_id, owner, request)

        assert status == "completed"
        assert [s for s, _ in status_log] == [
            "generating_script",
            "generating_video",
            "adding_audio",
            "adding_subtitles",
            "optimizing",
            "completed",
        ]
        assert all(moved for _, moved in status_log)
        assert fake_media == [
            "mux",
            ("subtitles", "top"),
            ("watermark", "@riceshop"),
            "music",
            ("optimize", "tiktok"),
            ("thumbnail", 1.0),
        ]

        video = await load_video(session_factory, video_id)
        assert video.status == "completed"
        assert video.script.startswith("Meet the rice.")
        assert video.original_file_id == f"originals/video_{video_id}.mp4"
        assert video.optimized_file_id == f"optimized/video_{video_id}_optimized.mp4"
        assert video.thumbnail_file_id == f"thumbnails/thumbnail_{video_id}.jpg"
        assert video.audio_file_id == f"audio/voice_{video_id}.mp3"
        assert video.public_url == f"http://test/files/optimized/video_{video_id}_optimized.mp4"
        assert video.duration == 15.0
        assert video.error_message is None

        blobs = job.blob_store.blobs
        assert blobs[video.original_file_id] == b"raw-video+voice+subs+wm+music"
        assert blobs[video.optimized_file_id] == b"raw-video+voice+subs+wm+music+opt"

        snapshot = tracker.get_job(video_id)
        assert snapshot.progress == 100
        assert snapshot.status == "completed"
        assert notifier.events == [("video_completed", video_id)]

    async def test_minimal_pipeline_skips_optional_stages(self, session_factory, tracker, notifier, settings, owner,
                                                          product, video_id, fake_media, status_log):
        job = make_production(session_factory, tracker, notifier, settings)
        status = await job.run(video_id, owner, make_request(product, aspectRatio="16:9"))

        assert status == "completed"
        assert [s for s, _ in status_log] == ["generating_script", "generating_video", "optimizing", "completed"]
        assert ("optimize", "youtube") in fake_media
        video = await load_video(session_factory, video_id)
        assert video.audio_file_id is None

    async def test_target_platform_profile(self, session_factory, tracker, notifier, settings, owner, product,
                                           video_id, fake_media):
        job = make_production(session_factory, tracker, notifier, settings)
        await job.run(video_id, owner, make_request(product, targetPlatform="instagram"))
        assert ("optimize", "instagram") in fake_media

    async def test_manual_mode_uses_request_material(self, session_factory, tracker, notifier, settings, owner,
                                                     product, video_id, fake_media):
        script = FakeScript()
        video_gen = FakeVideo()
        job = make_production(session_factory, tracker, notifier, settings, script=script, video=video_gen)
        request = make_request(
            product,
            mode="manual",
            script="My own words. Buy now.",
            images=["https://img.example.com/a.jpg", "https://img.example.com/b.jpg"],
        )

        assert await job.run(video_id, owner, request) == "completed"
        assert script.calls == 0
        assert video_gen.images == [b"image-bytes", b"image-bytes"]
        video = await load_video(session_factory, video_id)
        assert video.script == "My own words. Buy now."

    async def test_unreachable_images_are_skipped(self, session_factory, tracker, notifier, settings, owner, product,
                                                  video_id, fake_media):
        video_gen = FakeVideo()
        job = make_production(
            session_factory, tracker, notifier, settings,
            video=video_gen,
            transport=image_transport(fail_urls={"https://cdn.example.com/rice-1.jpg"}),
        )
        assert await job.run(video_id, owner, make_request(product)) == "completed"
        assert video_gen.images == [b"image-bytes"]

    async def test_progress_only_moves_forward(self, session_factory, notifier, settings, owner, product, video_id,
                                              fake_media):
        tracker = RecordingTracker()
        job = make_production(session_factory, tracker, notifier, settings)
        request = make_request(product, voice="female", subtitle={"enabled": True}, music="upbeat")

        assert await job.run(video_id, owner, request) == "completed"

        progress = [p for _, p in tracker.history]
        assert progress == sorted(progress)
        assert [status for status, p in tracker.history if p == 100] == ["completed"]
        assert tracker.history[-1] == ("completed", 100)

    async def test_injected_empty_tracker_is_used(self, session_factory, notifier, settings, owner, product,
                                                  video_id, fake_media):
        mine = JobTracker()
        assert len(mine) == 0
        job = make_production(session_factory, mine, notifier, settings)
        assert job.tracker is mine

        await job.run(video_id, owner, make_request(product))
        assert mine.get_job(video_id).status == "completed"


class TestFailures:
    async def test_generator_error_marks_failed(self, session_factory, tracker, notifier, settings, owner, product,
                                                video_id, fake_media):
        job = make_production(
            session_factory, tracker, notifier, settings,
            video=FakeVideo(errors=[GenerationError("quota exceeded")]),
        )

        status = await job.run(video_id, owner, make_request(product))

        assert status == "failed"
        video = await load_video(session_factory, video_id)
        assert video.status == "failed"
        assert video.error_message == "Video generation failed: quota exceeded"
        assert video.public_url is None
        assert job.blob_store.blobs == {}
        assert tracker.get_job(video_id).error == video.error_message
        assert notifier.events[-1][0] == "video_failed"

    async def test_transient_error_is_retried(self, session_factory, tracker, notifier, settings, owner, product,
                                              video_id, fake_media):
        video_gen = FakeVideo(errors=[TransientExternalError("503 upstream")])
        job = make_production(session_factory, tracker, notifier, settings, video=video_gen)

        assert await job.run(video_id, owner, make_request(product)) == "completed"
        assert video_gen.calls == 2

    async def test_retries_exhausted(self, session_factory, tracker, notifier, settings, owner, product, video_id,
                                     fake_media):
        errors = [TransientExternalError("503 upstream"), TransientExternalError("503 upstream")]
        job = make_production(session_factory, tracker, notifier, settings, video=FakeVideo(errors=errors))

        assert await job.run(video_id, owner, make_request(product)) == "failed"
        video = await load_video(session_factory, video_id)
        assert video.error_message == "Video generation failed: 503 upstream (gave up after 2 attempts)"

    async def test_transform_error_message(self, session_factory, tracker, notifier, settings, owner, product,
                                           video_id, fake_media, monkeypatch):
        async def broken_optimize(video, profile, **kwargs):
            raise TransformError("ffmpeg failed", returncode=1, stderr="frame=1\nInvalid data found")

        monkeypatch.setattr(media, "optimize_for_platform", broken_optimize)
        job = make_production(session_factory, tracker, notifier, settings)

        assert await job.run(video_id, owner, make_request(product)) == "failed"
        video = await load_video(session_factory, video_id)
        assert video.error_message == "Optimization failed: media processing error (exit code 1): Invalid data found"

    async def test_missing_product(self, session_factory, tracker, notifier, settings, owner, video_id, fake_media):
        job = make_production(session_factory, tracker, notifier, settings)
        status = await job.run(video_id, owner, make_request("no-such-product"))

        assert status == "failed"
        video = await load_video(session_factory, video_id)
        assert "no longer exists" in video.error_message

    async def test_deleted_video_is_not_resurrected(self, session_factory, tracker, notifier, settings, owner,
                                                    product, video_id, fake_media):
        async with session_factory() as session:
            await session.execute(delete(models.Video).where(models.Video.id == video_id))
            await session.commit()

        job = make_production(session_factory, tracker, notifier, settings)
        assert await job.run(video_id, owner, make_request(product)) == "failed"
        assert await load_video(session_factory, video_id) is None

    async def test_upload_failure(self, session_factory, notifier, settings, owner, product, video_id, fake_media):
        tracker = RecordingTracker()
        job = make_production(session_factory, tracker, notifier, settings, blob_store=BrokenBlobStore())

        assert await job.run(video_id, owner, make_request(product)) == "failed"

        video = await load_video(session_factory, video_id)
        assert video.status == "failed"
        assert video.error_message.startswith("Upload failed: disk quota exceeded")
        assert video.public_url is None
        assert video.optimized_file_id is None
        assert 100 not in [p for _, p in tracker.history]
        assert tracker.get_job(video_id).status == "failed"

    async def test_script_stage_needs_loaded_product(self, session_factory, tracker, notifier, settings, owner,
                                                     product):
        job = make_production(session_factory, tracker, notifier, settings)
        ctx = ProductionContext(video_id="v-1", owner_id=owner, request=make_request(product))
        with pytest.raises(GenerationError, match="not loaded"):
            await job._stage_script(ctx)


class TestHelpers:
    def test_folder_for_nested(self, storage_folders):
        assert folder_for(storage_folders, "videos", "optimized") == "optimized"
        assert folder_for(storage_folders, "videos") == "videos"
        assert folder_for(storage_folders, "audio") == "audio"

    def test_folder_for_missing(self):
        with pytest.raises(Exception) as err:
            folder_for({"videos": {}}, "videos", "thumbnails")
        assert err.value.code == "FOLDERS_NOT_INITIALIZED"

    def test_summarize_error_unwraps_retry(self):
        exc = RetryExhausted(3, GenerationError("empty response"))
        assert summarize_error("generating_script", exc) == "Script generation failed: empty response (gave up after 3 attempts)"

    def test_summarize_error_sanitizes(self):
        message = summarize_error("uploading", Exception("HTTP 401 with Bearer abc.def-123"))
        assert "abc.def-123" not in message
        assert message.startswith("Upload failed:")
