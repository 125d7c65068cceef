from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from adreel import models, repositories
from adreel.errors import AuthError, Conflict, NotFound, PlatformError, ValidationFailed
from adreel.services.platforms import PlatformCredential, PostAnalytics, PublishedPost
from adreel.services.publisher import PostPublisher

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeAdapter:
    def __init__(self, platform, fail_on=(), auth_error=False, connected=True):
        self.platform = platform
        self.fail_on = set(fail_on)
        self.auth_error = auth_error
        self.connected = connected
        self.posted = []

    async def get_token(self, session, owner_id):
        if not self.connected:
            return None
        return PlatformCredential(platform=self.platform, owner_id=owner_id, access_token="tok")

    async def post_video(self, credential, video_url, caption, hashtags):
        if self.auth_error:
            raise AuthError("token revoked")
        if caption in self.fail_on:
            raise PlatformError(self.platform, f"rejected {caption}")
        self.posted.append((video_url, caption, hashtags))
        n = len(self.posted)
        return PublishedPost(id=f"{self.platform}-{n}", url=f"https://{self.platform}.example/{n}")

    async def get_analytics(self, credential, external_post_id):
        return PostAnalytics(views=100, likes=7, comments=2, shares=1)


@pytest.fixture
def adapters():
    return {
        "tiktok": FakeAdapter("tiktok"),
        "youtube": FakeAdapter("youtube"),
        "facebook": FakeAdapter("facebook"),
    }


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def publisher(session_factory, settings, adapters, notifier, sleeps):
    async def sleep(delay):
        sleeps.append(delay)

    return PostPublisher(session_factory, settings=settings, adapters=adapters, sleep=sleep, notifier=notifier)


@pytest_asyncio.fixture
async def video(session_factory, owner, product):
    async with session_factory() as session:
        item = models.Video(
            owner_id=owner,
            product_id=product,
            title="Rice promo",
            aspect_ratio="9:16",
            status="completed",
            public_url="http://test/files/optimized/video_1_optimized.mp4",
        )
        session.add(item)
        await session.commit()
        return item.id


async def add_post(session_factory, video_id, platform="tiktok", status="scheduled", scheduled_at=None,
                   caption="caption", owner_id="owner-1"):
    async with session_factory() as session:
        post = models.Post(
            owner_id=owner_id,
            video_id=video_id,
            platform=platform,
            caption=caption,
            hashtags=["rice"],
            status=status,
            scheduled_at=scheduled_at,
        )
        session.add(post)
        await session.commit()
        return post.id


async def load_post(session_factory, post_id):
    async with session_factory() as session:
        return await session.get(models.Post, post_id)


class TestBatch:
    async def test_partial_failures_do_not_stop_batch(self, publisher, session_factory, video, adapters, sleeps,
                                                      notifier):
        ids = []
        for i in range(5):
            ids.append(await add_post(
                session_factory, video, caption=f"post-{i}", scheduled_at=NOW - timedelta(minutes=10 - i)
            ))
        adapters["tiktok"].fail_on = {"post-1", "post-3"}

        result = await publisher.run_due_batch(now=NOW)

        assert (result.processed, result.successful, result.failed, result.skipped) == (5, 3, 2, 0)
        assert [r.post_id for r in result.results] == ids
        assert sleeps == [0, 0, 0, 0]

        ok = await load_post(session_factory, ids[0])
        assert ok.status == "posted"
        assert ok.external_post_id == "tiktok-1"
        assert ok.posted_at is not None
        assert ok.error_message is None

        failed = await load_post(session_factory, ids[1])
        assert failed.status == "failed"
        assert failed.error_message == "tiktok: rejected post-1"
        assert failed.external_post_id is None
        assert failed.posted_at is None
        assert sum(1 for e in notifier.events if e[0] == "post_failed") == 2

    async def test_only_due_scheduled_posts(self, publisher, session_factory, video):
        due = await add_post(session_factory, video, scheduled_at=NOW - timedelta(minutes=1))
        future = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        draft = await add_post(session_factory, video, status="draft")
        posted = await add_post(session_factory, video, status="posted", scheduled_at=NOW - timedelta(days=1))

        result = await publisher.run_due_batch(now=NOW)

        assert [r.post_id for r in result.results] == [due]
        assert (await load_post(session_factory, future)).status == "scheduled"
        assert (await load_post(session_factory, draft)).status == "draft"
        assert (await load_post(session_factory, posted)).status == "posted"

    async def test_empty_batch(self, publisher):
        result = await publisher.run_due_batch(now=NOW)
        assert result.to_dict() == {"processed": 0, "successful": 0, "failed": 0, "skipped": 0, "results": []}

    async def test_batch_size_cap(self, publisher, session_factory, video, settings):
        publisher.settings = settings.model_copy(update={"publish_batch_size": 2})
        for i in range(3):
            await add_post(session_factory, video, scheduled_at=NOW - timedelta(minutes=5 - i))

        result = await publisher.run_due_batch(now=NOW)
        assert result.processed == 2

    async def test_parallel_platform_groups(self, publisher, session_factory, video, settings, adapters):
        publisher.settings = settings.model_copy(update={"publish_max_parallel_platforms": 3})
        ids = [
            await add_post(session_factory, video, platform="tiktok", scheduled_at=NOW - timedelta(minutes=3)),
            await add_post(session_factory, video, platform="youtube", scheduled_at=NOW - timedelta(minutes=2)),
            await add_post(session_factory, video, platform="tiktok", scheduled_at=NOW - timedelta(minutes=1)),
        ]

        result = await publisher.run_due_batch(now=NOW)

        assert [r.post_id for r in result.results] == ids
        assert result.successful == 3
        assert len(adapters["tiktok"].posted) == 2

    async def test_missing_connection_fails_post(self, publisher, session_factory, video, adapters):
        adapters["youtube"].connected = False
        post_id = await add_post(session_factory, video, platform="youtube", scheduled_at=NOW - timedelta(minutes=1))

        result = await publisher.run_due_batch(now=NOW)

        assert result.failed == 1
        post = await load_post(session_factory, post_id)
        assert post.status == "failed"
        assert post.error_message == "Authorization required: No connected youtube account"

    async def test_video_without_artifact(self, publisher, session_factory, owner, product):
        async with session_factory() as session:
            broken = models.Video(owner_id=owner, product_id=product, aspect_ratio="9:16", status="completed")
            session.add(broken)
            await session.commit()
        post_id = await add_post(session_factory, broken.id, scheduled_at=NOW - timedelta(minutes=1))

        await publisher.run_due_batch(now=NOW)

        post = await load_post(session_factory, post_id)
        assert post.status == "failed"
        assert "Video artifact URL not found" in post.error_message

    async def test_database_error_on_one_post(self, publisher, session_factory, video, monkeypatch):
        ids = [
            await add_post(session_factory, video, caption=f"post-{i}", scheduled_at=NOW - timedelta(minutes=3 - i))
            for i in range(3)
        ]
        real_get_post = repositories.get_post

        async def flaky_get_post(session, post_id, owner_id=None):
            if post_id == ids[0]:
                raise OperationalError("SELECT posts", {}, Exception("database is locked"))
            return await real_get_post(session, post_id, owner_id)

        monkeypatch.setattr(repositories, "get_post", flaky_get_post)

        result = await publisher.run_due_batch(now=NOW)

        assert (result.processed, result.successful, result.failed) == (3, 2, 1)
        assert [r.post_id for r in result.results] == ids
        assert "database is locked" in result.results[0].error
        assert (await load_post(session_factory, ids[0])).status == "scheduled"
        assert (await load_post(session_factory, ids[2])).status == "posted"


class TestSinglePublish:
    async def test_claimed_post_is_skipped(self, publisher, session_factory, video, adapters):
        post_id = await add_post(session_factory, video, status="posting")

        outcome = await publisher.publish_post(post_id)

        assert outcome.skipped
        assert outcome.status == "posting"
        assert adapters["tiktok"].posted == []

    async def test_missing_post(self, publisher):
        outcome = await publisher.publish_post("nope")
        assert outcome.skipped
        assert outcome.status == "missing"

    async def test_manual_publish_of_draft(self, publisher, session_factory, video, notifier):
        post_id = await add_post(session_factory, video, status="draft")

        outcome = await publisher.publish_post(post_id)

        assert outcome.success
        assert outcome.external_post_url == "https://tiktok.example/1"
        assert notifier.events == [("post_published", "tiktok", "https://tiktok.example/1")]

    async def test_failed_post_is_not_retried(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, status="failed")
        outcome = await publisher.publish_post(post_id)
        assert outcome.skipped
        assert (await load_post(session_factory, post_id)).status == "failed"


class TestCreatePosts:
    async def test_schedule_for_later(self, publisher, session_factory, video, adapters):
        when = datetime.now(timezone.utc) + timedelta(days=1)
        posts, outcomes = await publisher.create_posts(
            "owner-1",
            video_id=video,
            platforms=["tiktok", "youtube"],
            caption="Fresh rice",
            captions={"youtube": "Fresh rice on Shorts"},
            hashtags={"default": ["rice"], "tiktok": ["rice", "fyp"]},
            schedule_at=when,
        )

        assert outcomes == []
        assert [p.status for p in posts] == ["scheduled", "scheduled"]
        by_platform = {p.platform: p for p in posts}
        assert by_platform["tiktok"].hashtags == ["rice", "fyp"]
        assert by_platform["youtube"].hashtags == ["rice"]
        assert by_platform["youtube"].caption == "Fresh rice on Shorts"
        assert adapters["tiktok"].posted == []

    async def test_publish_now(self, publisher, session_factory, video, adapters):
        posts, outcomes = await publisher.create_posts(
            "owner-1", video_id=video, platforms=["tiktok", "facebook"], caption="Now!"
        )

        assert [o.success for o in outcomes] == [True, True]
        assert [p.status for p in posts] == ["posted", "posted"]
        assert adapters["facebook"].posted[0][0] == "http://test/files/optimized/video_1_optimized.mp4"

    @pytest.mark.parametrize(
        "kwargs, code",
        [
            ({"video_id": None, "platforms": ["tiktok"]}, "MISSING_VIDEO_ID"),
            ({"platforms": []}, "MISSING_PLATFORMS"),
            ({"platforms": ["tiktok", "myspace"]}, "INVALID_PLATFORM"),
            ({"platforms": ["tiktok"], "schedule_at": NOW}, "INVALID_SCHEDULE_TIME"),
        ],
    )
    async def test_validation(self, publisher, video, kwargs, code):
        kwargs = {"video_id": video, **kwargs}
        with pytest.raises(ValidationFailed) as err:
            await publisher.create_posts("owner-1", **kwargs)
        assert err.value.code == code

    async def test_video_not_ready(self, publisher, session_factory, owner, product):
        async with session_factory() as session:
            pending = models.Video(owner_id=owner, product_id=product, aspect_ratio="9:16", status="optimizing")
            session.add(pending)
            await session.commit()

        with pytest.raises(ValidationFailed) as err:
            await publisher.create_posts("owner-1", video_id=pending.id, platforms=["tiktok"])
        assert err.value.code == "VIDEO_NOT_READY"

    async def test_other_owners_video(self, publisher, video):
        with pytest.raises(NotFound) as err:
            await publisher.create_posts("owner-2", video_id=video, platforms=["tiktok"])
        assert err.value.code == "VIDEO_NOT_FOUND"


class TestReschedule:
    async def test_move_to_future(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        new_time = NOW + timedelta(hours=5)

        post = await publisher.reschedule(post_id, "owner-1", new_time, caption="Updated", now=NOW)

        assert models.as_utc(post.scheduled_at) == new_time
        assert post.caption == "Updated"
        assert post.status == "scheduled"

    async def test_past_time_rejected(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        with pytest.raises(ValidationFailed) as err:
            await publisher.reschedule(post_id, "owner-1", NOW - timedelta(minutes=1), now=NOW)
        assert err.value.code == "INVALID_SCHEDULE_TIME"

    async def test_nothing_to_update(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        with pytest.raises(ValidationFailed) as err:
            await publisher.reschedule(post_id, "owner-1", None, now=NOW)
        assert err.value.code == "NO_UPDATES"

    async def test_only_scheduled_posts(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, status="posted")
        with pytest.raises(Conflict) as err:
            await publisher.reschedule(post_id, "owner-1", NOW + timedelta(hours=1), now=NOW)
        assert err.value.code == "NOT_SCHEDULED"

    async def test_other_owner(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        with pytest.raises(NotFound):
            await publisher.reschedule(post_id, "owner-2", NOW + timedelta(hours=2), now=NOW)


class TestCancel:
    async def test_cancel_removes_post(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, scheduled_at=NOW + timedelta(hours=1))
        await publisher.cancel(post_id, "owner-1")
        assert await load_post(session_factory, post_id) is None

    async def test_cancel_posting_rejected(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, status="posting")
        with pytest.raises(Conflict):
            await publisher.cancel(post_id, "owner-1")
        assert (await load_post(session_factory, post_id)).status == "posting"


class TestAnalytics:
    async def test_refresh_posted(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, status="draft")
        await publisher.publish_post(post_id)
        await add_post(session_factory, video, status="scheduled", scheduled_at=NOW + timedelta(hours=1))

        summary = await publisher.refresh_posted_analytics()

        assert summary == {"checked": 1, "refreshed": 1, "failed": 0}
        post = await load_post(session_factory, post_id)
        assert (post.views, post.likes, post.comments, post.shares) == (100, 7, 2, 1)
        assert post.analytics_updated_at is not None

    async def test_refresh_requires_posted(self, publisher, session_factory, video):
        post_id = await add_post(session_factory, video, status="scheduled", scheduled_at=NOW)
        assert await publisher.refresh_analytics(post_id) is False

    async def test_refresh_counts_failures(self, publisher, session_factory, video, adapters):
        post_id = await add_post(session_factory, video, status="draft")
        await publisher.publish_post(post_id)
        adapters["tiktok"].connected = False

        summary = await publisher.refresh_posted_analytics()
        assert summary == {"checked": 1, "refreshed": 0, "failed": 1}
        async with session_factory() as session:
            views = (await session.execute(select(models.Post.views).where(models.Post.id == post_id))).scalar_one()
        assert views == 0
