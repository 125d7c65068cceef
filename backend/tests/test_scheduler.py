import asyncio

from adreel.services.publisher import BatchResult, PublishOutcome
from adreel.services.scheduler import SchedulerService
from adreel.settings import get_settings


class FakePublisher:
    def __init__(self, gate=None):
        self.batches = 0
        self.gate = gate

    async def run_due_batch(self):
        self.batches += 1
        if self.gate is not None:
            await self.gate.wait()
        result = BatchResult()
        result.add(PublishOutcome("p1", "tiktok", True, "posted", external_post_id="x"))
        return result

    async def refresh_posted_analytics(self):
        return {"checked": 0, "refreshed": 0, "failed": 0}


class TestSchedulerService:
    def test_disabled_by_setting(self):
        service = SchedulerService(publisher_factory=FakePublisher)
        service.start()
        assert not service.is_running()
        assert service.get_jobs() == []

    async def test_start_registers_jobs(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "scheduler_enabled", True)
        service = SchedulerService(publisher_factory=FakePublisher)
        service.start()
        try:
            assert service.is_running()
            assert sorted(job["id"] for job in service.get_jobs()) == ["publish_scheduled", "refresh_analytics"]
        finally:
            service.stop()
        assert not service.is_running()

    async def test_publish_tick_returns_summary(self):
        publisher = FakePublisher()
        service = SchedulerService(publisher_factory=lambda: publisher)

        result = await service._run_publish_scheduled()

        assert result["processed"] == 1
        assert result["successful"] == 1

    async def test_overlapping_tick_is_skipped(self):
        gate = asyncio.Event()
        publisher = FakePublisher(gate)
        service = SchedulerService(publisher_factory=lambda: publisher)

        first = asyncio.create_task(service._run_publish_scheduled())
        await asyncio.sleep(0)
        second = await service._run_publish_scheduled()
        gate.set()
        await first

        assert second is None
        assert publisher.batches == 1

    async def test_run_unknown_job(self):
        service = SchedulerService(publisher_factory=FakePublisher)
        assert "error" in await service.run_now("nope")

    async def test_last_run_recorded(self):
        service = SchedulerService(publisher_factory=FakePublisher)
        assert service.last_run("publish_scheduled") is None

        await service._run_publish_scheduled()

        last = service.last_run("publish_scheduled")
        assert last["ok"] is True
        assert last["result"]["successful"] == 1

    async def test_reschedule_interval(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "scheduler_enabled", True)
        service = SchedulerService(publisher_factory=FakePublisher)
        service.start()
        try:
            job = service.reschedule("publish_scheduled", 10)
            assert job["trigger"] == "interval[0:10:00]"
            assert service.reschedule("nope", 10) is None
        finally:
            service.stop()
