from adreel.worker.celery_app import celery_app
from adreel.worker.tasks import produce_video


class TestCeleryWiring:
    def test_task_registered_on_production_queue(self):
        assert produce_video.name == "production.produce_video"
        assert celery_app.conf.task_default_queue == "production"

    def test_dispatch_payload_round_trips(self):
        from adreel.schemas import VideoCreateRequest

        request = VideoCreateRequest.model_validate({
            "productId": "p1",
            "mode": "auto",
            "aspectRatio": "1:1",
            "duration": 30,
            "models": {"video": "v1"},
            "subtitle": {"enabled": True, "position": "top"},
        })
        data = request.model_dump(mode="json", by_alias=True)
        again = VideoCreateRequest.model_validate(data)
        assert again == request
        assert data["productId"] == "p1"
