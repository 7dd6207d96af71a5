"""Tests for image and video generation jobs."""

import base64
from concurrent.futures import ThreadPoolExecutor

import pytest

from drama_gateway.models.errors import AITransportError
from drama_gateway.models.video_client import VideoTaskStatus
from drama_gateway.server.database import session_scope
from drama_gateway.server.generation_service import GenerationJobService
from drama_gateway.server.models import GenerationJob, ProviderConfig
from drama_gateway.utils.storage import LocalStorage


class FakeDispatcher:
    def __init__(self, images=None, image_error=None, video_statuses=None):
        self.images = images or []
        self.image_error = image_error
        self.video_statuses = list(video_statuses or [])
        self.image_calls = []
        self.queries = []

    def generate_image(self, prompt, size="1024x1024", n=1, model=None):
        self.image_calls.append((prompt, size, n))
        if self.image_error:
            raise self.image_error
        return self.images

    def submit_video(self, prompt, image_url=None, duration=None, ratio=None, model=None):
        config = ProviderConfig(id=7, service_type="video", provider="chatfire", base_url="https://v", api_key="k")
        return "provider-task-1", config

    def query_video(self, config_id, provider_task_id, model=None):
        self.queries.append((config_id, provider_task_id))
        status = self.video_statuses.pop(0) if self.video_statuses else VideoTaskStatus("RUNNING")
        if isinstance(status, Exception):
            raise status
        return status


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "storage"), base_url="/static")


def _service(dispatcher, session_factory, storage, no_sleep, attempts=60):
    return GenerationJobService(dispatcher, session_factory, storage=storage,
                                executor=ThreadPoolExecutor(max_workers=1),
                                poll_interval=2, max_poll_attempts=attempts, sleep=no_sleep)


class TestImageJobs:
    def test_remote_url_is_recorded(self, session_factory, storage, no_sleep):
        dispatcher = FakeDispatcher(images=["https://cdn.example.com/a.png"])
        service = _service(dispatcher, session_factory, storage, no_sleep)

        job = service.submit_image({"prompt": "a lantern", "style": "ink wash", "drama_id": "d1"})
        assert job["status"] == "pending"
        assert job["size"] == "1024x1024"
        service.shutdown()

        done = service.get_job(job["id"])
        assert done["status"] == "completed"
        assert done["result_url"] == "https://cdn.example.com/a.png"
        assert done["style"] == "ink wash"
        assert dispatcher.image_calls == [("a lantern", "1024x1024", 1)]

    def test_data_uri_is_saved_to_storage(self, session_factory, storage, no_sleep, png_bytes):
        data_uri = "data:image/png;base64," + base64.b64encode(png_bytes).decode()
        service = _service(FakeDispatcher(images=[data_uri]), session_factory, storage, no_sleep)

        job = service.submit_image({"prompt": "a lantern", "image_type": "prop"})
        service.shutdown()

        url = service.get_job(job["id"])["result_url"]
        assert url.startswith("/static/images/")
        assert url.endswith(".png")
        assert storage.read_local(url) == png_bytes

    def test_provider_error_fails_job(self, session_factory, storage, no_sleep):
        dispatcher = FakeDispatcher(image_error=AITransportError("all providers down"))
        service = _service(dispatcher, session_factory, storage, no_sleep)

        job = service.submit_image({"prompt": "a lantern"})
        service.shutdown()

        done = service.get_job(job["id"])
        assert done["status"] == "failed"
        assert done["error_msg"] == "all providers down"

    def test_prompt_required(self, session_factory, storage, no_sleep):
        service = _service(FakeDispatcher(), session_factory, storage, no_sleep)
        with pytest.raises(ValueError):
            service.submit_image({"prompt": "  "})
        with pytest.raises(ValueError, match="must be a string"):
            service.submit_image({"prompt": ["a", "lantern"]})
        service.shutdown()

    def test_unknown_job(self, session_factory, storage, no_sleep):
        service = _service(FakeDispatcher(), session_factory, storage, no_sleep)
        assert service.get_job("missing") is None
        service.shutdown()


class TestVideoJobs:
    def test_polls_provider_until_success(self, session_factory, storage, no_sleep):
        dispatcher = FakeDispatcher(video_statuses=[
            VideoTaskStatus("RUNNING"),
            AITransportError("connection reset"),
            VideoTaskStatus("SUCCEEDED", video_url="https://cdn/v.mp4"),
        ])
        service = _service(dispatcher, session_factory, storage, no_sleep)

        job = service.submit_video({"prompt": "a cat runs", "duration": 6})
        service.shutdown()

        done = service.get_job(job["id"])
        assert done["status"] == "completed"
        assert done["result_url"] == "https://cdn/v.mp4"
        assert done["provider_task_id"] == "provider-task-1"
        assert done["provider"] == "chatfire"
        assert dispatcher.queries == [(7, "provider-task-1")] * 3

    def test_provider_failure(self, session_factory, storage, no_sleep):
        dispatcher = FakeDispatcher(video_statuses=[VideoTaskStatus("FAILED", error="nsfw")])
        service = _service(dispatcher, session_factory, storage, no_sleep)

        job = service.submit_video({"prompt": "a cat runs"})
        service.shutdown()

        done = service.get_job(job["id"])
        assert done["status"] == "failed"
        assert done["error_msg"] == "nsfw"

    def test_timeout(self, session_factory, storage, no_sleep):
        dispatcher = FakeDispatcher()
        service = _service(dispatcher, session_factory, storage, no_sleep, attempts=3)

        job = service.submit_video({"prompt": "a cat runs"})
        service.shutdown()

        done = service.get_job(job["id"])
        assert done["status"] == "failed"
        assert "timed out after 6s (3 attempts)" in done["error_msg"]
        assert len(dispatcher.queries) == 3

    def test_job_is_processing_once_submitted(self, session_factory, storage):
        statuses = []

        def record_status(seconds):
            with session_scope(session_factory) as db:
                statuses.extend(row.status for row in db.query(GenerationJob).all())

        service = _service(FakeDispatcher(), session_factory, storage, record_status, attempts=2)
        job = service.submit_video({"prompt": "a cat runs"})
        service.shutdown()

        assert job["status"] == "pending"
        assert statuses == ["processing", "processing"]
