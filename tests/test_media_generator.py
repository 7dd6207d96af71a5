"""Tests for image/video generation tasks."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from drama_gateway.core.media_generator import MediaGenerator
from drama_gateway.server.task_runner import TaskOrchestrator


class ScriptedJobs:
    """Job service double whose job walks through a fixed list of states."""

    def __init__(self, states=(), max_poll_attempts=60):
        self.states = list(states)
        self.max_poll_attempts = max_poll_attempts
        self.submitted = []

    def _submit(self, request):
        self.submitted.append(request)
        return {"id": "job-1", "status": "pending", "drama_id": request.get("drama_id")}

    submit_image = _submit
    submit_video = _submit

    def get_job(self, job_id):
        return self.states.pop(0) if len(self.states) > 1 else self.states[0]


@pytest.fixture
def orchestrator(session_factory, no_sleep):
    orchestrator = TaskOrchestrator(session_factory, executor=ThreadPoolExecutor(max_workers=1),
                                    poll_interval=2, max_poll_attempts=60, sleep=no_sleep)
    yield orchestrator
    orchestrator.shutdown()


def _finish(orchestrator, task_id):
    orchestrator.shutdown(wait=True)
    return orchestrator.get_task(task_id)


class TestImageGeneration:
    def test_prompt_is_normalized_against_requested_style(self, orchestrator):
        jobs = ScriptedJobs([{"status": "completed", "result_url": "https://cdn/a.png"}])
        media = MediaGenerator(orchestrator, jobs)

        task, job = media.generate_image({
            "prompt": "lantern, japanese anime style, inspired glow",
            "style": "Chinese Animation Style",
            "reference_work": "Nezha",
            "drama_id": "d1",
        })
        done = _finish(orchestrator, task.id)

        assert jobs.submitted[0]["prompt"] == (
            "lantern, inspired glow, Chinese Animation Style, style reference: Nezha")
        assert jobs.submitted[0]["style"] == "Chinese Animation Style"
        assert task.resource_id == "d1"
        assert done.result == {"job_id": "job-1", "image_url": "https://cdn/a.png"}

    def test_non_string_prompt_rejected(self, orchestrator):
        media = MediaGenerator(orchestrator, ScriptedJobs())
        with pytest.raises(ValueError, match="prompt must be a string"):
            media.generate_image({"prompt": 42})
        assert orchestrator.list_tasks() == []


class TestVideoGeneration:
    def test_task_clock_starts_when_job_reaches_provider(self, orchestrator, no_sleep):
        # The job spends a while waiting for its provider submission, then uses its whole budget
        states = ([{"status": "pending"}] * 10 + [{"status": "processing"}] * 3
                  + [{"status": "failed", "error_msg": "provider rejected the prompt"}])
        jobs = ScriptedJobs(states, max_poll_attempts=3)
        media = MediaGenerator(orchestrator, jobs)

        task, _ = media.generate_video({"prompt": "a cat runs"})
        done = _finish(orchestrator, task.id)

        assert done.status == "failed"
        assert done.error == "provider rejected the prompt"
        assert len(no_sleep.calls) == 14

    def test_completed_video(self, orchestrator):
        jobs = ScriptedJobs([{"status": "processing"},
                             {"status": "completed", "result_url": "https://cdn/v.mp4"}])
        media = MediaGenerator(orchestrator, jobs)

        task, _ = media.generate_video({"prompt": "a cat runs"})
        done = _finish(orchestrator, task.id)

        assert done.status == "completed"
        assert done.result == {"job_id": "job-1", "video_url": "https://cdn/v.mp4"}
