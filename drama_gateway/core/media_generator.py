"""
图片/视频生成任务
"""

from typing import Any, Dict, Tuple

from loguru import logger

from drama_gateway.core.style_consistency import StyleConsistencyChecker, style_checker
from drama_gateway.server.generation_service import GenerationJobService
from drama_gateway.server.services import TaskSnapshot
from drama_gateway.server.task_runner import TaskOrchestrator


def _text_field(request: Dict[str, Any], name: str) -> str:
    value = request.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


class MediaGenerator:
    """Submits a generation job and tracks it with a pollable task."""

    def __init__(self, orchestrator: TaskOrchestrator, jobs: GenerationJobService,
                 checker: StyleConsistencyChecker = None):
        self.orchestrator = orchestrator
        self.jobs = jobs
        self.checker = checker or style_checker

    def _track(self, kind: str, job: Dict[str, Any], result_key: str, **wait_options) -> TaskSnapshot:
        def work(ctx):
            ctx.update_progress(10, f"generation job {job['id']} submitted")
            done = ctx.wait_for_job(job["id"], self.jobs.get_job, **wait_options)
            return {"job_id": job["id"], result_key: done["result_url"]}

        task, _ = self.orchestrator.run(kind, job.get("drama_id") or job["id"], work)
        return task

    def generate_image(self, request: Dict[str, Any]) -> Tuple[TaskSnapshot, Dict[str, Any]]:
        """图片提示词按请求的风格和参考作品校验后再提交"""
        request = dict(request)
        normalized = self.checker.normalize(
            _text_field(request, "prompt"),
            _text_field(request, "style"),
            _text_field(request, "reference_work"),
        )
        if normalized.violations:
            logger.info(f"Image prompt normalized by style consistency: violations={normalized.violations}")
        request["prompt"] = normalized.prompt

        job = self.jobs.submit_image(request)
        return self._track("image_generation", job, "image_url"), job

    def generate_video(self, request: Dict[str, Any]) -> Tuple[TaskSnapshot, Dict[str, Any]]:
        job = self.jobs.submit_video(request)
        # The job polls the provider for max_poll_attempts ticks after submission.
        # Start counting once it has been submitted and allow one more read to see its final state.
        task = self._track("video_generation", job, "video_url",
                           max_attempts=self.jobs.max_poll_attempts + 1, count_pending=False)
        return task, job
