"""
生成任务服务
Image and video generation jobs. A job row is created immediately as pending;
the provider call (and, for video, the provider-side polling) runs on a worker
thread and finally moves the job to completed or failed.
"""

import datetime
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from loguru import logger

from drama_gateway.core.ai_dispatcher import AIDispatcher
from drama_gateway.models.errors import GenerationFailedError, GenerationTimeoutError
from drama_gateway.server.database import SessionLocal, session_scope
from drama_gateway.server.models import GenerationJob
from drama_gateway.server.task_runner import TASK_MAX_POLL_ATTEMPTS, TASK_POLL_INTERVAL_SECONDS
from drama_gateway.utils.config_loader import config_loader
from drama_gateway.utils.storage import LocalStorage


class GenerationJobService:
    def __init__(self, dispatcher: AIDispatcher, session_factory=None, storage: LocalStorage = None,
                 executor: ThreadPoolExecutor = None, poll_interval: float = None,
                 max_poll_attempts: int = None, sleep=time.sleep):
        self.dispatcher = dispatcher
        self.session_factory = session_factory or SessionLocal
        self._storage = storage
        if executor is None:
            max_workers = int(config_loader.get("tasks.max_workers", 8))
            executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generation")
        self.executor = executor
        if poll_interval is None:
            poll_interval = float(config_loader.get("tasks.poll_interval", TASK_POLL_INTERVAL_SECONDS))
        if max_poll_attempts is None:
            max_poll_attempts = int(config_loader.get("tasks.max_poll_attempts", TASK_MAX_POLL_ATTEMPTS))
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.sleep = sleep

    @property
    def storage(self) -> LocalStorage:
        if self._storage is None:
            self._storage = LocalStorage()
        return self._storage

    def _create_job(self, job_type: str, request: Dict[str, Any]) -> Dict[str, Any]:
        prompt = request.get("prompt") or ""
        if not isinstance(prompt, str):
            raise ValueError("prompt must be a string")
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("prompt is required")

        with session_scope(self.session_factory) as db:
            job = GenerationJob(
                job_type=job_type,
                drama_id=request.get("drama_id"),
                prop_id=request.get("prop_id"),
                image_type=request.get("image_type"),
                prompt=prompt,
                size=request.get("size"),
                style=request.get("style"),
                provider=request.get("provider"),
                model=request.get("model"),
                status="pending",
            )
            db.add(job)
            db.commit()
            db.refresh(job)
            logger.info(f"Generation job created: id={job.id} type={job_type} drama_id={job.drama_id}")
            return job.to_dict()

    def _update_job(self, job_id: str, **fields):
        with session_scope(self.session_factory) as db:
            job = db.query(GenerationJob).filter(GenerationJob.id == job_id).first()
            if not job:
                logger.warning(f"Generation job {job_id} not found")
                return
            for key, value in fields.items():
                setattr(job, key, value)
            db.commit()

    def _complete(self, job_id: str, result_url: str):
        self._update_job(job_id, status="completed", result_url=result_url,
                         completed_at=datetime.datetime.now(datetime.timezone.utc))
        logger.info(f"Generation job {job_id} completed: {result_url}")

    def _fail(self, job_id: str, err):
        self._update_job(job_id, status="failed", error_msg=str(err),
                         completed_at=datetime.datetime.now(datetime.timezone.utc))
        logger.error(f"Generation job {job_id} failed: {err}")

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            job = db.query(GenerationJob).filter(GenerationJob.id == job_id).first()
            return job.to_dict() if job else None

    def submit_image(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """创建图片生成任务，后台执行"""
        request = dict(request)
        request.setdefault("size", config_loader.get("style.default_image_size", "1024x1024"))
        job = self._create_job("image", request)
        self.executor.submit(self._generate_image, job["id"], job["prompt"], job["size"],
                             job["model"], job["image_type"])
        return job

    def _generate_image(self, job_id, prompt, size, model=None, image_type=None):
        try:
            # The stored prompt is final; style is kept on the job as metadata
            urls = self.dispatcher.generate_image(prompt, size or "1024x1024", 1, model=model)
            if not urls:
                raise GenerationFailedError("provider returned no image")

            url = urls[0]
            if url.startswith("data:"):
                url = self.storage.save_data_uri(url, f"{image_type or 'image'}_{job_id[:8]}", "images")
            self._complete(job_id, url)
        except Exception as e:
            self._fail(job_id, e)

    def submit_video(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """创建视频生成任务，后台提交并轮询服务商"""
        job = self._create_job("video", request)
        duration = request.get("duration") or config_loader.get("ai.default_video_duration", 5)
        self.executor.submit(self._generate_video, job["id"], job["prompt"], request.get("image_url"),
                             duration, request.get("ratio"), job["model"])
        return job

    def _generate_video(self, job_id, prompt, image_url=None, duration=None, ratio=None, model=None):
        try:
            provider_task_id, config = self.dispatcher.submit_video(
                prompt, image_url=image_url, duration=duration, ratio=ratio, model=model)
            self._update_job(job_id, status="processing", config_id=config.id,
                             provider_task_id=provider_task_id, provider=config.provider)

            for attempt in range(1, self.max_poll_attempts + 1):
                self.sleep(self.poll_interval)
                try:
                    status = self.dispatcher.query_video(config.id, provider_task_id, model=model)
                except Exception as e:
                    logger.warning(f"Video job {job_id}: status query failed (attempt {attempt}): {e}")
                    continue

                if status.status == "SUCCEEDED":
                    if not status.video_url:
                        raise GenerationFailedError("video task succeeded without a video url")
                    self._complete(job_id, status.video_url)
                    return
                if status.status == "FAILED":
                    raise GenerationFailedError(status.error or "video generation failed")

            raise GenerationTimeoutError(
                f"video generation timed out after {int(self.poll_interval * self.max_poll_attempts)}s "
                f"({self.max_poll_attempts} attempts)"
            )
        except Exception as e:
            self._fail(job_id, e)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
