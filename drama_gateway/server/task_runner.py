"""
异步任务调度
Runs task work on a thread pool, detached from the request that created the
task. Workers report back only through the task record; they never raise.
"""

import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from drama_gateway.models.errors import GenerationFailedError, GenerationTimeoutError
from drama_gateway.server.database import SessionLocal, session_scope
from drama_gateway.server.log_service import LogService
from drama_gateway.server.services import TaskService, TaskSnapshot
from drama_gateway.utils.config_loader import config_loader

TASK_POLL_INTERVAL_SECONDS = 2
TASK_MAX_POLL_ATTEMPTS = 60


class TaskContext:
    """Handle given to a running piece of work for reporting progress."""

    def __init__(self, orchestrator: "TaskOrchestrator", task_id: str, reference: Optional[str]):
        self.orchestrator = orchestrator
        self.task_id = task_id
        self.reference = reference

    def update_progress(self, progress: int, message: Optional[str] = None):
        self.orchestrator.update_status(self.task_id, "processing", progress, message)

    def log(self, level: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.orchestrator.log(self.task_id, self.reference, level, message, details)

    def wait_for_job(self, job_id: str, read_job: Callable[[str], Optional[Dict[str, Any]]],
                     max_attempts: int = None, count_pending: bool = True) -> Dict[str, Any]:
        """
        轮询生成任务直到终态

        Sleeps ``poll_interval`` before each read, for at most ``max_attempts``
        reads (default ``max_poll_attempts``). A failed read is retried on the
        next tick. With ``count_pending=False`` the ceiling only starts once the
        job has left ``pending``; pending reads are bounded by ``max_poll_attempts``.
        Returns the completed job; raises GenerationFailedError or
        GenerationTimeoutError.
        """
        interval = self.orchestrator.poll_interval
        if max_attempts is None:
            max_attempts = self.orchestrator.max_poll_attempts

        attempt = 0
        pending_reads = 0
        while attempt < max_attempts:
            self.orchestrator.sleep(interval)

            try:
                job = read_job(job_id)
            except Exception as e:
                attempt += 1
                logger.warning(f"Task {self.task_id}: failed to read job {job_id} (attempt {attempt}): {e}")
                continue
            if job is None:
                attempt += 1
                logger.warning(f"Task {self.task_id}: job {job_id} not found (attempt {attempt})")
                continue

            status = job.get("status")
            if status == "completed":
                if not job.get("result_url"):
                    raise GenerationFailedError(f"generation job {job_id} completed without a result")
                return job
            if status == "failed":
                raise GenerationFailedError(job.get("error_msg") or f"generation job {job_id} failed")

            if status == "pending" and not count_pending:
                pending_reads += 1
                if pending_reads >= self.orchestrator.max_poll_attempts:
                    raise GenerationTimeoutError(
                        f"generation job {job_id} was not submitted within {int(interval * pending_reads)}s"
                    )
                continue

            attempt += 1
            self.update_progress(min(10 + attempt, 99), f"waiting for generation job ({attempt}/{max_attempts})")

        raise GenerationTimeoutError(
            f"generation timed out after {int(interval * max_attempts)}s ({max_attempts} attempts)"
        )


class TaskOrchestrator:
    def __init__(self, session_factory=None, executor: ThreadPoolExecutor = None,
                 poll_interval: float = None, max_poll_attempts: int = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.session_factory = session_factory or SessionLocal
        if executor is None:
            max_workers = int(config_loader.get("tasks.max_workers", 8))
            executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task-worker")
        self.executor = executor
        if poll_interval is None:
            poll_interval = float(config_loader.get("tasks.poll_interval", TASK_POLL_INTERVAL_SECONDS))
        if max_poll_attempts is None:
            max_poll_attempts = int(config_loader.get("tasks.max_poll_attempts", TASK_MAX_POLL_ATTEMPTS))
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.sleep = sleep

    def create_task(self, kind: str, reference) -> TaskSnapshot:
        with session_scope(self.session_factory) as db:
            return TaskService(db).create_task(kind, reference)

    def update_status(self, task_id: str, status: str, progress: int = None, message: str = None):
        with session_scope(self.session_factory) as db:
            return TaskService(db).update_status(task_id, status, progress, message)

    def update_result(self, task_id: str, result: Any):
        with session_scope(self.session_factory) as db:
            return TaskService(db).update_result(task_id, result)

    def update_error(self, task_id: str, err):
        with session_scope(self.session_factory) as db:
            return TaskService(db).update_error(task_id, err)

    def get_task(self, task_id: str) -> Optional[TaskSnapshot]:
        with session_scope(self.session_factory) as db:
            return TaskService(db).get_task(task_id)

    def list_tasks(self, reference=None):
        with session_scope(self.session_factory) as db:
            return TaskService(db).list_tasks(reference)

    def log(self, task_id, reference, level, message, details=None):
        try:
            with session_scope(self.session_factory) as db:
                LogService(db).log(task_id, reference, level, message, module="task_runner", details=details)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to persist log for task {task_id}: {e}")

    def start(self, task: TaskSnapshot, work: Callable[[TaskContext], Any]) -> Future:
        """在线程池中执行任务，立即返回"""
        return self.executor.submit(self._execute, task.id, task.resource_id, work)

    def run(self, kind: str, reference, work: Callable[[TaskContext], Any]) -> Tuple[TaskSnapshot, Future]:
        task = self.create_task(kind, reference)
        future = self.start(task, work)
        return task, future

    def _execute(self, task_id: str, reference, work: Callable[[TaskContext], Any]):
        ctx = TaskContext(self, task_id, reference)
        try:
            self.update_status(task_id, "processing", 0, "processing")
            ctx.log("INFO", "Task started")
            result = work(ctx)
            self.update_result(task_id, result)
            logger.info(f"Task {task_id} completed")
            ctx.log("INFO", "Task completed")
        except Exception as e:
            logger.error(f"Task {task_id} failed: {e}")
            try:
                self.update_error(task_id, e)
            except SQLAlchemyError as store_err:
                logger.error(f"Failed to store error for task {task_id}: {store_err}")
            ctx.log("ERROR", f"Task failed: {e}")

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
