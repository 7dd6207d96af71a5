from dataclasses import dataclass, asdict
from typing import Any, List, Optional

from loguru import logger
from sqlalchemy.orm import Session
from .models import Task
import datetime
import json
from drama_gateway.utils.redis_client import redis_client

TASK_CACHE_TTL = 3600

# pending -> processing -> completed | failed
STATUS_RANK = {
    "pending": 0,
    "processing": 1,
    "completed": 2,
    "failed": 2,
}
TERMINAL_STATUSES = ("completed", "failed")


def _parse_datetime(value):
    return datetime.datetime.fromisoformat(value) if value else None


def _format_datetime(value):
    return value.isoformat() if value else None


@dataclass
class TaskSnapshot:
    """Read-only view of a task handed to pollers."""
    id: str
    type: str
    resource_id: Optional[str]
    status: str
    progress: int
    message: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None

    @classmethod
    def from_model(cls, task: Task) -> "TaskSnapshot":
        return cls(
            id=task.id,
            type=task.type,
            resource_id=task.resource_id,
            status=task.status,
            progress=task.progress or 0,
            message=task.message,
            result=task.result,
            error=task.error,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=task.completed_at,
        )

    @classmethod
    def from_cache(cls, data: dict) -> "TaskSnapshot":
        return cls(
            id=data.get("id"),
            type=data.get("type"),
            resource_id=data.get("resource_id") or None,
            status=data.get("status"),
            progress=int(data.get("progress") or 0),
            message=data.get("message") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
        )

    def to_dict(self):
        data = asdict(self)
        for key in ("created_at", "updated_at", "completed_at"):
            data[key] = _format_datetime(data[key])
        return data


class TaskService:
    def __init__(self, db: Session):
        self.db = db

    def _cache_key(self, task_id):
        return f"task:{task_id}"

    def create_task(self, task_type, resource_id) -> TaskSnapshot:
        """Create a new task in pending state."""
        task = Task(type=task_type, resource_id=str(resource_id) if resource_id is not None else None,
                    status="pending", progress=0)
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)

        snapshot = TaskSnapshot.from_model(task)
        self._update_cache(snapshot)
        logger.info(f"Task created: id={task.id} type={task_type} resource_id={resource_id}")
        return snapshot

    def _transition(self, task_id, status, **fields) -> Optional[TaskSnapshot]:
        task = self.db.query(Task).filter(Task.id == task_id).first()
        if not task:
            logger.warning(f"Task {task_id} not found, update to {status} ignored")
            return None

        current = task.status or "pending"
        if current in TERMINAL_STATUSES or STATUS_RANK[status] < STATUS_RANK.get(current, 0):
            logger.warning(f"Task {task_id} is {current}, update to {status} ignored")
            return TaskSnapshot.from_model(task)

        task.status = status
        for key, value in fields.items():
            setattr(task, key, value)
        self.db.commit()
        self.db.refresh(task)

        # Write-Through Cache
        snapshot = TaskSnapshot.from_model(task)
        self._update_cache(snapshot)
        return snapshot

    def update_status(self, task_id, status, progress=None, message=None) -> Optional[TaskSnapshot]:
        if status not in STATUS_RANK:
            raise ValueError(f"invalid task status: {status}")
        fields = {}
        if progress is not None:
            fields["progress"] = max(0, min(100, int(progress)))
        if message is not None:
            fields["message"] = message
        if status in TERMINAL_STATUSES:
            fields["completed_at"] = datetime.datetime.now(datetime.timezone.utc)
        return self._transition(task_id, status, **fields)

    def update_result(self, task_id, result) -> Optional[TaskSnapshot]:
        return self._transition(
            task_id, "completed",
            progress=100,
            result=result,
            message="completed",
            completed_at=datetime.datetime.now(datetime.timezone.utc),
        )

    def update_error(self, task_id, err) -> Optional[TaskSnapshot]:
        return self._transition(
            task_id, "failed",
            error=str(err),
            message="failed",
            completed_at=datetime.datetime.now(datetime.timezone.utc),
        )

    def get_task(self, task_id) -> Optional[TaskSnapshot]:
        # Cache-Aside: Try Redis first
        cached = redis_client.hgetall(self._cache_key(task_id))
        if cached:
            return TaskSnapshot.from_cache(cached)

        # Fallback to DB
        task = self.db.query(Task).filter(Task.id == task_id).first()
        if not task:
            return None
        snapshot = TaskSnapshot.from_model(task)
        self._update_cache(snapshot)
        return snapshot

    def list_tasks(self, resource_id=None) -> List[TaskSnapshot]:
        # Lists are not cached
        query = self.db.query(Task)
        if resource_id:
            query = query.filter(Task.resource_id == str(resource_id))
        return [TaskSnapshot.from_model(t) for t in query.order_by(Task.created_at.desc()).all()]

    def _update_cache(self, snapshot: TaskSnapshot):
        data = {
            "id": str(snapshot.id),
            "type": str(snapshot.type),
            "resource_id": snapshot.resource_id or "",
            "status": str(snapshot.status),
            "progress": str(snapshot.progress),
            "message": snapshot.message or "",
            "result": json.dumps(snapshot.result) if snapshot.result is not None else "",
            "error": snapshot.error or "",
            "created_at": _format_datetime(snapshot.created_at) or "",
            "updated_at": _format_datetime(snapshot.updated_at) or "",
            "completed_at": _format_datetime(snapshot.completed_at) or "",
        }
        redis_client.hset(self._cache_key(snapshot.id), mapping=data)
        redis_client.expire(self._cache_key(snapshot.id), TASK_CACHE_TTL)  # 1 hour TTL
