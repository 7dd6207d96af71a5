from sqlalchemy.orm import Session
from .models import Log


class LogService:
    def __init__(self, db: Session):
        self.db = db

    def log(self, task_id, resource_id, level, message, module=None, details=None):
        """Create a new log entry."""
        log_entry = Log(
            task_id=task_id,
            resource_id=resource_id,
            level=level,
            message=message,
            module=module,
            details=details
        )
        self.db.add(log_entry)
        self.db.commit()
        return log_entry

    def get_logs(self, task_id=None, resource_id=None, level=None, limit=100):
        query = self.db.query(Log)
        if task_id:
            query = query.filter(Log.task_id == task_id)
        if resource_id:
            query = query.filter(Log.resource_id == resource_id)
        if level:
            query = query.filter(Log.level == level)

        return query.order_by(Log.timestamp.desc()).limit(limit).all()
