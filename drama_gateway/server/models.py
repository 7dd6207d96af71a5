from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import Column, String, Integer, JSON, DateTime, Text, Boolean
from sqlalchemy.sql import func
from .database import Base
import uuid

SERVICE_TYPES = ("text", "image", "video")


def generate_uuid():
    return str(uuid.uuid4())


def _isoformat(value):
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ProviderConfig:
    """Read-only snapshot of one provider config, safe to use after the session closes."""
    id: Optional[int]
    service_type: str
    provider: str
    base_url: str
    api_key: str
    models: List[str] = field(default_factory=list)
    endpoint: str = ""
    query_endpoint: str = ""
    priority: int = 0
    is_active: bool = True
    is_default: bool = False
    name: str = ""


class AIServiceConfig(Base):
    __tablename__ = "ai_service_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_type = Column(String, nullable=False, index=True)  # text, image, video
    name = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="openai")
    base_url = Column(String, nullable=False)
    api_key = Column(String, nullable=False)
    model = Column(JSON, default=list)  # ordered model names, first is the default
    endpoint = Column(String, default="")
    query_endpoint = Column(String, default="")
    priority = Column(Integer, default=0)
    is_default = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    settings = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    def to_provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            id=self.id,
            service_type=self.service_type,
            provider=self.provider or "",
            base_url=self.base_url,
            api_key=self.api_key,
            models=list(self.model or []),
            endpoint=self.endpoint or "",
            query_endpoint=self.query_endpoint or "",
            priority=self.priority or 0,
            is_active=bool(self.is_active),
            is_default=bool(self.is_default),
            name=self.name or "",
        )

    def to_dict(self, include_secret=False):
        api_key = self.api_key or ""
        if not include_secret and api_key:
            api_key = f"{api_key[:4]}****" if len(api_key) > 8 else "****"
        return {
            "id": self.id,
            "service_type": self.service_type,
            "name": self.name,
            "provider": self.provider,
            "base_url": self.base_url,
            "api_key": api_key,
            "model": list(self.model or []),
            "endpoint": self.endpoint,
            "query_endpoint": self.query_endpoint,
            "priority": self.priority,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "settings": self.settings,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at)
        }


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=generate_uuid)
    type = Column(String, nullable=False)  # prop_extraction, prop_image_generation, ...
    resource_id = Column(String, nullable=True)
    status = Column(String, default="pending")  # pending, processing, completed, failed
    progress = Column(Integer, default=0)
    message = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)


class Log(Base):
    __tablename__ = "logs"

    id = Column(String, primary_key=True, default=generate_uuid)
    task_id = Column(String, nullable=True, index=True)
    resource_id = Column(String, nullable=True)
    level = Column(String, default="INFO")  # DEBUG, INFO, WARN, ERROR
    message = Column(Text, nullable=False)
    module = Column(String, nullable=True)
    details = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "resource_id": self.resource_id,
            "level": self.level,
            "message": self.message,
            "module": self.module,
            "details": self.details,
            "timestamp": _isoformat(self.timestamp)
        }


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True, default=generate_uuid)
    job_type = Column(String, nullable=False)  # image, video
    drama_id = Column(String, nullable=True)
    prop_id = Column(String, nullable=True)
    image_type = Column(String, nullable=True)  # prop, character, scene, storyboard
    prompt = Column(Text, nullable=False)
    size = Column(String, nullable=True)
    style = Column(Text, nullable=True)
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)
    status = Column(String, default="pending")  # pending, completed, failed
    result_url = Column(Text, nullable=True)
    error_msg = Column(Text, nullable=True)
    config_id = Column(Integer, nullable=True)
    provider_task_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_type": self.job_type,
            "drama_id": self.drama_id,
            "prop_id": self.prop_id,
            "image_type": self.image_type,
            "prompt": self.prompt,
            "size": self.size,
            "style": self.style,
            "provider": self.provider,
            "model": self.model,
            "status": self.status,
            "result_url": self.result_url,
            "error_msg": self.error_msg,
            "provider_task_id": self.provider_task_id,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "completed_at": _isoformat(self.completed_at)
        }
