"""
AI 服务配置
CRUD for provider configs plus the read path used by the dispatcher:
active configs in trial order (priority, then recency) and client construction.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import desc
from sqlalchemy.orm import Session

from drama_gateway.models.ai_client import AIClient
from drama_gateway.models.client_factory import default_endpoints, new_ai_client
from drama_gateway.models.errors import ConfigNotFoundError
from .models import AIServiceConfig, ProviderConfig, SERVICE_TYPES

UPDATABLE_FIELDS = ("name", "provider", "base_url", "api_key", "model", "endpoint",
                    "query_endpoint", "priority", "is_default", "is_active", "settings")


def _normalize_models(value) -> List[str]:
    if isinstance(value, str):
        value = [value]
    return [str(m).strip() for m in (value or []) if str(m).strip()]


BOOL_STRINGS = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}


def _to_bool(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in BOOL_STRINGS:
        return BOOL_STRINGS[value.strip().lower()]
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def validate_service_type(service_type: str):
    if service_type not in SERVICE_TYPES:
        raise ValueError(f"invalid service_type: {service_type!r}, expected one of {', '.join(SERVICE_TYPES)}")


def build_client(config: ProviderConfig, model: Optional[str] = None) -> AIClient:
    """按配置构建客户端：模型优先使用覆盖值，其次取配置中的第一个模型"""
    if not model and config.models:
        model = config.models[0]

    endpoint = config.endpoint
    query_endpoint = config.query_endpoint
    if not endpoint:
        endpoint, default_query = default_endpoints(config.provider, config.service_type)
        query_endpoint = query_endpoint or default_query

    return new_ai_client(
        config.provider,
        config.base_url,
        config.api_key,
        model or "",
        endpoint,
        query_endpoint=query_endpoint,
        service_type=config.service_type,
    )


class AIConfigService:
    def __init__(self, db: Session):
        self.db = db

    def create_config(self, data: Dict[str, Any]) -> AIServiceConfig:
        service_type = data.get("service_type", "")
        validate_service_type(service_type)
        for key in ("name", "provider", "base_url", "api_key"):
            if not str(data.get(key) or "").strip():
                raise ValueError(f"{key} is required")
        models = _normalize_models(data.get("model"))
        if not models:
            raise ValueError("model is required")

        provider = data["provider"].strip()
        endpoint = data.get("endpoint") or ""
        query_endpoint = data.get("query_endpoint") or ""
        if not endpoint:
            endpoint, default_query = default_endpoints(provider, service_type)
            query_endpoint = query_endpoint or default_query

        config = AIServiceConfig(
            service_type=service_type,
            name=data["name"].strip(),
            provider=provider,
            base_url=data["base_url"].strip(),
            api_key=data["api_key"].strip(),
            model=models,
            endpoint=endpoint,
            query_endpoint=query_endpoint,
            priority=int(data.get("priority") or 0),
            is_default=_to_bool(data.get("is_default", False), "is_default"),
            is_active=_to_bool(data.get("is_active", True), "is_active"),
            settings=data.get("settings"),
        )
        self.db.add(config)
        self.db.commit()
        self.db.refresh(config)
        logger.info(f"AI config created: id={config.id} provider={provider} endpoint={endpoint}")
        return config

    def get_config(self, config_id) -> Optional[AIServiceConfig]:
        return self.db.query(AIServiceConfig).filter(AIServiceConfig.id == config_id).first()

    def _ordered(self, service_type: Optional[str] = None):
        query = self.db.query(AIServiceConfig)
        if service_type:
            query = query.filter(AIServiceConfig.service_type == service_type)
        return query.order_by(
            desc(AIServiceConfig.priority),
            desc(AIServiceConfig.created_at),
            desc(AIServiceConfig.id),
        )

    def list_configs(self, service_type: Optional[str] = None) -> List[AIServiceConfig]:
        if service_type:
            validate_service_type(service_type)
        return self._ordered(service_type).all()

    def update_config(self, config_id, updates: Dict[str, Any]) -> Optional[AIServiceConfig]:
        config = self.get_config(config_id)
        if not config:
            return None

        changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if "model" in changes:
            models = _normalize_models(changes["model"])
            if not models:
                raise ValueError("model must not be empty")
            changes["model"] = models
        if "priority" in changes:
            changes["priority"] = int(changes["priority"] or 0)
        for key in ("is_default", "is_active"):
            if key in changes:
                changes[key] = _to_bool(changes[key], key)

        # A provider switch without an explicit endpoint re-derives the provider defaults
        if changes.get("provider") and not changes.get("endpoint"):
            endpoint, query_endpoint = default_endpoints(changes["provider"], config.service_type)
            if endpoint:
                changes["endpoint"] = endpoint
                changes["query_endpoint"] = query_endpoint
        elif "endpoint" in changes and not changes["endpoint"]:
            del changes["endpoint"]

        for key, value in changes.items():
            setattr(config, key, value)

        self.db.commit()
        self.db.refresh(config)
        logger.info(f"AI config updated: id={config_id} fields={sorted(changes)}")
        return config

    def delete_config(self, config_id) -> bool:
        config = self.get_config(config_id)
        if not config:
            return False
        self.db.delete(config)
        self.db.commit()
        logger.info(f"AI config deleted: id={config_id}")
        return True

    def list_active(self, service_type: str, model: Optional[str] = None) -> List[ProviderConfig]:
        """按优先级降序、创建时间降序返回激活的配置"""
        rows = self._ordered(service_type).filter(AIServiceConfig.is_active.is_(True)).all()
        configs = [row.to_provider_config() for row in rows]
        if model:
            configs = [c for c in configs if model in c.models]
            if not configs:
                raise ConfigNotFoundError(f"no active {service_type} config found for model: {model}")
        if not configs:
            raise ConfigNotFoundError(f"no active {service_type} config found")
        return configs

    def resolve(self, service_type: str, model: Optional[str] = None) -> ProviderConfig:
        return self.list_active(service_type, model)[0]

    def get_provider_config(self, config_id) -> Optional[ProviderConfig]:
        config = self.get_config(config_id)
        return config.to_provider_config() if config else None
