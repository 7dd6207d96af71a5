"""
AI 调度模块
Runs an operation against the active provider configs of a service type in
priority order. Transport-level failures fail over to the next config; any
other failure is returned to the caller immediately.
"""

import socket
import ssl
from typing import Any, Callable, List, Optional, Tuple

import requests
from loguru import logger

from drama_gateway.models.errors import AIRequestError, AIResponseError, AITransportError, ConfigNotFoundError
from drama_gateway.models.video_client import VideoTaskStatus
from drama_gateway.server.ai_config_service import AIConfigService, build_client
from drama_gateway.server.database import session_scope
from drama_gateway.server.models import ProviderConfig
from drama_gateway.utils.config_loader import config_loader
from drama_gateway.utils.storage import LocalStorage

RETRYABLE_EXCEPTIONS = (
    AITransportError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
    socket.gaierror,
    ConnectionError,
    TimeoutError,
    ssl.SSLError,
    EOFError,
)

TRANSIENT_MESSAGES = (
    "no such host",
    "name or service not known",
    "temporary failure in name resolution",
    "dial tcp",
    "i/o timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "tls",
    "ssl",
    "eof",
)


def _exception_chain(err: BaseException):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_retryable_error(err: BaseException) -> bool:
    """判断错误是否属于网络/传输层故障（可切换到下一个配置重试）"""
    # The provider answered, so the network is fine whatever the body says
    if isinstance(err, (AIRequestError, AIResponseError)):
        return False
    for e in _exception_chain(err):
        if isinstance(e, RETRYABLE_EXCEPTIONS):
            return True
    msg = str(err).lower()
    return any(marker in msg for marker in TRANSIENT_MESSAGES)


class AIDispatcher:
    """带故障转移的 AI 调度器"""

    def __init__(self, session_factory=None, client_builder: Callable = build_client,
                 storage: LocalStorage = None):
        self.session_factory = session_factory
        self.client_builder = client_builder
        self._storage = storage

    @property
    def storage(self) -> LocalStorage:
        if self._storage is None:
            self._storage = LocalStorage()
        return self._storage

    def _active_configs(self, service_type: str, model: Optional[str] = None) -> List[ProviderConfig]:
        with session_scope(self.session_factory) as db:
            return AIConfigService(db).list_active(service_type, model)

    def dispatch_with_config(self, service_type: str, operation: Callable[[Any], Any],
                             model: Optional[str] = None) -> Tuple[Any, ProviderConfig]:
        """返回 (结果, 成功的配置)"""
        configs = self._active_configs(service_type, model)

        last_error = None
        for index, config in enumerate(configs):
            client = self.client_builder(config, model)
            try:
                return operation(client), config
            except Exception as e:
                last_error = e
                if not is_retryable_error(e):
                    logger.error(f"AI {service_type} call failed on config {config.id} ({config.provider}): {e}")
                    raise
                if index < len(configs) - 1:
                    logger.warning(
                        f"AI {service_type} call failed, trying next config: "
                        f"config_id={config.id} provider={config.provider} error={e}"
                    )

        logger.error(f"AI {service_type} call failed on all {len(configs)} configs: {last_error}")
        raise last_error

    def dispatch(self, service_type: str, operation: Callable[[Any], Any], model: Optional[str] = None) -> Any:
        return self.dispatch_with_config(service_type, operation, model)[0]

    def generate_text(self, prompt: str, system_prompt: str = "", temperature: Optional[float] = None,
                      max_tokens: Optional[int] = None, model: Optional[str] = None) -> str:
        return self.dispatch(
            "text",
            lambda client: client.generate_text(prompt, system_prompt, temperature=temperature, max_tokens=max_tokens),
            model,
        )

    def generate_image(self, prompt: str, size: str = "1024x1024", n: int = 1,
                       model: Optional[str] = None) -> List[str]:
        return self.dispatch("image", lambda client: client.generate_image(prompt, size, n), model)

    def prepare_image_input(self, image_url: str) -> str:
        """Turn a data URI, a local /static path or a remote URL into a data URI."""
        if image_url.startswith("data:"):
            return image_url
        data = self.storage.load_image(image_url)
        return self.storage.to_data_uri(data)

    def describe_image(self, image_url: str, hint: Optional[str] = None, model: Optional[str] = None) -> str:
        """根据参考图反推提示词"""
        if not image_url or not image_url.strip():
            raise ValueError("image_url is required")
        if hint is None:
            hint = (config_loader.get_prompt("image_description") or {}).get("user_template", "")
        image = self.prepare_image_input(image_url.strip())
        return self.dispatch("text", lambda client: client.describe_image(image, hint), model)

    def optimize_image_prompt(self, prompt: str, protected: Optional[List[str]] = None) -> str:
        """在保留关键词的前提下优化图像提示词"""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is empty")

        prompts = config_loader.get_prompt("image_prompt_optimization") or {}
        system_prompt = prompts.get("system", "")
        if protected:
            system_prompt += prompts.get("protected_template", " Keep verbatim: {protected}.").format(
                protected=", ".join(protected))
        user_prompt = prompts.get("user_template", "{prompt}").format(prompt=prompt)

        text = self.generate_text(user_prompt, system_prompt, temperature=0.7, max_tokens=800)
        return text.strip()

    def submit_video(self, prompt: str, image_url: Optional[str] = None, duration=None,
                     ratio: Optional[str] = None, model: Optional[str] = None) -> Tuple[str, ProviderConfig]:
        return self.dispatch_with_config(
            "video",
            lambda client: client.submit_video(prompt, image_url=image_url, duration=duration, ratio=ratio),
            model,
        )

    def query_video(self, config_id: int, provider_task_id: str, model: Optional[str] = None) -> VideoTaskStatus:
        # Polling must hit the config that accepted the job, so there is no failover here
        with session_scope(self.session_factory) as db:
            config = AIConfigService(db).get_provider_config(config_id)
        if config is None:
            raise ConfigNotFoundError(f"video config {config_id} no longer exists")
        return self.client_builder(config, model).query_video(provider_task_id)

    def test_connection(self, provider: str, base_url: str, api_key: str, models: List[str],
                        endpoint: str = "", service_type: str = "text") -> None:
        model = models[0] if models else ""
        logger.info(f"TestConnection called: provider={provider} base_url={base_url} endpoint={endpoint} model={model}")
        config = ProviderConfig(
            id=None,
            service_type=service_type,
            provider=provider or "openai",
            base_url=base_url,
            api_key=api_key,
            models=list(models or []),
            endpoint=endpoint or "",
        )
        try:
            self.client_builder(config, model).test_connection()
        except Exception as e:
            logger.error(f"TestConnection failed: {e}")
            raise
        logger.info("TestConnection succeeded")
