"""
AI 客户端基类
Shared HTTP plumbing for the provider dialects. Each dialect subclass builds
its own request envelope; this module turns transport and HTTP failures into
the exception taxonomy in ``errors``.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

import requests
from loguru import logger

from drama_gateway.models.errors import AITransportError, AIRequestError, AIResponseError
from drama_gateway.utils.config_loader import config_loader

TRANSPORT_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


class AIClient(ABC):
    """统一的 AI 能力接口"""

    provider_name = "openai"

    def __init__(self, base_url: str, api_key: str, model: str, endpoint: str, timeout: int = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = (api_key or "").strip()
        self.model = model
        self.endpoint = endpoint or ""
        if timeout is None:
            timeout = config_loader.get("ai.request_timeout", 180)
        self.timeout = timeout

    def __repr__(self):
        return f"{type(self).__name__}(base_url={self.base_url!r}, model={self.model!r})"

    @abstractmethod
    def generate_text(self, prompt: str, system_prompt: str = "",
                      temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        ...

    @abstractmethod
    def generate_image(self, prompt: str, size: str = "1024x1024", n: int = 1) -> List[str]:
        ...

    @abstractmethod
    def describe_image(self, image: str, hint: str = "") -> str:
        ...

    @abstractmethod
    def test_connection(self) -> None:
        ...

    def _build_url(self, endpoint: str) -> str:
        endpoint = endpoint.replace("{model}", self.model or "")
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        return f"{self.base_url}{endpoint}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }

    def _request_json(self, method: str, url: str, payload: Dict[str, Any] = None) -> Dict[str, Any]:
        try:
            response = requests.request(method, url, json=payload, headers=self._headers(), timeout=self.timeout)
        except TRANSPORT_EXCEPTIONS as e:
            logger.warning(f"{self.provider_name} 请求网络异常: {url} ({e})")
            raise AITransportError(f"{self.provider_name} request failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise AIRequestError(f"{self.provider_name} invalid request: {e}") from e

        if not 200 <= response.status_code < 300:
            body = response.text or ""
            detail = self._error_detail(response) or body[:500]
            logger.error(f"{self.provider_name} API error {response.status_code}: {detail}")
            raise AIRequestError(
                f"{self.provider_name} API error {response.status_code}: {detail}",
                status_code=response.status_code,
                body=body,
            )

        try:
            return response.json()
        except ValueError as e:
            raise AIResponseError(f"{self.provider_name} returned invalid JSON: {e}") from e

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request_json("POST", url, payload)

    def _get_json(self, url: str) -> Dict[str, Any]:
        return self._request_json("GET", url)

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return ""
        if not isinstance(data, dict):
            return ""
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        return str(data.get("message") or "")
