"""
AI 服务异常定义
"""

from typing import Optional


class AIServiceError(Exception):
    """Base class for every failure raised by the AI layer."""


class AITransportError(AIServiceError):
    """The request never got a response: DNS, refused connection, TLS, timeout, EOF."""


class AIRequestError(AIServiceError):
    """The provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AIResponseError(AIServiceError):
    """The provider answered 2xx but the payload is unusable."""


class ConfigNotFoundError(AIServiceError):
    """No active provider config matches the requested service type or model."""


class GenerationFailedError(AIServiceError):
    """A downstream generation job reached the failed state."""


class GenerationTimeoutError(AIServiceError):
    """A downstream generation job did not finish within the polling budget."""
