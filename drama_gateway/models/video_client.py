"""
视频生成客户端
Task-based video providers: a submit call returns a provider task id which is
then polled on ``query_endpoint`` (with ``{taskId}`` substituted).
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from drama_gateway.models.ai_client import AIClient
from drama_gateway.models.errors import AIRequestError, AIResponseError

ARK_PROVIDERS = ("doubao", "volcengine", "volces")

SUCCESS_STATUSES = {"SUCCEEDED", "COMPLETED", "SUCCESS"}
FAILED_STATUSES = {"FAILED", "FAILURE", "ERROR", "CANCELLED"}

MIN_DURATION = 4
MAX_DURATION = 12
DEFAULT_DURATION = 5


@dataclass(frozen=True)
class VideoTaskStatus:
    status: str  # SUCCEEDED, FAILED, RUNNING
    video_url: Optional[str] = None
    error: Optional[str] = None


def clamp_duration(duration) -> int:
    """Round to whole seconds and clamp into the range the video models accept."""
    try:
        raw = int(round(float(duration)))
    except (TypeError, ValueError):
        return DEFAULT_DURATION
    return max(MIN_DURATION, min(MAX_DURATION, raw))


class VideoClient(AIClient):
    """视频任务客户端"""

    def __init__(self, base_url: str, api_key: str, model: str, endpoint: str,
                 query_endpoint: str = "", provider: str = "", timeout: int = None):
        super().__init__(base_url, api_key, model, endpoint, timeout=60 if timeout is None else timeout)
        self.query_endpoint = query_endpoint or ""
        self.provider_name = provider or "video"

    def _build_payload(self, prompt: str, image_url: Optional[str], duration, ratio: Optional[str]) -> Dict[str, Any]:
        if self.provider_name in ARK_PROVIDERS:
            full_prompt = prompt
            if ratio:
                full_prompt += f" --ratio {ratio}"
            if duration:
                full_prompt += f" --dur {clamp_duration(duration)}"
            content = [{"type": "text", "text": full_prompt}]
            if image_url:
                content.append({"type": "image_url", "image_url": {"url": image_url}})
            payload = {"model": self.model, "content": content}
            if ratio:
                payload["ratio"] = ratio
            return payload

        payload = {"model": self.model, "prompt": prompt}
        if image_url:
            payload["image_url"] = image_url
        if duration:
            payload["duration"] = clamp_duration(duration)
        if ratio:
            payload["ratio"] = ratio
        return payload

    def submit_video(self, prompt: str, image_url: str = None, duration=None, ratio: str = None) -> str:
        """提交视频生成任务（仅提交，不等待），返回服务商任务ID"""
        if not self.endpoint:
            raise AIRequestError("video endpoint is not configured")

        payload = self._build_payload(prompt, image_url, duration, ratio)
        url = self._build_url(self.endpoint)
        logger.info(f"提交视频任务: {url} model={self.model}")
        logger.debug(f"Video payload: {json.dumps(payload, ensure_ascii=False)}")
        result = self._post_json(url, payload)

        data = result.get("data") if isinstance(result.get("data"), dict) else {}
        task_id = result.get("id") or result.get("task_id") or data.get("id") or data.get("task_id")
        if not task_id:
            raise AIResponseError(f"No task_id in response: {result}")
        logger.info(f"Video task submitted, ID: {task_id}")
        return str(task_id)

    def query_video(self, task_id: str) -> VideoTaskStatus:
        """检查视频任务状态"""
        if not self.query_endpoint:
            raise AIRequestError("video query endpoint is not configured")
        url = self._build_url(self.query_endpoint.replace("{taskId}", task_id))
        result = self._get_json(url)
        return self.parse_status(result)

    @staticmethod
    def parse_status(result: Dict[str, Any]) -> VideoTaskStatus:
        data = result.get("data") if isinstance(result.get("data"), dict) else {}
        status = str(result.get("status") or data.get("status") or "").upper()

        if status in SUCCESS_STATUSES:
            content = result.get("content") if isinstance(result.get("content"), dict) else {}
            video_url = (content.get("video_url") or content.get("url")
                         or data.get("video_url") or data.get("url") or result.get("video_url"))
            return VideoTaskStatus("SUCCEEDED", video_url=video_url)

        if status in FAILED_STATUSES:
            reason = "Unknown failure"
            error = result.get("error") or data.get("error")
            if isinstance(error, dict):
                reason = error.get("message") or str(error)
            elif error:
                reason = str(error)
            return VideoTaskStatus("FAILED", error=reason)

        return VideoTaskStatus("RUNNING")

    def test_connection(self) -> None:
        # A lookup of an unknown task proves the credential is accepted without creating anything
        try:
            self.query_video("connection-test")
        except AIRequestError as e:
            if e.status_code == 404:
                return
            raise

    def generate_text(self, prompt, system_prompt="", temperature=None, max_tokens=None):
        raise AIRequestError("video providers do not support text generation")

    def generate_image(self, prompt, size="1024x1024", n=1):
        raise AIRequestError("video providers do not support image generation")

    def describe_image(self, image, hint=""):
        raise AIRequestError("video providers do not support image description")
