"""
OpenAI 兼容客户端
Covers OpenAI itself and every vendor speaking its chat/images protocol
(chatfire, doubao's ark gateway, local servers, ...).
"""

from typing import Dict, List, Optional

from loguru import logger

from drama_gateway.models.ai_client import AIClient
from drama_gateway.models.errors import AIResponseError

CHAT_ENDPOINT = "/chat/completions"
IMAGE_ENDPOINT = "/images/generations"


class OpenAIClient(AIClient):
    """OpenAI 协议客户端"""

    provider_name = "openai"

    def _chat_endpoint(self) -> str:
        if self.endpoint and "chat" in self.endpoint:
            return self.endpoint
        return CHAT_ENDPOINT

    def _image_endpoint(self) -> str:
        if self.endpoint and "image" in self.endpoint:
            return self.endpoint
        return IMAGE_ENDPOINT

    def _chat(self, messages: List[Dict], temperature: Optional[float] = None,
              max_tokens: Optional[int] = None) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        url = self._build_url(self._chat_endpoint())
        logger.info(f"调用LLM: {self.model} @ {url}")
        result = self._post_json(url, payload)

        choices = result.get("choices") or []
        if not choices:
            raise AIResponseError(f"no choices in response: {result}")
        content = (choices[0].get("message") or {}).get("content")
        # Some gateways return content as a list of typed parts
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        if not content:
            raise AIResponseError("empty content in response")

        usage = result.get("usage", {})
        logger.info(f"LLM响应成功，Token: prompt={usage.get('prompt_tokens', 0)} completion={usage.get('completion_tokens', 0)}")
        return content

    def generate_text(self, prompt: str, system_prompt: str = "",
                      temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return self._chat(messages, temperature=temperature, max_tokens=max_tokens)

    def generate_image(self, prompt: str, size: str = "1024x1024", n: int = 1) -> List[str]:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "size": size,
            "n": n,
        }
        url = self._build_url(self._image_endpoint())
        logger.info(f"Requesting image from {url} with model {self.model}")
        result = self._post_json(url, payload)

        images = []
        for item in result.get("data") or []:
            if item.get("url"):
                images.append(item["url"])
            elif item.get("b64_json"):
                images.append(f"data:image/png;base64,{item['b64_json']}")
        if not images:
            raise AIResponseError(f"Empty data or missing URL in response: {result}")
        return images

    def describe_image(self, image: str, hint: str = "") -> str:
        content = [
            {"type": "text", "text": hint or "Describe this image."},
            {"type": "image_url", "image_url": {"url": image}},
        ]
        return self._chat([{"role": "user", "content": content}])

    def test_connection(self) -> None:
        self._chat([{"role": "user", "content": "ping"}], max_tokens=5)
