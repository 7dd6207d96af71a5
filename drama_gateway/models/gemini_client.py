"""
Gemini 兼容客户端
Speaks the ``generateContent`` envelope: ``contents``/``parts`` in,
``candidates``/``parts`` out, with the model substituted into the endpoint path.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from drama_gateway.models.ai_client import AIClient
from drama_gateway.models.errors import AIResponseError

GENERATE_CONTENT_ENDPOINT = "/v1beta/models/{model}:generateContent"


class GeminiClient(AIClient):
    """Gemini 协议客户端"""

    provider_name = "gemini"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key
        }

    def _generate_content(self, parts: List[Dict[str, Any]], system_prompt: str = "",
                          generation_config: Dict[str, Any] = None) -> Dict[str, Any]:
        payload = {"contents": [{"role": "user", "parts": parts}]}
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if generation_config:
            payload["generationConfig"] = generation_config

        url = self._build_url(self.endpoint or GENERATE_CONTENT_ENDPOINT)
        logger.info(f"调用Gemini: {self.model}")
        return self._post_json(url, payload)

    @staticmethod
    def _candidate_parts(result: Dict[str, Any]) -> List[Dict[str, Any]]:
        parts = []
        for candidate in result.get("candidates") or []:
            parts.extend((candidate.get("content") or {}).get("parts") or [])
        if not parts:
            feedback = result.get("promptFeedback") or {}
            reason = feedback.get("blockReason")
            if reason:
                raise AIResponseError(f"gemini blocked the prompt: {reason}")
            raise AIResponseError(f"no candidates in response: {result}")
        return parts

    def _text_from(self, result: Dict[str, Any]) -> str:
        text = "".join(part.get("text", "") for part in self._candidate_parts(result))
        if not text:
            raise AIResponseError("empty text in gemini response")
        return text

    def generate_text(self, prompt: str, system_prompt: str = "",
                      temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        generation_config = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        result = self._generate_content([{"text": prompt}], system_prompt, generation_config)
        return self._text_from(result)

    def generate_image(self, prompt: str, size: str = "1024x1024", n: int = 1) -> List[str]:
        generation_config = {
            "responseModalities": ["TEXT", "IMAGE"],
            "candidateCount": n,
        }
        text = prompt
        if size:
            text = f"{prompt}\nImage size: {size}"
        result = self._generate_content([{"text": text}], generation_config=generation_config)

        images = []
        for part in self._candidate_parts(result):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                images.append(f"data:{mime_type};base64,{inline['data']}")
        if not images:
            raise AIResponseError("no image data in gemini response")
        return images

    def describe_image(self, image: str, hint: str = "") -> str:
        parts = [{"text": hint or "Describe this image."}, self._image_part(image)]
        result = self._generate_content(parts)
        return self._text_from(result)

    @staticmethod
    def _image_part(image: str) -> Dict[str, Any]:
        if image.startswith("data:"):
            header, _, data = image.partition(",")
            mime_type = header[5:].split(";")[0] or "image/png"
            return {"inlineData": {"mimeType": mime_type, "data": data}}
        return {"fileData": {"fileUri": image}}

    def test_connection(self) -> None:
        self.generate_text("ping", max_tokens=5)
