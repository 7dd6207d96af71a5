"""
客户端工厂
The dialect is chosen once from the provider tag; unknown tags use the
OpenAI-compatible protocol.
"""

from drama_gateway.models.ai_client import AIClient
from drama_gateway.models.gemini_client import GeminiClient, GENERATE_CONTENT_ENDPOINT
from drama_gateway.models.openai_client import OpenAIClient, CHAT_ENDPOINT, IMAGE_ENDPOINT
from drama_gateway.models.video_client import VideoClient

GEMINI_PROVIDERS = ("gemini", "google")

# provider -> service_type -> (endpoint, query_endpoint)
DEFAULT_ENDPOINTS = {
    "gemini": {
        "text": (GENERATE_CONTENT_ENDPOINT, ""),
        "image": (GENERATE_CONTENT_ENDPOINT, ""),
    },
    "openai": {
        "text": (CHAT_ENDPOINT, ""),
        "image": (IMAGE_ENDPOINT, ""),
        "video": ("/videos", "/videos/{taskId}"),
    },
    "chatfire": {
        "text": (CHAT_ENDPOINT, ""),
        "image": (IMAGE_ENDPOINT, ""),
        "video": ("/video/generations", "/video/task/{taskId}"),
    },
    "doubao": {
        "video": ("/api/v3/contents/generations/tasks", "/api/v3/contents/generations/tasks/{taskId}"),
    },
    "default": {
        "text": (CHAT_ENDPOINT, ""),
        "image": (IMAGE_ENDPOINT, ""),
    },
}

PROVIDER_ALIASES = {
    "google": "gemini",
    "volcengine": "doubao",
    "volces": "doubao",
}


def default_endpoints(provider: str, service_type: str):
    """返回 (endpoint, query_endpoint)，没有默认值时为空字符串"""
    key = PROVIDER_ALIASES.get(provider, provider)
    table = DEFAULT_ENDPOINTS.get(key, DEFAULT_ENDPOINTS["default"])
    return table.get(service_type, ("", ""))


def new_ai_client(provider: str, base_url: str, api_key: str, model: str, endpoint: str = "",
                  query_endpoint: str = "", service_type: str = "text") -> AIClient:
    if not endpoint:
        endpoint, default_query = default_endpoints(provider, service_type)
        query_endpoint = query_endpoint or default_query

    if service_type == "video":
        return VideoClient(base_url, api_key, model, endpoint, query_endpoint=query_endpoint, provider=provider)
    if provider in GEMINI_PROVIDERS:
        return GeminiClient(base_url, api_key, model, endpoint)
    return OpenAIClient(base_url, api_key, model, endpoint)
