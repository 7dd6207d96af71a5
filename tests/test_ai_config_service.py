"""Tests for provider config storage, ordering and client construction."""

import pytest

from drama_gateway.models.errors import ConfigNotFoundError
from drama_gateway.models.gemini_client import GeminiClient
from drama_gateway.models.openai_client import OpenAIClient
from drama_gateway.models.video_client import VideoClient
from drama_gateway.server.ai_config_service import AIConfigService, build_client
from drama_gateway.server.database import session_scope
from drama_gateway.server.models import ProviderConfig


class TestConfigCrud:
    def test_create_fills_default_endpoints(self, session_factory):
        with session_scope(session_factory) as db:
            config = AIConfigService(db).create_config({
                "service_type": "video",
                "name": "ark",
                "provider": "volces",
                "base_url": "https://ark.example.com",
                "api_key": "key-123456789",
                "model": "seedance",
            })
            assert config.endpoint == "/api/v3/contents/generations/tasks"
            assert config.query_endpoint == "/api/v3/contents/generations/tasks/{taskId}"
            assert config.model == ["seedance"]

    @pytest.mark.parametrize("missing", ["name", "provider", "base_url", "api_key", "model"])
    def test_create_requires_fields(self, session_factory, missing):
        data = {
            "service_type": "text", "name": "n", "provider": "openai",
            "base_url": "https://x", "api_key": "k", "model": ["m"],
        }
        data[missing] = ""
        with session_scope(session_factory) as db:
            with pytest.raises(ValueError, match=missing):
                AIConfigService(db).create_config(data)

    def test_create_rejects_unknown_service_type(self, session_factory):
        with session_scope(session_factory) as db:
            with pytest.raises(ValueError):
                AIConfigService(db).create_config({"service_type": "audio"})

    def test_update_provider_rederives_endpoint(self, session_factory, add_config):
        config_id = add_config(provider="openai")
        with session_scope(session_factory) as db:
            updated = AIConfigService(db).update_config(config_id, {"provider": "gemini"})
            assert updated.endpoint == "/v1beta/models/{model}:generateContent"

    def test_update_keeps_explicit_endpoint(self, session_factory, add_config):
        config_id = add_config()
        with session_scope(session_factory) as db:
            updated = AIConfigService(db).update_config(
                config_id, {"provider": "chatfire", "endpoint": "/v2/chat/completions", "priority": "7"})
            assert updated.endpoint == "/v2/chat/completions"
            assert updated.priority == 7

    def test_boolean_flags_from_strings(self, session_factory, add_config):
        config_id = add_config(is_active="false", is_default="yes")
        with session_scope(session_factory) as db:
            service = AIConfigService(db)
            config = service.get_config(config_id)
            assert config.is_active is False
            assert config.is_default is True

            updated = service.update_config(config_id, {"is_active": "true", "is_default": 0})
            assert updated.is_active is True
            assert updated.is_default is False

    def test_invalid_boolean_flag_rejected(self, session_factory, add_config):
        with pytest.raises(ValueError, match="is_active"):
            add_config(is_active="sometimes")

        config_id = add_config()
        with session_scope(session_factory) as db:
            with pytest.raises(ValueError, match="is_default"):
                AIConfigService(db).update_config(config_id, {"is_default": [True]})

    def test_update_and_delete_missing(self, session_factory):
        with session_scope(session_factory) as db:
            service = AIConfigService(db)
            assert service.update_config(999, {"name": "x"}) is None
            assert service.delete_config(999) is False

    def test_to_dict_masks_api_key(self, session_factory, add_config):
        config_id = add_config(api_key="sk-abcdefghijkl")
        with session_scope(session_factory) as db:
            data = AIConfigService(db).get_config(config_id).to_dict()
            assert data["api_key"] == "sk-a****"


class TestResolve:
    def test_list_active_orders_by_priority_then_recency(self, session_factory, add_config):
        add_config(name="low", priority=1)
        add_config(name="high-old", priority=5)
        add_config(name="high-new", priority=5)
        add_config(name="off", priority=99, is_active=False)

        with session_scope(session_factory) as db:
            names = [c.name for c in AIConfigService(db).list_active("text")]

        assert names == ["high-new", "high-old", "low"]

    def test_resolve_with_model(self, session_factory, add_config):
        add_config(name="a", priority=5, model=["m1"])
        add_config(name="b", priority=1, model=["m2", "m3"])

        with session_scope(session_factory) as db:
            service = AIConfigService(db)
            assert service.resolve("text").name == "a"
            assert service.resolve("text", "m3").name == "b"
            with pytest.raises(ConfigNotFoundError):
                service.resolve("text", "m4")

    def test_list_active_empty_raises(self, session_factory):
        with session_scope(session_factory) as db:
            with pytest.raises(ConfigNotFoundError, match="image"):
                AIConfigService(db).list_active("image")


def _config(**overrides):
    data = dict(id=1, service_type="text", provider="openai", base_url="https://api.example.com/v1",
                api_key="k", models=["first", "second"])
    data.update(overrides)
    return ProviderConfig(**data)


class TestBuildClient:
    def test_defaults_to_first_model_and_provider_endpoint(self):
        client = build_client(_config())
        assert isinstance(client, OpenAIClient)
        assert client.model == "first"
        assert client.endpoint == "/chat/completions"

    def test_model_override_and_stored_endpoint(self):
        client = build_client(_config(endpoint="/custom/chat"), model="second")
        assert client.model == "second"
        assert client.endpoint == "/custom/chat"

    def test_gemini_dialect(self):
        client = build_client(_config(provider="google"))
        assert isinstance(client, GeminiClient)
        assert client.endpoint == "/v1beta/models/{model}:generateContent"

    def test_unknown_provider_uses_openai_dialect(self):
        assert isinstance(build_client(_config(provider="my-local-llm")), OpenAIClient)

    def test_video_client(self):
        client = build_client(_config(service_type="video", provider="chatfire"))
        assert isinstance(client, VideoClient)
        assert client.query_endpoint == "/video/task/{taskId}"
