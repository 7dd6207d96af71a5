"""
配置加载器模块
用于加载和管理配置文件
"""

import os
import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from loguru import logger


DEFAULT_PROMPTS = {
    "prop_extraction": {
        "system": "You are a props master for short drama productions. Output JSON only.",
        "user_template": (
            "Read the following episode script and list every important prop.\n"
            "Return a JSON array; each item has the fields name, type, description "
            "and image_prompt (an English prompt for a product shot of the prop on "
            "a white background).\n\nScript:\n{script}"
        ),
    },
    "image_description": {
        "system": "",
        "user_template": (
            "Describe this image as a detailed text-to-image prompt: subject, "
            "composition, lighting, colour palette and art style. Output the prompt only."
        ),
    },
    "image_prompt_optimization": {
        "system": (
            "You are an expert at writing image generation prompts. Improve the clarity, "
            "detail, lighting and composition of the prompt without changing its core meaning. "
            "Keep the input language. Do not explain and do not use Markdown. "
            "Output only the optimized prompt."
        ),
        "protected_template": " The following keywords or phrases must be kept verbatim: {protected}.",
        "user_template": "Original prompt: {prompt}",
    },
}


# 环境变量 -> (配置项, 类型)
ENV_OVERRIDES = {
    "WEB_SERVER_HOST": ("web.server.host", str),
    "WEB_SERVER_PORT": ("web.server.port", int),
    "DATABASE_URL": ("database.url", str),
}


class ConfigLoader:
    """配置加载器类"""

    _instance = None
    _config: Dict[str, Any] = {}
    _prompts: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        self.root_path = Path(__file__).resolve().parents[2]

        if not self._config:
            self.load_config()
            self.load_prompts()

    def _default_config_path(self) -> Path:
        env_path = os.getenv("DRAMA_GATEWAY_CONFIG")
        if env_path:
            return Path(env_path)
        return self.root_path / "config" / "config.yaml"

    def load_config(self, config_path: str = None) -> Dict[str, Any]:
        """加载主配置文件"""
        if config_path is None:
            config_path = self._default_config_path()

        defaults = self._get_default_config()
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
            self._config = self._merge(defaults, loaded)
            logger.info(f"配置文件加载成功: {config_path}")
        except FileNotFoundError:
            logger.warning(f"配置文件不存在: {config_path}，使用默认配置")
            self._config = defaults
        except Exception as e:
            logger.error(f"配置文件加载失败: {e}")
            self._config = defaults

        return self._config

    def load_prompts(self, prompts_path: str = None) -> Dict[str, Any]:
        """加载提示词配置文件"""
        if prompts_path is None:
            prompts_path = self.root_path / "config" / "prompts.yaml"

        defaults = copy.deepcopy(DEFAULT_PROMPTS)
        try:
            with open(prompts_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
            self._prompts = self._merge(defaults, loaded)
            logger.info(f"提示词配置加载成功: {prompts_path}")
        except FileNotFoundError:
            logger.warning(f"提示词配置不存在: {prompts_path}，使用默认提示词")
            self._prompts = defaults
        except Exception as e:
            logger.error(f"提示词配置加载失败: {e}")
            self._prompts = defaults

        return self._prompts

    @classmethod
    def _merge(cls, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = cls._merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _get_default_config(self) -> Dict[str, Any]:
        """获取默认配置"""
        return {
            "database": {
                "url": f"sqlite:///{self.root_path / 'data' / 'drama_gateway.db'}"
            },
            "redis": {
                "enable": False,
                "host": "localhost",
                "port": 6379,
                "db": 0,
                "password": ""
            },
            "ai": {
                "request_timeout": 180,
                "default_image_provider": "",
                "default_video_duration": 5
            },
            "tasks": {
                "poll_interval": 2,
                "max_poll_attempts": 60,
                "max_workers": 8
            },
            "style": {
                "default_style": "",
                "default_prop_style": "",
                "default_image_size": "1024x1024"
            },
            "storage": {
                "local_path": str(self.root_path / "data" / "storage"),
                "base_url": "/static"
            },
            "web": {
                "server": {
                    "host": "127.0.0.1",
                    "port": 8000
                }
            },
            "logging": {
                "level": "INFO",
                "file": "./logs/app.log",
                "rotation": "10 MB",
                "retention": "7 days"
            }
        }

    @property
    def config(self) -> Dict[str, Any]:
        """获取配置"""
        return self._config

    @property
    def prompts(self) -> Dict[str, Any]:
        """获取提示词配置"""
        return self._prompts

    def get(self, key: str, default: Any = None) -> Any:
        """获取配置项（支持点号分隔的路径）"""
        val = self._get_value_by_path(self._config, key)
        if val is not None:
            return val
        return default

    @staticmethod
    def _get_value_by_path(source: Dict[str, Any], key: str) -> Any:
        value = source
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return None
            if value is None:
                return None
        return value

    def get_prompt(self, key: str) -> Optional[Dict[str, str]]:
        """获取提示词配置"""
        return self._get_value_by_path(self._prompts, key)

    def save_config(self, config_path: str = None):
        """保存配置到文件"""
        if config_path is None:
            config_path = self._default_config_path()

        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, allow_unicode=True, default_flow_style=False)
        logger.info(f"配置已保存: {config_path}")

    def update_config(self, key: str, value: Any):
        """更新配置项"""
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            config = config.setdefault(k, {})
        config[keys[-1]] = value

    def apply_env_overrides(self, environ=None) -> Dict[str, Any]:
        """用环境变量覆盖配置项，返回实际生效的覆盖"""
        environ = os.environ if environ is None else environ
        applied = {}
        for env_name, (key, cast) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if not raw:
                continue
            try:
                value = cast(raw)
            except ValueError:
                logger.warning(f"忽略无效的环境变量 {env_name}={raw!r}")
                continue
            self.update_config(key, value)
            applied[key] = value
        return applied


# 全局配置实例
config_loader = ConfigLoader()
