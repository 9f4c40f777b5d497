"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级为：
构造参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BASE_URL = "https://api.moonshot.cn/v1"


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("MOONSHOT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class MoonshotSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    moonshot_api_key: Optional[str] = Field(default=None, description="Moonshot API 密钥")
    moonshot_base_url: str = Field(default=DEFAULT_BASE_URL, description="Moonshot API 基础URL")
    default_model: str = Field(
        default="moonshot-v1-8k",
        description="默认模型名，可以是 registry 中的逻辑名，也可以是厂商模型 ID",
    )
    default_temperature: float = Field(default=0.3, ge=0.0, le=1.0, description="默认生成温度")

    # ---- HTTP / 流式 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="普通请求超时时间（秒）")
    stream_timeout: float = Field(default=300.0, ge=1.0, description="流式请求整体超时时间（秒）")
    stream_read_timeout: float = Field(
        default=300.0,
        ge=1.0,
        description="流式读取的软超时预算（秒），超过后返回已累积的部分结果",
    )

    # ---- 重试 ----
    max_retries: int = Field(default=6, ge=1, le=20, description="单次逻辑请求的最大尝试次数")
    retry_initial_delay: float = Field(default=3.0, ge=0.0, description="首次重试前的等待秒数")
    retry_max_delay: float = Field(default=60.0, ge=0.0, description="单次退避等待的上限（秒）")
    retry_jitter: bool = Field(default=True, description="退避时间是否叠加随机抖动")

    # ---- 截断续写 ----
    max_continuation_rounds: int = Field(
        default=5,
        ge=0,
        le=20,
        description="因 length 截断而自动续写的最大轮数",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    log_to_stderr: bool = Field(default=False, description="是否同时输出到标准错误")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("moonshot_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("moonshot_base_url")
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = MoonshotSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = MoonshotSettings
