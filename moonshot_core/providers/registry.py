"""Provider 与模型配置。

本模块将“逻辑模型名”与“厂商模型 ID”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"。
- provider_model：Moonshot 实际提供的模型 ID，例如 "moonshot-v1-8k"。

不在表中的名字被视为厂商模型 ID 原样透传，这样新模型上线时无需改代码。"""

from dataclasses import dataclass
from typing import Dict

from moonshot_core.config.settings import DEFAULT_BASE_URL


@dataclass(frozen=True)
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    context_window: int
    default_temperature: float = 0.3


@dataclass(frozen=True)
class ProviderConfig:
    """Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve(self, model: str) -> str:
        """逻辑名 -> 厂商模型 ID；同时接受厂商模型 ID 本身。"""

        cfg = self.models.get(model)
        if cfg is not None:
            return cfg.provider_model
        return model


def _model(logical: str, provider_model: str, window: int, temperature: float = 0.3) -> ModelConfig:
    return ModelConfig(
        logical_name=logical,
        provider_model=provider_model,
        context_window=window,
        default_temperature=temperature,
    )


MOONSHOT_CONFIG = ProviderConfig(
    name="moonshot",
    base_url=DEFAULT_BASE_URL,
    models={
        "chat": _model("chat", "moonshot-v1-8k", 8192),
        "chat-32k": _model("chat-32k", "moonshot-v1-32k", 32768),
        "chat-128k": _model("chat-128k", "moonshot-v1-128k", 131072),
        "chat-auto": _model("chat-auto", "moonshot-v1-auto", 131072),
        "vision": _model("vision", "moonshot-v1-8k-vision-preview", 8192),
        "kimi-k2": _model("kimi-k2", "kimi-k2-turbo-preview", 262144, 0.6),
        # 上下文缓存使用的模型族名
        "cache": _model("cache", "moonshot-v1", 131072),
    },
)
