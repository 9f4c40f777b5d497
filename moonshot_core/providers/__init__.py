"""Moonshot Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护模型配置 (registry)。
- 带重试的请求分发 (dispatcher)、响应解码 (decoder)、流式重组 (stream)、错误分类 (errors)。
- Moonshot 客户端与文件/缓存/账户接口 (moonshot_client、resources)。
"""

from typing import Optional

from moonshot_core.config.settings import settings
from moonshot_core.providers.base import ProviderClient
from moonshot_core.providers.moonshot_client import MoonshotClient


def create_client(dialogue_tag: Optional[str] = None, cfg=None) -> MoonshotClient:
    """按配置创建 Moonshot 客户端。"""

    return MoonshotClient(cfg or settings, dialogue_tag=dialogue_tag)


__all__ = ["MoonshotClient", "ProviderClient", "create_client"]
