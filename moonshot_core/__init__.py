"""Moonshot Core 顶层包。

该包提供 Moonshot（Kimi）对话补全的客户端实现，
包括配置加载、领域模型、带重试的请求分发、流式事件重组、
截断自动续写与会话历史管理，以及文件、上下文缓存与账户接口。
"""

from moonshot_core.agents import ChatSession, ContinuationController
from moonshot_core.providers import MoonshotClient, create_client

__all__ = ["ChatSession", "ContinuationController", "MoonshotClient", "create_client"]
