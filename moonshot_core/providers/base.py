"""Provider 抽象接口。

上层 ChatSession / ContinuationController 不直接依赖具体的 HTTP 实现，而是依赖此协议：

- complete(messages, options, on_chunk): 执行一轮补全（流式或非流式），返回 CompletionResult。
- complete_choices(...): 多候选（n>1）流式补全，返回每个候选的内容。

测试中可以用一个只实现这两个方法的假对象替换真实客户端。
"""

from typing import Any, Dict, List, Optional, Protocol

from moonshot_core.domain.models import CompletionResult, MultiChoiceResult
from moonshot_core.providers.stream import ChunkCallback


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str

    def complete(
        self,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> CompletionResult:
        ...

    def complete_choices(
        self,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> MultiChoiceResult:
        """执行一次多候选流式调用。"""

        ...
