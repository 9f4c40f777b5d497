"""统一的对话与结果数据模型。

本模块定义了补全核心在各组件之间传递的标准数据结构：

- ConversationTurn: 会话中的一条消息（system/user/assistant/tool/cache）。
- RetryPolicy: 一次逻辑请求的重试/退避策略，请求开始后不可变。
- CompletionResult: 一轮补全解析后的统一结果，创建后不再修改。
- StreamFrame / StreamDelta: 流式解析过程中的瞬时结构。
- ContinuationState: 一次可能跨多轮的截断续写过程的状态。

Dispatcher、Decoder 与 Continuation Controller 都只依赖这些模型，
厂商 JSON 与这些模型之间的转换集中在 providers 包中完成。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


# 消息角色（cache 为 Moonshot 上下文缓存引用专用角色）
Role = Literal["system", "user", "assistant", "tool", "cache"]

# 归一化后的结束原因
FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "unknown"]

_KNOWN_FINISH_REASONS = ("stop", "length", "tool_calls", "content_filter")


def normalize_finish_reason(value: Optional[str]) -> FinishReason:
    """把厂商返回的 finish_reason 映射到统一枚举，未知值归为 "unknown"。"""

    if value in _KNOWN_FINISH_REASONS:
        return value  # type: ignore[return-value]
    # 旧版 function_call 与 tool_calls 含义一致
    if value == "function_call":
        return "tool_calls"
    return "unknown"


@dataclass
class ToolCall:
    """模型发起的一次工具调用。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationTurn:
    """一条对话消息。

    - role: 消息角色。
    - content: 文本内容；视觉等场景下可以是结构化的 content 列表。
    - partial: 是否为尚未定稿的 assistant 消息（预填充前缀或截断累积内容）。
    - name: 角色扮演时的角色名，仅对 partial 模式有意义。
    - tool_call_id: role 为 "tool" 时，关联的工具调用 ID。
    - tool_calls: role 为 "assistant" 且模型触发工具调用时保存调用列表。
    """

    role: Role
    content: Any
    partial: bool = False
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None

    def to_payload(self) -> Dict[str, Any]:
        """转换为 chat/completions 请求中的 message 对象。"""

        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.partial:
            payload["partial"] = True
        if self.name:
            payload["name"] = self.name
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in self.tool_calls
            ]
        return payload


@dataclass(frozen=True)
class RetryPolicy:
    """重试策略。

    max_retries 为总尝试次数（含第一次）；initial_delay / max_delay 单位为秒。
    """

    max_retries: int = 6
    initial_delay: float = 3.0
    max_delay: float = 60.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            max_retries=cfg.max_retries,
            initial_delay=cfg.retry_initial_delay,
            max_delay=max(cfg.retry_max_delay, cfg.retry_initial_delay),
            jitter=cfg.retry_jitter,
        )

    def base_delay(self, attempt: int) -> float:
        """第 attempt 次尝试失败后、下一次尝试前的基础等待时间（不含抖动）。"""

        return min(self.initial_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, raw: Optional[Dict[str, Any]]) -> Optional["ChatUsage"]:
        if not raw or not isinstance(raw, dict):
            return None
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens") or 0),
            completion_tokens=int(raw.get("completion_tokens") or 0),
            total_tokens=int(raw.get("total_tokens") or 0),
        )


@dataclass(frozen=True)
class ChoiceResult:
    """单个候选回答（n>1 时会有多条）。"""

    index: int
    content: str
    finish_reason: FinishReason = "unknown"
    tool_calls: Tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class CompletionResult:
    """一轮补全调用的最终结果。

    - content / finish_reason: 第一个候选（index=0）的内容与结束原因。
    - usage: token 统计，响应中没有时为 None。
    - choices: 全部候选，按 index 排序。
    - stopped_early: 流式读取被回调、取消信号或读超时提前终止。
    - raw: 非流式时的原始响应 JSON，便于调试。
    """

    content: str
    finish_reason: FinishReason = "unknown"
    usage: Optional[ChatUsage] = None
    choices: Tuple[ChoiceResult, ...] = ()
    stopped_early: bool = False
    raw: Optional[dict] = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"

    @property
    def tool_calls(self) -> Tuple[ToolCall, ...]:
        return self.choices[0].tool_calls if self.choices else ()


@dataclass(frozen=True)
class MultiChoiceResult:
    """多候选流式调用的结果。"""

    contents: Tuple[str, ...]
    finish_reasons: Tuple[FinishReason, ...]
    usage: Optional[ChatUsage] = None
    stopped_early: bool = False


@dataclass(frozen=True)
class StreamFrame:
    """一个流式事件中单个候选的增量。

    choice_index 为 None 表示该事件没有 choices，只携带 usage。
    """

    delta_content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    choice_index: Optional[int] = 0
    event_index: int = 0


@dataclass(frozen=True)
class StreamDelta:
    """交给调用方回调的增量通知；done=True 时 content 为空。"""

    content: str
    index: int
    choice_index: int = 0
    done: bool = False


@dataclass
class ContinuationState:
    """截断续写状态，仅在一次 complete() 调用内存活。"""

    accumulated: str = ""
    iterations: int = 0
    bound: int = 5

    @property
    def exhausted(self) -> bool:
        return self.iterations >= self.bound
