"""会话门面。

ChatSession 把 ConversationHistory、MoonshotClient 与 ContinuationController 串起来，
对外提供按"一问一答"组织的接口：

- chat / stream_chat: 追加用户消息，执行补全（自动续写截断内容），追加助手消息。
- stream_chat_with_choices: 一次生成多个候选，只把第一个写入历史。
- set_partial_mode / continue_generation: 预填充 assistant 前缀，让模型从前缀继续。
- create_chat_completion: OpenAI 风格的一次性调用，不读写会话历史。
- stop_stream: 中止正在进行的流式读取（以及尚未开始的重试）。

同一个会话上的调用必须串行；stop_stream 可以从其他线程调用。
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from moonshot_core.agents.continuation import ContinuationController
from moonshot_core.config.settings import settings as default_settings
from moonshot_core.domain.conversation import DEFAULT_SYSTEM_PROMPT, ConversationHistory
from moonshot_core.domain.exceptions import BusinessError
from moonshot_core.domain.models import CompletionResult, MultiChoiceResult
from moonshot_core.infrastructure.logging.logger import log_event
from moonshot_core.providers.base import ProviderClient
from moonshot_core.providers.moonshot_client import MoonshotClient
from moonshot_core.providers.stream import ChunkCallback


CONTINUE_MIN_MAX_TOKENS = 4096
CONTINUE_MAX_TOKENS = 8192


class ChatSession:
    def __init__(
        self,
        client: Optional[ProviderClient] = None,
        history: Optional[ConversationHistory] = None,
        cfg=default_settings,
        dialogue_tag: Optional[str] = None,
        system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
        max_continuation_rounds: Optional[int] = None,
    ):
        self._settings = cfg
        self.client = client or MoonshotClient(cfg, dialogue_tag=dialogue_tag)
        self.cancel_event: threading.Event = getattr(self.client, "cancel_event", None) or threading.Event()
        self.history = history if history is not None else ConversationHistory(system_prompt)
        if max_continuation_rounds is None:
            max_continuation_rounds = getattr(cfg, "max_continuation_rounds", 5)
        self._max_rounds = max_continuation_rounds
        self._pending_partial: Optional[Tuple[str, Optional[str]]] = None

    @property
    def dialogue_tag(self) -> Optional[str]:
        return getattr(self.client, "dialogue_tag", None)

    # ---- 对话 ----

    def chat(self, query: Any, **options: Any) -> CompletionResult:
        """非流式对话，返回最终（已拼接续写内容的）结果。"""

        options["stream"] = False
        return self._round(query, options)

    def stream_chat(
        self,
        query: Any,
        on_chunk: ChunkCallback,
        on_complete: Optional[Callable[[CompletionResult], None]] = None,
        **options: Any,
    ) -> CompletionResult:
        """流式对话。on_chunk 收到每个增量；全部完成后 on_complete 收到最终结果。"""

        options["stream"] = True
        result = self._round(query, options, on_chunk)
        if on_complete is not None:
            on_complete(result)
        return result

    def stream_chat_with_choices(
        self,
        query: Any,
        on_chunk: ChunkCallback,
        on_complete: Optional[Callable[[MultiChoiceResult], None]] = None,
        n: int = 2,
        **options: Any,
    ) -> MultiChoiceResult:
        options["n"] = n
        self._begin(query)
        seed = self.history.partial_turn
        prefix = seed.content if seed is not None else ""
        try:
            result = self.client.complete_choices(self.history.to_messages(), options, on_chunk)
        except BusinessError:
            if seed is not None:
                self.history.resolve_partial(prefix)
            raise
        first = result.contents[0] if result.contents else ""
        if seed is not None:
            self.history.resolve_partial(prefix + first)
        else:
            self.history.append_assistant(first)
        log_event(
            logging.INFO,
            "Multi-choice round finished",
            dialogue_tag=self.dialogue_tag,
            choices=len(result.contents),
            stopped_early=result.stopped_early,
        )
        if on_complete is not None:
            on_complete(result)
        return result

    def set_partial_mode(self, content: str = "", name: Optional[str] = None) -> "ChatSession":
        """下一轮对话时，在用户消息之后预填充一条 partial assistant 消息。"""

        self._pending_partial = (content, name)
        return self

    def continue_generation(self, prefix: str, name: Optional[str] = None, **options: Any) -> CompletionResult:
        """从 prefix 继续生成，不追加新的用户消息；返回结果包含 prefix 本身。"""

        max_tokens = options.get("max_tokens")
        if max_tokens is None or max_tokens < CONTINUE_MIN_MAX_TOKENS:
            options["max_tokens"] = CONTINUE_MAX_TOKENS
        options.setdefault("stream", False)
        self._pending_partial = None
        self.cancel_event.clear()
        self.history.mark_partial(prefix, name=name)
        return self._run(options)

    def create_chat_completion(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.create_chat_completion(params)

    def stop_stream(self) -> bool:
        self.cancel_event.set()
        log_event(logging.INFO, "Stream stop requested", dialogue_tag=self.dialogue_tag)
        return True

    # ---- 历史管理 ----

    def clear_history(self, preserve_system: bool = True) -> "ChatSession":
        self.history.clear(preserve_system=preserve_system)
        self._pending_partial = None
        return self

    def set_system_message(self, content: str, replace_existing: bool = True) -> "ChatSession":
        self.history.set_system_message(content, replace_existing=replace_existing)
        return self

    def export_session(self) -> Dict[str, Any]:
        return {
            "dialogue_tag": self.dialogue_tag,
            "history": self.history.export(),
        }

    def import_session(self, data: Dict[str, Any]) -> "ChatSession":
        self.history = ConversationHistory.load(data.get("history") or [])
        self._pending_partial = None
        log_event(
            logging.INFO,
            "Session imported",
            dialogue_tag=self.dialogue_tag,
            source_tag=data.get("dialogue_tag"),
            turns=len(self.history),
        )
        return self

    # ---- 内部实现 ----

    def _begin(self, query: Any) -> None:
        self.cancel_event.clear()
        self.history.append_user(query)
        if self._pending_partial is not None:
            content, name = self._pending_partial
            self._pending_partial = None
            self.history.mark_partial(content, name=name)

    def _round(self, query: Any, options: Dict[str, Any], on_chunk: Optional[ChunkCallback] = None) -> CompletionResult:
        self._begin(query)
        return self._run(options, on_chunk)

    def _run(self, options: Dict[str, Any], on_chunk: Optional[ChunkCallback] = None) -> CompletionResult:
        controller = ContinuationController(self.client, self.history, max_rounds=self._max_rounds)
        try:
            result = controller.run(options, on_chunk)
        except BusinessError as e:
            log_event(
                logging.ERROR,
                "Chat round failed",
                dialogue_tag=self.dialogue_tag,
                kind=e.kind,
                http_status=e.http_status,
                error=e.message,
            )
            raise
        log_event(
            logging.INFO,
            "Chat round finished",
            dialogue_tag=self.dialogue_tag,
            finish_reason=result.finish_reason,
            stopped_early=result.stopped_early,
            turns=len(self.history),
        )
        return result
