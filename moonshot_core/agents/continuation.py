"""截断续写控制器。

当一轮补全因为长度限制被截断（finish_reason == "length"）时，
把已经生成的内容记为唯一的 partial assistant 消息，去掉 max_tokens 后重新请求，
模型会接着 partial 内容继续生成。整个过程是一个有上限的显式循环：

    请求 → 截断? → 记录 partial → 再请求 → ... → 正常结束 / 达到上限

达到上限不是错误：记录警告并以已累积的内容定稿。
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from moonshot_core.domain.conversation import ConversationHistory
from moonshot_core.domain.exceptions import BusinessError, RequestCancelledError
from moonshot_core.domain.models import CompletionResult, ContinuationState
from moonshot_core.infrastructure.logging.logger import log_event
from moonshot_core.providers.base import ProviderClient
from moonshot_core.providers.stream import ChunkCallback


DEFAULT_CONTINUATION_ROUNDS = 5


class ContinuationController:
    """对一个 ConversationHistory 执行带自动续写的补全。

    - run 结束时历史中恰好多出一条定稿的 assistant 消息（若之前已有 partial 种子，则是它被定稿）。
    - 续写过程中出现的终止性错误原样抛出，抛出前先把已累积的内容定稿，保证历史不留 partial。
    - 续写轮之间被取消时不抛错，以已累积的内容定稿并返回 stopped_early=True 的结果。
    """

    def __init__(
        self,
        client: ProviderClient,
        history: ConversationHistory,
        max_rounds: int = DEFAULT_CONTINUATION_ROUNDS,
    ):
        self._client = client
        self._history = history
        self._max_rounds = max(0, max_rounds)

    def run(
        self,
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> CompletionResult:
        opts = dict(options or {})
        state = ContinuationState(bound=self._max_rounds)
        seed = self._history.partial_turn
        if seed is not None and isinstance(seed.content, str):
            # partial 模式下预填充的前缀是累积内容的第一段
            state.accumulated = seed.content

        result: Optional[CompletionResult] = None
        try:
            result = self._client.complete(self._history.to_messages(), opts, on_chunk)
            while True:
                state.accumulated += result.content
                if not result.truncated or result.stopped_early:
                    break
                if state.exhausted:
                    log_event(
                        logging.WARNING,
                        "Continuation bound reached, returning best-effort content",
                        rounds=state.iterations,
                        bound=state.bound,
                        content_chars=len(state.accumulated),
                    )
                    break
                if self._history.last_turn("user") is None:
                    log_event(logging.WARNING, "No user turn to continue from, stopping continuation")
                    break
                state.iterations += 1
                self._history.mark_partial(state.accumulated)
                opts.pop("max_tokens", None)
                log_event(
                    logging.INFO,
                    "Response truncated by length, continuing",
                    round=state.iterations,
                    bound=state.bound,
                    content_chars=len(state.accumulated),
                )
                result = self._client.complete(self._history.to_messages(), opts, on_chunk)
        except BusinessError as e:
            if isinstance(e, RequestCancelledError) and result is not None:
                # 取消发生在续写轮之间：保留已累积的内容，按提前停止返回
                log_event(
                    logging.INFO,
                    "Continuation cancelled, returning partial content",
                    rounds=state.iterations,
                    content_chars=len(state.accumulated),
                )
                self._finalize(state.accumulated, result)
                return replace(result, content=state.accumulated, stopped_early=True)
            if self._history.has_partial:
                self._history.resolve_partial(state.accumulated)
                log_event(
                    logging.WARNING,
                    "Continuation aborted, partial content kept",
                    rounds=state.iterations,
                    kind=e.kind,
                    content_chars=len(state.accumulated),
                )
            raise

        self._finalize(state.accumulated, result)
        return replace(result, content=state.accumulated)

    def _finalize(self, content: str, result: CompletionResult) -> None:
        if self._history.has_partial:
            self._history.resolve_partial(content)
        else:
            self._history.append_assistant(content, tool_calls=list(result.tool_calls) or None)
