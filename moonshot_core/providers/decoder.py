"""响应解码。

ResponseDecoder 把一个原始 HTTP 响应转换为统一的 CompletionResult：

- 非流式：解析单个 JSON 文档；含 error 对象时映射为类型化异常，
  而不是笼统的解析失败；否则取第一个候选的内容与结束原因。
- 流式：交给 StreamReassembler，返回其在结束标记处的累积状态。
"""

import json
import threading
from typing import Any, Dict, List, Optional

import httpx

from moonshot_core.domain.exceptions import EmptyChoicesError, MalformedResponseError
from moonshot_core.domain.models import (
    ChatUsage,
    ChoiceResult,
    CompletionResult,
    MultiChoiceResult,
    ToolCall,
    normalize_finish_reason,
)
from moonshot_core.providers.errors import classify_error, normalize_error_body
from moonshot_core.providers.stream import ChunkCallback, StreamReassembler


class ResponseDecoder:
    def __init__(self, read_timeout: Optional[float] = None):
        self._read_timeout = read_timeout

    def decode(
        self,
        response: httpx.Response,
        streaming: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        expected_choices: int = 1,
    ) -> CompletionResult:
        if streaming:
            return self._reassembler(on_chunk, cancel_event, expected_choices).reassemble(response.iter_lines())
        return self.decode_body(response.text, status=response.status_code)

    def decode_choices(
        self,
        response: httpx.Response,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        expected_choices: int = 1,
    ) -> MultiChoiceResult:
        reassembler = self._reassembler(on_chunk, cancel_event, expected_choices)
        return reassembler.reassemble_choices(response.iter_lines())

    def decode_body(self, text: str, status: int = 200) -> CompletionResult:
        data = self.load_json(text)
        if isinstance(data.get("error"), dict):
            raise classify_error(status if status >= 400 else 400, normalize_error_body(text))

        raw_choices = data.get("choices")
        if not raw_choices:
            raise EmptyChoicesError(code="EMPTY_CHOICES", message="Response contains no choices", http_status=status)

        choices: List[ChoiceResult] = []
        for pos, ch in enumerate(raw_choices):
            if not isinstance(ch, dict):
                raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Choice is not an object", http_status=status)
            msg = ch.get("message")
            if not isinstance(msg, dict):
                raise MalformedResponseError(
                    code="MALFORMED_RESPONSE",
                    message="Choice has no message object",
                    http_status=status,
                )
            choices.append(
                ChoiceResult(
                    index=int(ch.get("index", pos)),
                    content=msg.get("content") or "",
                    finish_reason=normalize_finish_reason(ch.get("finish_reason")),
                    tool_calls=tuple(parse_tool_calls(msg)),
                )
            )
        choices.sort(key=lambda c: c.index)
        first = choices[0]
        return CompletionResult(
            content=first.content,
            finish_reason=first.finish_reason,
            usage=ChatUsage.from_payload(data.get("usage")),
            choices=tuple(choices),
            raw=data,
        )

    @staticmethod
    def load_json(text: str) -> Dict[str, Any]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                code="MALFORMED_RESPONSE",
                message=f"Response is not valid JSON: {text[:100]}",
                http_status=200,
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response is not a JSON object", http_status=200)
        return data

    def _reassembler(self, on_chunk, cancel_event, expected_choices: int) -> StreamReassembler:
        return StreamReassembler(
            on_chunk=on_chunk,
            cancel_event=cancel_event,
            read_timeout=self._read_timeout,
            expected_choices=expected_choices,
        )


def parse_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    """解析 message 中的 tool_calls（以及旧版 function_call）字段。"""

    calls: List[ToolCall] = []
    for idx, call in enumerate(message.get("tool_calls") or []):
        func = call.get("function") or {}
        calls.append(
            ToolCall(
                id=call.get("id") or f"tool_call_{idx}",
                name=func.get("name") or call.get("name") or "",
                arguments=_parse_arguments(func.get("arguments")),
            )
        )
    # Moonshot 在部分模型上仍会返回旧版 function_call 字段
    function_call = message.get("function_call")
    if function_call:
        calls.append(
            ToolCall(
                id=function_call.get("id") or "function_call",
                name=function_call.get("name") or "",
                arguments=_parse_arguments(function_call.get("arguments")),
            )
        )
    return calls


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    """arguments 通常是 JSON 字符串；解析失败时把原文保存在 `_raw`。"""

    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}
    return {}
