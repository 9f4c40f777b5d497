"""流式响应重组。

Moonshot 的流式响应是逐行的事件流：

- 以 ``data:`` 开头的行开始一个新事件，后面跟 JSON 或结束标记 ``[DONE]``；
- 紧随其后、不带前缀的行是同一事件 JSON 的续行；
- 空行表示一个事件结束；以 ``:`` 开头的行是注释，直接忽略。

EventParser 负责把行切分为事件（AwaitingEvent → AccumulatingEvent → 发出事件，
遇到 [DONE] 进入 Done）；StreamReassembler 把事件解析成 StreamFrame，
按候选 index 累积文本，并在每个增量上回调调用方。单个事件 JSON 损坏时
只记录日志并跳过，不中断整个流。
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from moonshot_core.domain.exceptions import ApiError, MalformedResponseError
from moonshot_core.domain.models import (
    ChatUsage,
    ChoiceResult,
    CompletionResult,
    MultiChoiceResult,
    StreamDelta,
    StreamFrame,
    normalize_finish_reason,
)
from moonshot_core.infrastructure.logging.logger import log_event


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# 回调返回 False 表示调用方希望停止读取
ChunkCallback = Callable[[StreamDelta], Optional[bool]]


class EventParser:
    """逐行喂入，按事件边界产出事件的原始 JSON 文本。"""

    AWAITING = "awaiting"
    ACCUMULATING = "accumulating"
    DONE = "done"

    def __init__(self):
        self.state = self.AWAITING
        self._buffer: List[str] = []

    def feed(self, line: str) -> List[str]:
        if self.state == self.DONE:
            return []
        line = line.rstrip("\r\n")
        events: List[str] = []
        if not line.strip():
            self._flush_into(events)
            return events
        if line.startswith(":"):
            return events
        if line.startswith(DATA_PREFIX):
            self._flush_into(events)
            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                self.state = self.DONE
                return events
            self._buffer = [data]
            self.state = self.ACCUMULATING
            return events
        if self.state == self.ACCUMULATING:
            self._buffer.append(line)
        return events

    def finish(self) -> List[str]:
        """流在没有 [DONE] 的情况下结束时，交出最后一个未闭合的事件。"""

        events: List[str] = []
        if self.state != self.DONE:
            self._flush_into(events)
        return events

    @property
    def done(self) -> bool:
        return self.state == self.DONE

    def _flush_into(self, events: List[str]) -> None:
        if self._buffer:
            payload = "\n".join(self._buffer)
            if payload.strip():
                events.append(payload)
        self._buffer = []
        if self.state == self.ACCUMULATING:
            self.state = self.AWAITING


def iter_events(lines: Iterable[str]) -> Iterator[str]:
    parser = EventParser()
    for line in lines:
        yield from parser.feed(line)
        if parser.done:
            return
    yield from parser.finish()


def _bad_shape(reason: str) -> MalformedResponseError:
    return MalformedResponseError(code="MALFORMED_EVENT", message=f"Unexpected stream event shape: {reason}", http_status=200)


def _usage(raw: Any) -> Optional[ChatUsage]:
    try:
        return ChatUsage.from_payload(raw)
    except (TypeError, ValueError) as e:
        raise _bad_shape(f"invalid usage: {e}") from e


def parse_event(payload: str, event_index: int = 0) -> List[StreamFrame]:
    """把一个事件的 JSON 文本解析为若干 StreamFrame（每个 choice 一个）。"""

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(
            code="MALFORMED_EVENT",
            message=f"Invalid JSON in stream event: {e}",
            http_status=200,
        ) from e
    if not isinstance(data, dict):
        raise MalformedResponseError(code="MALFORMED_EVENT", message="Stream event is not an object", http_status=200)
    if isinstance(data.get("error"), dict):
        err = data["error"]
        raise ApiError(
            code="STREAM_ERROR",
            message=f"HTTP 200 STREAM_ERROR: {err.get('message') or 'error event in stream'}",
            http_status=200,
            response_body=data,
        )

    raw_choices = data.get("choices") or []
    if not isinstance(raw_choices, list):
        raise _bad_shape("choices is not a list")
    chunk_usage = _usage(data.get("usage"))
    frames: List[StreamFrame] = []
    for pos, choice in enumerate(raw_choices):
        if not isinstance(choice, dict):
            raise _bad_shape("choice is not an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise _bad_shape("delta is not an object")
        content = delta.get("content") or ""
        if not isinstance(content, str):
            raise _bad_shape("delta.content is not a string")
        finish_reason = choice.get("finish_reason") or None
        if finish_reason is not None and not isinstance(finish_reason, str):
            raise _bad_shape("finish_reason is not a string")
        index = choice.get("index", pos)
        # bool 是 int 的子类，需要单独排除
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise _bad_shape(f"invalid choice index {index!r}")
        frames.append(
            StreamFrame(
                delta_content=content,
                finish_reason=finish_reason,
                usage=_usage(choice.get("usage")) or chunk_usage,
                choice_index=index,
                event_index=event_index,
            )
        )
    if not frames and chunk_usage is not None:
        frames.append(StreamFrame(usage=chunk_usage, choice_index=None, event_index=event_index))
    return frames


class StreamReassembler:
    """流式重组器。

    Args:
        on_chunk: 增量回调，参数为 StreamDelta；返回 False 时提前停止。
        cancel_event: 外部取消信号，每读一行检查一次。
        read_timeout: 软读取预算（秒），超出后返回已累积的部分结果。
        expected_choices: 期望的候选数（n），决定结束时发送几次 done 回调。
    """

    def __init__(
        self,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        read_timeout: Optional[float] = None,
        expected_choices: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_chunk = on_chunk
        self._cancel_event = cancel_event
        self._read_timeout = read_timeout
        self._expected_choices = max(1, expected_choices)
        self._clock = clock
        self._reset()

    def _reset(self) -> None:
        self._contents: Dict[int, List[str]] = {}
        self._finish_reasons: Dict[int, Optional[str]] = {}
        self._usage: Optional[ChatUsage] = None
        self.stopped_early = False
        self.completed = False
        self.event_count = 0

    # ---- 迭代器接口 ----

    def frames(self, lines: Iterable[str]) -> Iterator[StreamFrame]:
        """逐个产出 StreamFrame；取消、读超时或 [DONE] 时结束。"""

        parser = EventParser()
        deadline = None if self._read_timeout is None else self._clock() + self._read_timeout
        event_index = 0
        try:
            for line in lines:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    log_event(logging.INFO, "Stream cancelled by caller", events=event_index)
                    self.stopped_early = True
                    return
                if deadline is not None and self._clock() > deadline:
                    log_event(logging.WARNING, "Stream read budget exhausted", events=event_index, read_timeout=self._read_timeout)
                    self.stopped_early = True
                    return
                for payload in parser.feed(line):
                    event_index += 1
                    self.event_count = event_index
                    yield from self._safe_parse(payload, event_index - 1)
                if parser.done:
                    self.completed = True
                    return
        except httpx.TransportError as e:
            # 已经开始消费的流不再重试，保留已累积的内容
            log_event(logging.WARNING, "Stream interrupted by transport error", events=event_index, error=str(e))
            self.stopped_early = True
            return
        for payload in parser.finish():
            event_index += 1
            self.event_count = event_index
            yield from self._safe_parse(payload, event_index - 1)
        # 没有 [DONE] 但连接正常关闭，同样视为结束
        self.completed = True

    # ---- 重组 ----

    def reassemble(self, lines: Iterable[str]) -> CompletionResult:
        self._consume(lines)
        indices = self._slot_indices()
        choices = tuple(
            ChoiceResult(
                index=i,
                content="".join(self._contents.get(i, [])),
                finish_reason=normalize_finish_reason(self._finish_reasons.get(i)),
            )
            for i in indices
        )
        first = choices[0]
        return CompletionResult(
            content=first.content,
            finish_reason=first.finish_reason,
            usage=self._usage,
            choices=choices,
            stopped_early=self.stopped_early,
        )

    def reassemble_choices(self, lines: Iterable[str]) -> MultiChoiceResult:
        result = self.reassemble(lines)
        return MultiChoiceResult(
            contents=tuple(c.content for c in result.choices),
            finish_reasons=tuple(c.finish_reason for c in result.choices),
            usage=result.usage,
            stopped_early=result.stopped_early,
        )

    def _consume(self, lines: Iterable[str]) -> None:
        self._reset()
        frames = self.frames(lines)
        try:
            for frame in frames:
                if frame.usage is not None:
                    self._usage = frame.usage
                if frame.choice_index is None:
                    continue
                idx = frame.choice_index
                self._contents.setdefault(idx, [])
                if frame.delta_content:
                    self._contents[idx].append(frame.delta_content)
                if frame.finish_reason:
                    self._finish_reasons[idx] = frame.finish_reason
                if not self._emit(StreamDelta(content=frame.delta_content, index=frame.event_index, choice_index=idx)):
                    log_event(logging.INFO, "Stream stopped by callback", event_index=frame.event_index)
                    self.stopped_early = True
                    return
        finally:
            frames.close()
        if self.completed and not self.stopped_early:
            for idx in self._slot_indices():
                self._emit(StreamDelta(content="", index=self.event_count, choice_index=idx, done=True))

    def _emit(self, delta: StreamDelta) -> bool:
        if self._on_chunk is None:
            return True
        return self._on_chunk(delta) is not False

    def _slot_indices(self) -> List[int]:
        return sorted(set(range(self._expected_choices)) | set(self._contents))

    @staticmethod
    def _safe_parse(payload: str, event_index: int) -> List[StreamFrame]:
        try:
            return parse_event(payload, event_index)
        except MalformedResponseError as e:
            log_event(
                logging.WARNING,
                "Skipped malformed stream event",
                event_index=event_index,
                error=e.message,
                payload=payload[:200],
            )
            return []


def iter_frames(lines: Iterable[str], **kwargs: Any) -> Iterator[StreamFrame]:
    """以迭代器方式读取事件流；不累积内容，也不触发回调。"""

    return StreamReassembler(**kwargs).frames(lines)


def reassemble_stream(
    lines: Iterable[str],
    on_chunk: Optional[ChunkCallback] = None,
    **kwargs: Any,
) -> CompletionResult:
    """便捷函数：用默认参数重组一个行序列。"""

    return StreamReassembler(on_chunk=on_chunk, **kwargs).reassemble(lines)
