"""Moonshot Provider 适配器。

本模块负责：

1. 接收 messages 列表与调用选项，校验并规整选项。
2. 将其转换为 Moonshot chat/completions 的请求 JSON。
3. 通过 RetryDispatcher 发送请求（带重试/退避与取消）。
4. 通过 ResponseDecoder 把单个 JSON 或事件流解析为 CompletionResult。

一次 complete() 调用就是一轮补全；截断续写与会话历史的维护在 agents 包中完成。
"""

import logging
import threading
from typing import Any, Dict, List, Optional
from uuid import uuid4

from moonshot_core.config.settings import settings as default_settings
from moonshot_core.domain.exceptions import ValidationError
from moonshot_core.domain.models import CompletionResult, MultiChoiceResult, RetryPolicy
from moonshot_core.infrastructure.logging.logger import log_event
from moonshot_core.providers.decoder import ResponseDecoder
from moonshot_core.providers.dispatcher import RetryDispatcher
from moonshot_core.providers.registry import MOONSHOT_CONFIG
from moonshot_core.providers.resources import AccountApi, CachingApi, FilesApi
from moonshot_core.providers.stream import ChunkCallback


CHAT_COMPLETIONS_PATH = "/chat/completions"

# 只在本地使用、不发给 API 的选项
_LOCAL_OPTIONS = ("timeout", "connect_timeout")


def normalize_options(options: Optional[Dict[str, Any]], strict_choices: bool = True) -> Dict[str, Any]:
    """校验并规整调用选项，返回新的 dict。

    - temperature > 1 时截断为 1 并记录警告；
    - temperature == 0 且 n > 1：strict_choices 时报错，否则把 n 调整为 1；
    - tool_choice="required" 当前不被 Moonshot 支持，降级为 "auto"。
    """

    opts = dict(options or {})
    temperature = opts.get("temperature")
    if temperature is not None and temperature > 1:
        log_event(logging.WARNING, "temperature out of range [0, 1], clamped to 1", temperature=temperature)
        opts["temperature"] = 1
        temperature = 1
    n = opts.get("n")
    if temperature is not None and temperature == 0 and n is not None and n > 1:
        if strict_choices:
            raise ValidationError(code="INVALID_PARAMETER", message="n must be 1 when temperature is 0")
        log_event(logging.WARNING, "n must be 1 when temperature is 0, adjusted n=1", n=n)
        opts["n"] = 1
    if "tool_choice" in opts:
        opts["tool_choice"] = _process_tool_choice(opts["tool_choice"])
    return opts


def _process_tool_choice(choice: Any) -> Any:
    if choice in ("auto", "none", None):
        return choice
    if choice == "required":
        log_event(logging.WARNING, "tool_choice=required is not supported, using auto")
        return "auto"
    if isinstance(choice, dict) and choice.get("type") == "function":
        return choice
    log_event(logging.WARNING, "Unsupported tool_choice value, using auto", tool_choice=str(choice))
    return "auto"


class MoonshotClient:
    """Moonshot 提供方客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - complete / complete_choices: 执行一轮补全。
    - files / caching / account: 文件、上下文缓存与账户相关的 REST 接口。
    """

    name = "moonshot"

    def __init__(
        self,
        cfg=default_settings,
        dispatcher: Optional[RetryDispatcher] = None,
        decoder: Optional[ResponseDecoder] = None,
        dialogue_tag: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._settings = cfg
        self.dialogue_tag = dialogue_tag or f"moonshot-{uuid4().hex}"
        self.cancel_event = cancel_event or threading.Event()
        self._retry_policy = retry_policy
        self._dispatcher = dispatcher
        self._decoder = decoder or ResponseDecoder(read_timeout=getattr(cfg, "stream_read_timeout", None))

    @property
    def dispatcher(self) -> RetryDispatcher:
        if self._dispatcher is None:
            api_key = getattr(self._settings, "moonshot_api_key", None)
            if not api_key:
                # 配置缺失走 ValidationError，方便上层统一处理
                raise ValidationError(code="MISSING_API_KEY", message="MOONSHOT_API_KEY not set", http_status=401)
            self._dispatcher = RetryDispatcher(
                api_key=api_key,
                base_url=getattr(self._settings, "moonshot_base_url", None) or MOONSHOT_CONFIG.base_url,
                policy=self._retry_policy or RetryPolicy.from_settings(self._settings),
                timeout=self._settings.http_timeout,
                stream_timeout=getattr(self._settings, "stream_timeout", 300.0),
                dialogue_tag=self.dialogue_tag,
                cancel_event=self.cancel_event,
            )
        return self._dispatcher

    @property
    def files(self) -> FilesApi:
        return FilesApi(self.dispatcher)

    @property
    def caching(self) -> CachingApi:
        return CachingApi(self.dispatcher)

    @property
    def account(self) -> AccountApi:
        return AccountApi(self.dispatcher, default_model=self._default_model())

    # ---- 补全 ----

    def complete(
        self,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> CompletionResult:
        """执行一轮补全；options["stream"] 为 True 时走流式。"""

        opts = normalize_options(options)
        streaming = bool(opts.get("stream"))
        payload = self.build_payload(messages, opts)
        if streaming:
            with self.dispatcher.stream(CHAT_COMPLETIONS_PATH, payload, timeout=opts.get("timeout")) as resp:
                result = self._decoder.decode(
                    resp,
                    streaming=True,
                    on_chunk=on_chunk,
                    cancel_event=self.cancel_event,
                    expected_choices=int(opts.get("n") or 1),
                )
        else:
            resp = self.dispatcher.send("POST", CHAT_COMPLETIONS_PATH, json=payload, timeout=opts.get("timeout"))
            result = self._decoder.decode(resp)
        self._log_round(payload, result, streaming)
        return result

    def complete_choices(
        self,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> MultiChoiceResult:
        """多候选流式调用，每个候选单独累积。"""

        opts = normalize_options(options, strict_choices=False)
        opts["stream"] = True
        opts.setdefault("n", 1)
        payload = self.build_payload(messages, opts)
        with self.dispatcher.stream(CHAT_COMPLETIONS_PATH, payload, timeout=opts.get("timeout")) as resp:
            return self._decoder.decode_choices(
                resp,
                on_chunk=on_chunk,
                cancel_event=self.cancel_event,
                expected_choices=int(opts["n"]),
            )

    def create_chat_completion(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """OpenAI 风格的一次性调用：直接使用传入的 messages，返回原始响应 JSON。"""

        messages = [m for m in params.get("messages") or [] if isinstance(m, dict) and "role" in m and "content" in m]
        opts = normalize_options({k: v for k, v in params.items() if k != "messages"})
        opts["stream"] = False
        payload = self.build_payload(messages, opts)
        resp = self.dispatcher.send("POST", CHAT_COMPLETIONS_PATH, json=payload, timeout=opts.get("timeout"))
        return self._decoder.load_json(resp.text)

    def build_payload(self, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> Dict[str, Any]:
        """将 messages 与选项转成 Moonshot 所需的请求 JSON。

        temperature 优先级：调用选项 > registry 中该逻辑模型的默认值 > 配置中的 default_temperature。
        """

        requested = options.get("model") or self._default_model()
        model_cfg = MOONSHOT_CONFIG.models.get(requested)
        if model_cfg is not None:
            temperature = model_cfg.default_temperature
        else:
            temperature = getattr(self._settings, "default_temperature", 0.3)
        payload: Dict[str, Any] = {
            "model": MOONSHOT_CONFIG.resolve(requested),
            "messages": list(messages),
            "temperature": temperature,
            "stream": False,
        }
        for key, value in options.items():
            if key in _LOCAL_OPTIONS or key == "model" or value is None:
                continue
            payload[key] = value
        payload["stream"] = bool(payload.get("stream"))
        return payload

    def _default_model(self) -> str:
        return getattr(self._settings, "default_model", None) or "moonshot-v1-8k"

    def _log_round(self, payload: Dict[str, Any], result: CompletionResult, streaming: bool) -> None:
        fields: Dict[str, Any] = {
            "dialogue_tag": self.dialogue_tag,
            "model": payload["model"],
            "stream": streaming,
            "finish_reason": result.finish_reason,
            "content_chars": len(result.content),
            "stopped_early": result.stopped_early,
        }
        if result.usage is not None:
            fields.update(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            )
        log_event(logging.INFO, "Completion round finished", **fields)
