"""带重试的 HTTP 分发器。

RetryDispatcher 负责把“一次逻辑请求”发出去：

1. 每次尝试前检查取消信号。
2. 发送请求，把传输层异常与错误状态码分类为 domain.exceptions 中的类型。
3. 可重试错误（网络/超时/429/5xx）按指数退避 + 抖动等待后重试；
   其他错误立即抛出。
4. 达到最大尝试次数后，原样抛出最后一次的分类异常。

退避等待会阻塞当前线程；同一会话内的请求严格串行。
"""

import logging
import random
import threading
import time
from contextlib import ExitStack, contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

import httpx

from moonshot_core.domain.exceptions import BusinessError, RequestCancelledError
from moonshot_core.domain.models import RetryPolicy
from moonshot_core.infrastructure.logging.logger import log_event
from moonshot_core.providers.errors import classify_response, classify_transport_error
from moonshot_core.providers.registry import MOONSHOT_CONFIG


T = TypeVar("T")


class RetryDispatcher:
    """Moonshot HTTP 请求分发器。

    - send: 普通请求，返回已读完响应体的 httpx.Response。
    - stream: 流式请求的上下文管理器，退出 with 块时关闭连接。
    - last_retry_delays: 最近一次调用中实际等待过的退避时间（秒）。
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        stream_timeout: float = 300.0,
        dialogue_tag: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self._api_key = api_key
        self._base_url = (base_url or MOONSHOT_CONFIG.base_url).rstrip("/")
        self.policy = policy or RetryPolicy()
        self._timeout = timeout
        self._stream_timeout = stream_timeout
        self._dialogue_tag = dialogue_tag
        self.cancel_event = cancel_event
        self._sleep = sleep
        self._rand = rand
        self.last_retry_delays: List[float] = []

    # ---- 对外接口 ----

    def send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        url = self._url(path)
        headers = self._headers(json_body=files is None)

        def attempt() -> httpx.Response:
            try:
                with httpx.Client(timeout=timeout or self._timeout, trust_env=False) as client:
                    resp = client.request(
                        method,
                        url,
                        json=json,
                        params=params,
                        files=files,
                        data=data,
                        headers=headers,
                    )
            except httpx.RequestError as e:
                raise classify_transport_error(e) from e
            if resp.status_code >= 400:
                raise classify_response(resp)
            return resp

        return self._run(attempt, method, path)

    @contextmanager
    def stream(self, path: str, json: Dict[str, Any], timeout: Optional[float] = None) -> Iterator[httpx.Response]:
        """以流式方式 POST，重试只覆盖建立连接与读取状态码阶段。"""

        url = self._url(path)
        headers = self._headers()

        def attempt() -> Tuple[ExitStack, httpx.Response]:
            stack = ExitStack()
            try:
                client = stack.enter_context(
                    httpx.Client(timeout=timeout or self._stream_timeout, trust_env=False)
                )
                resp = stack.enter_context(client.stream("POST", url, json=json, headers=headers))
                if resp.status_code >= 400:
                    resp.read()
                    raise classify_response(resp)
            except httpx.RequestError as e:
                stack.close()
                raise classify_transport_error(e) from e
            except BaseException:
                stack.close()
                raise
            return stack, resp

        stack, resp = self._run(attempt, "POST", path)
        with stack:
            try:
                yield resp
            except httpx.RequestError as e:
                # 已经开始消费的流不再重试
                raise classify_transport_error(e) from e

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间：指数退避，封顶 max_delay，可选 0~20% 抖动。"""

        delay = self.policy.base_delay(attempt)
        if self.policy.jitter:
            delay += delay * 0.2 * self._rand()
        return delay

    # ---- 内部实现 ----

    def _run(self, attempt_fn: Callable[[], T], method: str, path: str) -> T:
        max_attempts = max(1, self.policy.max_retries)
        self.last_retry_delays = []
        attempt = 0
        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RequestCancelledError(
                    code="CANCELLED",
                    message=f"Request {method} {path} cancelled before attempt {attempt + 1}",
                    http_status=0,
                )
            attempt += 1
            try:
                return attempt_fn()
            except BusinessError as exc:
                exc.extra["attempts"] = attempt
                if not exc.retryable or attempt >= max_attempts:
                    log_event(
                        logging.ERROR,
                        "Request failed",
                        method=method,
                        path=path,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        kind=exc.kind,
                        http_status=exc.http_status,
                        error=exc.message,
                    )
                    raise
                delay = self.backoff_delay(attempt)
                log_event(
                    logging.WARNING,
                    "Request failed, retrying",
                    method=method,
                    path=path,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    kind=exc.kind,
                    http_status=exc.http_status,
                    delay=round(delay, 3),
                    retry_after=exc.extra.get("retry_after"),
                )
                self.last_retry_delays.append(delay)
                self._sleep(delay)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _headers(self, json_body: bool = True) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self._dialogue_tag:
            headers["tag"] = self._dialogue_tag
        return headers
