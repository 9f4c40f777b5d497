"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于调用方统一捕获与提示。分类如下：

- 可重试：NetworkError / RequestTimeoutError / RateLimitError / ServerError。
- 终止性：ApiError 及其子类（401/403/404/400 各子类型）、MalformedResponseError。
- 其他：ValidationError（参数或配置）、ConversationStateError、RequestCancelledError。

错误信息中只包含 HTTP 状态码、错误类型与上游原始消息，不包含任何请求头或密钥。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"），也作为 kind 字符串对外暴露。
        message: 用户可读错误信息。
        http_status: 对应的 HTTP 状态码；非 HTTP 错误为 0 或默认值。
        extra: 其他补充字段（例如 response_body、retry_after 等）。
    """

    retryable = False

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def kind(self) -> str:
        return self.code

    @property
    def response_body(self) -> Optional[dict]:
        return self.extra.get("response_body")

    @property
    def formatted_message(self) -> str:
        return f"[{self.code}][{self.http_status}] {self.message}"

    def is_auth_error(self) -> bool:
        return self.http_status == 401

    def is_rate_limit_error(self) -> bool:
        return self.http_status == 429

    def is_server_error(self) -> bool:
        return 500 <= self.http_status < 600

    def is_context_length_error(self) -> bool:
        return isinstance(self, ContextLengthExceededError)

    def is_content_filter_error(self) -> bool:
        return isinstance(self, ContentFilteredError)

    def is_account_inactive_error(self) -> bool:
        return isinstance(self, AccountInactiveError)


class NetworkError(BusinessError):
    """网络层错误，例如 DNS 失败、连接被拒绝等。"""

    retryable = True


class RequestTimeoutError(NetworkError):
    """连接或读取超时。"""


class RateLimitError(BusinessError):
    """Provider 限流错误（429），由 Dispatcher 按计算出的退避时间重试。"""

    retryable = True


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class ServerError(ApiError):
    """服务端 5xx 错误。"""

    retryable = True


class AuthError(ApiError):
    """API 密钥无效或过期（401）。"""


class PermissionDeniedError(ApiError):
    """无权限执行该操作（403）。"""


class AccountInactiveError(PermissionDeniedError):
    """账户未激活或已被禁用（403 子类型）。"""


class NotFoundError(ApiError):
    """请求的资源不存在（404）。"""


class BadRequestError(ApiError):
    """其余无法细分的 400 错误。"""


class InvalidParameterError(BadRequestError):
    pass


class ContentFilteredError(BadRequestError):
    pass


class ContextLengthExceededError(BadRequestError):
    pass


class InsufficientBalanceError(BadRequestError):
    pass


class FileProcessingError(BadRequestError):
    pass


class MalformedResponseError(BusinessError):
    """响应不是合法 JSON，或缺少必需字段。"""


class EmptyChoicesError(MalformedResponseError):
    """响应中 choices 为空。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ConversationStateError(ValidationError):
    """会话历史状态不允许当前操作（例如存在未定稿的 partial 消息）。"""


class RequestCancelledError(BusinessError):
    """调用方通过取消信号终止了请求。"""
