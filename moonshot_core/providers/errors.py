"""HTTP 错误分类。

把 Moonshot 返回的错误响应（状态码 + 错误 JSON）转换为 domain.exceptions
中的类型化异常。400/403 的子类型目前只能依靠错误消息中的关键字做尽力匹配；
若上游的 error.type 字段给出了可识别的类型，则优先使用它。
"""

import json
from typing import Any, Dict, Optional, Tuple, Type

import httpx

from moonshot_core.domain.exceptions import (
    AccountInactiveError,
    ApiError,
    AuthError,
    BadRequestError,
    BusinessError,
    ContentFilteredError,
    ContextLengthExceededError,
    FileProcessingError,
    InsufficientBalanceError,
    InvalidParameterError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
)


_ACCOUNT_INACTIVE_PHRASES = ("not active", "未激活", "未开通")

_CONTEXT_LENGTH_PHRASES = (
    "context length",
    "token limit",
    "too many tokens",
    "超过令牌限制",
    "超出最大上下文长度",
)
_CONTENT_FILTER_PHRASES = ("content filter", "filtered", "moderation", "内容被过滤", "违反内容政策")
_INVALID_PARAMETER_PHRASES = ("invalid", "无效", "参数错误")

# error.type -> 异常类型；命中时不再做关键字匹配
_TYPED_ERRORS: Dict[str, Tuple[Type[ApiError], str]] = {
    "content_filter": (ContentFilteredError, "CONTENT_FILTERED"),
    "context_length_exceeded": (ContextLengthExceededError, "CONTEXT_LENGTH_EXCEEDED"),
    "exceeded_current_quota_error": (InsufficientBalanceError, "INSUFFICIENT_BALANCE"),
}


def _contains_any(text: str, phrases) -> bool:
    lower = text.lower()
    return any(p in lower for p in phrases)


def normalize_error_body(text: str) -> Dict[str, Any]:
    """把错误响应体规整为 {"error": {message, type, code}} 结构。

    - 标准格式原样返回；
    - 顶层 {message, code, type} 的非标准格式包一层 error；
    - 非 JSON 响应截取前 100 个字符作为 message。
    """

    if not text:
        return {"error": {"message": "", "type": "empty_response"}}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {"error": {"message": f"Non-JSON response: {text[:100]}", "type": "invalid_json"}}
    if not isinstance(data, dict):
        return {"error": {"message": str(data)[:100], "type": "invalid_json"}}
    if isinstance(data.get("error"), dict):
        return data
    if "message" in data and "code" in data:
        return {
            "error": {
                "message": data["message"],
                "code": data["code"],
                "type": data.get("type", "error"),
            }
        }
    return data


def _classify_bad_request(message: str) -> Tuple[Type[ApiError], str, str]:
    if _contains_any(message, _CONTEXT_LENGTH_PHRASES):
        return ContextLengthExceededError, "CONTEXT_LENGTH_EXCEEDED", "Input exceeds the model context window"
    if _contains_any(message, _CONTENT_FILTER_PHRASES):
        return ContentFilteredError, "CONTENT_FILTERED", "Input or output was blocked by the content filter"
    lower = message.lower()
    if ("insufficient" in lower and ("balance" in lower or "credit" in lower)) or "余额不足" in message:
        return InsufficientBalanceError, "INSUFFICIENT_BALANCE", "Account balance is insufficient"
    if "file" in lower and ("not found" in lower or "invalid" in lower or "too large" in lower):
        return FileProcessingError, "FILE_ERROR", "File processing failed"
    if _contains_any(message, _INVALID_PARAMETER_PHRASES):
        return InvalidParameterError, "INVALID_PARAMETER", "Invalid request parameter"
    return BadRequestError, "BAD_REQUEST", "Bad request"


def classify_error(
    status: int,
    body: Optional[Dict[str, Any]],
    retry_after: Optional[str] = None,
) -> BusinessError:
    """根据状态码与（已规整的）错误 JSON 构造类型化异常。"""

    err = (body or {}).get("error") or {}
    upstream_message = str(err.get("message") or "")
    error_type = str(err.get("type") or "")
    extra = {"response_body": body, "error_type": error_type}

    def _build(exc_cls, code: str, summary: str) -> BusinessError:
        text = f"HTTP {status} {code}: {summary}"
        if upstream_message:
            text += f": {upstream_message}"
        return exc_cls(code=code, message=text, http_status=status, **extra)

    if status == 429:
        if retry_after:
            extra["retry_after"] = retry_after
        return _build(RateLimitError, "RATE_LIMIT", "Rate limit exceeded")
    if status >= 500:
        return _build(ServerError, "SERVER_ERROR", "Server error")
    if status == 401:
        return _build(AuthError, "AUTHENTICATION_ERROR", "API key is invalid or expired")
    if status == 403:
        if _contains_any(upstream_message, _ACCOUNT_INACTIVE_PHRASES):
            return _build(AccountInactiveError, "ACCOUNT_INACTIVE", "Account is inactive or disabled")
        return _build(PermissionDeniedError, "PERMISSION_ERROR", "Permission denied")
    if status == 404:
        return _build(NotFoundError, "NOT_FOUND", "Resource not found")
    if status == 400:
        if error_type in _TYPED_ERRORS:
            exc_cls, code = _TYPED_ERRORS[error_type]
            return _build(exc_cls, code, "Request rejected")
        return _build(*_classify_bad_request(upstream_message))
    return _build(ApiError, "API_ERROR", "Client error")


def classify_response(resp: httpx.Response) -> BusinessError:
    """从一个错误状态的 httpx.Response 构造异常；调用前响应体必须已读取。"""

    body = normalize_error_body(resp.text)
    return classify_error(resp.status_code, body, retry_after=resp.headers.get("Retry-After"))


def classify_transport_error(exc: httpx.RequestError) -> BusinessError:
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(code="TIMEOUT", message=f"Request timed out: {exc}", http_status=0)
    return NetworkError(code="NETWORK_ERROR", message=f"Network error: {exc}", http_status=0)
