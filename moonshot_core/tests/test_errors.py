import httpx

from moonshot_core.domain.exceptions import (
    AccountInactiveError,
    AuthError,
    BadRequestError,
    ContentFilteredError,
    ContextLengthExceededError,
    FileProcessingError,
    InsufficientBalanceError,
    InvalidParameterError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServerError,
)
from moonshot_core.providers.errors import (
    classify_error,
    classify_response,
    classify_transport_error,
    normalize_error_body,
)


def err(message, type_=""):
    return {"error": {"message": message, "type": type_}}


def test_status_codes_map_to_kinds():
    assert isinstance(classify_error(401, err("bad key")), AuthError)
    assert isinstance(classify_error(404, err("no such model")), NotFoundError)
    assert isinstance(classify_error(429, err("slow down")), RateLimitError)
    assert isinstance(classify_error(503, err("busy")), ServerError)
    assert isinstance(classify_error(403, err("forbidden")), PermissionDeniedError)


def test_account_inactive_detected_from_message():
    exc = classify_error(403, err("您的账户未激活，请先充值"))
    assert isinstance(exc, AccountInactiveError)
    assert exc.is_account_inactive_error()
    assert exc.kind == "ACCOUNT_INACTIVE"


def test_bad_request_subkinds():
    assert isinstance(classify_error(400, err("Invalid request: context length exceeded")), ContextLengthExceededError)
    assert isinstance(classify_error(400, err("input was filtered by moderation")), ContentFilteredError)
    assert isinstance(classify_error(400, err("Insufficient balance")), InsufficientBalanceError)
    assert isinstance(classify_error(400, err("file too large")), FileProcessingError)
    assert isinstance(classify_error(400, err("invalid temperature")), InvalidParameterError)
    assert type(classify_error(400, err("something else"))) is BadRequestError


def test_error_type_wins_over_message_heuristics():
    exc = classify_error(400, err("invalid request", "context_length_exceeded"))
    assert isinstance(exc, ContextLengthExceededError)
    assert exc.is_context_length_error()


def test_message_carries_status_kind_and_upstream_text():
    exc = classify_error(401, err("Invalid Authentication"))
    assert "401" in exc.message
    assert "AUTHENTICATION_ERROR" in exc.message
    assert "Invalid Authentication" in exc.message
    assert exc.formatted_message.startswith("[AUTHENTICATION_ERROR][401]")
    assert exc.is_auth_error()


def test_normalize_non_standard_and_non_json_bodies():
    flat = normalize_error_body('{"message": "quota", "code": 1001, "type": "quota_error"}')
    assert flat["error"]["message"] == "quota"
    assert flat["error"]["code"] == 1001
    html = normalize_error_body("<html>" + "x" * 500)
    assert html["error"]["type"] == "invalid_json"
    assert len(html["error"]["message"]) < 150
    assert normalize_error_body("")["error"]["type"] == "empty_response"


def test_classify_response_reads_retry_after():
    resp = httpx.Response(429, headers={"Retry-After": "7"}, json=err("rate limited"))
    exc = classify_response(resp)
    assert exc.is_rate_limit_error()
    assert exc.retryable
    assert exc.extra["retry_after"] == "7"
    assert exc.response_body == err("rate limited")


def test_transport_errors():
    timeout = classify_transport_error(httpx.ReadTimeout("slow"))
    assert timeout.code == "TIMEOUT"
    assert timeout.retryable
    network = classify_transport_error(httpx.ConnectError("refused"))
    assert network.code == "NETWORK_ERROR"
    assert network.http_status == 0
