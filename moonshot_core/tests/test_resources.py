import httpx
import pytest

from moonshot_core.domain.exceptions import ApiError, NotFoundError, ValidationError
from moonshot_core.domain.models import RetryPolicy
from moonshot_core.providers.dispatcher import RetryDispatcher
from moonshot_core.providers.resources import AccountApi, CachingApi, FilesApi


def install(monkeypatch, routes, calls):
    """routes: {(method, path_suffix): response 或 response 列表}"""

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, **kw):
            calls.append((method, url, kw))
            for (m, suffix), resp in routes.items():
                if m == method and url.endswith(suffix):
                    if isinstance(resp, list):
                        return resp.pop(0)
                    return resp
            return httpx.Response(404, json={"error": {"message": "not found"}})

    monkeypatch.setattr("httpx.Client", Client)


def dispatcher():
    return RetryDispatcher(
        api_key="sk-test-key-1234567890",
        base_url="https://api.example.test/v1",
        policy=RetryPolicy(max_retries=1),
        sleep=lambda s: None,
    )


def test_upload_file_sends_multipart(monkeypatch, tmp_path):
    calls = []
    install(monkeypatch, {("POST", "/files"): httpx.Response(200, json={"id": "file-1", "filename": "a.txt"})}, calls)
    path = tmp_path / "a.txt"
    path.write_text("hello", encoding="utf-8")
    result = FilesApi(dispatcher()).upload_file(str(path))
    assert result["id"] == "file-1"
    _, _, kw = calls[0]
    assert kw["data"] == {"purpose": "file-extract"}
    assert kw["files"]["file"][0] == "a.txt"
    assert "Content-Type" not in kw["headers"]


def test_upload_missing_file_is_rejected(monkeypatch, tmp_path):
    with pytest.raises(ValidationError):
        FilesApi(dispatcher()).upload_file(str(tmp_path / "missing.pdf"))


def test_retrieve_file_content_variants(monkeypatch):
    calls = []
    install(
        monkeypatch,
        {
            ("GET", "/files/f1/content"): httpx.Response(200, json={"content": "extracted", "type": "file"}),
            ("GET", "/files/f2/content"): httpx.Response(200, text="plain text body"),
        },
        calls,
    )
    files = FilesApi(dispatcher())
    assert files.retrieve_file_content("f1") == "extracted"
    assert files.retrieve_file_content("f2") == "plain text body"


def test_cleanup_all_files_counts_successes(monkeypatch):
    calls = []
    install(
        monkeypatch,
        {
            ("GET", "/files"): httpx.Response(200, json={"data": [{"id": "f1"}, {"id": "f2"}, {"name": "no id"}]}),
            ("DELETE", "/files/f1"): httpx.Response(200, json={"deleted": True}),
            ("DELETE", "/files/f2"): httpx.Response(404, json={"error": {"message": "file not found"}}),
        },
        calls,
    )
    assert FilesApi(dispatcher()).cleanup_all_files() == 1


def test_create_cache_and_tag(monkeypatch):
    calls = []
    install(
        monkeypatch,
        {
            ("POST", "/caching"): httpx.Response(200, json={"id": "cache-1", "status": "pending"}),
            ("POST", "/caching/refs/tags"): httpx.Response(200, json={"tag": "docs", "cache_id": "cache-1"}),
        },
        calls,
    )
    caching = CachingApi(dispatcher())
    cache = caching.create_cache([{"role": "system", "content": "file text"}], ttl="300", name="docs")
    assert cache["id"] == "cache-1"
    assert calls[0][2]["json"] == {
        "model": "moonshot-v1",
        "messages": [{"role": "system", "content": "file text"}],
        "ttl": 300,
        "name": "docs",
    }
    tag = caching.create_cache_tag("docs", "cache-1")
    assert tag["cache_id"] == "cache-1"


def test_cache_tag_must_start_with_letter():
    with pytest.raises(ValidationError):
        CachingApi(dispatcher()).create_cache_tag("1docs", "cache-1")


def test_cache_tag_lookup_and_delete(monkeypatch):
    calls = []
    install(
        monkeypatch,
        {
            ("GET", "/caching/refs/tags/docs"): httpx.Response(200, json={"tag": "docs", "cache_id": "cache-1"}),
            ("DELETE", "/caching/refs/tags/docs"): httpx.Response(200, json={"deleted": True}),
        },
        calls,
    )
    caching = CachingApi(dispatcher())
    assert caching.retrieve_cache_tag("docs")["cache_id"] == "cache-1"
    assert caching.delete_cache_tag("docs") is True
    with pytest.raises(NotFoundError):
        caching.retrieve_cache_tag("missing")


def test_update_cache_sends_ttl_and_metadata(monkeypatch):
    calls = []
    install(monkeypatch, {("PUT", "/caching/cache-1"): httpx.Response(200, json={"id": "cache-1", "ttl": 60})}, calls)
    caching = CachingApi(dispatcher())
    updated = caching.update_cache("cache-1", ttl="60", metadata={"biz": "docs"}, expired_at=1700000000)
    assert updated["ttl"] == 60
    method, url, kw = calls[0]
    assert method == "PUT"
    assert url.endswith("/caching/cache-1")
    assert kw["json"] == {"metadata": {"biz": "docs"}, "ttl": 60}

    caching.update_cache("cache-1", expired_at="1700000000")
    assert calls[1][2]["json"] == {"expired_at": 1700000000}


def test_update_cache_requires_options():
    with pytest.raises(ValidationError):
        CachingApi(dispatcher()).update_cache("cache-1")
    with pytest.raises(ValidationError):
        CachingApi(dispatcher()).update_cache("", ttl=60)


def test_list_caches_sends_paging_and_metadata(monkeypatch):
    calls = []
    install(monkeypatch, {("GET", "/caching"): httpx.Response(200, json={"data": [{"id": "c"}]})}, calls)
    caches = CachingApi(dispatcher()).list_caches(limit=5, metadata={"biz": "docs"}, ignored=True)
    assert caches == [{"id": "c"}]
    assert calls[0][2]["params"] == {"limit": 5, "metadata[biz]": "docs"}


def test_balance_helpers(monkeypatch):
    calls = []
    body = {"code": 0, "status": True, "data": {"available_balance": 49.5, "voucher_balance": 46.5, "cash_balance": 3}}
    install(monkeypatch, {("GET", "/users/me/balance"): httpx.Response(200, json=body)}, calls)
    account = AccountApi(dispatcher())
    assert account.get_balance()["cash_balance"] == 3
    assert account.get_available_balance() == 49.5
    assert account.has_enough_balance(10)
    assert not account.has_enough_balance(100)


def test_balance_failure_status(monkeypatch):
    calls = []
    install(monkeypatch, {("GET", "/users/me/balance"): httpx.Response(200, json={"status": False, "scode": "0x1"})}, calls)
    with pytest.raises(ApiError):
        AccountApi(dispatcher()).get_balance()


def test_estimate_token_count_and_models(monkeypatch):
    calls = []
    install(
        monkeypatch,
        {
            ("POST", "/tokenizers/estimate-token-count"): httpx.Response(200, json={"data": {"total_tokens": 42}}),
            ("GET", "/models"): httpx.Response(200, json={"data": [{"id": "moonshot-v1-8k"}]}),
        },
        calls,
    )
    account = AccountApi(dispatcher(), default_model="moonshot-v1-32k")
    assert account.estimate_token_count([{"role": "user", "content": "hi"}]) == 42
    assert calls[0][2]["json"]["model"] == "moonshot-v1-32k"
    assert account.list_models()[0]["id"] == "moonshot-v1-8k"
