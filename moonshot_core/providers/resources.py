"""文件、上下文缓存与账户相关的 REST 接口。

这些接口都很薄：拼 URL 和参数，交给 RetryDispatcher 发送（共享重试与错误分类），
再从 JSON 里取出调用方关心的字段。
"""

import logging
import mimetypes
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from moonshot_core.domain.exceptions import ApiError, ValidationError
from moonshot_core.infrastructure.logging.logger import log_event
from moonshot_core.providers.decoder import ResponseDecoder
from moonshot_core.providers.dispatcher import RetryDispatcher


UPLOAD_TIMEOUT = 60.0
DEFAULT_CACHE_MODEL = "moonshot-v1"

_PAGING_KEYS = ("limit", "order", "after", "before")
_TAG_PATTERN = re.compile(r"^[a-zA-Z]")


def _json(resp: httpx.Response) -> Dict[str, Any]:
    return ResponseDecoder.load_json(resp.text)


def _require(value: str, what: str) -> None:
    if not value:
        raise ValidationError(code="INVALID_PARAMETER", message=f"{what} is required")


def _paging(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (options or {}).items() if k in _PAGING_KEYS and v is not None}


class FilesApi:
    """/files 系列接口。"""

    def __init__(self, dispatcher: RetryDispatcher):
        self._dispatcher = dispatcher

    def upload_file(self, file_path: str, purpose: str = "file-extract") -> Dict[str, Any]:
        path = Path(file_path)
        if not path.is_file():
            raise ValidationError(code="FILE_NOT_FOUND", message=f"File not found: {file_path}")
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        with path.open("rb") as fh:
            resp = self._dispatcher.send(
                "POST",
                "/files",
                files={"file": (path.name, fh, mime)},
                data={"purpose": purpose},
                timeout=UPLOAD_TIMEOUT,
            )
        result = _json(resp)
        log_event(logging.INFO, "File uploaded", file_id=result.get("id"), filename=path.name, purpose=purpose)
        return result

    def list_files(self) -> List[Dict[str, Any]]:
        return _json(self._dispatcher.send("GET", "/files")).get("data") or []

    def retrieve_file(self, file_id: str) -> Dict[str, Any]:
        _require(file_id, "File ID")
        return _json(self._dispatcher.send("GET", f"/files/{file_id}"))

    def retrieve_file_content(self, file_id: str) -> str:
        """返回抽取后的文件文本；响应不是 JSON 对象时返回原始文本。"""

        _require(file_id, "File ID")
        resp = self._dispatcher.send("GET", f"/files/{file_id}/content")
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        if isinstance(body, dict):
            for key in ("content", "text"):
                if isinstance(body.get(key), str):
                    return body[key]
        return resp.text

    def delete_file(self, file_id: str) -> bool:
        _require(file_id, "File ID")
        body = _json(self._dispatcher.send("DELETE", f"/files/{file_id}"))
        return bool(body.get("deleted", True))

    def cleanup_all_files(self) -> int:
        """删除账户下所有已上传文件，返回成功删除的数量。单个文件失败只记录日志。"""

        deleted = 0
        for item in self.list_files():
            file_id = item.get("id")
            if not file_id:
                continue
            try:
                self.delete_file(file_id)
            except ApiError as e:
                log_event(logging.WARNING, "Failed to delete file", file_id=file_id, error=e.message)
                continue
            deleted += 1
        log_event(logging.INFO, "File cleanup finished", deleted=deleted)
        return deleted


class CachingApi:
    """/caching 系列接口（上下文缓存及其标签）。"""

    def __init__(self, dispatcher: RetryDispatcher):
        self._dispatcher = dispatcher

    def create_cache(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": options.pop("model", None) or DEFAULT_CACHE_MODEL, "messages": messages}
        if tools:
            body["tools"] = tools
        if options.get("ttl") is not None:
            body["ttl"] = int(options["ttl"])
        elif options.get("expired_at") is not None:
            body["expired_at"] = options["expired_at"]
        for key in ("name", "description", "metadata", "tags"):
            if options.get(key) is not None:
                body[key] = options[key]
        result = _json(self._dispatcher.send("POST", "/caching", json=body))
        log_event(logging.INFO, "Cache created", cache_id=result.get("id"), model=body["model"])
        return result

    def list_caches(self, **options: Any) -> List[Dict[str, Any]]:
        params = _paging(options)
        for key, value in (options.get("metadata") or {}).items():
            params[f"metadata[{key}]"] = value
        return _json(self._dispatcher.send("GET", "/caching", params=params)).get("data") or []

    def retrieve_cache(self, cache_id: str) -> Dict[str, Any]:
        _require(cache_id, "Cache ID")
        return _json(self._dispatcher.send("GET", f"/caching/{cache_id}"))

    def update_cache(self, cache_id: str, **options: Any) -> Dict[str, Any]:
        _require(cache_id, "Cache ID")
        body: Dict[str, Any] = {}
        if options.get("metadata") is not None:
            body["metadata"] = options["metadata"]
        if options.get("ttl") is not None:
            body["ttl"] = int(options["ttl"])
        elif options.get("expired_at") is not None:
            body["expired_at"] = int(options["expired_at"])
        if not body:
            raise ValidationError(code="INVALID_PARAMETER", message="No update options provided")
        return _json(self._dispatcher.send("PUT", f"/caching/{cache_id}", json=body))

    def delete_cache(self, cache_id: str) -> bool:
        _require(cache_id, "Cache ID")
        return bool(_json(self._dispatcher.send("DELETE", f"/caching/{cache_id}")).get("deleted", False))

    def create_cache_tag(self, tag: str, cache_id: str) -> Dict[str, Any]:
        _require(tag, "Tag name")
        if not _TAG_PATTERN.match(tag):
            raise ValidationError(code="INVALID_PARAMETER", message="Tag name must start with a letter")
        _require(cache_id, "Cache ID")
        return _json(self._dispatcher.send("POST", "/caching/refs/tags", json={"tag": tag, "cache_id": cache_id}))

    def list_cache_tags(self, **options: Any) -> List[Dict[str, Any]]:
        return _json(self._dispatcher.send("GET", "/caching/refs/tags", params=_paging(options))).get("data") or []

    def retrieve_cache_tag(self, tag: str) -> Dict[str, Any]:
        _require(tag, "Tag name")
        return _json(self._dispatcher.send("GET", f"/caching/refs/tags/{tag}"))

    def retrieve_cache_tag_content(self, tag: str) -> Dict[str, Any]:
        _require(tag, "Tag name")
        return _json(self._dispatcher.send("GET", f"/caching/refs/tags/{tag}/content"))

    def delete_cache_tag(self, tag: str) -> bool:
        _require(tag, "Tag name")
        return bool(_json(self._dispatcher.send("DELETE", f"/caching/refs/tags/{tag}")).get("deleted", False))


class AccountApi:
    """余额、模型列表与 token 估算。"""

    def __init__(self, dispatcher: RetryDispatcher, default_model: str = "moonshot-v1-8k"):
        self._dispatcher = dispatcher
        self._default_model = default_model

    def get_balance(self) -> Dict[str, float]:
        body = _json(self._dispatcher.send("GET", "/users/me/balance"))
        if body.get("status") is not True:
            raise ApiError(
                code="BALANCE_ERROR",
                message=f"Balance query failed: {body.get('scode') or 'unknown error'}",
                http_status=200,
                response_body=body,
            )
        data = body.get("data") or {}
        return {
            "available_balance": data.get("available_balance", 0),
            "voucher_balance": data.get("voucher_balance", 0),
            "cash_balance": data.get("cash_balance", 0),
        }

    def get_available_balance(self) -> float:
        return self.get_balance()["available_balance"]

    def has_enough_balance(self, minimum: float = 0) -> bool:
        return self.get_available_balance() > minimum

    def list_models(self) -> List[Dict[str, Any]]:
        return _json(self._dispatcher.send("GET", "/models")).get("data") or []

    def estimate_token_count(self, messages: List[Dict[str, Any]], model: Optional[str] = None) -> int:
        body = {"model": model or self._default_model, "messages": messages}
        data = _json(self._dispatcher.send("POST", "/tokenizers/estimate-token-count", json=body))
        return int((data.get("data") or {}).get("total_tokens", 0))
