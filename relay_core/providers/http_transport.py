"""基于 httpx 的传输层实现。

本模块负责：

1. 拼接 URL 并附带 Authorization: Bearer <token>。
2. 处理网络异常与 HTTP 状态码，映射为统一的业务异常。
3. 解析 text/event-stream，逐条产出 data 字符串。

它不理解 JSON 的业务结构，结构解析见 providers.wire。
"""

import json
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

import httpx

from relay_core.domain.exceptions import (
    CredentialRejected,
    MalformedResponse,
    NotFound,
    TransportError,
)
from relay_core.providers.base import DEFAULT_ENDPOINTS, Closeable, Endpoints


class HttpTransport:
    """httpx 传输层。

    每次调用都新建 httpx.Client，请求之间不共享连接，
    便于不同线程上的多个流互不影响。
    """

    name = "http"

    def __init__(self, settings, endpoints: Endpoints = DEFAULT_ENDPOINTS):
        # settings 里包含 base_url、超时、User-Agent 等配置
        self._settings = settings
        self.endpoints = endpoints

    def get_json(
        self,
        path: str,
        token: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(self._url(path), params=dict(params or {}), headers=self._headers(token))
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(code="NETWORK_ERROR", message=str(e), url=path)
        self._raise_for_status(resp, path)
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(code="INVALID_JSON", message=str(e), url=path)
        if not isinstance(data, dict):
            raise MalformedResponse(code="INVALID_JSON", message="response body is not an object", url=path)
        return data

    def stream_events(
        self,
        path: str,
        token: str,
        body: Mapping[str, Any],
        on_open: Optional[Callable[[Closeable], None]] = None,
    ) -> Iterator[str]:
        """执行一次流式 POST，逐条 yield SSE data 字段（已去掉 "data:" 前缀）。"""

        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.stream_read_timeout)
        headers = self._headers(token)
        headers["Accept"] = "text/event-stream"
        try:
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream("POST", self._url(path), json=dict(body), headers=headers) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp, path)
                    if on_open is not None:
                        on_open(resp)
                    for line in resp.iter_lines():
                        if not line or line.startswith(":"):
                            continue
                        if not line.startswith("data:"):
                            # event:/id:/retry: 等字段不携带负载
                            continue
                        data_str = line[5:].strip()
                        if data_str:
                            yield data_str
        except httpx.StreamError as e:
            raise TransportError(code="STREAM_CLOSED", message=str(e), url=path)
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e), url=path)

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": getattr(self._settings, "user_agent", "relay-client"),
        }

    @staticmethod
    def _raise_for_status(resp, path: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        detail = _error_detail(resp)
        if status in (401, 403):
            raise CredentialRejected(code="AUTH_REJECTED", message=detail or "credential rejected", http_status=status)
        if status == 404:
            raise NotFound(code="NOT_FOUND", message=detail or f"{path} not found", url=path)
        if status == 429:
            # 限流错误交给调用方做退避
            raise TransportError(code="RATE_LIMIT", message=detail or "rate limited", http_status=429)
        raise TransportError(code="API_ERROR", message=detail or f"HTTP {status}", http_status=status, url=path)


def _error_detail(resp) -> str:
    text = getattr(resp, "text", "") or ""
    try:
        data = json.loads(text)
    except ValueError:
        return text[:500]
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if isinstance(detail, dict):
            detail = detail.get("message")
        if detail:
            return str(detail)
    return text[:500]
