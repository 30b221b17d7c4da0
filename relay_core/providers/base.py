"""传输层抽象接口。

ConversationClient 不直接依赖 httpx，而是依赖此协议：

- get_json: 一次带 bearer 凭据的 JSON 读取。
- stream_events: 一次流式 POST，逐条产出 SSE 的 data 字符串（含终止标记 [DONE]）。

HTTP 状态码到业务异常的映射也由实现者负责：
401/403 -> CredentialRejected，404 -> NotFound，其余 -> TransportError。
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol


@dataclass(frozen=True)
class Endpoints:
    """后端各接口的相对路径。"""

    conversations: str = "/conversations"
    conversation: str = "/conversation/{conversation_id}"
    send: str = "/conversation"
    models: str = "/models"

    def conversation_path(self, conversation_id: str) -> str:
        return self.conversation.format(conversation_id=conversation_id)


DEFAULT_ENDPOINTS = Endpoints()


class Closeable(Protocol):
    def close(self) -> None:
        ...


class Transport(Protocol):
    """HTTP(S) 请求与服务端流式推送能力。"""

    endpoints: Endpoints

    def get_json(
        self,
        path: str,
        token: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    def stream_events(
        self,
        path: str,
        token: str,
        body: Mapping[str, Any],
        on_open: Optional[Callable[[Closeable], None]] = None,
    ) -> Iterator[str]:
        """on_open 在响应头到达后被调用，参数可用于中途关闭连接。"""

        ...
