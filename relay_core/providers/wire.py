"""后端 JSON ⇄ 领域模型的转换层。

HttpTransport 只负责收发原始 JSON，这里负责：

1. 构造发送一轮对话所需的请求体。
2. 把会话列表、会话详情、模型列表解析为领域模型。
3. 把流式事件解析为 StreamEvent，供 StreamDispatcher 合并。

解析失败统一抛出 MalformedResponse。本地缓存落盘时也复用这里的格式。
"""

import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar
from uuid import uuid4

from relay_core.domain.exceptions import MalformedResponse
from relay_core.domain.models import (
    ConversationDetail,
    ConversationSummary,
    Message,
    MessageContent,
    ModelDescriptor,
    ModelList,
    PagedResult,
    utcnow,
)

DONE_MARKER = "[DONE]"
VISIBLE_ROLES = ("user", "assistant")

F = TypeVar("F", bound=Callable[..., Any])

# 后端字段类型不符时 int()/dict()/frozenset() 等转换会抛出的异常
_CONVERSION_ERRORS = (ValueError, TypeError, OverflowError, OSError)


def _strict(fn: F) -> F:
    """解析函数的装饰器：字段类型不符统一报告为 MalformedResponse。"""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _CONVERSION_ERRORS as e:
            raise MalformedResponse(
                code="MALFORMED_RESPONSE",
                message=f"{fn.__name__}: {e}",
            ) from e

    return wrapper  # type: ignore[return-value]


@dataclass
class StreamEvent:
    """流式响应中的一条事件。

    kind:
        - "message": 携带某条消息的片段（message 字段）。
        - "title": 会话标题更新。
        - "meta": 只告知 conversation_id。
        - "error": 后端在流内报告的错误。
    """

    kind: str
    conversation_id: Optional[str] = None
    message: Optional[Message] = None
    title: Optional[str] = None
    seq: Optional[int] = None
    error: Optional[str] = None


@_strict
def parse_time(raw: Any) -> Optional[datetime]:
    """时间字段可能是 epoch 秒（float）或 ISO-8601 字符串。"""

    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(float(raw), timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedResponse(code="BAD_TIMESTAMP", message=f"timestamp out of range {raw!r}")
    if isinstance(raw, str):
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedResponse(code="BAD_TIMESTAMP", message=f"unparseable timestamp {raw!r}")
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value
    raise MalformedResponse(code="BAD_TIMESTAMP", message=f"unexpected timestamp {raw!r}")


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise MalformedResponse(code="MALFORMED_RESPONSE", message=f"{what} is not an object")
    return data


def build_turn_payload(
    text: str,
    model: str,
    conversation_id: Optional[str] = None,
    parent_message_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> Dict[str, Any]:
    """构造发送一轮对话的请求体。"""

    payload: Dict[str, Any] = {
        "action": "next",
        "messages": [
            {
                "id": message_id or str(uuid4()),
                "author": {"role": "user"},
                "content": {"content_type": "text", "parts": [text]},
            }
        ],
        "model": model,
        "parent_message_id": parent_message_id or str(uuid4()),
    }
    if conversation_id:
        payload["conversation_id"] = conversation_id
    return payload


@_strict
def parse_message(data: Any) -> Optional[Message]:
    """解析单条消息；system/tool 等不可见角色返回 None。"""

    data = _require_mapping(data, "message")
    author = data.get("author") or {}
    role = author.get("role") if isinstance(author, Mapping) else None
    role = role or data.get("role")
    if role not in VISIBLE_ROLES:
        return None
    msg_id = data.get("id")
    if not msg_id:
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="message without id")
    content_raw = data.get("content") or {}
    if isinstance(content_raw, str):
        content = MessageContent(content_type="text", parts=(content_raw,))
    else:
        content_raw = _require_mapping(content_raw, "message.content")
        parts = content_raw.get("parts") or []
        if not isinstance(parts, list):
            raise MalformedResponse(code="MALFORMED_RESPONSE", message="message.content.parts is not a list")
        content = MessageContent(
            content_type=content_raw.get("content_type") or "text",
            parts=tuple(p if isinstance(p, str) else str(p) for p in parts),
        )
    return Message(
        id=str(msg_id),
        role=role,
        create_time=parse_time(data.get("create_time")) or utcnow(),
        content=content,
        metadata=dict(data.get("metadata") or {}),
    )


def message_to_payload(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "author": {"role": message.role},
        "create_time": format_time(message.create_time),
        "content": {"content_type": message.content.content_type, "parts": list(message.content.parts)},
        "metadata": dict(message.metadata),
    }


@_strict
def parse_summary(data: Any) -> ConversationSummary:
    data = _require_mapping(data, "conversation item")
    conv_id = data.get("id") or data.get("conversation_id")
    if not conv_id:
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="conversation item without id")
    return ConversationSummary(
        id=str(conv_id),
        title=data.get("title") or "",
        created_time=parse_time(data.get("create_time")) or utcnow(),
    )


@_strict
def parse_history_page(data: Any, offset: int, limit: int) -> PagedResult[ConversationSummary]:
    """解析会话列表分页。后端多给的条目按 limit 截断。"""

    data = _require_mapping(data, "history page")
    items_raw = data.get("items")
    if not isinstance(items_raw, list):
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="history page without items")
    items = tuple(parse_summary(item) for item in items_raw[:limit])
    total = data.get("total")
    if not isinstance(total, int):
        total = offset + len(items)
    # 后端状态不一致时（total 比实际少）以实际看到的数量为准
    if items:
        total = max(total, offset + len(items))
    return PagedResult(items=items, total=total, limit=limit, offset=int(data.get("offset", offset)))


def _walk_mapping(mapping: Mapping[str, Any], current_node: Optional[str]) -> List[Any]:
    """把树状 mapping 从 current_node 回溯到根，返回根→叶顺序的消息。"""

    chain: List[Any] = []
    seen = set()
    node_id = current_node
    while node_id and node_id not in seen:
        seen.add(node_id)
        node = mapping.get(node_id)
        if not isinstance(node, Mapping):
            raise MalformedResponse(code="MALFORMED_RESPONSE", message=f"mapping node {node_id!r} missing")
        if node.get("message"):
            chain.append(node["message"])
        node_id = node.get("parent")
    chain.reverse()
    return chain


@_strict
def parse_detail(data: Any) -> ConversationDetail:
    """解析完整会话，支持扁平 messages 与树状 mapping 两种形式。"""

    data = _require_mapping(data, "conversation")
    conv_id = data.get("conversation_id") or data.get("id")
    if not conv_id:
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="conversation without id")
    if isinstance(data.get("messages"), list):
        raw_messages = data["messages"]
    elif isinstance(data.get("mapping"), Mapping):
        raw_messages = _walk_mapping(data["mapping"], data.get("current_node"))
    else:
        raw_messages = []
    messages = tuple(m for m in (parse_message(raw) for raw in raw_messages) if m is not None)
    return ConversationDetail(
        id=str(conv_id),
        title=data.get("title") or "",
        messages=messages,
        created_time=parse_time(data.get("create_time")) or utcnow(),
        updated_time=parse_time(data.get("update_time")),
    )


def detail_to_payload(detail: ConversationDetail) -> Dict[str, Any]:
    return {
        "conversation_id": detail.id,
        "title": detail.title,
        "create_time": format_time(detail.created_time),
        "update_time": format_time(detail.updated_time),
        "messages": [message_to_payload(m) for m in detail.messages],
    }


def summary_to_payload(summary: ConversationSummary) -> Dict[str, Any]:
    return {"id": summary.id, "title": summary.title, "create_time": format_time(summary.created_time)}


@_strict
def parse_model(data: Any) -> ModelDescriptor:
    data = _require_mapping(data, "model")
    slug = data.get("slug")
    if not slug:
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="model without slug")
    tools = data.get("enabled_tools")
    return ModelDescriptor(
        slug=str(slug),
        max_tokens=int(data.get("max_tokens") or 0),
        title=data.get("title") or str(slug),
        description=data.get("description") or "",
        tags=frozenset(data.get("tags") or ()),
        capabilities=dict(data.get("capabilities") or {}),
        product_features=dict(data.get("product_features") or {}),
        enabled_tools=tuple(tools) if tools is not None else None,
    )


@_strict
def parse_models(data: Any) -> ModelList:
    data = _require_mapping(data, "models response")
    models = data.get("models")
    if not isinstance(models, list):
        raise MalformedResponse(code="MALFORMED_RESPONSE", message="models response without models list")
    return ModelList(models=tuple(parse_model(m) for m in models))


@_strict
def parse_stream_event(data: Any) -> Optional[StreamEvent]:
    """解析单个流式事件；无关事件（如心跳）返回 None。"""

    data = _require_mapping(data, "stream event")
    if data.get("error"):
        error = data["error"]
        if isinstance(error, Mapping):
            error = error.get("message") or str(dict(error))
        return StreamEvent(kind="error", conversation_id=data.get("conversation_id"), error=str(error))
    seq = data.get("seq")
    if seq is not None and not isinstance(seq, int):
        raise MalformedResponse(code="MALFORMED_RESPONSE", message=f"non-integer seq {seq!r}")
    if data.get("type") == "title_generation":
        return StreamEvent(kind="title", conversation_id=data.get("conversation_id"), title=data.get("title") or "", seq=seq)
    conv_id = data.get("conversation_id")
    message = parse_message(data["message"]) if data.get("message") else None
    if message is not None:
        return StreamEvent(kind="message", conversation_id=conv_id, message=message, seq=seq)
    if conv_id:
        # 只携带会话 id 的事件（例如隐藏的 system 消息）
        return StreamEvent(kind="meta", conversation_id=conv_id, seq=seq)
    return None
