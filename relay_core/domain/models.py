"""统一的会话与结果数据模型。

本模块定义了客户端内部共享的标准数据结构：

- Credential: 访问后端所需的不透明令牌及其签发/过期信息。
- Message / MessageContent: 一条不可变的对话消息。
- ConversationSummary / ConversationDetail: 会话列表项与完整会话。
- ModelDescriptor / ModelList: 后端可用模型的描述。
- PagedResult: 分页结果。
- Result: 读操作的返回值，成功时携带 value，失败时携带 error。

后端 JSON 与这些模型之间的转换集中在 providers.wire 中完成。
"""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Generic, Literal, Mapping, Optional, Tuple, TypeVar

from relay_core.domain.exceptions import BusinessError, ValidationError


# 对话中可见的消息角色
Role = Literal["user", "assistant"]

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jwt_expiry(token: str) -> Optional[datetime]:
    """尝试从 JWT 的 payload 中读取 exp 声明，非 JWT 时返回 None。"""

    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, timezone.utc)


@dataclass(frozen=True)
class Credential:
    """一份访问凭据。

    - token: 不透明的 bearer 令牌。
    - issued_at: 获取时间（UTC）。
    - expires_at: 过期时间；None 表示未知（视为长期有效）。
    - source: 来源，如 "interactive"、"static"、"persisted"。
    """

    token: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    source: str = "interactive"

    @classmethod
    def from_token(
        cls,
        token: str,
        ttl: Optional[float] = None,
        source: str = "interactive",
        now: Optional[datetime] = None,
    ) -> "Credential":
        """根据原始令牌构造凭据：优先读取 JWT 的 exp，否则按 ttl 推算。"""

        token = (token or "").strip()
        if not token:
            raise ValidationError(code="EMPTY_TOKEN", message="token must not be empty")
        issued = now or utcnow()
        expires = _jwt_expiry(token)
        if expires is None and ttl:
            expires = issued + timedelta(seconds=ttl)
        return cls(token=token, issued_at=issued, expires_at=expires, source=source)

    def is_valid(self, now: Optional[datetime] = None, skew: float = 0.0) -> bool:
        if not self.token:
            return False
        if self.expires_at is None:
            return True
        current = now or utcnow()
        return current + timedelta(seconds=skew) < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "issued_at": self.issued_at.astimezone(timezone.utc).isoformat(),
            "expires_at": self.expires_at.astimezone(timezone.utc).isoformat() if self.expires_at else None,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Credential":
        expires = data.get("expires_at")
        return cls(
            token=data["token"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(expires) if expires else None,
            source=data.get("source") or "persisted",
        )


@dataclass(frozen=True)
class MessageContent:
    """消息内容：类型 + 有序的片段列表。"""

    content_type: str = "text"
    parts: Tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass(frozen=True)
class Message:
    """一条不可变的对话消息。"""

    id: str
    role: Role
    create_time: datetime
    content: MessageContent
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.text


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: str
    created_time: datetime


@dataclass(frozen=True)
class ConversationDetail:
    """完整会话，messages 在同一会话内只追加不修改。"""

    id: str
    title: str
    messages: Tuple[Message, ...]
    created_time: datetime
    updated_time: Optional[datetime] = None

    def summary(self) -> ConversationSummary:
        return ConversationSummary(id=self.id, title=self.title, created_time=self.created_time)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class ModelDescriptor:
    slug: str
    max_tokens: int
    title: str
    description: str = ""
    tags: FrozenSet[str] = frozenset()
    capabilities: Mapping[str, Any] = field(default_factory=dict)
    product_features: Mapping[str, Any] = field(default_factory=dict)
    enabled_tools: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class ModelList:
    models: Tuple[ModelDescriptor, ...]

    def get(self, slug: str) -> Optional[ModelDescriptor]:
        for m in self.models:
            if m.slug == slug:
                return m
        return None

    @property
    def slugs(self) -> Tuple[str, ...]:
        return tuple(m.slug for m in self.models)


@dataclass(frozen=True)
class PagedResult(Generic[T]):
    """分页结果，items 数量不超过 limit。"""

    items: Tuple[T, ...]
    total: int
    limit: int
    offset: int

    def __post_init__(self) -> None:
        if len(self.items) > self.limit:
            raise ValidationError(
                code="PAGE_OVERFLOW",
                message=f"page holds {len(self.items)} items but limit is {self.limit}",
            )

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass(frozen=True)
class Result(Generic[T]):
    """读操作的结果：要么 value，要么 error，不会跨边界抛异常。"""

    value: Optional[T] = None
    error: Optional[BusinessError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BusinessError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """成功时返回 value，失败时抛出 error。"""

        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
