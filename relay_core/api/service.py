"""对外 API 服务模块。

提供简化的函数接口供上层应用调用（阻塞式，内部复用默认客户端）。
"""

from typing import Any, Dict, Optional

from relay_core.auth.authenticator import ConsoleAuthenticator, StaticTokenAuthenticator
from relay_core.auth.credential_store import CredentialStore
from relay_core.client.conversation_client import ConversationClient
from relay_core.config.settings import settings
from relay_core.domain.models import ConversationDetail
from relay_core.infrastructure.logging.logger import logger
from relay_core.infrastructure.storage.json_store import JsonConversationRepository
from relay_core.streaming.dispatcher import StreamCallbacks


_client: Optional[ConversationClient] = None


def get_default_client() -> ConversationClient:
    """获取默认的 ConversationClient 实例（单例）。"""
    global _client
    if _client is None:
        if settings.access_token:
            authenticator = StaticTokenAuthenticator(settings.access_token, ttl=settings.credential_ttl)
        elif settings.login_surface == "tk":
            # tkinter 只在需要窗口时导入，无图形环境也能使用其他登录方式
            from relay_core.gui.login_window import TkLoginAuthenticator

            authenticator = TkLoginAuthenticator(
                login_url=_login_url(),
                ttl=settings.credential_ttl,
                keep_visible=settings.debug_keep_login_visible,
            )
        else:
            authenticator = ConsoleAuthenticator(
                login_url=_login_url(),
                ttl=settings.credential_ttl,
                keep_visible=settings.debug_keep_login_visible,
            )
        _client = ConversationClient(
            credentials=CredentialStore(authenticator, settings=settings),
            repository=JsonConversationRepository(root=settings.storage_root),
            settings=settings,
        )
    return _client


def reset_default_client() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None


def send_message(
    text: str,
    conversation_id: Optional[str] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """发送一条消息并阻塞等待完整回复。

    Args:
        text: 用户输入内容
        conversation_id: 会话ID（可选，不提供则创建新会话）
        model: 模型 slug（可选，默认取配置，auto 表示由后端选择）
        timeout: 最长等待秒数

    Returns:
        包含会话ID、标题、助手回复与全部消息的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    client = get_default_client()
    handle = client.send_conversation(
        text,
        StreamCallbacks(on_complete=lambda _: None, on_failure=lambda _: None),
        conversation_id=conversation_id,
        model=model,
    )
    try:
        detail = handle.wait(timeout)
    except Exception as e:
        handle.cancel()
        logger.error(f"Send failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    reply = detail.last_message
    return {
        "conversation_id": detail.id,
        "title": detail.title,
        "reply": reply.text if reply and reply.role == "assistant" else "",
        "messages": _messages(detail),
    }


def list_conversations(offset: int = 0, limit: int = 20) -> Dict[str, Any]:
    """分页列出会话。"""
    page = get_default_client().get_conversation_history(offset, limit).unwrap()
    return {
        "items": [
            {"id": s.id, "title": s.title, "created_at": s.created_time.isoformat()}
            for s in page.items
        ],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
    }


def get_conversation_messages(conversation_id: str) -> list[Dict[str, Any]]:
    """获取会话的所有消息。"""
    detail = get_default_client().get_conversation_by_id(conversation_id).unwrap()
    return _messages(detail)


def list_models() -> list[Dict[str, Any]]:
    models = get_default_client().get_models().unwrap()
    return [
        {
            "slug": m.slug,
            "title": m.title,
            "max_tokens": m.max_tokens,
            "tags": sorted(m.tags),
        }
        for m in models.models
    ]


def _messages(detail: ConversationDetail) -> list[Dict[str, Any]]:
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.text,
            "content_type": m.content.content_type,
            "created_at": m.create_time.isoformat(),
        }
        for m in detail.messages
    ]


def _login_url() -> str:
    return settings.base_url.split("/backend-api")[0]
