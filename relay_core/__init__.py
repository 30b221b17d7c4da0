"""Relay 客户端顶层包。

该包提供一个基于会话凭据的流式对话客户端，
包括配置加载、领域模型、凭据存储与交互式登录、
httpx 传输层、流式事件分发以及本地会话缓存等能力。
"""

from relay_core.client import ConversationClient, StreamHandle
from relay_core.streaming import StreamCallbacks

__all__ = ["ConversationClient", "StreamHandle", "StreamCallbacks"]
