"""流式响应的状态机与回调协议。"""

from relay_core.streaming.dispatcher import (
    ConversationStreamHandler,
    StreamCallbacks,
    StreamDispatcher,
    StreamState,
)

__all__ = ["ConversationStreamHandler", "StreamCallbacks", "StreamDispatcher", "StreamState"]
