"""单轮对话的流式事件分发。

StreamDispatcher 是一个状态机：

    IDLE -> STREAMING -> COMPLETED | FAILED
                      -> CANCELLED（调用方放弃）

- STREAMING 期间，消息片段被合并进一个运行中的 ConversationDetail。
- 事件携带 seq 时按 seq 去重，重复或迟到的片段被丢弃；否则按到达顺序单调追加。
- 收到终止标记且结果完整时进入 COMPLETED，回调 on_conversation_complete 恰好一次。
- 传输错误、畸形数据、认证失败进入 FAILED，回调 on_error 恰好一次。
- 进入任一终态或被放弃后不再触发任何回调。

回调在调用 consume()/fail() 的线程上执行（ConversationClient 中即该流的工作线程）。
"""

import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from relay_core.domain.exceptions import BusinessError, MalformedResponse, TransportError
from relay_core.domain.models import ConversationDetail, Message, MessageContent, utcnow
from relay_core.infrastructure.logging.logger import logger
from relay_core.providers import wire


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)


class ConversationStreamHandler(Protocol):
    def on_conversation_complete(self, conversation: ConversationDetail) -> None:
        ...

    def on_error(self, error: BusinessError) -> None:
        ...


@dataclass
class StreamCallbacks:
    """用普通函数组装一个 handler。on_update 为可选的进度回调。"""

    on_complete: Callable[[ConversationDetail], None]
    on_failure: Callable[[BusinessError], None]
    on_progress: Optional[Callable[[ConversationDetail], None]] = None

    def on_conversation_complete(self, conversation: ConversationDetail) -> None:
        self.on_complete(conversation)

    def on_error(self, error: BusinessError) -> None:
        self.on_failure(error)

    def on_update(self, conversation: ConversationDetail) -> None:
        if self.on_progress is not None:
            self.on_progress(conversation)


class StreamDispatcher:
    def __init__(
        self,
        handler: ConversationStreamHandler,
        accumulate: str = "append",
        dedupe_by_sequence: bool = True,
    ):
        if accumulate not in ("append", "replace"):
            raise ValueError(f"unknown accumulate mode {accumulate!r}")
        self._handler = handler
        self._accumulate = accumulate
        self._dedupe = dedupe_by_sequence
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._state = StreamState.IDLE
        self._conversation_id: Optional[str] = None
        self._title = ""
        self._created_time = utcnow()
        self._history: Tuple[Message, ...] = ()
        self._streamed: Dict[str, Message] = {}
        self._last_seq: Optional[int] = None
        self.result: Optional[ConversationDetail] = None
        self.error: Optional[BusinessError] = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def begin(self, user_message: Message, base: Optional[ConversationDetail] = None) -> None:
        """进入 STREAMING。base 为续写的已有会话，user_message 是本轮发出的消息。"""

        with self._lock:
            if self._state is not StreamState.IDLE:
                return
            if base is not None:
                self._conversation_id = base.id
                self._title = base.title
                self._created_time = base.created_time
                self._history = base.messages + (user_message,)
            else:
                self._history = (user_message,)
            self._state = StreamState.STREAMING

    def consume(self, feed: Iterable[str]) -> StreamState:
        """消费 SSE data 字符串直到终止标记或进入终态。

        传输层在迭代过程中抛出的异常原样向上传播，由调用方 fail()。
        """

        try:
            for data in feed:
                if self.is_terminal:
                    break
                if data == wire.DONE_MARKER:
                    self.finish()
                    break
                try:
                    payload = json.loads(data)
                    event = wire.parse_stream_event(payload)
                except ValueError as e:
                    self.fail(MalformedResponse(code="MALFORMED_EVENT", message=f"invalid event payload: {e}"))
                    break
                except MalformedResponse as e:
                    self.fail(e)
                    break
                if event is not None:
                    self.feed(event)
            else:
                if self._state is StreamState.STREAMING:
                    self.fail(MalformedResponse(code="TRUNCATED_STREAM", message="stream ended before terminal marker"))
        finally:
            # 提前退出时关闭生成器，释放底层连接
            close = getattr(feed, "close", None)
            if close is not None:
                close()
        return self._state

    def feed(self, event: wire.StreamEvent) -> None:
        if event.kind == "error":
            self.fail(TransportError(code="BACKEND_ERROR", message=event.error or "backend reported an error"))
            return
        with self._lock:
            if self._state is not StreamState.STREAMING:
                return
            if self._dedupe and event.seq is not None:
                if self._last_seq is not None and event.seq <= self._last_seq:
                    logger.debug("Dropping stale fragment", extra={"extra": {"seq": event.seq}})
                    return
                self._last_seq = event.seq
            conflict = self._apply(event)
            if conflict is None:
                update = self._build()
        if conflict is not None:
            self.fail(conflict)
            return
        on_update = getattr(self._handler, "on_update", None)
        if event.kind == "message" and on_update is not None and self._state is StreamState.STREAMING:
            self._invoke(on_update, update)

    def finish(self) -> None:
        """收到终止标记：结果完整则 COMPLETED，否则 FAILED。"""

        with self._lock:
            if self._state is not StreamState.STREAMING:
                return
            problem = None
            if not self._conversation_id:
                problem = "stream finished without a conversation id"
            elif not any(m.role == "assistant" for m in self._streamed.values()):
                problem = "stream finished without an assistant message"
            if problem is None:
                self._state = StreamState.COMPLETED
                self.result = self._build()
        if problem is not None:
            self.fail(MalformedResponse(code="INCOMPLETE_STREAM", message=problem))
            return
        self._invoke(self._handler.on_conversation_complete, self.result)
        self._settled.set()

    def fail(self, error: BusinessError) -> None:
        with self._lock:
            if self._state not in (StreamState.IDLE, StreamState.STREAMING):
                return
            self._state = StreamState.FAILED
            self.error = error
        self._invoke(self._handler.on_error, error)
        self._settled.set()

    def abandon(self) -> bool:
        """调用方放弃此流：之后不再触发回调。返回是否由本次调用终止。"""

        with self._lock:
            if self._state in TERMINAL_STATES:
                return False
            self._state = StreamState.CANCELLED
        self._settled.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._settled.wait(timeout)

    def _apply(self, event: wire.StreamEvent) -> Optional[BusinessError]:
        if event.conversation_id:
            if self._conversation_id is None:
                self._conversation_id = event.conversation_id
            elif self._conversation_id != event.conversation_id:
                return MalformedResponse(
                    code="CONVERSATION_MISMATCH",
                    message=f"event for {event.conversation_id} inside stream of {self._conversation_id}",
                )
        if event.kind == "title" and event.title is not None:
            self._title = event.title
        elif event.kind == "message" and event.message is not None:
            self._merge(event.message)
        return None

    def _merge(self, message: Message) -> None:
        if any(m.id == message.id for m in self._history):
            # 已发送/历史消息不可修改（例如后端回显的用户消息）
            return
        current = self._streamed.get(message.id)
        if current is None:
            self._streamed[message.id] = message
            return
        if self._accumulate == "replace":
            parts = message.content.parts
        elif not current.content.parts:
            parts = message.content.parts
        elif not message.content.parts:
            parts = current.content.parts
        else:
            head = current.content.parts
            tail = message.content.parts
            parts = head[:-1] + (head[-1] + tail[0],) + tail[1:]
        self._streamed[message.id] = Message(
            id=current.id,
            role=current.role,
            create_time=current.create_time,
            content=MessageContent(content_type=message.content.content_type, parts=parts),
            metadata={**current.metadata, **message.metadata},
        )

    def _build(self) -> ConversationDetail:
        return ConversationDetail(
            id=self._conversation_id or "",
            title=self._title,
            messages=self._history + tuple(self._streamed.values()),
            created_time=self._created_time,
            updated_time=utcnow(),
        )

    def _invoke(self, callback: Callable, arg) -> None:
        try:
            callback(arg)
        except Exception:
            logger.exception("Stream handler callback raised")
