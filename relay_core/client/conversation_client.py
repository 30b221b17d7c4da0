"""会话客户端。

ConversationClient 负责：

1. 从 CredentialStore 获取凭据，请求被拒绝（401/403）时作废凭据、重新登录并重试恰好一次。
2. send_conversation: 在线程池上发起流式调用，立即返回 StreamHandle，
   所有结果都通过 handler 回调交付（回调固定运行在该流的工作线程上）。
3. 读操作（会话列表、会话详情、模型列表）返回 Result，不向调用方抛异常。
4. 会话完成后把结果写入 ConversationRepository。

同一 handler 同一时刻只应有一个进行中的流；对同一 conversation_id 的并发发送需由调用方串行化。
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, TypeVar
from uuid import uuid4

from relay_core.auth.credential_store import CredentialStore
from relay_core.config.settings import settings as default_settings
from relay_core.domain.conversation import ConversationRepository
from relay_core.domain.exceptions import (
    AuthenticationFailed,
    BusinessError,
    CredentialRejected,
    NotFound,
    TransportError,
    ValidationError,
)
from relay_core.domain.models import (
    ConversationDetail,
    ConversationSummary,
    Credential,
    Message,
    MessageContent,
    ModelList,
    PagedResult,
    Result,
    utcnow,
)
from relay_core.infrastructure.logging.logger import logger
from relay_core.infrastructure.storage.json_store import JsonConversationRepository, validate_page
from relay_core.providers import create_transport, wire
from relay_core.providers.base import Closeable, Transport
from relay_core.streaming.dispatcher import ConversationStreamHandler, StreamDispatcher, StreamState

T = TypeVar("T")

AUTO_MODEL = "auto"


class StreamHandle:
    """send_conversation 的返回值，用于取消或等待一次发送。"""

    def __init__(self, dispatcher: StreamDispatcher):
        self._dispatcher = dispatcher
        self._lock = threading.Lock()
        self._response: Optional[Closeable] = None
        self._future: Optional[Future] = None
        self._cancelled = False

    @property
    def state(self) -> StreamState:
        return self._dispatcher.state

    @property
    def done(self) -> bool:
        return self._dispatcher.is_terminal

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """放弃此次发送：中断传输并屏蔽后续回调。"""

        with self._lock:
            self._cancelled = True
            response, future = self._response, self._future
            self._response = None
        abandoned = self._dispatcher.abandon()
        if future is not None:
            future.cancel()
        if response is not None:
            response.close()
        if abandoned:
            logger.info("Stream cancelled by caller")
        return abandoned

    def wait(self, timeout: Optional[float] = None) -> ConversationDetail:
        """阻塞等待结果：完成时返回会话，失败时抛出错误。"""

        if not self._dispatcher.wait(timeout):
            raise TransportError(code="WAIT_TIMEOUT", message=f"stream not finished after {timeout}s")
        if self._dispatcher.error is not None:
            raise self._dispatcher.error
        if self._dispatcher.result is None:
            raise TransportError(code="STREAM_CANCELLED", message="stream was cancelled")
        return self._dispatcher.result

    def _attach(self, response: Closeable) -> None:
        with self._lock:
            if not self._cancelled:
                self._response = response
                return
        response.close()

    def _bind(self, future: Future) -> None:
        with self._lock:
            self._future = future


class ConversationClient:
    def __init__(
        self,
        credentials: CredentialStore,
        transport: Optional[Transport] = None,
        repository: Optional[ConversationRepository] = None,
        settings=None,
    ):
        self._settings = settings or default_settings
        self._credentials = credentials
        self._transport = transport or create_transport(self._settings)
        self._repository = repository if repository is not None else JsonConversationRepository(persist=False)
        self._executor = ThreadPoolExecutor(
            max_workers=getattr(self._settings, "max_concurrent_streams", 4),
            thread_name_prefix="relay-stream",
        )
        self._models: Optional[ModelList] = None
        self._models_lock = threading.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self._credentials.is_authenticated

    @property
    def repository(self) -> ConversationRepository:
        return self._repository

    def send_conversation(
        self,
        message: str,
        handler: ConversationStreamHandler,
        conversation_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> StreamHandle:
        """发送一条消息并以流式方式接收回复，立即返回。

        所有结果与错误都只通过 handler 交付，本方法本身不抛业务异常。
        """

        dispatcher = StreamDispatcher(
            handler,
            accumulate=getattr(self._settings, "stream_accumulate", "append"),
            dedupe_by_sequence=getattr(self._settings, "stream_dedupe_by_sequence", True),
        )
        handle = StreamHandle(dispatcher)
        model_slug = model or getattr(self._settings, "default_model", AUTO_MODEL)
        try:
            future = self._executor.submit(self._run_turn, message, conversation_id, model_slug, dispatcher, handle)
        except RuntimeError as e:
            # 客户端已关闭
            dispatcher.fail(TransportError(code="CLIENT_CLOSED", message=str(e)))
            return handle
        handle._bind(future)

        def on_done(f: Future) -> None:
            # 排队中的任务被 close() 取消时，仍要给 handler 一个终态
            if f.cancelled():
                dispatcher.fail(TransportError(code="CLIENT_CLOSED", message="client closed before the stream started"))

        future.add_done_callback(on_done)
        return handle

    def get_conversation_history(self, offset: int = 0, limit: int = 20) -> Result[PagedResult[ConversationSummary]]:
        try:
            validate_page(offset, limit)
            page = self._repository.list(offset, limit, fetch=self._fetch_history_page)
        except BusinessError as e:
            return Result.failure(e)
        return Result.success(page)

    def get_conversation_by_id(self, conversation_id: str) -> Result[ConversationDetail]:
        try:
            detail = self._fetch_detail(conversation_id)
        except BusinessError as e:
            return Result.failure(e)
        self._remember(detail)
        return Result.success(detail)

    def get_models(self, refresh: bool = False) -> Result[ModelList]:
        try:
            models = self._load_models(refresh)
        except BusinessError as e:
            return Result.failure(e)
        return Result.success(models)

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> "ConversationClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- 内部实现 ----

    def _run_turn(
        self,
        text: str,
        conversation_id: Optional[str],
        model: str,
        dispatcher: StreamDispatcher,
        handle: StreamHandle,
    ) -> None:
        log_ctx = {"conversation_id": conversation_id, "model": model}
        try:
            if not text or not text.strip():
                raise ValidationError(code="EMPTY_MESSAGE", message="message must not be empty")
            base = self._fetch_detail(conversation_id) if conversation_id else None
            if model != AUTO_MODEL and getattr(self._settings, "validate_model", True):
                if self._load_models(False).get(model) is None:
                    raise NotFound(code="MODEL_NOT_FOUND", message=f"unknown model {model!r}", model=model)
            if handle.cancelled:
                return
            user_message = Message(
                id=str(uuid4()),
                role="user",
                create_time=utcnow(),
                content=MessageContent(content_type="text", parts=(text,)),
            )
            last = base.last_message if base is not None else None
            body = wire.build_turn_payload(
                text,
                model,
                conversation_id=conversation_id,
                parent_message_id=last.id if last else None,
                message_id=user_message.id,
            )
            dispatcher.begin(user_message, base)
            logger.info("Stream started", extra={"extra": log_ctx})

            def stream(credential: Credential) -> None:
                feed = self._transport.stream_events(
                    self._transport.endpoints.send,
                    credential.token,
                    body,
                    on_open=handle._attach,
                )
                dispatcher.consume(feed)

            self._with_credential(stream)
        except BusinessError as e:
            if not handle.cancelled:
                logger.warning(f"Stream failed: {e.message}", extra={"extra": {**log_ctx, "code": e.code}})
            dispatcher.fail(e)
        except Exception as e:
            if handle.cancelled:
                dispatcher.fail(TransportError(code="STREAM_CANCELLED", message=str(e)))
            else:
                logger.exception("Stream crashed", extra={"extra": log_ctx})
                dispatcher.fail(TransportError(code="INTERNAL_ERROR", message=str(e)))
        if dispatcher.state is StreamState.COMPLETED and dispatcher.result is not None:
            self._remember(dispatcher.result)
            logger.info("Stream completed", extra={"extra": {**log_ctx, "conversation_id": dispatcher.result.id}})

    def _remember(self, detail: ConversationDetail) -> None:
        """写入本地缓存；缓存失败只记录日志，后端数据仍然有效。"""

        try:
            self._repository.upsert(detail)
        except BusinessError as e:
            logger.warning(
                f"Failed to cache conversation: {e.message}",
                extra={"extra": {"conversation_id": detail.id, "code": e.code}},
            )

    def _with_credential(self, call: Callable[[Credential], T]) -> T:
        """携带凭据执行 call；被拒绝时重新登录并重试恰好一次。"""

        credential = self._credentials.get_valid_credential()
        try:
            return call(credential)
        except CredentialRejected:
            logger.info("Credential rejected, re-authenticating once")
            self._credentials.invalidate(credential)
        credential = self._credentials.get_valid_credential()
        try:
            return call(credential)
        except CredentialRejected as e:
            self._credentials.invalidate(credential)
            raise AuthenticationFailed(
                code="AUTH_REJECTED",
                message=f"credential rejected after re-authentication: {e.message}",
                http_status=e.http_status,
            ) from e

    def _fetch_history_page(self, offset: int, limit: int) -> PagedResult[ConversationSummary]:
        data = self._with_credential(
            lambda cred: self._transport.get_json(
                self._transport.endpoints.conversations,
                cred.token,
                params={"offset": offset, "limit": limit},
            )
        )
        return wire.parse_history_page(data, offset, limit)

    def _fetch_detail(self, conversation_id: str) -> ConversationDetail:
        if not conversation_id or not conversation_id.strip():
            raise ValidationError(code="INVALID_CONVERSATION_ID", message="conversation id must not be empty")
        try:
            data = self._with_credential(
                lambda cred: self._transport.get_json(
                    self._transport.endpoints.conversation_path(conversation_id),
                    cred.token,
                )
            )
        except NotFound as e:
            raise NotFound(
                code="CONVERSATION_NOT_FOUND",
                message=f"conversation {conversation_id!r} not found",
                conversation_id=conversation_id,
            ) from e
        detail = wire.parse_detail(data)
        if detail.id != conversation_id:
            raise NotFound(
                code="CONVERSATION_NOT_FOUND",
                message=f"backend returned {detail.id!r} for {conversation_id!r}",
                conversation_id=conversation_id,
            )
        return detail

    def _load_models(self, refresh: bool) -> ModelList:
        with self._models_lock:
            if self._models is not None and not refresh:
                return self._models
        data = self._with_credential(
            lambda cred: self._transport.get_json(self._transport.endpoints.models, cred.token)
        )
        models = wire.parse_models(data)
        with self._models_lock:
            self._models = models
        return models
