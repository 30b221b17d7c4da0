from typing import Callable, Optional, Protocol, Union

from .models import ConversationDetail, ConversationSummary, PagedResult


# 缓存未命中时回源后端的分页读取函数
PageFetcher = Callable[[int, int], PagedResult[ConversationSummary]]


class ConversationRepository(Protocol):
    def upsert(self, conversation: Union[ConversationSummary, ConversationDetail]) -> None:
        ...

    def list(
        self,
        offset: int,
        limit: int,
        fetch: Optional[PageFetcher] = None,
    ) -> PagedResult[ConversationSummary]:
        ...

    def get(self, conversation_id: str) -> Optional[ConversationDetail]:
        ...

    def get_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        ...

    def clear(self) -> None:
        ...
