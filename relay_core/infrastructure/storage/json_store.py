import hashlib
import json
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from relay_core.config.settings import settings
from relay_core.domain.conversation import ConversationRepository, PageFetcher
from relay_core.domain.exceptions import BusinessError, MalformedResponse, ValidationError
from relay_core.domain.models import ConversationDetail, ConversationSummary, PagedResult
from relay_core.infrastructure.logging.logger import logger
from relay_core.providers import wire

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def validate_page(offset: int, limit: int) -> None:
    if not isinstance(offset, int) or offset < 0:
        raise ValidationError(code="INVALID_OFFSET", message=f"offset must be >= 0, got {offset!r}")
    if not isinstance(limit, int) or limit <= 0:
        raise ValidationError(code="INVALID_LIMIT", message=f"limit must be > 0, got {limit!r}")


class JsonConversationRepository(ConversationRepository):
    """会话的本地缓存与索引。

    后端才是权威数据源，这里只用于分页展示与快速查找：
    - 列表按后端返回的位置索引缓存，缺页时通过 fetch 回源。
    - 新会话（本地 upsert 的未知 id）插入到列表最前面。
    - persist=True 时把摘要和详情落盘到 <root>/conversations/。
    """

    def __init__(self, root: str | Path | None = None, persist: bool = True):
        self._lock = threading.RLock()
        self._summaries: Dict[str, ConversationSummary] = {}
        self._details: Dict[str, ConversationDetail] = {}
        self._positions: Dict[int, str] = {}
        self._total: Optional[int] = None
        self._conv_root: Optional[Path] = None
        if persist:
            self._conv_root = Path(root or settings.storage_root).resolve() / "conversations"
            self._conv_root.mkdir(parents=True, exist_ok=True)
            self._load()

    def upsert(self, conversation: Union[ConversationSummary, ConversationDetail]) -> None:
        if isinstance(conversation, ConversationDetail):
            summary = conversation.summary()
        else:
            summary = conversation
        with self._lock:
            is_new = summary.id not in self._summaries
            if isinstance(conversation, ConversationDetail):
                previous = self._details.get(conversation.id)
                if previous is not None and not _is_prefix(previous, conversation):
                    logger.info(
                        "Conversation history diverged from cache, replacing",
                        extra={"extra": {"conversation_id": conversation.id}},
                    )
                self._details[conversation.id] = conversation
            elif summary.id in self._details:
                # 只更新摘要时保留详情，标题以最新摘要为准
                detail = self._details[summary.id]
                if detail.title != summary.title:
                    self._details[summary.id] = _retitle(detail, summary.title)
            self._summaries[summary.id] = summary
            if is_new and self._total is not None and summary.id not in self._positions.values():
                self._positions = {0: summary.id, **{i + 1: cid for i, cid in self._positions.items()}}
                self._total += 1
            self._persist(conversation if isinstance(conversation, ConversationDetail) else None)

    def list(
        self,
        offset: int,
        limit: int,
        fetch: Optional[PageFetcher] = None,
    ) -> PagedResult[ConversationSummary]:
        """读取一页会话摘要：缓存命中直接返回，否则回源 fetch。"""

        validate_page(offset, limit)
        with self._lock:
            cached = self._cached_page(offset, limit)
            if cached is not None:
                return cached
            if fetch is None:
                return self._local_page(offset, limit)
        logger.info("History cache miss", extra={"extra": {"offset": offset, "limit": limit}})
        page = fetch(offset, limit)
        with self._lock:
            self._total = page.total
            for i, item in enumerate(page.items):
                self._positions[page.offset + i] = item.id
                self._summaries[item.id] = item
            self._persist(None)
        return page

    def get(self, conversation_id: str) -> Optional[ConversationDetail]:
        with self._lock:
            return self._details.get(conversation_id)

    def get_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        with self._lock:
            return self._summaries.get(conversation_id)

    def invalidate_listing(self) -> None:
        """丢弃位置索引，下一次 list 会回源后端。"""
        with self._lock:
            self._positions.clear()
            self._total = None

    def clear(self) -> None:
        with self._lock:
            self._summaries.clear()
            self._details.clear()
            self.invalidate_listing()
            if self._conv_root is not None:
                for path in self._conv_root.glob("*.json"):
                    path.unlink(missing_ok=True)

    def _cached_page(self, offset: int, limit: int) -> Optional[PagedResult[ConversationSummary]]:
        if self._total is None:
            return None
        end = min(offset + limit, self._total)
        items: List[ConversationSummary] = []
        for pos in range(offset, end):
            cid = self._positions.get(pos)
            summary = self._summaries.get(cid) if cid else None
            if summary is None:
                return None
            items.append(summary)
        return PagedResult(items=tuple(items), total=self._total, limit=limit, offset=offset)

    def _local_page(self, offset: int, limit: int) -> PagedResult[ConversationSummary]:
        ordered = sorted(self._summaries.values(), key=lambda s: s.created_time, reverse=True)
        return PagedResult(
            items=tuple(ordered[offset:offset + limit]),
            total=len(ordered),
            limit=limit,
            offset=offset,
        )

    def _persist(self, detail: Optional[ConversationDetail]) -> None:
        if self._conv_root is None:
            return
        if detail is not None:
            self._write_json(self._detail_path(detail.id), wire.detail_to_payload(detail))
        index = [wire.summary_to_payload(s) for s in self._summaries.values()]
        self._write_json(self._conv_root / "index.json", {"items": index})

    def _load(self) -> None:
        assert self._conv_root is not None
        index_path = self._conv_root / "index.json"
        if index_path.exists():
            try:
                data = json.loads(index_path.read_text(encoding="utf-8"))
                for item in data.get("items") or []:
                    summary = wire.parse_summary(item)
                    self._summaries[summary.id] = summary
            except (OSError, ValueError, MalformedResponse) as e:
                logger.warning(f"Ignoring unreadable conversation index: {e}")
        for path in self._conv_root.glob("*.json"):
            if path.name == "index.json":
                continue
            try:
                detail = wire.parse_detail(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, MalformedResponse) as e:
                logger.warning(f"Skipping unreadable conversation file {path.name}: {e}")
                continue
            self._details[detail.id] = detail
            self._summaries.setdefault(detail.id, detail.summary())

    def _detail_path(self, conversation_id: str) -> Path:
        assert self._conv_root is not None
        if _SAFE_ID.match(conversation_id) and conversation_id != "index":
            name = conversation_id
        else:
            name = "c-" + hashlib.sha1(conversation_id.encode("utf-8")).hexdigest()
        return self._conv_root / f"{name}.json"

    def _write_json(self, path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


def _is_prefix(old: ConversationDetail, new: ConversationDetail) -> bool:
    old_ids = [m.id for m in old.messages]
    return old_ids == [m.id for m in new.messages[:len(old_ids)]]


def _retitle(detail: ConversationDetail, title: str) -> ConversationDetail:
    return ConversationDetail(
        id=detail.id,
        title=title,
        messages=detail.messages,
        created_time=detail.created_time,
        updated_time=detail.updated_time,
    )
