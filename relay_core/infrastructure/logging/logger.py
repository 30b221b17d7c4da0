import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from relay_core.config.settings import settings


def mask_token(token: str | None) -> str:
    """只保留令牌首尾少量字符，日志中不出现完整凭据。"""
    if not token:
        return "<none>"
    if len(token) <= 12:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("relay_core")
    logger.setLevel(logging.INFO)
    if any(getattr(h, "_relay_json", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "relay.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh._relay_json = True  # type: ignore[attr-defined]

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            msg = record.getMessage()
            if settings.log_redact_content:
                msg = (msg or "")[:64]
            payload = {
                "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "name": record.name,
                "thread": record.threadName,
                "msg": msg,
            }
            extra = getattr(record, "extra", None)
            if isinstance(extra, dict):
                payload.update(extra)
            if record.exc_info:
                payload["exc"] = self.formatException(record.exc_info)
            return json.dumps(payload, ensure_ascii=False, default=str)

    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()
