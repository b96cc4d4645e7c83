"""结构化日志。

每条日志写成一行 JSON（logs/gateway.log），调用方通过 log_event 传入
trace_id、session_id 等上下文字段。开启 log_redact_content 后，
消息正文与携带用户内容的字段（搜索词、工具参数、错误文本等）只保留前 64 个字符。
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from agent_gateway.config.settings import settings

REDACT_LENGTH = 64
CONTENT_FIELDS = frozenset({"query", "content", "arguments", "error", "text"})


def redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """截断携带用户内容的字段，其他字段原样保留。"""
    out = dict(payload)
    for key in CONTENT_FIELDS & out.keys():
        value = out[key]
        if value is not None:
            out[key] = str(value)[:REDACT_LENGTH]
    return out


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        extra = getattr(record, "extra", None)
        fields = extra if isinstance(extra, dict) else {}
        if settings.log_redact_content:
            msg = (msg or "")[:REDACT_LENGTH]
            fields = redact(fields)
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("agent_gateway")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "gateway.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """以结构化字段记录一条日志（字段写入 JSON 行）。"""
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
