import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path

from moonshot_core.config.settings import settings


# Authorization 头与 sk- 开头的密钥都不允许出现在日志里
_SECRET_PATTERNS = (
    re.compile(r"Bearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"sk-[A-Za-z0-9]{8,}"),
)


def scrub_secrets(text: str) -> str:
    """把文本中疑似 API 密钥的片段替换为占位符。"""

    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


class SecretScrubFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = scrub_secrets(record.getMessage())
        record.args = None
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            record.extra = {
                k: scrub_secrets(v) if isinstance(v, str) else v for k, v in extra.items()
            }
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("moonshot_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    logger.addFilter(SecretScrubFilter())

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "agent.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)

    if settings.log_to_stderr:
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(logging.WARNING)
        sh.setFormatter(JsonFormatter())
        logger.addHandler(sh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, **fields) -> None:
    """带结构化字段记录一条日志，字段会被 JsonFormatter 合并进输出。"""

    logger.log(level, message, extra={"extra": fields})
