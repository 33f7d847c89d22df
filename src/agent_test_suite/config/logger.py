import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from agent_test_suite.config.settings import settings

LOGGER_NAME = "agent_test_suite"

# LogRecord 自带属性，格式化时不当作上下文字段输出
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """一行一个 JSON 对象"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """开发环境可读格式：message key=value ..."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = _context_fields(record)
        if context:
            text += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return text


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class StructuredLogger:
    """支持关键字上下文的 logger：logger.info("msg", batch_id=...)"""

    def __init__(self, name: str = LOGGER_NAME):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: Any = None, **context: Any):
        if self._logger.isEnabledFor(level):
            self._logger.log(level, msg, exc_info=exc_info, extra=context, stacklevel=3)

    def debug(self, msg: str, **context: Any):
        self._log(logging.DEBUG, msg, **context)

    def info(self, msg: str, **context: Any):
        self._log(logging.INFO, msg, **context)

    def warning(self, msg: str, **context: Any):
        self._log(logging.WARNING, msg, **context)

    def error(self, msg: str, exc_info: Any = None, **context: Any):
        self._log(logging.ERROR, msg, exc_info=exc_info, **context)

    def exception(self, msg: str, **context: Any):
        self._log(logging.ERROR, msg, exc_info=True, **context)


def setup_logging(level: str = None, fmt: str = None) -> None:
    """配置根 logger（应用启动时调用一次）"""

    level = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # SQLAlchemy 的 SQL 回显只在 DEBUG 时保留
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )


logger = StructuredLogger()
