import json
import logging
import sys
from typing import Any

_DATEFMT = "%Y-%m-%dT%H:%M:%S"
_PRETTY = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tracebacks included as the ``exc`` field."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(log_level: str, log_format: str = "pretty") -> None:
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter(datefmt=_DATEFMT))
    else:
        handler.setFormatter(logging.Formatter(_PRETTY, datefmt=_DATEFMT))
    logging.basicConfig(level=log_level.upper(), handlers=[handler], force=True)
