from __future__ import annotations

import json
import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

# loggers whose records also go to a per-channel trail, next to app.log
CHANNEL_FILES = {
    "stockrecon.ledger": "stock.log",
    "stockrecon.transfers": "transfers.log",
    "stockrecon.sales": "sales.log",
}

_EVENT = re.compile(r"^[a-z]+(?:_[a-z]+)+$")
_FIELD = re.compile(r"(\w+)=(\S+)")


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Stock messages read `event_name key=value ...`; the leading event name and
    the key/value pairs are lifted into `event` and `fields`.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        head = message.split(" ", 1)[0]
        if _EVENT.match(head):
            payload["event"] = head
            fields = dict(_FIELD.findall(message))
            if fields:
                payload["fields"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _handler(path: Path, level: int) -> RotatingFileHandler:
    fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    fh.setLevel(level)
    return fh


def setup_logging(logs_dir: Path, level: int = logging.INFO) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        return

    root.addHandler(_handler(logs_dir / "app.log", level))
    root.addHandler(_handler(logs_dir / "errors.log", logging.ERROR))

    for name, filename in CHANNEL_FILES.items():
        logger = logging.getLogger(name)
        logger.addHandler(_handler(logs_dir / filename, level))
