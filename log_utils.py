import json
import logging
import os
import sys
import time
from typing import TextIO

from settings import settings

_DEFAULT_FMT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure(level: str | None = None, stream: TextIO | None = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", settings.LOG_LEVEL)).upper()
    logging.basicConfig(
        level=level,
        format=_DEFAULT_FMT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(stream or sys.stdout)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLevelName(level)))


def json_log(record: logging.LogRecord) -> str:
    return json.dumps(
        {
            "ts": time.time(),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
    )


__all__ = ["configure", "json_log"]
