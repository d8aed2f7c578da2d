"""Logging configuration for fhegov processes (server, CLI, demo)."""

import json
import logging
import sys

from .config import LoggingConf

_HANDLER_NAME = "fhegov"


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": round(record.created, 3),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


def configure_logging(conf: LoggingConf) -> logging.Logger:
    """Install one stream handler on the ``fhegov`` logger (idempotent)."""
    log = logging.getLogger("fhegov")
    log.setLevel(conf.level)
    for h in list(log.handlers):
        if h.get_name() == _HANDLER_NAME:
            log.removeHandler(h)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if conf.json_lines:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    log.addHandler(handler)
    return log
