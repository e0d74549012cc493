"""
Logging setup for the trip node from the `logging` section of config.json:
rotating file (plain or JSON lines) plus stdout.
"""
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

from config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Reconnection chatter from the broker client and the driver
NOISY_LOGGERS = (
    'aio_pika', 'aio_pika.robust_connection', 'aio_pika.robust_channel',
    'aiormq', 'aiormq.connection', 'asyncpg', 'asyncpg.pool',
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line; fields passed with ``extra=`` (device_id, outcome, ...) are kept."""

    _RESERVED = set(logging.LogRecord('', 0, '', 0, '', (), None).__dict__) | {'message', 'asctime'}

    def format(self, record):
        entry = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in self._RESERVED and not key.startswith('_')
        )
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _level(log_config: Dict[str, Any]) -> int:
    level = logging.getLevelName(str(log_config.get('level', 'INFO')).upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(log_config: Dict[str, Any]) -> RotatingFileHandler:
    log_file = log_config.get('log_file', os.path.join('logs', 'trip_node.log'))
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=log_config.get('max_bytes', 10 * 1024 * 1024),
        backupCount=log_config.get('backup_count', 5),
        encoding='utf-8',
    )
    handler.setFormatter(JSONFormatter() if log_config.get('json_format') else logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging_from_config() -> None:
    """Replace root handlers with the configured file + console handlers."""
    log_config = Config.load().get('logging', {})
    level = _level(log_config)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console)

    try:
        root_logger.addHandler(_file_handler(log_config))
    except OSError as e:
        logging.getLogger(__name__).warning(f"File logging disabled ({e}); logging to stdout only")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.CRITICAL)

    logging.getLogger(__name__).info(
        f"Logging configured: level={logging.getLevelName(level)}, "
        f"file={log_config.get('log_file')}, json={bool(log_config.get('json_format'))}"
    )
