# utils/logging_config.py

import json
import logging
import logging.handlers
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5


def setup_logging(log_level: str = "INFO",
                  log_dir: Optional[str] = "logs",
                  name: str = "photo_index") -> logging.Logger:
    """
    Configure the root logger with console, rotating file and JSON handlers

    Module loggers created with logging.getLogger(__name__) propagate here.
    Pass log_dir=None for console output only.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        if getattr(handler, '_photo_index_handler', False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers = [console_handler]

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        # File handler (rotating)
        file_handler = logging.handlers.RotatingFileHandler(
            path / f"{name}.log", maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

        # JSON handler for structured logs
        json_handler = logging.handlers.RotatingFileHandler(
            path / f"{name}_structured.json", maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT
        )
        json_handler.setLevel(logging.INFO)
        json_handler.setFormatter(JSONFormatter())
        handlers.extend([file_handler, json_handler])

    for handler in handlers:
        handler._photo_index_handler = True
        root.addHandler(handler)

    return logging.getLogger(name)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class PerformanceLogger:
    """
    Log performance metrics
    """

    def __init__(self):
        self.metrics = []
        self._lock = threading.Lock()

    def log_metric(self, operation: str, duration: float, **metadata):
        """Log a performance metric"""
        metric = {
            'timestamp': datetime.now().isoformat(),
            'operation': operation,
            'duration_seconds': duration,
            **metadata
        }
        with self._lock:
            self.metrics.append(metric)

    def get_statistics(self, operation: str = None) -> dict:
        """Get statistics for operations"""
        with self._lock:
            if operation:
                durations = [m['duration_seconds'] for m in self.metrics
                             if m['operation'] == operation]
            else:
                durations = [m['duration_seconds'] for m in self.metrics]

        if not durations:
            return {}

        return {
            'count': len(durations),
            'mean': float(np.mean(durations)),
            'median': float(np.median(durations)),
            'min': float(np.min(durations)),
            'max': float(np.max(durations)),
            'std': float(np.std(durations)),
            'total': float(np.sum(durations))
        }
