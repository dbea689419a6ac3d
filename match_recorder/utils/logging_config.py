"""Structured logging configuration for the match stream recorder."""

import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Context fields lifted to the top level of each JSON entry
CONTEXT_FIELDS = ('request_id', 'recording_id', 'schedule_id', 'match_id', 'title')

_STANDARD_FIELDS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info',
    'exc_text', 'stack_info', 'message', 'taskName',
})


class StructuredFormatter(logging.Formatter):
    """Formatter that renders each record as one JSON object."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'function': record.funcName,
            'line': record.lineno,
            'process_id': record.process,
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        if self.include_extra_fields:
            extra_fields = {}
            for key, value in record.__dict__.items():
                if key in _STANDARD_FIELDS or key in CONTEXT_FIELDS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    extra_fields[key] = value
                except (TypeError, ValueError):
                    extra_fields[key] = str(value)
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Pass only records that carry one of the given context attributes."""

    def __init__(self, attribute: str = 'recording_id'):
        super().__init__()
        self.attribute = attribute

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, self.attribute, None) is not None


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_console: bool = True,
    enable_file: bool = True,
    enable_structured: bool = True,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> None:
    """Set up logging for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (defaults to $APP_LOG_DIR or ./logs)
        enable_console: Whether to enable console logging
        enable_file: Whether to enable rotating file logging
        enable_structured: Whether to use structured JSON logging
        max_file_size: Maximum size for log files before rotation
        backup_count: Number of rotated files to keep
    """
    if log_dir is None:
        log_dir = os.getenv("APP_LOG_DIR", "./logs")

    log_path = Path(log_dir)
    if enable_file:
        log_path.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = 'structured' if enable_structured else 'standard'

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            },
            'structured': {
                '()': StructuredFormatter,
                'include_extra_fields': True
            }
        },
        'filters': {
            'recording_context': {
                '()': ContextFilter,
                'attribute': 'recording_id'
            },
            'schedule_context': {
                '()': ContextFilter,
                'attribute': 'schedule_id'
            }
        },
        'handlers': {},
        'loggers': {
            '': {
                'level': numeric_level,
                'handlers': []
            },
            'match_recorder': {
                'level': numeric_level,
                'handlers': [],
                'propagate': False
            },
            'uvicorn': {
                'level': 'INFO',
                'handlers': [],
                'propagate': False
            },
            'botocore': {
                'level': 'WARNING',
                'handlers': [],
                'propagate': False
            }
        }
    }

    handlers_to_add = []

    if enable_console:
        config['handlers']['console'] = {
            'class': 'logging.StreamHandler',
            'level': numeric_level,
            'formatter': formatter,
            'stream': 'ext://sys.stdout'
        }
        handlers_to_add.append('console')

    if enable_file:
        def rotating(filename, level, filters=None):
            handler = {
                'class': 'logging.handlers.RotatingFileHandler',
                'level': level,
                'formatter': formatter,
                'filename': str(log_path / filename),
                'maxBytes': max_file_size,
                'backupCount': backup_count,
                'encoding': 'utf-8'
            }
            if filters:
                handler['filters'] = filters
            return handler

        config['handlers']['main_file'] = rotating('app.log', numeric_level)
        config['handlers']['recording_file'] = rotating('recordings.log', 'DEBUG', ['recording_context'])
        config['handlers']['schedule_file'] = rotating('schedules.log', 'DEBUG', ['schedule_context'])
        config['handlers']['error_file'] = rotating('errors.log', 'ERROR')
        handlers_to_add.extend(['main_file', 'error_file'])

    for logger_name in config['loggers']:
        config['loggers'][logger_name]['handlers'] = handlers_to_add.copy()

    if enable_file:
        config['loggers']['match_recorder']['handlers'].extend(['recording_file', 'schedule_file'])

    logging.config.dictConfig(config)

    logging.getLogger(__name__).info("Logging configuration initialized", extra={
        'log_level': log_level,
        'log_dir': str(log_path),
        'enable_console': enable_console,
        'enable_file': enable_file,
        'handlers_configured': list(config['handlers'].keys())
    })


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges per-call extra fields into its context."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_recording_logger(recording_id: str, title: Optional[str] = None) -> ContextAdapter:
    """Get a logger adapter carrying recording context."""
    logger = logging.getLogger('match_recorder.recordings')
    return ContextAdapter(logger, {
        'recording_id': recording_id,
        'title': title,
    })


def get_schedule_logger(schedule_id: str, match_id: Optional[str] = None) -> ContextAdapter:
    """Get a logger adapter carrying schedule context."""
    logger = logging.getLogger('match_recorder.schedules')
    return ContextAdapter(logger, {
        'schedule_id': schedule_id,
        'match_id': match_id,
    })


def get_request_logger(request_id: str, endpoint: str, method: str) -> ContextAdapter:
    """Get a logger adapter carrying API request context."""
    logger = logging.getLogger('match_recorder.api.requests')
    return ContextAdapter(logger, {
        'request_id': request_id,
        'endpoint': endpoint,
        'method': method,
    })


def log_api_request(request_id: str, endpoint: str, method: str, **extra) -> None:
    logger = get_request_logger(request_id, endpoint, method)
    logger.info(f"API request received: {method} {endpoint}", extra=extra)


def log_api_response(request_id: str, endpoint: str, method: str, status_code: int, duration: float, **extra) -> None:
    logger = get_request_logger(request_id, endpoint, method)
    logger.info(f"API response sent: {method} {endpoint} -> {status_code}", extra={
        'status_code': status_code,
        'duration': duration,
        **extra
    })


def log_performance_metric(component: str, operation: str, duration: float, **metrics) -> None:
    """Log a timing measurement with structured data.

    Args:
        component: Component name
        operation: Operation name
        duration: Operation duration in seconds
        **metrics: Additional fields to log
    """
    logger = logging.getLogger('match_recorder.performance')
    logger.info(f"Performance: {component}.{operation}", extra={
        'component': component,
        'operation': operation,
        'duration': duration,
        **metrics
    })


def log_recording_step(recording_id: str, title: Optional[str], step: str, status: str, **extra) -> None:
    """Log a lifecycle step for a recording.

    Args:
        recording_id: Recording identifier
        title: Recording title
        step: Lifecycle step name
        status: Step status (started, completed, failed)
        **extra: Additional step data
    """
    logger = get_recording_logger(recording_id, title)

    level = logging.INFO
    if status == 'failed':
        level = logging.ERROR
    elif status == 'started':
        level = logging.DEBUG

    logger.log(level, f"Recording step {step}: {status}", extra={
        'step': step,
        'status': status,
        **extra
    })
