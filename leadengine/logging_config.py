"""
Structured logging configuration.

Called once per process: from create_app() for the web tier and from
run_scheduler.py when the recurring chains are started. RQ workers keep the
handler `rq worker` installs. Supports text (human-readable) and JSON formats
via LOG_FORMAT. LOG_LEVEL defaults to INFO.

Engine log calls pass lead_id, realtor_id and job through `extra=`; both
formats surface whichever of them a record carries.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ('job', 'lead_id', 'realtor_id')


def _context(record) -> dict:
    return {k: getattr(record, k) for k in CONTEXT_FIELDS if getattr(record, k, None)}


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for production log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


class ContextTextFormatter(logging.Formatter):
    """Plain text, with any engine context appended as key=value pairs."""

    def format(self, record):
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        pairs = ' '.join(f'{k}={v}' for k, v in context.items())
        head, sep, tail = line.partition('\n')
        return f'{head} [{pairs}]{sep}{tail}'


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'rq.worker',
    'sqlalchemy.engine',
    'werkzeug',
]


def configure_logging(app=None):
    """
    Set up root logger with format/level from env vars.

    Environment variables:
        LOG_LEVEL  — Python log level name (default: INFO)
        LOG_FORMAT — "text" (default) or "json"
    """
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextTextFormatter(
            '[%(asctime)s] %(levelname)s %(name)s — %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
