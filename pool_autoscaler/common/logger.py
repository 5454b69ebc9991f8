import os
import re
import logging
import json

# Messages are written as "[pool] ..." or "[DRY RUN] [pool] ..."
_POOL_PREFIX = re.compile(r'^(?P<dry_run>\[DRY RUN\] )?\[(?P<pool>[^\]]+)\] ')

_NOISY_LOGGERS = ('boto3', 'botocore', 'urllib3', 'kubernetes', 's3transfer')

_RESERVED_ATTRS = {
    'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
    'funcName', 'id', 'levelname', 'levelno', 'lineno', 'module',
    'msecs', 'message', 'msg', 'name', 'pathname', 'process',
    'processName', 'relativeCreated', 'stack_info', 'taskName', 'thread', 'threadName'
}


def setup_logging(level=None, json_format=None):
    """
    Set up root logging for the autoscaler.

    Args:
        level: Optional log level override (default: uses LOG_LEVEL env var or INFO)
        json_format: Force JSON output on or off. Defaults to JSON when running
            inside AWS (AWS_EXECUTION_ENV) or when LOG_FORMAT=json.
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO')
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s [%(levelname)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if json_format is None:
        json_format = (os.environ.get('AWS_EXECUTION_ENV') is not None
                       or os.environ.get('LOG_FORMAT', '').lower() == 'json')
    if json_format:
        for handler in root_logger.handlers:
            handler.setFormatter(JsonFormatter())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.debug("Logging initialized")


class JsonFormatter(logging.Formatter):
    """
    Format logs as JSON for CloudWatch Logs Insights.

    The pool name and dry-run flag are lifted out of the message prefix into
    their own fields so runs can be filtered per pool.
    """

    def format(self, record):
        message = record.getMessage()
        log_record = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'name': record.name,
            'message': message,
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName
        }

        match = _POOL_PREFIX.match(message)
        if match:
            log_record['pool'] = match.group('pool')
            log_record['dry_run'] = match.group('dry_run') is not None

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_record[key] = value

        return json.dumps(log_record, default=str)
