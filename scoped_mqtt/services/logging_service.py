"""
Logging and error-tracking service for the scoped MQTT connector.

Once a connector is bound, every record written by the file and console
handlers carries the client identity and broker URL, so logs from a fleet
of devices sharing one collector can be split per device.
"""
import json
import logging
import logging.handlers
import sys
import threading
import traceback
from collections import Counter, deque
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from ..models.connection import ConnectorState


PAHO_LOGGER = 'scoped_mqtt.transport.paho'


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    location: str
    thread_name: str
    identity: Optional[str] = None
    broker: Optional[str] = None
    connector_state: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class ErrorMetric:
    """A tracked connector error."""
    error_type: str
    error_message: str
    source: str
    timestamp: str
    reason_code: Optional[int] = None
    stack_trace: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


class ConnectorContextFilter(logging.Filter):
    """Stamps identity, broker and connector state onto each record."""

    def __init__(self):
        super().__init__()
        self._context: Callable[[], Dict[str, Optional[str]]] = dict

    def bind(self, context: Callable[[], Dict[str, Optional[str]]]) -> None:
        self._context = context

    def filter(self, record: logging.LogRecord) -> bool:
        context = self._context()
        for key in ('identity', 'broker', 'connector_state'):
            if not hasattr(record, key):
                setattr(record, key, context.get(key) or '-')
        return True


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            location=f"{record.module}:{record.funcName}:{record.lineno}",
            thread_name=record.threadName,
            identity=self._context_value(record, 'identity'),
            broker=self._context_value(record, 'broker'),
            connector_state=self._context_value(record, 'connector_state'),
            extra_data=getattr(record, 'extra_data', None)
        )

        if record.exc_info and record.exc_info[0] is not None:
            error = record.exc_info[1]
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__,
                'message': str(error) if error else None,
                'reason_code': getattr(error, 'reason_code', None),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)

    @staticmethod
    def _context_value(record: logging.LogRecord, key: str) -> Optional[str]:
        value = getattr(record, key, None)
        return None if value in (None, '-') else value


class ErrorTracker:
    """Keeps the most recent connector errors for status reporting.

    Transport errors arrive through callbacks and usually were never raised,
    so the stack trace comes from the error itself rather than from the
    exception currently being handled. A connector retrying an unreachable
    broker reports an error every reconnect period, so only the newest
    ``max_errors`` are kept.
    """

    def __init__(self, max_errors: int = 1000):
        self.errors: Deque[ErrorMetric] = deque(maxlen=max_errors)
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def track_error(self, error: Exception, extra_data: Optional[Dict[str, Any]] = None):
        """Record an error and log it with its context."""
        caller = sys._getframe(1)

        stack_trace = None
        exc_info = None
        if error.__traceback__ is not None:
            exc_info = (type(error), error, error.__traceback__)
            stack_trace = ''.join(traceback.format_exception(*exc_info))

        error_metric = ErrorMetric(
            error_type=type(error).__name__,
            error_message=str(error),
            source=f"{caller.f_globals.get('__name__', 'unknown')}.{caller.f_code.co_name}",
            timestamp=datetime.now().isoformat(),
            reason_code=getattr(error, 'reason_code', None),
            stack_trace=stack_trace,
            extra_data=extra_data
        )

        with self.lock:
            self.errors.append(error_metric)

        details = {'error_type': error_metric.error_type, 'source': error_metric.source}
        if error_metric.reason_code is not None:
            details['reason_code'] = error_metric.reason_code
        self.logger.error(
            f"Error tracked: {error_metric.error_type}: {error_metric.error_message}",
            extra={'extra_data': {**details, **(extra_data or {})}},
            exc_info=exc_info
        )

    def get_errors(self, error_type: Optional[str] = None,
                   since: Optional[datetime] = None) -> List[ErrorMetric]:
        """Get tracked errors, oldest first, with optional filtering."""
        with self.lock:
            errors = list(self.errors)

        if error_type:
            errors = [e for e in errors if e.error_type == error_type]
        if since:
            since_iso = since.isoformat()
            errors = [e for e in errors if e.timestamp >= since_iso]

        return errors

    def get_error_summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Count tracked errors by type and by broker reason code."""
        errors = self.get_errors(since=since)

        if not errors:
            return {'total_errors': 0, 'error_types': {}}

        error_types = Counter(e.error_type for e in errors)
        reason_codes = Counter(e.reason_code for e in errors if e.reason_code is not None)

        return {
            'total_errors': len(errors),
            'error_types': dict(error_types),
            'reason_codes': dict(reason_codes),
            'most_common_error': error_types.most_common(1)[0][0],
            'last_error': f"{errors[-1].error_type}: {errors[-1].error_message}"
        }


class LoggingService:
    """Configures handlers and reports connector health."""

    def __init__(self, config):
        self.config = config
        self.error_tracker = ErrorTracker()
        self.context_filter = ConnectorContextFilter()
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.info("Logging service initialized")

    def _setup_logging(self):
        """Replace the root logger's handlers with rotating JSON files and a console."""
        log_dir = Path(self.config.log_file_path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        # Clear existing handlers
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        json_formatter = JSONFormatter()
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(identity)s] %(message)s'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.config.log_file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(json_formatter)
        file_handler.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.setLevel(log_level)

        error_log_path = str(Path(self.config.log_file_path).with_suffix('.errors.log'))
        error_handler = logging.handlers.RotatingFileHandler(
            filename=error_log_path,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setFormatter(json_formatter)
        error_handler.setLevel(logging.ERROR)

        for handler in (file_handler, console_handler, error_handler):
            handler.addFilter(self.context_filter)
            root_logger.addHandler(handler)

        # paho logs every packet at DEBUG
        logging.getLogger(PAHO_LOGGER).setLevel(max(log_level, logging.INFO))

    def bind_connector(self, connector) -> None:
        """Stamp the connector's identity, broker and state onto every record."""
        self.context_filter.bind(connector.log_context)
        self.logger.info("Log records now carry the connector identity")

    def track_error(self, error: Exception, extra_data: Optional[Dict[str, Any]] = None):
        self.error_tracker.track_error(error, extra_data)

    def get_error_summary(self, since_hours: int = 24) -> Dict[str, Any]:
        """Get error summary for the specified time period."""
        since = datetime.now() - timedelta(hours=since_hours)
        return self.error_tracker.get_error_summary(since=since)

    def get_health_status(self, connector=None) -> Dict[str, Any]:
        """
        Summarize connector health from its state and the last hour of errors.

        healthy: connected with no recent errors
        degraded: connected with recent errors, or still (re)connecting
        unhealthy: no connector, never connected, or closed
        """
        recent = self.get_error_summary(since_hours=1)
        state = connector.state if connector is not None else None

        if state is ConnectorState.CONNECTED:
            status = 'degraded' if recent['total_errors'] else 'healthy'
        elif state in (ConnectorState.CONNECTING, ConnectorState.RECONNECTING):
            status = 'degraded'
        else:
            status = 'unhealthy'

        return {
            'status': status,
            'connector_state': state.value if state is not None else None,
            'recent_errors': recent['total_errors'],
            'last_error': recent.get('last_error'),
            'timestamp': datetime.now().isoformat()
        }
