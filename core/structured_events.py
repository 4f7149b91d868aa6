"""
Structured Event Logging

Every crash-injection run leaves a machine-readable trail next to the
ordinary log: which workers were spawned and killed, how each one exited,
which opens failed or timed out, and what verification found. Events are
JSON lines, one object per line, appended as they happen.

The in-memory buffer always holds the current session; the file sink is
optional (``event_log`` in the config).
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


logger = logging.getLogger(__name__)

# Context keys repeated on the human-readable log line, in this order
SUMMARY_KEYS = ('scenario', 'worker', 'pid', 'data_dir')


class EventType(Enum):
    # Worker lifecycle
    WORKER_SPAWNED = auto()
    KILL_SENT = auto()
    SAFETY_TIMEOUT = auto()
    WORKER_EXITED = auto()

    # Directory guard
    LOCK_REFUSED = auto()
    DIRECTORY_QUARANTINED = auto()

    # Verification
    OPEN_SUCCEEDED = auto()
    OPEN_FAILED = auto()
    OPEN_TIMED_OUT = auto()
    INTEGRITY_CHECKED = auto()
    CHECK_FAILED = auto()

    # Scenarios
    SCENARIO_STARTED = auto()
    SCENARIO_COMPLETED = auto()
    SCENARIO_FAILED = auto()


class EventSeverity(Enum):
    """Severity of an event; the value is the matching logging level."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


@dataclass
class StructuredEvent:
    event_id: str
    event_type: EventType
    timestamp: datetime
    severity: EventSeverity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    parent_event_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.name,
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.name,
            'message': self.message,
            'context': self.context,
            'session_id': self.session_id,
            'parent_event_id': self.parent_event_id
        }

    def to_json(self) -> str:
        # Paths and enum values in context fall back to str()
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> 'StructuredEvent':
        """
        Rebuild an event written by to_dict.

        Raises:
            KeyError: Unknown event type or severity, or a missing field
            ValueError: Unparsable timestamp
        """
        return cls(
            event_id=data['event_id'],
            event_type=EventType[data['event_type']],
            timestamp=datetime.fromisoformat(data['timestamp']),
            severity=EventSeverity[data['severity']],
            message=data['message'],
            context=dict(data.get('context') or {}),
            session_id=data.get('session_id'),
            parent_event_id=data.get('parent_event_id')
        )

    def summary(self) -> str:
        """One log line: ``[TYPE] message | key=value, ...``."""
        shown = [f"{key}={self.context[key]}" for key in SUMMARY_KEYS if key in self.context]
        suffix = " | " + ", ".join(shown) if shown else ""
        return f"[{self.event_type.name}] {self.message}{suffix}"


class EventEmitter:
    """
    Records events for one session.

    Each event goes to the in-memory buffer, to standard logging at the
    event's severity (unless enable_console is False) and, when log_file
    is set, to a JSON-lines file. A failing file write is logged and the
    event is kept in memory.
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        session_id: Optional[str] = None,
        enable_console: bool = True
    ):
        self.log_file = Path(log_file) if log_file is not None else None
        self.session_id = session_id or str(uuid.uuid4())
        self.enable_console = enable_console
        self.event_buffer: List[StructuredEvent] = []

        if self.log_file is not None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(
        self,
        event_type: EventType,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        context: Optional[Dict] = None,
        parent_event_id: Optional[str] = None
    ) -> StructuredEvent:
        """
        Record one event.

        Args:
            event_type: What happened
            message: Human-readable description
            severity: Also the logging level of the console line
            context: Event data (worker name, pid, data_dir, ...)
            parent_event_id: Event this one belongs to, e.g. the scenario start

        Returns:
            The recorded event
        """
        event = StructuredEvent(
            event_id=uuid.uuid4().hex,
            event_type=event_type,
            timestamp=datetime.now(),
            severity=severity,
            message=message,
            context=dict(context or {}),
            session_id=self.session_id,
            parent_event_id=parent_event_id
        )
        self.event_buffer.append(event)

        if self.enable_console:
            logger.log(severity.value, event.summary())
        if self.log_file is not None:
            self._append(event)

        return event

    def _append(self, event: StructuredEvent):
        try:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(event.to_json() + '\n')
        except OSError as e:
            logger.error(f"Failed to write event to file {self.log_file}: {e}")

    def get_session_events(self) -> List[StructuredEvent]:
        return list(self.event_buffer)

    def query_events(
        self,
        event_type: Optional[EventType] = None,
        severity: Optional[EventSeverity] = None,
        since: Optional[datetime] = None,
        worker: Optional[str] = None
    ) -> List[StructuredEvent]:
        """
        Events of this session matching every given filter.

        Args:
            event_type: Only this type
            severity: Only this severity
            since: Only events at or after this time
            worker: Only events whose context names this worker
        """
        def matches(event: StructuredEvent) -> bool:
            if event_type is not None and event.event_type is not event_type:
                return False
            if severity is not None and event.severity is not severity:
                return False
            if since is not None and event.timestamp < since:
                return False
            if worker is not None and event.context.get('worker') != worker:
                return False
            return True

        return [event for event in self.event_buffer if matches(event)]


def load_events(log_file: Union[str, Path]) -> List[StructuredEvent]:
    """
    Read an event log back.

    Lines that are not valid events are skipped; a missing file yields an
    empty list.
    """
    log_file = Path(log_file)
    if not log_file.exists():
        return []

    events = []
    with open(log_file, 'r', encoding='utf-8') as f:
        for line in f:
            try:
                events.append(StructuredEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError):
                logger.debug(f"Skipping unreadable event line in {log_file}")
    return events
