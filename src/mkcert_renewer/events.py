"""
Per-instance event emitter.

Each CertificateManager owns one EventEmitter. Listeners are plain callables
receiving an Event value; a failing listener is logged and never breaks the
emitter or the other listeners.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger("mkcert-renewer")

GENERATING = "generating"
GENERATION_PROGRESS = "generation-progress"
GENERATED = "generated"
ERROR = "error"
BACKUP_CREATED = "backup-created"
EXPIRY_CHECK = "expiry-check"
CERTIFICATE_CHANGED = "certificate-changed"
MONITORING_STARTED = "monitoring-started"
MONITORING_STOPPED = "monitoring-stopped"
AUTO_RENEWAL_SCHEDULED = "auto-renewal-scheduled"
AUTO_RENEWAL_TRIGGERED = "auto-renewal-triggered"
AUTO_RENEWAL_COMPLETED = "auto-renewal-completed"
AUTO_RENEWAL_FAILED = "auto-renewal-failed"

KNOWN_EVENTS = frozenset(
    {
        GENERATING,
        GENERATION_PROGRESS,
        GENERATED,
        ERROR,
        BACKUP_CREATED,
        EXPIRY_CHECK,
        CERTIFICATE_CHANGED,
        MONITORING_STARTED,
        MONITORING_STOPPED,
        AUTO_RENEWAL_SCHEDULED,
        AUTO_RENEWAL_TRIGGERED,
        AUTO_RENEWAL_COMPLETED,
        AUTO_RENEWAL_FAILED,
    }
)


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[Event], None]


class EventEmitter:
    """Observer registry keyed by event name."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, name: str, listener: Listener) -> Listener:
        """Register a listener for an event name.

        Returns the listener so this can be used as a decorator.
        Raises:
            ValueError: If the event name is unknown.
        """
        if name not in KNOWN_EVENTS:
            raise ValueError(f"Unknown event: {name}")
        with self._lock:
            self._listeners.setdefault(name, []).append(listener)
        return listener

    def off(self, name: str, listener: Listener):
        """Remove a listener. Unknown listeners are ignored."""
        with self._lock:
            listeners = self._listeners.get(name, [])
            if listener in listeners:
                listeners.remove(listener)

    def remove_all_listeners(self):
        with self._lock:
            self._listeners.clear()

    def listener_count(self, name: str) -> int:
        with self._lock:
            return len(self._listeners.get(name, []))

    def emit(self, name: str, **payload) -> Event:
        event = Event(name=name, payload=payload)
        with self._lock:
            listeners = list(self._listeners.get(name, []))

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener for '{name}' failed: {e}")
        return event
