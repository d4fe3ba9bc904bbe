"""
Filesystem watch over a certificate/key pair.

watchdog watches directories, so the watcher schedules a non-recursive watch
on each parent directory and only reports events for the exact managed paths.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mkcert_renewer.errors import AlreadyActiveError

logger = logging.getLogger("mkcert-renewer")

ChangeCallback = Callable[[str, datetime], None]


def _normalize(path) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


class CertificateFileHandler(FileSystemEventHandler):
    """Turns raw watchdog events into change callbacks for the watched paths."""

    def __init__(self, paths: Iterable[Path], on_change: ChangeCallback):
        super().__init__()
        self._paths = {_normalize(p): str(p) for p in paths}
        self._on_change = on_change

    def _notify(self, raw_path):
        if not raw_path:
            return
        path = self._paths.get(_normalize(raw_path))
        if path is None:
            return
        logger.debug(f"Change detected on {path}")
        self._on_change(path, datetime.now(timezone.utc))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        # atomic replace (write temp file, rename onto target)
        if not event.is_directory:
            self._notify(event.dest_path)


class CertificateWatcher:
    """Watches the cert and key files of one identity.

    Args:
        cert_file (Path): Certificate file to watch.
        key_file (Path): Private key file to watch.
        observer_factory: Callable returning a watchdog observer. Defaults to
            the platform's native observer.
    """

    def __init__(self, cert_file: Path, key_file: Path, observer_factory: Callable = Observer):
        self.cert_file = Path(cert_file)
        self.key_file = Path(key_file)
        self.observer_factory = observer_factory
        self._observer = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._observer is not None

    def start(self, on_change: ChangeCallback):
        """Start watching.

        Raises:
            AlreadyActiveError: If this watcher is already running.
        """
        with self._lock:
            if self._observer is not None:
                raise AlreadyActiveError("Certificate files are already being watched")

            handler = CertificateFileHandler([self.cert_file, self.key_file], on_change)
            observer = self.observer_factory()
            for directory in sorted({self.cert_file.parent, self.key_file.parent}):
                directory.mkdir(parents=True, exist_ok=True)
                observer.schedule(handler, str(directory), recursive=False)
            observer.start()
            self._observer = observer

        logger.info(f"Watching {self.cert_file} and {self.key_file}")

    def stop(self):
        """Stop watching. No-op when not active."""
        with self._lock:
            observer: Optional[Observer] = self._observer
            self._observer = None

        if observer is None:
            return
        observer.stop()
        observer.join()
        logger.info("Stopped watching certificate files")
