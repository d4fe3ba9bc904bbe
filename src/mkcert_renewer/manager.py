"""
Certificate Lifecycle Manager

Owns one mkcert certificate/key pair: checks its expiry, decides when it needs
replacing, backs it up and regenerates it, and reports everything it does as
events so long-running hosts (dev servers, the CLI) can react without polling.
"""

import enum
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from watchdog.observers import Observer

from mkcert_renewer import events
from mkcert_renewer.config import RenewerConfig, load_config, resolve_warning_days
from mkcert_renewer.errors import (
    AlreadyActiveError,
    CertManagerError,
    InvalidScheduleExpressionError,
    SubprocessFailureError,
    ToolMissingError,
)
from mkcert_renewer.events import EventEmitter, Listener
from mkcert_renewer.expiry import CryptographyExpiryParser, ExpiryParser, parse_expiry_timestamp
from mkcert_renewer.scheduler import RenewalScheduler
from mkcert_renewer.state import (
    BackupRecord,
    CertificateIdentity,
    CertificateState,
    RenewalDecision,
    decide_renewal,
)
from mkcert_renewer.tools import ToolGateway, default_gateway
from mkcert_renewer.watcher import CertificateWatcher

logger = logging.getLogger("mkcert-renewer")

_IDENTITY_LOCKS: Dict[Tuple[Path, str], threading.Lock] = {}
_IDENTITY_LOCKS_GUARD = threading.Lock()


def identity_lock(identity: CertificateIdentity) -> threading.Lock:
    """Process-wide lock serialising generation for one identity."""
    key = (identity.directory, identity.base_name)
    with _IDENTITY_LOCKS_GUARD:
        return _IDENTITY_LOCKS.setdefault(key, threading.Lock())


class Activity(enum.Flag):
    IDLE = 0
    WATCHING = enum.auto()
    SCHEDULED = enum.auto()


@dataclass(frozen=True)
class GenerateResult:
    cert_file: Path
    key_file: Path
    backup: Optional[BackupRecord] = None


class WatchHandle:
    """Handle on an active certificate watch."""

    def __init__(self, manager: "CertificateManager", watcher: CertificateWatcher):
        self._manager = manager
        self._watcher = watcher

    @property
    def paths(self) -> Tuple[Path, Path]:
        return self._watcher.cert_file, self._watcher.key_file

    @property
    def running(self) -> bool:
        return self._watcher.active

    def stop(self):
        self._manager.stop_monitoring()


class ScheduleHandle:
    """Handle on an active auto-renewal schedule."""

    def __init__(self, manager: "CertificateManager", scheduler: RenewalScheduler):
        self._manager = manager
        self._scheduler = scheduler

    @property
    def cron_pattern(self) -> str:
        return self._scheduler.cron_pattern

    @property
    def domains(self) -> List[str]:
        return list(self._scheduler.domains)

    @property
    def warning_days(self) -> int:
        return self._scheduler.warning_days

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def stop(self):
        # a stale handle must not cancel a newer schedule
        if self._manager.is_current_schedule(self._scheduler):
            self._manager.stop_auto_renewal()


class CertificateManager:
    """Lifecycle manager for one mkcert certificate/key pair.

    Args:
        config (Optional[RenewerConfig]): Resolved configuration. Loaded from
            the environment plus `overrides` when omitted.
        gateway (Optional[ToolGateway]): Subprocess gateway for mkcert.
        expiry_parser (Optional[ExpiryParser]): Reads the expiry from the
            certificate bytes.
        observer_factory: watchdog observer class used for monitoring.
    """

    MKCERT = "mkcert"

    def __init__(
        self,
        config: Optional[RenewerConfig] = None,
        gateway: Optional[ToolGateway] = None,
        expiry_parser: Optional[ExpiryParser] = None,
        observer_factory: Callable = Observer,
        **overrides,
    ):
        self.config = config if config is not None else load_config(**overrides)
        self.gateway = gateway or default_gateway()
        self.expiry_parser = expiry_parser or CryptographyExpiryParser()
        self.identity = CertificateIdentity(self.config.cert_path, self.config.cert_name)
        self.emitter = EventEmitter()

        self._state = CertificateState.unknown()
        self._watcher = CertificateWatcher(
            self.identity.cert_file, self.identity.key_file, observer_factory=observer_factory
        )
        self._scheduler: Optional[RenewalScheduler] = None
        self._activity = Activity.IDLE
        self._activity_lock = threading.RLock()
        self._destroyed = False

        logger.info(f"Managing certificate {self.cert_file} (key: {self.key_file})")

    @property
    def cert_path(self) -> Path:
        return self.identity.directory

    @property
    def cert_file(self) -> Path:
        return self.identity.cert_file

    @property
    def key_file(self) -> Path:
        return self.identity.key_file

    @property
    def state(self) -> CertificateState:
        return self._state

    @property
    def activity(self) -> Activity:
        return self._activity

    def on(self, name: str, listener: Listener) -> Listener:
        return self.emitter.on(name, listener)

    def off(self, name: str, listener: Listener):
        self.emitter.off(name, listener)

    def _emit_error(self, message: str, error: Exception):
        logger.error(message)
        self.emitter.emit(events.ERROR, message=message, error=error)

    def check_installed(self) -> bool:
        """Check whether mkcert is available on PATH. Never raises."""
        try:
            installed = self.gateway.probe(self.MKCERT)
        except Exception as e:
            logger.error(f"Error probing for {self.MKCERT}: {e}")
            return False

        if not installed:
            logger.warning(f"{self.MKCERT} not found on PATH")
        return installed

    def get_expiry(self) -> Optional[datetime]:
        """Return the certificate's expiry, or None if absent or unreadable.

        Parse failures emit an `error` event; callers must treat None as
        "expired".
        """
        now = datetime.now(timezone.utc)
        if not self.cert_file.exists():
            logger.info("Certificate file not found")
            self._state = CertificateState(exists=False, not_after=None, last_checked_at=now)
            return None

        try:
            cert_data = self.cert_file.read_bytes()
            expiry = parse_expiry_timestamp(self.expiry_parser.read_expiry(cert_data))
        except Exception as e:
            self._state = CertificateState(exists=True, not_after=None, last_checked_at=now)
            self._emit_error(f"Failed to parse certificate {self.cert_file}: {e}", e)
            return None

        self._state = CertificateState(exists=True, not_after=expiry, last_checked_at=now)
        return expiry

    def check_renewal(self, warning_days: Optional[int] = None) -> RenewalDecision:
        """Evaluate the renewal rule against the certificate on disk."""
        warning_days = resolve_warning_days(self.config, warning_days)
        self.get_expiry()
        decision = decide_renewal(self._state, warning_days, datetime.now(timezone.utc))

        if decision.expiry is None:
            logger.info("Certificate expiry unknown, renewal needed")
        elif decision.needs_renewal:
            logger.info(
                f"Certificate expires on {decision.expiry} "
                f"({decision.days_until_expiry} days), renewal needed"
            )
        else:
            logger.info(f"Certificate valid until {decision.expiry}")

        self.emitter.emit(
            events.EXPIRY_CHECK,
            expiry=decision.expiry,
            days_until_expiry=decision.days_until_expiry,
            needs_renewal=decision.needs_renewal,
        )
        return decision

    def needs_renewal(self, warning_days: Optional[int] = None) -> bool:
        """True if the certificate is missing, unreadable or within `warning_days` of expiry."""
        return self.check_renewal(warning_days).needs_renewal

    def backup_existing_certificates(self) -> Optional[BackupRecord]:
        """Copy the current cert/key pair into the backup directory.

        Returns None (and copies nothing) when there is no certificate yet.
        """
        if not self.cert_file.exists():
            return None

        name = self.identity.base_name
        backup_dir = self.identity.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)

        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_id = stamp
        sequence = 0
        while (backup_dir / f"{name}-{backup_id}.pem").exists() or (
            backup_dir / f"{name}-{backup_id}-key.pem"
        ).exists():
            sequence += 1
            backup_id = f"{stamp}-{sequence}"

        backup_cert_file = backup_dir / f"{name}-{backup_id}.pem"
        shutil.copy2(self.cert_file, backup_cert_file)

        backup_key_file = None
        if self.key_file.exists():
            backup_key_file = backup_dir / f"{name}-{backup_id}-key.pem"
            shutil.copy2(self.key_file, backup_key_file)
            os.chmod(backup_key_file, 0o600)
        else:
            logger.warning(f"Key file {self.key_file} not found, backing up certificate only")

        logger.info(f"Backed up certificate to {backup_cert_file}")
        self.emitter.emit(
            events.BACKUP_CREATED,
            backup_cert_file=str(backup_cert_file),
            backup_key_file=str(backup_key_file) if backup_key_file else None,
        )
        return BackupRecord(
            original_base_name=name,
            timestamp=backup_id,
            backup_cert_file=backup_cert_file,
            backup_key_file=backup_key_file,
        )

    def generate(self, domains: Optional[Sequence[str]] = None) -> GenerateResult:
        """Generate (or regenerate) the certificate with mkcert.

        Steps run strictly in order and stop at the first failure: tool check,
        backup of the existing pair, directory creation, mkcert invocation.
        Concurrent calls for the same identity are serialised.

        Raises:
            ToolMissingError: If mkcert is not installed.
            SubprocessFailureError: If mkcert exits with a nonzero code.
            CertManagerError: If the backup fails or mkcert did not write both files.
        """
        domains = list(domains) if domains is not None else list(self.config.domains)
        if not domains:
            raise ValueError("At least one domain is required")

        with identity_lock(self.identity):
            return self._generate(domains)

    def _generate(self, domains: List[str]) -> GenerateResult:
        logger.info("Starting certificate generation")

        if not self.check_installed():
            error = ToolMissingError(
                f"{self.MKCERT} is not installed. Run `mkcert-renewer install` for instructions."
            )
            self._emit_error(str(error), error)
            raise error

        try:
            backup = self.backup_existing_certificates()
        except OSError as e:
            error = CertManagerError(f"Failed to back up existing certificate: {e}")
            self._emit_error(str(error), error)
            raise error from e

        self.cert_path.mkdir(parents=True, exist_ok=True)

        args = ["-key-file", str(self.key_file), "-cert-file", str(self.cert_file), *domains]
        self.emitter.emit(events.GENERATING, domains=list(domains), cert_path=str(self.cert_path))
        logger.info(f"Generating certificate for: {', '.join(domains)}")

        def on_output(text: str):
            logger.debug(f"mkcert: {text.rstrip()}")
            self.emitter.emit(events.GENERATION_PROGRESS, text=text)

        try:
            result = self.gateway.run(self.MKCERT, args, cwd=self.cert_path, on_output=on_output)
        except SubprocessFailureError as e:
            self._emit_error(f"mkcert failed: {e}", e)
            raise

        if result.returncode != 0:
            error = SubprocessFailureError(
                f"mkcert failed (code: {result.returncode}): {result.stderr.strip()}",
                stderr=result.stderr,
                returncode=result.returncode,
            )
            self._emit_error(str(error), error)
            raise error

        missing = [str(p) for p in (self.cert_file, self.key_file) if not p.exists()]
        if missing:
            error = CertManagerError(
                f"mkcert exited successfully but did not write: {', '.join(missing)}"
            )
            self._emit_error(str(error), error)
            raise error

        try:
            os.chmod(self.key_file, 0o600)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {self.key_file}: {e}")

        # trust the new file, not the exit code
        self.get_expiry()

        logger.info(f"Certificate saved to {self.cert_file}")
        logger.info(f"Private key saved to {self.key_file}")
        self.emitter.emit(
            events.GENERATED,
            cert_file=str(self.cert_file),
            key_file=str(self.key_file),
            output=result.stdout,
        )
        return GenerateResult(cert_file=self.cert_file, key_file=self.key_file, backup=backup)

    def read_certificate_pair(self) -> Tuple[bytes, bytes]:
        """Return (key bytes, cert bytes) of the current pair.

        Raises:
            FileNotFoundError: If either file is missing.
        """
        return self.key_file.read_bytes(), self.cert_file.read_bytes()

    def _require_inactive(self, flag: Activity, message: str):
        if flag in self._activity:
            error = AlreadyActiveError(message)
            self._emit_error(message, error)
            raise error

    def start_monitoring(
        self, callback: Optional[Callable[[str, datetime], None]] = None
    ) -> WatchHandle:
        """Watch the cert and key files and emit `certificate-changed` on change.

        Raises:
            AlreadyActiveError: If monitoring is already active.
        """

        def on_change(file_path: str, timestamp: datetime):
            self.emitter.emit(events.CERTIFICATE_CHANGED, file_path=file_path, timestamp=timestamp)
            if callback is None:
                return
            try:
                callback(file_path, timestamp)
            except Exception as e:
                logger.error(f"Certificate change callback failed: {e}")

        with self._activity_lock:
            self._require_inactive(Activity.WATCHING, "Certificate files are already being monitored")
            self._watcher.start(on_change)
            self._activity |= Activity.WATCHING

        self.emitter.emit(
            events.MONITORING_STARTED, cert_file=str(self.cert_file), key_file=str(self.key_file)
        )
        return WatchHandle(self, self._watcher)

    def stop_monitoring(self):
        """Stop watching. No-op when not monitoring."""
        with self._activity_lock:
            if Activity.WATCHING not in self._activity:
                return
            self._watcher.stop()
            self._activity &= ~Activity.WATCHING

        self.emitter.emit(events.MONITORING_STOPPED)

    def schedule_auto_renewal(
        self,
        cron_pattern: Optional[str] = None,
        domains: Optional[Sequence[str]] = None,
        warning_days: Optional[int] = None,
    ) -> ScheduleHandle:
        """Check (and renew if needed) on a cron schedule.

        Raises:
            InvalidScheduleExpressionError: If the cron pattern is invalid.
            AlreadyActiveError: If a schedule is already active.
        """
        cron_pattern = cron_pattern or self.config.cron_pattern
        domains = list(domains) if domains else list(self.config.domains)
        warning_days = resolve_warning_days(self.config, warning_days)

        with self._activity_lock:
            self._require_inactive(Activity.SCHEDULED, "Auto-renewal is already scheduled")
            try:
                scheduler = RenewalScheduler(self, cron_pattern, domains, warning_days)
            except InvalidScheduleExpressionError as e:
                self._emit_error(str(e), e)
                raise
            scheduler.start()
            self._scheduler = scheduler
            self._activity |= Activity.SCHEDULED

        self.emitter.emit(events.AUTO_RENEWAL_SCHEDULED, cron_pattern=cron_pattern)
        return ScheduleHandle(self, scheduler)

    def is_current_schedule(self, scheduler: RenewalScheduler) -> bool:
        """True if `scheduler` is this manager's active schedule."""
        with self._activity_lock:
            return scheduler is not None and scheduler is self._scheduler

    def stop_auto_renewal(self):
        """Cancel the schedule. A renewal already running is left to finish."""
        with self._activity_lock:
            scheduler = self._scheduler
            if scheduler is None:
                return
            self._scheduler = None
            self._activity &= ~Activity.SCHEDULED

        scheduler.stop()

    def destroy(self):
        """Stop monitoring and scheduling and drop all listeners. Idempotent."""
        if self._destroyed:
            return
        self.stop_monitoring()
        self.stop_auto_renewal()
        self.emitter.remove_all_listeners()
        self._destroyed = True
