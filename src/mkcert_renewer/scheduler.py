"""
Recurring renewal scheduler.

A `schedule` job fires on every wall-clock minute boundary; when the current
minute matches the configured cron expression, one renewal tick runs:
check expiry, regenerate if needed, report the outcome as events. A failing
tick never stops the schedule; the next matching minute simply tries again.
"""

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

import schedule
from celery.schedules import ParseException, crontab, crontab_parser

from mkcert_renewer import events
from mkcert_renewer.errors import InvalidScheduleExpressionError

if TYPE_CHECKING:
    from mkcert_renewer.manager import CertificateManager

logger = logging.getLogger("mkcert-renewer")

CRON_FIELDS = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")


class CronExpression:
    """Cron expression: [second] minute hour day-of-month month day-of-week.

    Field syntax and ranges are validated by celery's crontab parser.
    Day of week runs 0-7 where both 0 and 7 are Sunday (names like `sun` are
    accepted). The optional leading seconds field must select second 0: ticks
    fire once per minute, on the minute.
    """

    def __init__(self, pattern: str, spec: crontab, fields: dict):
        self.pattern = pattern
        self._spec = spec
        self._fields = fields

    @classmethod
    def parse(cls, pattern: str) -> "CronExpression":
        if not isinstance(pattern, str):
            raise InvalidScheduleExpressionError(f"Cron pattern must be a string, got {pattern!r}")

        parts = pattern.split()
        if len(parts) == len(CRON_FIELDS) + 1:
            seconds, parts = parts[0], parts[1:]
            cls._check_seconds(pattern, seconds)
        elif len(parts) != len(CRON_FIELDS):
            raise InvalidScheduleExpressionError(
                f"Cron pattern must have {len(CRON_FIELDS)} or {len(CRON_FIELDS) + 1} fields, "
                f"got {len(parts)}: {pattern!r}"
            )

        fields = dict(zip(CRON_FIELDS, parts))
        try:
            # 7 is Sunday too; fold it onto 0 before celery sees it
            day_of_week = {day % 7 for day in crontab_parser(8).parse(fields["day_of_week"])}
            spec = crontab(**dict(fields, day_of_week=day_of_week))
        except (ParseException, ValueError, TypeError) as e:
            raise InvalidScheduleExpressionError(f"Invalid cron pattern {pattern!r}: {e}")
        return cls(pattern, spec, fields)

    @staticmethod
    def _check_seconds(pattern: str, seconds: str):
        try:
            selected = crontab_parser(60).parse(seconds)
        except (ParseException, ValueError) as e:
            raise InvalidScheduleExpressionError(f"Invalid cron pattern {pattern!r}: {e}")
        if 0 not in selected:
            raise InvalidScheduleExpressionError(
                f"Invalid cron pattern {pattern!r}: the seconds field must include 0"
            )

    def matches(self, moment: datetime) -> bool:
        """True if `moment` falls in a minute selected by this expression."""
        if moment.minute not in self._spec.minute:
            return False
        if moment.hour not in self._spec.hour:
            return False
        if moment.month not in self._spec.month_of_year:
            return False

        dom_match = moment.day in self._spec.day_of_month
        dow_match = (moment.isoweekday() % 7) in self._spec.day_of_week
        # classic cron: a day field starting with `*` is unrestricted; when
        # both are restricted, either may match
        dom_restricted = not self._fields["day_of_month"].startswith("*")
        dow_restricted = not self._fields["day_of_week"].startswith("*")
        if dom_restricted and dow_restricted:
            return dom_match or dow_match
        return dom_match and dow_match

    def __repr__(self):
        return f"CronExpression({self.pattern!r})"


class RenewalScheduler:
    """Runs renewal ticks for one manager on a cron schedule.

    Args:
        manager (CertificateManager): Manager to check and regenerate.
        cron_pattern (str): Five-field cron expression, validated immediately.
        domains (List[str]): Domains passed to `generate` on renewal.
        warning_days (int): Renewal window passed to `needs_renewal`.
        poll_interval (float): Seconds between scheduler polls.
    """

    def __init__(
        self,
        manager: "CertificateManager",
        cron_pattern: str,
        domains: List[str],
        warning_days: int,
        poll_interval: float = 1.0,
    ):
        self.expression = CronExpression.parse(cron_pattern)
        self.manager = manager
        self.domains = list(domains)
        self.warning_days = warning_days
        self.poll_interval = poll_interval

        self._scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cron_pattern(self) -> str:
        return self.expression.pattern

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def jobs(self) -> List[schedule.Job]:
        return list(self._scheduler.jobs)

    def start(self):
        if self._thread is not None:
            return
        self._scheduler.every().minute.at(":00").do(self._on_minute)
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="mkcert-renewer-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(f"Auto-renewal scheduled with pattern '{self.cron_pattern}'")

    def stop(self):
        """Cancel future ticks. A tick already running is allowed to finish."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        self._scheduler.clear()
        self._thread = None
        logger.info("Auto-renewal schedule stopped")

    def _loop(self):
        while not self._stop_event.wait(self.poll_interval):
            try:
                self._scheduler.run_pending()
            except Exception as e:
                logger.error(f"Failed while running scheduled tasks: {e}")

    def _on_minute(self):
        if self._stop_event.is_set():
            return
        if self.expression.matches(datetime.now()):
            self.run_once()

    def run_once(self) -> Optional[bool]:
        """Run one renewal tick.

        Returns:
            None if no renewal was needed, True if the certificate was
            regenerated, False if regeneration failed. Never raises.
        """
        try:
            if not self.manager.needs_renewal(self.warning_days):
                logger.debug("Scheduled check: certificate still valid")
                return None

            logger.info("Scheduled check: renewal needed")
            self.manager.emitter.emit(events.AUTO_RENEWAL_TRIGGERED)
            result = self.manager.generate(self.domains)
        except Exception as e:
            logger.error(f"Automatic renewal failed: {e}")
            self.manager.emitter.emit(events.AUTO_RENEWAL_FAILED, error=e, message=str(e))
            return False

        logger.info("Automatic renewal completed")
        self.manager.emitter.emit(
            events.AUTO_RENEWAL_COMPLETED,
            cert_file=str(result.cert_file),
            key_file=str(result.key_file),
        )
        return True
