"""
Value types describing a managed certificate and the renewal decision rule.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class CertificateIdentity:
    """Directory + base name of a managed cert/key pair.

    The file paths are always derived, never stored.
    """

    directory: Path
    base_name: str

    def __post_init__(self):
        if not self.base_name:
            raise ValueError("Certificate base name must not be empty")
        object.__setattr__(self, "directory", Path(self.directory).resolve())

    @property
    def cert_file(self) -> Path:
        return self.directory / f"{self.base_name}.pem"

    @property
    def key_file(self) -> Path:
        return self.directory / f"{self.base_name}-key.pem"

    @property
    def backup_dir(self) -> Path:
        return self.directory / "backup"


@dataclass(frozen=True)
class CertificateState:
    exists: bool
    not_after: Optional[datetime]
    last_checked_at: datetime

    @classmethod
    def unknown(cls) -> "CertificateState":
        return cls(exists=False, not_after=None, last_checked_at=datetime.now(timezone.utc))


@dataclass(frozen=True)
class BackupRecord:
    original_base_name: str
    timestamp: str
    backup_cert_file: Path
    backup_key_file: Optional[Path]


@dataclass(frozen=True)
class RenewalDecision:
    needs_renewal: bool
    expiry: Optional[datetime]
    days_until_expiry: Optional[int]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_until_expiry(not_after: datetime, now: datetime) -> int:
    """Whole days left before expiry, rounded up (negative once expired)."""
    return math.ceil((_as_utc(not_after) - _as_utc(now)).total_seconds() / SECONDS_PER_DAY)


def decide_renewal(state: CertificateState, warning_days: int, now: datetime) -> RenewalDecision:
    """Decide whether a certificate must be replaced.

    Missing or unparsable certificates always need renewal. Otherwise the
    certificate is renewed once the days left drop to `warning_days` or below.
    """
    if not state.exists or state.not_after is None:
        return RenewalDecision(needs_renewal=True, expiry=None, days_until_expiry=None)

    days = days_until_expiry(state.not_after, now)
    return RenewalDecision(
        needs_renewal=days <= warning_days, expiry=state.not_after, days_until_expiry=days
    )
