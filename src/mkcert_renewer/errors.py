"""
Error types raised by the certificate lifecycle manager.
"""

from typing import Optional


class CertManagerError(Exception):
    """Base class for all mkcert-renewer errors."""


class ToolMissingError(CertManagerError):
    """The minting tool could not be found on PATH."""


class SubprocessFailureError(CertManagerError):
    """An external command exited with a nonzero status (or timed out)."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ExpiryParseError(CertManagerError):
    """The expiry timestamp could not be extracted from a certificate."""


class InvalidScheduleExpressionError(CertManagerError):
    """A cron expression failed validation."""


class AlreadyActiveError(CertManagerError):
    """A watch or schedule is already active on this manager."""


class ConfigError(CertManagerError):
    """Configuration values are missing or malformed."""
