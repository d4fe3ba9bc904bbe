"""
Certificate expiry extraction.

Parsers take raw certificate bytes and return the expiry as an ISO-8601
string. The manager turns that string into a datetime with
`parse_expiry_timestamp`, so a parser that returns garbage is handled the same
way as one that fails outright.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509

from mkcert_renewer.errors import ExpiryParseError, SubprocessFailureError
from mkcert_renewer.tools import ToolGateway, default_gateway

logger = logging.getLogger("mkcert-renewer")

OPENSSL_ENDDATE_RE = re.compile(r"notAfter=(.+)")
OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


class ExpiryParser:
    """Interface: raw certificate bytes -> ISO-8601 expiry string."""

    def read_expiry(self, cert_data: bytes) -> str:
        raise NotImplementedError


class CryptographyExpiryParser(ExpiryParser):
    """Reads the leaf certificate's notAfter with the cryptography library."""

    def read_expiry(self, cert_data: bytes) -> str:
        try:
            certs = x509.load_pem_x509_certificates(cert_data)
        except ValueError as e:
            raise ExpiryParseError(f"Invalid PEM certificate data: {e}")

        if not certs:
            raise ExpiryParseError("No certificates found in certificate file")

        # Check the first certificate (leaf certificate)
        return certs[0].not_valid_after_utc.isoformat()


class OpenSSLExpiryParser(ExpiryParser):
    """Reads notAfter by piping the certificate through `openssl x509`."""

    def __init__(self, gateway: Optional[ToolGateway] = None):
        self.gateway = gateway or default_gateway(timeout=30)

    def read_expiry(self, cert_data: bytes) -> str:
        result = self.gateway.run("openssl", ["x509", "-noout", "-enddate"], input=cert_data)
        if result.returncode != 0:
            raise SubprocessFailureError(
                f"openssl exited with code {result.returncode}",
                stderr=result.stderr,
                returncode=result.returncode,
            )

        match = OPENSSL_ENDDATE_RE.search(result.stdout)
        if not match:
            raise ExpiryParseError(f"Unexpected openssl output: {result.stdout.strip()!r}")

        raw = " ".join(match.group(1).split())
        try:
            expiry = datetime.strptime(raw, OPENSSL_DATE_FORMAT)
        except ValueError as e:
            raise ExpiryParseError(f"Unexpected openssl date {raw!r}: {e}")
        return expiry.replace(tzinfo=timezone.utc).isoformat()


def parse_expiry_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 expiry string into an aware UTC datetime.

    Raises:
        ExpiryParseError: If the text is not a valid ISO-8601 timestamp.
    """
    if not isinstance(text, str):
        raise ExpiryParseError(f"Expected an ISO-8601 string, got {type(text).__name__}")

    value = text.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        expiry = datetime.fromisoformat(value)
    except ValueError:
        raise ExpiryParseError(f"Cannot parse expiry timestamp: {text!r}")

    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry.astimezone(timezone.utc)
