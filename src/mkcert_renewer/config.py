"""
Configuration loading for mkcert-renewer.

Values come from environment variables, optionally overridden by a JSON file
and/or explicit keyword overrides (in that order of precedence, lowest first).
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List, Optional, Union

from mkcert_renewer.errors import ConfigError

logger = logging.getLogger("mkcert-renewer")

DEFAULT_CERT_NAME = "localhost+3"
DEFAULT_DOMAINS = ["localhost", "127.0.0.1", "::1"]
DEFAULT_WARNING_DAYS = 10
DEFAULT_CRON_PATTERN = "0 2 * * 0"  # every Sunday at 02:00
DEFAULT_HTTPS_PORT = 3443
DEFAULT_HTTP_PORT = 3001

CAMEL_CASE_KEYS = {
    "certPath": "cert_path",
    "certName": "cert_name",
    "warningDays": "warning_days",
    "cronPattern": "cron_pattern",
    "httpsPort": "https_port",
    "httpPort": "http_port",
    "autoRenewal": "auto_renewal",
}


@dataclass
class RenewerConfig:
    cert_path: Path
    cert_name: str = DEFAULT_CERT_NAME
    warning_days: int = DEFAULT_WARNING_DAYS
    cron_pattern: str = DEFAULT_CRON_PATTERN
    domains: List[str] = field(default_factory=lambda: list(DEFAULT_DOMAINS))
    https_port: int = DEFAULT_HTTPS_PORT
    http_port: int = DEFAULT_HTTP_PORT
    auto_renewal: bool = True

    @property
    def cert_file(self) -> Path:
        return self.cert_path / f"{self.cert_name}.pem"

    @property
    def key_file(self) -> Path:
        return self.cert_path / f"{self.cert_name}-key.pem"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cert_path"] = str(self.cert_path)
        return data


def _parse_int(name: str, value: Union[str, int]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _parse_domains(value: Union[str, List[str]]) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    domains = [d.strip() for d in value if d and d.strip()]
    if not domains:
        raise ConfigError("At least one domain is required")
    return domains


def _env_defaults() -> dict:
    return {
        "cert_path": os.getenv("HTTPS_CERT_PATH", os.path.join(os.getcwd(), "certs")),
        "cert_name": os.getenv("HTTPS_CERT_NAME", DEFAULT_CERT_NAME),
        "warning_days": os.getenv("CERT_WARNING_DAYS", DEFAULT_WARNING_DAYS),
        "cron_pattern": os.getenv("CERT_CRON_PATTERN", DEFAULT_CRON_PATTERN),
        "domains": os.getenv("HTTPS_DOMAINS", ",".join(DEFAULT_DOMAINS)),
        "https_port": os.getenv("HTTPS_PORT", DEFAULT_HTTPS_PORT),
        "http_port": os.getenv("HTTP_PORT", DEFAULT_HTTP_PORT),
        "auto_renewal": os.getenv("AUTO_RENEWAL", "true").lower() != "false",
    }


def load_config(**overrides) -> RenewerConfig:
    """Resolve a full configuration from the environment plus overrides.

    Overrides set to None are ignored, so CLI options can be passed straight
    through.

    Raises:
        ConfigError: If a value is malformed or unknown.
    """
    known = {f.name for f in fields(RenewerConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    values = _env_defaults()
    values.update({k: v for k, v in overrides.items() if v is not None})

    warning_days = _parse_int("warning_days", values["warning_days"])
    if warning_days < 0:
        raise ConfigError(f"warning_days must be >= 0, got {warning_days}")

    cert_name = str(values["cert_name"]).strip()
    if not cert_name:
        raise ConfigError("cert_name must not be empty")

    auto_renewal = values["auto_renewal"]
    if isinstance(auto_renewal, str):
        auto_renewal = auto_renewal.lower() != "false"

    return RenewerConfig(
        cert_path=Path(values["cert_path"]).expanduser().resolve(),
        cert_name=cert_name,
        warning_days=warning_days,
        cron_pattern=str(values["cron_pattern"]).strip(),
        domains=_parse_domains(values["domains"]),
        https_port=_parse_int("https_port", values["https_port"]),
        http_port=_parse_int("http_port", values["http_port"]),
        auto_renewal=bool(auto_renewal),
    )


def _file_keys(config_path: Path, file_values: dict) -> dict:
    """Map camelCase keys onto field names and drop keys with no matching field."""
    known = {f.name for f in fields(RenewerConfig)}
    values = {}
    for key, value in file_values.items():
        name = CAMEL_CASE_KEYS.get(key, key)
        if name not in known:
            logger.warning(f"Ignoring unknown key {key!r} in configuration file {config_path}")
            continue
        values[name] = value
    return values


def load_config_file(config_path: Union[str, Path], **overrides) -> RenewerConfig:
    """Load configuration overrides from a JSON file.

    A missing or unreadable file is not fatal: a warning is logged and the
    environment defaults (plus `overrides`) are used instead. camelCase keys
    (`certName`, `warningDays`, ...) are accepted; unknown keys are ignored
    with a warning.
    """
    config_path = Path(config_path)
    file_values = {}
    try:
        if config_path.exists():
            with open(config_path, "r") as f:
                file_values = json.load(f)
            if not isinstance(file_values, dict):
                raise ValueError("top-level JSON value must be an object")
            logger.debug(f"Loaded configuration from {config_path}")
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read configuration file {config_path}: {e}")
        file_values = {}

    file_values = _file_keys(config_path, file_values)
    file_values.update({k: v for k, v in overrides.items() if v is not None})
    return load_config(**file_values)


def save_config_file(config: RenewerConfig, config_path: Union[str, Path]) -> bool:
    """Write a configuration to disk as JSON. Returns False on failure."""
    config_path = Path(config_path)
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(config.to_dict(), f, indent=2)
        logger.info(f"Configuration saved to {config_path}")
        return True
    except OSError as e:
        logger.error(f"Failed to save configuration to {config_path}: {e}")
        return False


def resolve_warning_days(config: RenewerConfig, warning_days: Optional[int]) -> int:
    if warning_days is None:
        return config.warning_days
    if warning_days < 0:
        raise ValueError(f"warning_days must be >= 0, got {warning_days}")
    return warning_days
