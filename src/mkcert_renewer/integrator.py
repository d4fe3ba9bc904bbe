"""
Helpers that hand the managed certificate to web servers.

Everything here goes through the manager's "key + cert bytes" contract; the
lifecycle itself (expiry, backup, renewal) stays in CertificateManager.
"""

import json
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from mkcert_renewer.manager import CertificateManager, WatchHandle

logger = logging.getLogger("mkcert-renewer")

INTEGRATION_CONFIG_FILENAME = "integration-config.json"
EXPIRY_HEADER = "X-Cert-Expiry"


@dataclass(frozen=True)
class HttpsOptions:
    key: bytes
    cert: bytes
    key_file: Path
    cert_file: Path


class ProjectIntegrator:
    def __init__(self, manager: CertificateManager):
        self.manager = manager

    def get_https_options(self) -> HttpsOptions:
        """Return key/cert bytes, generating the pair first if either file is missing."""
        if not self.manager.cert_file.exists() or not self.manager.key_file.exists():
            logger.info("Certificate not found, generating a new one")
            self.manager.generate(self.manager.config.domains)

        key, cert = self.manager.read_certificate_pair()
        return HttpsOptions(
            key=key, cert=cert, key_file=self.manager.key_file, cert_file=self.manager.cert_file
        )

    def create_ssl_context(self) -> ssl.SSLContext:
        options = self.get_https_options()
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(certfile=str(options.cert_file), keyfile=str(options.key_file))
        return context

    def get_uvicorn_config(self, existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Keyword arguments for `uvicorn.run` serving HTTPS with the managed pair."""
        options = self.get_https_options()
        config = {"host": "0.0.0.0", "port": self.manager.config.https_port}
        config.update(existing or {})
        config["ssl_certfile"] = str(options.cert_file)
        config["ssl_keyfile"] = str(options.key_file)
        return config

    def setup_hot_reload(self, reload_callback: Callable[[], None]) -> WatchHandle:
        """Call `reload_callback` whenever the cert or key file changes."""

        def on_change(file_path: str, timestamp: datetime):
            if file_path.endswith(".pem"):
                logger.info(f"Certificate change detected ({file_path}), reloading")
                reload_callback()

        return self.manager.start_monitoring(on_change)

    def generate_integration_config(self, project_type: str = "fastapi") -> Path:
        """Write a JSON summary of the HTTPS setup next to the certificates."""
        config = self.manager.config
        integration_config = {
            "project_type": project_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "https": {
                "enabled": True,
                "port": config.https_port,
                "cert_file": str(self.manager.cert_file),
                "key_file": str(self.manager.key_file),
            },
            "http": {"enabled": True, "port": config.http_port, "redirect_to_https": True},
            "domains": list(config.domains),
            "auto_renewal": {
                "enabled": config.auto_renewal,
                "schedule": config.cron_pattern,
                "warning_days": config.warning_days,
            },
        }

        config_path = self.manager.cert_path / INTEGRATION_CONFIG_FILENAME
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(integration_config, f, indent=2)

        logger.info(f"Integration config written to {config_path}")
        return config_path

    def expiry_header_middleware(self):
        """FastAPI HTTP middleware adding the certificate expiry as a response header.

        Usage:
            app.middleware("http")(integrator.expiry_header_middleware())
        """
        manager = self.manager

        async def add_expiry_header(request, call_next):
            response = await call_next(request)
            expiry = manager.get_expiry()
            if expiry is not None:
                response.headers[EXPIRY_HEADER] = expiry.isoformat()
            return response

        return add_expiry_header
