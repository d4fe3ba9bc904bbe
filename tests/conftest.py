"""
Shared fixtures for the mkcert-renewer test suite.

mkcert itself is never invoked: FakeMkcertGateway stands in for it and writes
real PEM files built with the cryptography library, so expiry parsing runs for
real.
"""

import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import NameOID

from mkcert_renewer.config import load_config
from mkcert_renewer.manager import CertificateManager
from mkcert_renewer.tools import CommandResult, ToolGateway


def write_certificate(cert_file: Path, key_file: Path, not_after: datetime, domains=("localhost",)):
    """Write a self-signed EC certificate/key pair expiring at `not_after`."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=400))
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )
    cert_file.parent.mkdir(parents=True, exist_ok=True)
    cert_file.write_bytes(cert.public_bytes(Encoding.PEM))
    key_file.write_bytes(
        private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=NoEncryption(),
        )
    )
    return cert


def expiry_in(days: float) -> datetime:
    """A notAfter `days` from now, truncated to whole seconds like X.509 times."""
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0)


class FakeMkcertGateway(ToolGateway):
    """Records calls and writes certificates the way mkcert would."""

    def __init__(
        self,
        installed=True,
        returncode=0,
        stdout="Created a new certificate valid for the following names\n",
        stderr="",
        days_valid=825,
        write_files=True,
        delay=0.0,
    ):
        super().__init__()
        self.installed = installed
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.days_valid = days_valid
        self.write_files = write_files
        self.delay = delay
        self.probes = []
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def probe(self, tool_name):
        self.probes.append(tool_name)
        return self.installed

    def run(self, tool_name, args, cwd=None, on_output=None, input=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            args = list(args)
            self.calls.append({"tool": tool_name, "args": args, "cwd": cwd})
            if self.delay:
                threading.Event().wait(self.delay)

            key_file = Path(args[args.index("-key-file") + 1])
            cert_file = Path(args[args.index("-cert-file") + 1])
            domains = args[4:]

            if self.returncode == 0 and self.write_files:
                write_certificate(cert_file, key_file, expiry_in(self.days_valid), domains)

            if on_output is not None:
                for line in (self.stdout + self.stderr).splitlines(keepends=True):
                    on_output(line)
            return CommandResult(self.stdout, self.stderr, self.returncode)
        finally:
            with self._lock:
                self.active -= 1


class FakeObserver:
    """In-memory stand-in for a watchdog observer."""

    def __init__(self):
        self.watches = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.watches.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    @property
    def handler(self):
        return self.watches[0][0]


@pytest.fixture
def temp_dir():
    """Create a temporary directory"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def gateway():
    return FakeMkcertGateway()


@pytest.fixture
def observers():
    return []


@pytest.fixture
def observer_factory(observers):
    def factory():
        observer = FakeObserver()
        observers.append(observer)
        return observer

    return factory


@pytest.fixture
def manager(temp_dir, gateway, observer_factory):
    config = load_config(cert_path=temp_dir / "certs", cert_name="test-cert", warning_days=10)
    manager = CertificateManager(
        config=config, gateway=gateway, observer_factory=observer_factory
    )
    yield manager
    manager.destroy()


@pytest.fixture
def recorded(manager):
    """Collect every event emitted by `manager`, in order."""
    from mkcert_renewer.events import KNOWN_EVENTS

    received = []
    for name in KNOWN_EVENTS:
        manager.on(name, received.append)
    return received


def names(events_list):
    return [e.name for e in events_list]
